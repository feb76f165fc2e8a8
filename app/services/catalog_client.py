"""Client for paginated Stremio-compatible catalog endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from ..models import CatalogEntry, MediaKind
from ..utils import extract_external_id, normalize_base_url

logger = logging.getLogger(__name__)

# Extra raw entries counted past ``max_items`` before paging gives up.
COUNT_CEILING_MARGIN = 1_000


@dataclass(slots=True)
class CatalogPage:
    """One page of a catalog.

    ``page_size`` is the number of metas the addon returned, including the
    ones dropped for lacking an external id; it drives the skip offset.
    """

    entries: list[CatalogEntry]
    page_size: int = 0


@dataclass(slots=True)
class CatalogFetchResult:
    """Entries collected from a catalog and the total size observed."""

    entries: list[CatalogEntry] = field(default_factory=list)
    total_count: int = 0


class CatalogClient:
    """Wrapper around the ``/catalog/{type}/{id}.json`` addon protocol."""

    _FIRST_PAGE_PATH = "/catalog/{type}/{catalog_id}.json"
    _PAGE_PATH = "/catalog/{type}/{catalog_id}/skip={skip}.json"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        self._client = http_client
        self._base_url = normalize_base_url(base_url)
        self._timeout = timeout

    @property
    def base_url(self) -> str | None:
        return self._base_url

    def build_url(self, catalog_id: str, media_kind: MediaKind, skip: int = 0) -> str:
        """Return the page URL; the first page carries no skip segment."""

        if not self._base_url:
            raise ValueError("Catalog addon URL is not configured")
        encoded_id = quote(catalog_id, safe="")
        if skip > 0:
            path = self._PAGE_PATH.format(
                type=media_kind, catalog_id=encoded_id, skip=skip
            )
        else:
            path = self._FIRST_PAGE_PATH.format(type=media_kind, catalog_id=encoded_id)
        return f"{self._base_url}{path}"

    async def fetch_page(
        self, catalog_id: str, media_kind: MediaKind, skip: int = 0
    ) -> CatalogPage:
        """Fetch one page. Any failure reads as an empty page (end of catalog)."""

        url = self.build_url(catalog_id, media_kind, skip)
        logger.debug("Fetching catalog page %s", url)
        request_kwargs: dict[str, Any] = {}
        if self._timeout is not None:
            request_kwargs["timeout"] = self._timeout
        try:
            response = await self._client.get(url, **request_kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Catalog %s (%s) returned %s at skip=%s; treating as end of catalog",
                catalog_id,
                media_kind,
                exc.response.status_code,
                skip,
            )
            return CatalogPage(entries=[])
        except httpx.HTTPError as exc:
            logger.warning(
                "Catalog %s (%s) unavailable at skip=%s: %s",
                catalog_id,
                media_kind,
                skip,
                exc.__class__.__name__,
            )
            return CatalogPage(entries=[])

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Catalog %s returned a non-JSON page at skip=%s", catalog_id, skip)
            return CatalogPage(entries=[])

        metas = payload.get("metas") if isinstance(payload, dict) else None
        if not isinstance(metas, list) or not metas:
            return CatalogPage(entries=[])

        entries: list[CatalogEntry] = []
        for meta in metas:
            if not isinstance(meta, dict):
                continue
            external_id = extract_external_id(meta)
            if not external_id:
                logger.debug("Skipping catalog meta without an external id: %s", meta.get("id"))
                continue
            entries.append(
                CatalogEntry(
                    external_id=external_id,
                    display_name=str(meta.get("name") or external_id),
                    media_kind=media_kind,
                    source_catalog_id=catalog_id,
                )
            )
        return CatalogPage(entries=entries, page_size=len(metas))

    async def fetch_all(
        self, catalog_id: str, media_kind: MediaKind, max_items: int
    ) -> CatalogFetchResult:
        """Collect up to ``max_items`` entries and count the whole catalog.

        Paging continues after the cap purely to count, and stops once
        ``max_items + COUNT_CEILING_MARGIN`` raw entries have been seen so a
        misbehaving addon that never returns an empty page cannot loop forever.
        """

        max_items = max(max_items, 0)
        ceiling = max_items + COUNT_CEILING_MARGIN
        collected: list[CatalogEntry] = []
        total = 0
        skip = 0

        while True:
            page = await self.fetch_page(catalog_id, media_kind, skip)
            if page.page_size == 0:
                break

            total += page.page_size
            remaining = max_items - len(collected)
            if remaining > 0:
                collected.extend(page.entries[:remaining])

            skip += page.page_size
            if skip >= ceiling:
                logger.info(
                    "Catalog %s reached the counting ceiling of %s entries",
                    catalog_id,
                    ceiling,
                )
                break

        total = min(total, ceiling)
        logger.info(
            "Fetched %s/%s entries from catalog %s (%s)",
            len(collected),
            total,
            catalog_id,
            media_kind,
        )
        return CatalogFetchResult(entries=collected, total_count=total)

    async def count(self, catalog_id: str, media_kind: MediaKind) -> int:
        """Return the number of entries a catalog lists, without collecting."""

        result = await self.fetch_all(catalog_id, media_kind, max_items=0)
        return result.total_count
