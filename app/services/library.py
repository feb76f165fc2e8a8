"""Library collaborators consumed by the catalog reconciler.

The reconciler only depends on the :class:`LibraryIndex` and :class:`Importer`
protocols. The concrete classes here back them with the service database and
the catalog addon's ``/meta`` endpoint so the service can run on its own.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Protocol
from urllib.parse import quote

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import GroupMember, LibraryItem
from ..models import MediaKind
from ..utils import normalize_base_url

logger = logging.getLogger(__name__)


class LibraryIndex(Protocol):
    async def find_item(self, external_id: str, media_kind: MediaKind) -> str | None:
        """Return the library id holding ``external_id``, if any."""

    async def group_member_external_ids(self, group_ref: str) -> set[str]:
        """Return the external ids of every member of a group."""

    async def create_group(self, name: str) -> str:
        """Create an empty group and return its reference."""

    async def add_to_group(self, group_ref: str, item_ids: Iterable[str]) -> None:
        """Add items to a group in one call."""


class Importer(Protocol):
    async def import_item(self, external_id: str, media_kind: MediaKind) -> str | None:
        """Materialise a library entry and return its id, or ``None`` on failure."""


class DatabaseLibrary:
    """:class:`LibraryIndex` stored in the ``library_items`` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_item(self, external_id: str, media_kind: MediaKind) -> str | None:
        async with self._session_factory() as session:
            stmt = (
                select(LibraryItem.id)
                .where(
                    LibraryItem.external_id == external_id,
                    LibraryItem.media_kind == media_kind,
                )
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def group_member_external_ids(self, group_ref: str) -> set[str]:
        async with self._session_factory() as session:
            stmt = (
                select(LibraryItem.external_id)
                .join(GroupMember, GroupMember.item_id == LibraryItem.id)
                .where(GroupMember.group_ref == group_ref)
            )
            result = await session.execute(stmt)
            return {row[0] for row in result.all()}

    async def create_group(self, name: str) -> str:
        group_ref = uuid.uuid4().hex
        logger.info("Creating collection '%s' (%s)", name, group_ref)
        return group_ref

    async def add_to_group(self, group_ref: str, item_ids: Iterable[str]) -> None:
        wanted = list(dict.fromkeys(item_ids))
        if not wanted:
            return
        async with self._session_factory() as session:
            existing = await session.execute(
                select(GroupMember.item_id).where(
                    GroupMember.group_ref == group_ref,
                    GroupMember.item_id.in_(wanted),
                )
            )
            present = {row[0] for row in existing.all()}
            for item_id in wanted:
                if item_id not in present:
                    session.add(GroupMember(group_ref=group_ref, item_id=item_id))
            await session.commit()

    async def create_item(self, external_id: str, media_kind: MediaKind, name: str) -> str:
        """Insert a library entry, returning the existing id if already present."""

        existing = await self.find_item(external_id, media_kind)
        if existing:
            return existing
        item_id = uuid.uuid4().hex
        async with self._session_factory() as session:
            session.add(
                LibraryItem(
                    id=item_id,
                    external_id=external_id,
                    media_kind=media_kind,
                    name=name[:255],
                )
            )
            await session.commit()
        return item_id


class MetaImporter:
    """:class:`Importer` that resolves metadata from the catalog addon.

    A missing meta (404) means the title cannot be materialised and yields
    ``None``. Transient failures fall back to a stub entry named after the id
    so the title still lands in the library.
    """

    _META_PATH = "/meta/{type}/{external_id}.json"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        library: DatabaseLibrary,
        base_url: str | None = None,
    ) -> None:
        self._client = http_client
        self._library = library
        self._base_url = normalize_base_url(base_url)

    async def import_item(self, external_id: str, media_kind: MediaKind) -> str | None:
        name = external_id
        if self._base_url:
            url = self._base_url + self._META_PATH.format(
                type=media_kind, external_id=quote(external_id, safe="")
            )
            try:
                response = await self._client.get(url)
                if response.status_code == 404:
                    logger.warning("No metadata found for %s (%s)", external_id, media_kind)
                    return None
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning(
                    "Metadata lookup failed for %s, importing stub: %s", external_id, exc
                )
            else:
                meta = payload.get("meta") if isinstance(payload, dict) else None
                if isinstance(meta, dict) and meta.get("name"):
                    name = str(meta["name"])
        return await self._library.create_item(external_id, media_kind, name)
