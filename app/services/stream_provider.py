"""Client for the remote Stremio-style stream provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from ..models import MediaKind, StreamRecord, normalise_media_kind
from ..utils import normalize_base_url
from .compatibility import audio_from_title, is_web_compatible

logger = logging.getLogger(__name__)


class SourceUnavailableError(RuntimeError):
    """Raised when the stream provider cannot produce a listing."""


@dataclass(slots=True)
class StreamFetchParams:
    """Identifiers used to look a title up on the stream provider."""

    stremio_id: str | None = None
    imdb_id: str | None = None
    tmdb_id: str | None = None
    media_kind: str | None = None
    user_id: str | None = None

    @property
    def kind(self) -> MediaKind:
        return normalise_media_kind(self.media_kind)

    def lookup_id(self) -> str | None:
        if self.stremio_id:
            return self.stremio_id
        if self.imdb_id:
            return self.imdb_id
        if self.tmdb_id:
            return f"tmdb:{self.tmdb_id}"
        return None


class StreamProviderClient:
    """Wrapper around the ``/stream/{type}/{id}.json`` endpoint."""

    _STREAM_PATH = "/stream/{type}/{lookup_id}.json"

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

    def build_url(self, params: StreamFetchParams) -> str:
        if not self._base_url:
            raise SourceUnavailableError("Stream provider URL is not configured")
        lookup_id = params.lookup_id()
        if not lookup_id:
            raise SourceUnavailableError("No identifier available for stream lookup")
        path = self._STREAM_PATH.format(
            type=params.kind, lookup_id=quote(lookup_id, safe=":")
        )
        return f"{self._base_url}{path}"

    async def fetch_streams(self, params: StreamFetchParams) -> list[StreamRecord]:
        """Return the provider's current listing, classified for web playback."""

        url = self.build_url(params)
        request_kwargs: dict[str, Any] = {}
        if self._timeout is not None:
            request_kwargs["timeout"] = self._timeout
        try:
            response = await self._client.get(url, **request_kwargs)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise SourceUnavailableError(
                f"Stream provider returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(
                f"Stream provider request failed: {exc.__class__.__name__}"
            ) from exc
        except ValueError as exc:
            raise SourceUnavailableError("Stream provider returned invalid JSON") from exc

        streams = payload.get("streams") if isinstance(payload, dict) else None
        if not isinstance(streams, list):
            logger.warning("Stream provider payload for %s has no streams list", url)
            return []

        records: list[StreamRecord] = []
        for raw in streams:
            if not isinstance(raw, dict):
                continue
            record = StreamRecord.from_provider_payload(raw)
            if record.audio is None:
                record.audio = audio_from_title(record.title, record.name)
            record.web_compatible = is_web_compatible(record.audio)
            records.append(record)

        logger.debug("Fetched %s streams from %s", len(records), url)
        return records
