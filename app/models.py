"""Pydantic models describing catalog entries and cached streams."""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from .utils import stream_identity

MediaKind = Literal["movie", "series"]

_SERIES_ALIASES = {"series", "tv", "tvshows", "show", "shows", "episode"}


def normalise_media_kind(value: str | None) -> MediaKind:
    """Map the assorted type spellings used by addons and servers to a kind."""

    if value and value.strip().lower() in _SERIES_ALIASES:
        return "series"
    return "movie"


class CatalogEntry(BaseModel):
    """A single usable item listed by an external catalog."""

    model_config = ConfigDict(frozen=True)

    external_id: str
    display_name: str
    media_kind: MediaKind
    source_catalog_id: str


class ProbedStream(BaseModel):
    """Audio/subtitle/video track details probed from a stream."""

    model_config = ConfigDict(populate_by_name=True)

    stream_type: str = Field(alias="streamType")
    index: int = 0
    codec: str | None = None
    language: str | None = None
    title: str | None = None
    channels: int | None = None
    channel_layout: str | None = Field(default=None, alias="channelLayout")
    is_default: bool = Field(default=False, alias="isDefault")
    is_forced: bool = Field(default=False, alias="isForced")
    bit_rate: int | None = Field(default=None, alias="bitRate")

    @property
    def is_audio(self) -> bool:
        return self.stream_type.strip().lower() == "audio"


class StreamRecord(BaseModel):
    """A playable stream as listed by the remote provider."""

    model_config = ConfigDict(populate_by_name=True)

    url: str | None = None
    info_hash: str | None = Field(default=None, alias="infoHash")
    file_index: int | None = Field(default=None, alias="fileIdx")
    title: str | None = None
    name: str | None = None
    quality: str | None = None
    audio: str | None = None
    binge_group: str | None = Field(default=None, alias="bingeGroup")
    filename: str | None = None
    size_bytes: int | None = Field(default=None, alias="videoSize")
    content_hash: str | None = Field(default=None, alias="videoHash")
    sources: list[str] = Field(default_factory=list)
    web_compatible: bool | None = Field(default=None, alias="webCompatible")
    probed_streams: list[ProbedStream] | None = Field(
        default=None, alias="probedStreams"
    )

    _identity: str | None = PrivateAttr(default=None)

    @property
    def identity_key(self) -> str:
        """Return the identity key, computing it once per instance."""

        if self._identity is None:
            self._identity = stream_identity(
                info_hash=self.info_hash,
                file_index=self.file_index,
                url=self.url,
                binge_group=self.binge_group,
                filename=self.filename,
                size_bytes=self.size_bytes,
                content_hash=self.content_hash,
            )
        return self._identity

    def with_identity(self, identity_key: str | None) -> "StreamRecord":
        """Pin a previously persisted identity key onto this record."""

        if identity_key:
            self._identity = identity_key
        return self

    @classmethod
    def from_provider_payload(cls, data: Mapping[str, Any]) -> "StreamRecord":
        """Build a record from a Stremio-style stream object."""

        hints = data.get("behaviorHints")
        if not isinstance(hints, Mapping):
            hints = {}

        raw_sources = data.get("sources")
        sources = (
            [str(source) for source in raw_sources if source]
            if isinstance(raw_sources, list)
            else []
        )

        return cls(
            url=_clean_str(data.get("url")),
            info_hash=_clean_str(data.get("infoHash")),
            file_index=_coerce_int(data.get("fileIdx")),
            title=_clean_str(data.get("title") or data.get("description")),
            name=_clean_str(data.get("name")),
            quality=_clean_str(data.get("quality")),
            audio=_clean_str(data.get("audio")),
            binge_group=_clean_str(hints.get("bingeGroup")),
            filename=_clean_str(hints.get("filename")),
            size_bytes=_coerce_int(hints.get("videoSize")),
            content_hash=_clean_str(hints.get("videoHash")),
            sources=sources,
        )

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON representation served to API clients."""

        payload = self.model_dump(by_alias=True, exclude_none=True)
        payload["identityKey"] = self.identity_key
        return payload


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
