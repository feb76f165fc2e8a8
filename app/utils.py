"""Utility helpers for the ShelfSync service."""

from __future__ import annotations

import re
import uuid
from typing import Any, Mapping

EXTERNAL_ID_RE = re.compile(r"^tt\d+$", re.IGNORECASE)


def extract_external_id(meta: Mapping[str, Any]) -> str | None:
    """Return the IMDb-style identifier of a catalog meta, if it has one.

    ``imdb_id`` wins when present. Otherwise the addon ``id`` is used when it
    looks like an IMDb id; episode ids such as ``tt0944947:1:2`` are reduced to
    the series id. Metas with neither yield ``None`` and are never imported.
    """

    for key in ("imdb_id", "imdbId"):
        value = meta.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()

    raw_id = meta.get("id")
    if not isinstance(raw_id, str):
        return None
    candidate = raw_id.strip().split(":", 1)[0]
    if EXTERNAL_ID_RE.match(candidate):
        return candidate
    return None


def catalog_identity(entry: Any) -> str:
    """Return the dedup key of a catalog entry: its external id, unhashed."""

    return entry.external_id


def stream_identity(
    *,
    info_hash: str | None = None,
    file_index: int | None = None,
    url: str | None = None,
    binge_group: str | None = None,
    filename: str | None = None,
    size_bytes: int | None = None,
    content_hash: str | None = None,
) -> str:
    """Compute the content-addressable identity of a stream.

    The primary segment is the info hash (plus file index) or, failing that,
    the URL. Release hints are appended because one torrent or URL can carry
    several distinct files. A stream with no usable field at all gets a random
    key so it can never be merged with an unrelated one.
    """

    parts: list[str] = []
    if info_hash:
        parts.append(f"hash:{info_hash}")
        if file_index is not None:
            parts.append(f"idx:{file_index}")
    elif url:
        parts.append(f"url:{url}")

    if binge_group:
        parts.append(f"bg:{binge_group}")
    if filename:
        parts.append(f"fn:{filename}")
    if size_bytes is not None:
        parts.append(f"vs:{size_bytes}")
    if content_hash:
        parts.append(f"vh:{content_hash}")

    if not parts:
        return uuid.uuid4().hex
    return "|".join(parts)


def normalize_base_url(value: str | None) -> str | None:
    """Strip whitespace, trailing slashes and ``/manifest.json`` from a URL."""

    if not value:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    normalized = normalized.split("?", 1)[0].rstrip("/")
    lowered = normalized.lower()
    for suffix in ("/manifest.json", "/manifest"):
        if lowered.endswith(suffix):
            normalized = normalized[: -len(suffix)].rstrip("/")
            break
    return normalized or None
