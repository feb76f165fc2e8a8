"""Classify whether a stream's audio can be played directly in a browser."""

from __future__ import annotations

import re
from typing import Iterable

from ..models import ProbedStream

# Surround and lossless formats browsers cannot decode without a transcode.
INCOMPATIBLE_AUDIO_CODECS: tuple[str, ...] = (
    "ac3",
    "eac3",
    "dolby",
    "dolbydigital",
    "truehd",
    "dts",
    "dts-hd",
    "dtshd",
    "atmos",
)

WEB_AUDIO_CODECS: tuple[str, ...] = (
    "aac",
    "mp4a",
    "opus",
    "vorbis",
    "mp3",
    "mpeg",
)

_TITLE_CODEC_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (codec, re.compile(rf"(?<![a-z0-9]){re.escape(codec)}(?![a-z])", re.IGNORECASE))
    for codec in (
        "truehd",
        "atmos",
        "dts-hd",
        "dts",
        "eac3",
        "ddp",
        "dd+",
        "ac3",
        "aac",
        "opus",
        "flac",
        "mp3",
        "vorbis",
    )
)


def is_web_compatible(audio: str | None) -> bool:
    """Return whether the audio descriptor is playable without transcoding.

    Missing information is treated optimistically, unknown codecs
    pessimistically. The incompatible list is consulted first so that a
    descriptor naming both kinds of codec is rejected.
    """

    if audio is None:
        return True
    descriptor = audio.strip().lower()
    if not descriptor:
        return True
    if any(codec in descriptor for codec in INCOMPATIBLE_AUDIO_CODECS):
        return False
    if any(codec in descriptor for codec in WEB_AUDIO_CODECS):
        return True
    return False


def classify_probed(probed_streams: Iterable[ProbedStream] | None) -> bool:
    """Return ``False`` if any probed audio track needs transcoding."""

    if not probed_streams:
        return True
    for track in probed_streams:
        if not track.is_audio:
            continue
        codec = (track.codec or "").lower()
        if any(bad in codec for bad in INCOMPATIBLE_AUDIO_CODECS):
            return False
    return True


def audio_from_title(*texts: str | None) -> str | None:
    """Guess an audio descriptor from release titles like ``... DDP5.1 Atmos``."""

    found: list[str] = []
    for text in texts:
        if not text:
            continue
        for codec, pattern in _TITLE_CODEC_PATTERNS:
            if codec in found:
                continue
            if pattern.search(text):
                found.append(codec)
    if not found:
        return None
    aliases = {"ddp": "eac3", "dd+": "eac3"}
    return " ".join(dict.fromkeys(aliases.get(codec, codec) for codec in found))
