"""Persistent stream cache and its cache-first reconciliation layer."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

import httpx
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import ProbedStreamRow, StreamRow
from ..models import ProbedStream, StreamRecord
from .compatibility import classify_probed, is_web_compatible
from .stream_provider import (
    SourceUnavailableError,
    StreamFetchParams,
    StreamProviderClient,
)

logger = logging.getLogger(__name__)


class StreamsUnavailableError(RuntimeError):
    """Raised when nothing is cached and the provider cannot be reached."""


@dataclass(slots=True)
class StreamDiff:
    """Fresh records absent from the cache. Removals are never reported."""

    new_records: list[StreamRecord] = field(default_factory=list)
    total_cached: int = 0
    total_fresh: int = 0

    @property
    def has_new(self) -> bool:
        return bool(self.new_records)

    @property
    def new_count(self) -> int:
        return len(self.new_records)

    def to_payload(self) -> dict[str, Any]:
        return {
            "hasNew": self.has_new,
            "newCount": self.new_count,
            "totalCached": self.total_cached,
            "totalFresh": self.total_fresh,
            "newStreams": [record.to_payload() for record in self.new_records],
        }


@dataclass(slots=True)
class SmartStreamResult:
    records: list[StreamRecord]
    from_cache: bool
    has_new: bool = False
    new_count: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "streams": [record.to_payload() for record in self.records],
            "fromCache": self.from_cache,
            "hasNew": self.has_new,
            "newCount": self.new_count,
        }


@dataclass(slots=True)
class CachedListing:
    """Cached records for one key and when the newest of them was stored."""

    records: list[StreamRecord]
    cached_at: datetime

    def is_stale(self, max_age: timedelta | None) -> bool:
        if max_age is None:
            return False
        return self.cached_at < datetime.utcnow() - max_age


class StreamCacheStore:
    """Stream listings persisted per ``(subject_id, user_id)`` key.

    Every mutation touches a single key inside one transaction. Reads that
    fail are logged and reported as a cache miss; writes that fail are logged
    and reported as ``False``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._locks: dict[tuple[str, str | None], asyncio.Lock] = {}

    def _lock(self, subject_id: str, user_id: str | None) -> asyncio.Lock:
        return self._locks.setdefault((subject_id, user_id), asyncio.Lock())

    @staticmethod
    def _scope(subject_id: str, user_id: str | None) -> tuple[Any, ...]:
        user_clause = (
            StreamRow.user_id.is_(None) if user_id is None else StreamRow.user_id == user_id
        )
        return (StreamRow.subject_id == subject_id, user_clause)

    async def load(
        self, subject_id: str, user_id: str | None = None
    ) -> CachedListing | None:
        """Return the cached listing with the time of its newest row."""

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StreamRow)
                    .where(*self._scope(subject_id, user_id))
                    .order_by(StreamRow.ordinal, StreamRow.id)
                )
                rows = result.scalars().all()
                if not rows:
                    return None
                probed = await self._load_probed(session, subject_id)
        except SQLAlchemyError as exc:
            logger.warning("Failed to read stream cache for %s: %s", subject_id, exc)
            return None

        records = [self._to_record(row) for row in rows]
        for record in records:
            tracks = probed.get(record.identity_key)
            if tracks:
                record.probed_streams = tracks
        return CachedListing(
            records=records, cached_at=max(row.cached_at for row in rows)
        )

    async def get(
        self,
        subject_id: str,
        user_id: str | None = None,
        *,
        max_age: timedelta | None = None,
    ) -> list[StreamRecord] | None:
        """Return cached records in fetch order, or ``None`` when nothing is cached.

        With ``max_age`` a listing whose newest row is older than that reads
        as a miss. The rows themselves are left in place.
        """

        listing = await self.load(subject_id, user_id)
        if listing is None:
            return None
        if listing.is_stale(max_age):
            logger.debug("Stream cache for %s is stale", subject_id)
            return None
        return listing.records

    async def replace(
        self,
        subject_id: str,
        user_id: str | None,
        records: Sequence[StreamRecord],
    ) -> bool:
        """Swap the cached listing for ``records`` in one transaction."""

        try:
            async with self._lock(subject_id, user_id):
                async with self._session_factory() as session:
                    await session.execute(
                        delete(StreamRow).where(*self._scope(subject_id, user_id))
                    )
                    now = datetime.utcnow()
                    session.add_all(
                        self._to_row(subject_id, user_id, ordinal, record, now)
                        for ordinal, record in enumerate(records)
                    )
                    await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to save streams for %s", subject_id)
            return False

        logger.info("Cached %s streams for %s", len(records), subject_id)
        return True

    async def merge(
        self,
        subject_id: str,
        user_id: str | None,
        new_records: Sequence[StreamRecord],
    ) -> bool:
        """Append unseen records after the current highest ordinal.

        Writes for one key are serialised, so concurrent merges of the same
        records store each identity once.
        """

        if not new_records:
            return True
        try:
            async with self._lock(subject_id, user_id):
                pending = await self._append_unseen(subject_id, user_id, new_records)
        except SQLAlchemyError:
            logger.exception("Failed to merge streams for %s", subject_id)
            return False

        if pending:
            logger.info("Merged %s new streams for %s", pending, subject_id)
        else:
            logger.debug("No new streams to merge for %s", subject_id)
        return True

    async def _append_unseen(
        self,
        subject_id: str,
        user_id: str | None,
        new_records: Sequence[StreamRecord],
    ) -> int:
        async with self._session_factory() as session:
            scope = self._scope(subject_id, user_id)
            known = await session.execute(select(StreamRow.identity_key).where(*scope))
            seen = {row[0] for row in known.all() if row[0]}
            pending: list[StreamRecord] = []
            for record in new_records:
                if record.identity_key in seen:
                    continue
                seen.add(record.identity_key)
                pending.append(record)
            if not pending:
                return 0

            max_ordinal = await session.scalar(
                select(func.coalesce(func.max(StreamRow.ordinal), -1)).where(*scope)
            )
            start = int(max_ordinal) + 1
            now = datetime.utcnow()
            session.add_all(
                self._to_row(subject_id, user_id, start + offset, record, now)
                for offset, record in enumerate(pending)
            )
            await session.commit()
        return len(pending)

    @staticmethod
    def diff(
        cached: Sequence[StreamRecord], fresh: Sequence[StreamRecord]
    ) -> StreamDiff:
        known = {record.identity_key for record in cached}
        new_records: list[StreamRecord] = []
        for record in fresh:
            key = record.identity_key
            if key in known:
                continue
            known.add(key)
            new_records.append(record)
        return StreamDiff(
            new_records=new_records,
            total_cached=len(cached),
            total_fresh=len(fresh),
        )

    async def save_probed(
        self,
        subject_id: str,
        stream_key: str,
        probed: Iterable[ProbedStream],
    ) -> bool:
        """Replace the probe data recorded for one stream."""

        tracks = list(probed)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(ProbedStreamRow).where(
                        ProbedStreamRow.subject_id == subject_id,
                        ProbedStreamRow.stream_key == stream_key,
                    )
                )
                now = datetime.utcnow()
                session.add_all(
                    ProbedStreamRow(
                        subject_id=subject_id,
                        stream_key=stream_key,
                        stream_type=track.stream_type,
                        stream_index=track.index,
                        codec=track.codec,
                        language=track.language,
                        title=track.title,
                        channels=track.channels,
                        channel_layout=track.channel_layout,
                        is_default=track.is_default,
                        is_forced=track.is_forced,
                        bit_rate=track.bit_rate,
                        cached_at=now,
                    )
                    for track in tracks
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to save probed streams for %s", subject_id)
            return False

        logger.info(
            "Saved %s probed tracks for %s (%s)", len(tracks), subject_id, stream_key
        )
        return True

    async def get_probed(
        self, subject_id: str, stream_key: str | None = None
    ) -> dict[str, list[ProbedStream]]:
        try:
            async with self._session_factory() as session:
                probed = await self._load_probed(session, subject_id, stream_key)
        except SQLAlchemyError as exc:
            logger.warning("Failed to read probed streams for %s: %s", subject_id, exc)
            return {}
        return probed

    async def set_web_compatible(
        self, subject_id: str, stream_key: str, value: bool | None
    ) -> bool:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(StreamRow)
                    .where(
                        StreamRow.subject_id == subject_id,
                        StreamRow.identity_key == stream_key,
                    )
                    .values(web_compatible=value)
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to update web compatibility for %s", subject_id)
            return False
        return True

    async def analyze(self, subject_id: str) -> tuple[int, int] | None:
        """Reclassify every cached stream of a subject for direct play.

        Probe data wins over the provider's audio descriptor when both exist.
        Returns ``(compatible, incompatible)`` or ``None`` if nothing is cached
        or the pass could not be saved.
        """

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StreamRow).where(StreamRow.subject_id == subject_id)
                )
                rows = result.scalars().all()
                if not rows:
                    return None
                probed = await self._load_probed(session, subject_id)

                compatible = incompatible = 0
                for row in rows:
                    tracks = probed.get(row.identity_key or "")
                    if tracks:
                        verdict = classify_probed(tracks)
                    else:
                        verdict = is_web_compatible(row.audio)
                    row.web_compatible = verdict
                    if verdict:
                        compatible += 1
                    else:
                        incompatible += 1
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to analyze streams for %s", subject_id)
            return None

        logger.info(
            "Analyzed %s: %s compatible, %s need transcoding",
            subject_id,
            compatible,
            incompatible,
        )
        return compatible, incompatible

    @staticmethod
    async def _load_probed(
        session: AsyncSession, subject_id: str, stream_key: str | None = None
    ) -> dict[str, list[ProbedStream]]:
        stmt = select(ProbedStreamRow).where(ProbedStreamRow.subject_id == subject_id)
        if stream_key is not None:
            stmt = stmt.where(ProbedStreamRow.stream_key == stream_key)
        result = await session.execute(
            stmt.order_by(ProbedStreamRow.stream_type, ProbedStreamRow.stream_index)
        )
        grouped: dict[str, list[ProbedStream]] = defaultdict(list)
        for row in result.scalars().all():
            grouped[row.stream_key or ""].append(
                ProbedStream(
                    stream_type=row.stream_type,
                    index=row.stream_index,
                    codec=row.codec,
                    language=row.language,
                    title=row.title,
                    channels=row.channels,
                    channel_layout=row.channel_layout,
                    is_default=row.is_default,
                    is_forced=row.is_forced,
                    bit_rate=row.bit_rate,
                )
            )
        return dict(grouped)

    @staticmethod
    def _to_row(
        subject_id: str,
        user_id: str | None,
        ordinal: int,
        record: StreamRecord,
        cached_at: datetime,
    ) -> StreamRow:
        return StreamRow(
            subject_id=subject_id,
            user_id=user_id,
            ordinal=ordinal,
            identity_key=record.identity_key,
            url=record.url,
            info_hash=record.info_hash,
            file_index=record.file_index,
            title=record.title,
            name=record.name,
            quality=record.quality,
            audio=record.audio,
            binge_group=record.binge_group,
            filename=record.filename,
            size_bytes=record.size_bytes,
            content_hash=record.content_hash,
            sources=list(record.sources),
            web_compatible=record.web_compatible,
            cached_at=cached_at,
        )

    @staticmethod
    def _to_record(row: StreamRow) -> StreamRecord:
        record = StreamRecord(
            url=row.url,
            info_hash=row.info_hash,
            file_index=row.file_index,
            title=row.title,
            name=row.name,
            quality=row.quality,
            audio=row.audio,
            binge_group=row.binge_group,
            filename=row.filename,
            size_bytes=row.size_bytes,
            content_hash=row.content_hash,
            sources=list(row.sources or []),
            web_compatible=row.web_compatible,
        )
        return record.with_identity(row.identity_key)


class StreamCacheReconciler:
    """Serve cached streams first and fold provider updates in afterwards."""

    def __init__(
        self,
        store: StreamCacheStore,
        provider: StreamProviderClient,
        *,
        refresh_wait: float = 1.0,
        max_age: timedelta | None = None,
    ):
        self._store = store
        self._provider = provider
        self._refresh_wait = max(refresh_wait, 0.0)
        self._max_age = max_age
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def store(self) -> StreamCacheStore:
        return self._store

    async def get_smart(
        self, subject_id: str, params: StreamFetchParams
    ) -> SmartStreamResult:
        """Return the cached listing, refreshing it in the background.

        Only a cold or stale cache makes the caller wait on the provider. With
        a warm cache the provider fetch runs as a detached task; the caller
        waits at most ``refresh_wait`` seconds for it to report whether
        anything new exists. New streams are merged by another detached task
        and show up on the next call.
        """

        user_id = params.user_id
        listing = await self._store.load(subject_id, user_id)
        if listing is not None and not listing.is_stale(self._max_age):
            cached = listing.records
            refresh = self._track(self._refresh_cached(subject_id, params, cached))
            done, _ = await asyncio.wait({refresh}, timeout=self._refresh_wait)
            diff = refresh.result() if refresh in done else None
            if diff is None:
                return SmartStreamResult(records=cached, from_cache=True)
            return SmartStreamResult(
                records=cached,
                from_cache=True,
                has_new=diff.has_new,
                new_count=diff.new_count,
            )

        try:
            fresh = await self._provider.fetch_streams(params)
        except (SourceUnavailableError, httpx.HTTPError) as exc:
            if listing is not None:
                logger.warning(
                    "Serving stale streams for %s; provider unavailable: %s",
                    subject_id,
                    exc,
                )
                return SmartStreamResult(records=listing.records, from_cache=True)
            raise StreamsUnavailableError(
                f"No cached streams for {subject_id} and the provider failed"
            ) from exc

        await self._store.replace(subject_id, user_id, fresh)
        return SmartStreamResult(records=fresh, from_cache=False)

    def _track(self, coro) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _refresh_cached(
        self,
        subject_id: str,
        params: StreamFetchParams,
        cached: list[StreamRecord],
    ) -> StreamDiff | None:
        try:
            fresh = await self._provider.fetch_streams(params)
        except (SourceUnavailableError, httpx.HTTPError) as exc:
            logger.warning(
                "Serving cached streams for %s; provider unavailable: %s",
                subject_id,
                exc,
            )
            return None
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Stream refresh failed for %s: %s", subject_id, exc)
            return None

        diff = self._store.diff(cached, fresh)
        if diff.has_new:
            logger.info(
                "Found %s new streams for %s; merging in the background",
                diff.new_count,
                subject_id,
            )
            self._track(self._merge(subject_id, params.user_id, diff.new_records))
        return diff

    async def _merge(
        self, subject_id: str, user_id: str | None, records: list[StreamRecord]
    ) -> None:
        try:
            saved = await self._store.merge(subject_id, user_id, records)
            if not saved:
                logger.warning("Background stream merge for %s was not saved", subject_id)
        except Exception as exc:  # pragma: no cover - background safety net
            logger.exception("Background stream merge failed for %s: %s", subject_id, exc)

    async def wait_for_background(self) -> None:
        """Wait for pending background merges to settle."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def get_cached(
        self,
        subject_id: str,
        user_id: str | None = None,
        *,
        direct_play_only: bool = False,
    ) -> list[StreamRecord] | None:
        records = await self._store.get(subject_id, user_id)
        if records is None:
            return None
        if direct_play_only:
            records = [record for record in records if record.web_compatible is True]
        return records

    async def compare(self, subject_id: str, params: StreamFetchParams) -> StreamDiff:
        """Diff the provider's listing against the cache without saving."""

        cached = await self._store.get(subject_id, params.user_id) or []
        try:
            fresh = await self._provider.fetch_streams(params)
        except (SourceUnavailableError, httpx.HTTPError) as exc:
            raise StreamsUnavailableError(
                f"Stream provider unavailable for {subject_id}"
            ) from exc
        return self._store.diff(cached, fresh)

    async def refresh(self, subject_id: str, params: StreamFetchParams) -> int:
        """Fetch the provider's listing and replace the cache with it."""

        try:
            fresh = await self._provider.fetch_streams(params)
        except (SourceUnavailableError, httpx.HTTPError) as exc:
            raise StreamsUnavailableError(
                f"Stream provider unavailable for {subject_id}"
            ) from exc
        if not await self._store.replace(subject_id, params.user_id, fresh):
            raise StreamsUnavailableError(f"Failed to save streams for {subject_id}")
        return len(fresh)
