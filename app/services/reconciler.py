"""Import external catalogs into library collections."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings
from ..models import CatalogEntry, MediaKind
from ..utils import catalog_identity
from .catalog_client import CatalogClient
from .groups import GroupRecord, GroupStore
from .library import Importer, LibraryIndex
from .progress import ProgressRegistry

logger = logging.getLogger(__name__)


class ImportOutcome(str, Enum):
    PENDING = "pending"
    IMPORTED = "imported"
    ALREADY_PRESENT = "already_present"
    LINKED = "linked"
    FAILED = "failed"


class ImportInProgressError(RuntimeError):
    """Raised when a catalog import is requested while another one runs."""


@dataclass
class ImportJob:
    """Transient unit of work for a single catalog entry."""

    entry: CatalogEntry
    outcome: ImportOutcome = ImportOutcome.PENDING
    library_id: str | None = None
    reason: str | None = None


@dataclass
class ReconciliationResult:
    """Aggregate outcome of one reconciliation pass."""

    catalog_id: str
    media_kind: MediaKind
    group_ref: str | None = None
    total_count: int = 0
    fetched: int = 0
    already_present: int = 0
    imported: int = 0
    linked: int = 0
    failed: int = 0
    skipped: int = 0
    added_to_group: int = 0
    cancelled: bool = False
    error: str | None = None
    jobs: list[ImportJob] = field(default_factory=list, repr=False)

    @property
    def succeeded(self) -> int:
        return self.imported + self.linked

    def to_payload(self) -> dict[str, Any]:
        return {
            "catalogId": self.catalog_id,
            "type": self.media_kind,
            "groupRef": self.group_ref,
            "totalCount": self.total_count,
            "fetched": self.fetched,
            "alreadyPresent": self.already_present,
            "imported": self.imported,
            "linked": self.linked,
            "failed": self.failed,
            "skipped": self.skipped,
            "addedToGroup": self.added_to_group,
            "cancelled": self.cancelled,
            "error": self.error,
        }


@dataclass(slots=True)
class CatalogPreview:
    """Dry-run comparison between a catalog and its collection."""

    total: int
    existing: int
    new: int
    removed: int
    group_name: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "totalCatalogItems": self.total,
            "existingItems": self.existing,
            "newItems": self.new,
            "removedItems": self.removed,
            "collectionName": self.group_name,
        }


class CatalogReconciler:
    """Fetch, dedupe, import and commit one catalog into its collection.

    Series are imported one at a time with a pause between them because each
    series import fans out into episode metadata lookups against rate-limited
    APIs. Movies go through a small worker pool. Whatever the strategy, the
    collection receives all new members in a single batch call at the end.
    """

    def __init__(
        self,
        settings: Settings,
        catalog_client: CatalogClient,
        library: LibraryIndex,
        importer: Importer,
        groups: GroupStore,
        progress: ProgressRegistry,
    ):
        self._settings = settings
        self._catalog = catalog_client
        self._library = library
        self._importer = importer
        self._groups = groups
        self._progress = progress

    @property
    def progress(self) -> ProgressRegistry:
        return self._progress

    async def reconcile(
        self,
        catalog_id: str,
        media_kind: MediaKind,
        max_items: int | None = None,
        *,
        name: str | None = None,
        cancel_event: asyncio.Event | None = None,
        cap_collection: bool = False,
    ) -> ReconciliationResult:
        """Run one reconciliation pass; always leaves progress finished.

        With ``cap_collection`` the group grows to at most ``max_items``
        members. Scheduled syncs set it; manual imports do not.
        """

        limit = max_items if max_items and max_items > 0 else self._settings.catalog_max_items
        cancel_event = cancel_event or asyncio.Event()
        result = ReconciliationResult(catalog_id=catalog_id, media_kind=media_kind)
        self._progress.start(catalog_id, 0, name=name or catalog_id)

        try:
            await self._reconcile(result, limit, name, cancel_event, cap_collection)
        except SQLAlchemyError as exc:
            logger.exception("Persistence failure while syncing catalog %s", catalog_id)
            result.error = f"persistence failure: {exc.__class__.__name__}"
        except BaseException:
            self._progress.finish(catalog_id, error=True)
            raise

        self._progress.finish(catalog_id, error=result.error is not None)
        logger.info(
            "Catalog %s (%s) reconciled: %s imported, %s linked, %s present, %s failed",
            catalog_id,
            media_kind,
            result.imported,
            result.linked,
            result.already_present,
            result.failed,
        )
        return result

    async def _reconcile(
        self,
        result: ReconciliationResult,
        max_items: int,
        name: str | None,
        cancel_event: asyncio.Event,
        cap_collection: bool,
    ) -> None:
        catalog_id = result.catalog_id
        media_kind = result.media_kind

        fetch = await self._catalog.fetch_all(catalog_id, media_kind, max_items)
        result.total_count = fetch.total_count
        result.fetched = len(fetch.entries)

        group = await self._groups.resolve(
            catalog_id, media_kind, name=name, catalog_total=fetch.total_count
        )
        result.group_ref = group.group_ref

        members: set[str] = set()
        if group.group_ref:
            members = await self._library.group_member_external_ids(group.group_ref)

        jobs: list[ImportJob] = []
        seen: set[str] = set()
        for entry in fetch.entries:
            key = catalog_identity(entry)
            if key in seen:
                continue
            seen.add(key)
            job = ImportJob(entry=entry)
            if key in members:
                job.outcome = ImportOutcome.ALREADY_PRESENT
            jobs.append(job)
        result.jobs = jobs

        pending = [job for job in jobs if job.outcome is ImportOutcome.PENDING]
        capacity = max(max_items - len(members), 0) if cap_collection else len(pending)
        if len(pending) > capacity:
            logger.info(
                "Collection '%s' holds %s of %s allowed items; importing %s of %s missing",
                group.name,
                len(members),
                max_items,
                capacity,
                len(pending),
            )
        to_process = pending[:capacity]
        self._progress.set_total(catalog_id, len(to_process))

        if to_process:
            if media_kind == "series":
                await self._run_sequential(to_process, cancel_event)
            else:
                await self._run_parallel(to_process, cancel_event)

        result.cancelled = cancel_event.is_set()
        self._tally(result)

        library_ids = [
            job.library_id
            for job in jobs
            if job.outcome in (ImportOutcome.IMPORTED, ImportOutcome.LINKED)
            and job.library_id
        ]
        distinct_ids = list(dict.fromkeys(library_ids))
        if distinct_ids:
            await self._commit_members(result, group, distinct_ids)
        await self._groups.mark_synced(catalog_id, media_kind)

    async def _run_sequential(
        self, jobs: list[ImportJob], cancel_event: asyncio.Event
    ) -> None:
        delay = self._settings.series_import_delay
        logger.info(
            "Importing %s series sequentially with a %.1fs pause", len(jobs), delay
        )
        last = len(jobs) - 1
        for position, job in enumerate(jobs):
            if cancel_event.is_set():
                logger.info("Series import cancelled after %s of %s", position, len(jobs))
                return
            await self._run_job(job)
            if position < last and delay > 0:
                # The pause doubles as a cancellation point.
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(cancel_event.wait(), timeout=delay)

    async def _run_parallel(
        self, jobs: list[ImportJob], cancel_event: asyncio.Event
    ) -> None:
        width = min(self._settings.max_parallel_movie_imports, len(jobs))
        logger.info("Importing %s movies with %s parallel workers", len(jobs), width)
        queue = iter(jobs)

        async def _worker() -> None:
            for job in queue:
                if cancel_event.is_set():
                    return
                await self._run_job(job)

        await asyncio.gather(*(_worker() for _ in range(width)))

    async def _run_job(self, job: ImportJob) -> None:
        entry = job.entry
        try:
            library_id = await self._library.find_item(entry.external_id, entry.media_kind)
            if library_id:
                job.outcome = ImportOutcome.LINKED
                job.library_id = library_id
                logger.debug("%s already in library as %s", entry.external_id, library_id)
                return

            imported_id = await self._importer.import_item(
                entry.external_id, entry.media_kind
            )
            if isinstance(imported_id, str) and imported_id.strip():
                job.outcome = ImportOutcome.IMPORTED
                job.library_id = imported_id.strip()
                logger.debug("Imported %s (%s)", entry.display_name, entry.external_id)
            else:
                job.outcome = ImportOutcome.FAILED
                job.reason = "importer returned no library id"
                logger.warning(
                    "Failed to import %s (%s): no library id returned",
                    entry.display_name,
                    entry.external_id,
                )
        except Exception as exc:
            job.outcome = ImportOutcome.FAILED
            job.reason = str(exc) or exc.__class__.__name__
            logger.warning(
                "Failed to import %s (%s): %s", entry.display_name, entry.external_id, exc
            )
        finally:
            processed = self._progress.advance(entry.source_catalog_id)
            state = self._progress.get(entry.source_catalog_id)
            if state.total and (processed % 5 == 0 or processed == state.total):
                logger.info(
                    "Import progress for %s: %s/%s (%s%%)",
                    entry.source_catalog_id,
                    processed,
                    state.total,
                    state.percent,
                )

    async def _commit_members(
        self, result: ReconciliationResult, group: GroupRecord, item_ids: list[str]
    ) -> None:
        group_ref = group.group_ref
        try:
            if not group_ref:
                group_ref = await self._library.create_group(group.name)
                await self._groups.attach_ref(group.catalog_id, group.media_kind, group_ref)
                result.group_ref = group_ref
            logger.info(
                "Adding %s items to collection '%s' in one batch", len(item_ids), group.name
            )
            await self._library.add_to_group(group_ref, item_ids)
        except Exception as exc:
            logger.exception("Failed to add items to collection '%s'", group.name)
            result.error = f"collection update failed: {exc}"
            return
        result.added_to_group = len(item_ids)

    @staticmethod
    def _tally(result: ReconciliationResult) -> None:
        for job in result.jobs:
            if job.outcome is ImportOutcome.ALREADY_PRESENT:
                result.already_present += 1
            elif job.outcome is ImportOutcome.IMPORTED:
                result.imported += 1
            elif job.outcome is ImportOutcome.LINKED:
                result.linked += 1
            elif job.outcome is ImportOutcome.FAILED:
                result.failed += 1
            else:
                result.skipped += 1

    async def preview(
        self, catalog_id: str, media_kind: MediaKind, max_items: int | None = None
    ) -> CatalogPreview:
        """Compare a catalog with its collection without importing anything."""

        group = await self._groups.get(catalog_id, media_kind)
        if group is None:
            raise KeyError(f"No collection tracks catalog {catalog_id} ({media_kind})")

        limit = max_items if max_items and max_items > 0 else self._settings.catalog_max_items
        fetch = await self._catalog.fetch_all(catalog_id, media_kind, limit)
        members: set[str] = set()
        if group.group_ref:
            members = await self._library.group_member_external_ids(group.group_ref)

        catalog_ids = {catalog_identity(entry) for entry in fetch.entries}
        new = sum(1 for key in catalog_ids if key not in members)
        return CatalogPreview(
            total=fetch.total_count,
            existing=len(catalog_ids) - new,
            new=new,
            removed=len(members - catalog_ids),
            group_name=group.name,
        )

    async def count(self, catalog_id: str, media_kind: MediaKind) -> int:
        return await self._catalog.count(catalog_id, media_kind)

    async def sync_all(
        self, cancel_event: asyncio.Event | None = None
    ) -> list[ReconciliationResult]:
        """Re-run reconciliation for every tracked collection."""

        cancel_event = cancel_event or asyncio.Event()
        groups = await self._groups.list_groups()
        if not groups:
            logger.info("No catalog collections to sync")
            return []

        logger.info("Syncing %s catalog collections", len(groups))
        results: list[ReconciliationResult] = []
        for group in groups:
            if cancel_event.is_set():
                break
            try:
                results.append(
                    await self.reconcile(
                        group.catalog_id,
                        group.media_kind,
                        self._settings.catalog_max_items,
                        name=group.name,
                        cancel_event=cancel_event,
                        cap_collection=True,
                    )
                )
            except Exception:
                logger.exception("Failed to sync collection '%s'", group.name)
        return results


class ImportGate:
    """Single-slot admission gate so only one import pass runs at a time."""

    def __init__(self) -> None:
        self._active = False
        self._cancel_event: asyncio.Event | None = None
        self._task: asyncio.Task[Any] | None = None

    @property
    def busy(self) -> bool:
        return self._active

    def _reserve(self) -> asyncio.Event:
        if self._active:
            raise ImportInProgressError("A catalog import is already running")
        self._active = True
        self._cancel_event = asyncio.Event()
        return self._cancel_event

    def _release(self) -> None:
        self._active = False
        self._cancel_event = None

    async def run(self, factory: Callable[[asyncio.Event], Awaitable[Any]]) -> Any:
        """Run a pass now, raising :class:`ImportInProgressError` when busy."""

        cancel_event = self._reserve()
        try:
            return await factory(cancel_event)
        finally:
            self._release()

    def schedule(
        self, factory: Callable[[asyncio.Event], Awaitable[Any]]
    ) -> asyncio.Task[Any]:
        """Start a pass in the background and return its task."""

        cancel_event = self._reserve()

        async def _runner() -> None:
            try:
                await factory(cancel_event)
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Background catalog import failed: %s", exc)
            finally:
                self._release()

        self._task = asyncio.create_task(_runner())
        return self._task

    def cancel(self) -> None:
        """Ask the running pass to stop after its in-flight jobs."""

        if self._cancel_event is not None:
            self._cancel_event.set()

    async def wait(self) -> None:
        if self._task is not None and not self._task.done():
            with suppress(asyncio.CancelledError):
                await self._task


class CatalogSyncService:
    """Periodically re-syncs every tracked catalog collection."""

    def __init__(
        self,
        settings: Settings,
        reconciler: CatalogReconciler,
        gate: ImportGate,
    ):
        self._settings = settings
        self._reconciler = reconciler
        self._gate = gate
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._sync_loop())

    async def stop(self) -> None:
        self._gate.cancel()
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._gate.wait()

    def request_sync(self) -> asyncio.Task[Any]:
        """Start a full sync in the background; raises when an import runs."""

        return self._gate.schedule(lambda cancel: self._reconciler.sync_all(cancel))

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.catalog_sync_interval_seconds)
            try:
                await self._gate.run(lambda cancel: self._reconciler.sync_all(cancel))
            except ImportInProgressError:
                logger.info("Skipping scheduled catalog sync; an import is running")
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled catalog sync failed: %s", exc)
