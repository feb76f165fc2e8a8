"""Catalog reconciliation behaviour tests."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable, cast

import pytest

from app.config import Settings
from app.database import Database
from app.models import CatalogEntry, MediaKind
from app.services.catalog_client import CatalogClient, CatalogFetchResult
from app.services.groups import GroupStore
from app.services.progress import ProgressRegistry, ProgressStatus
from app.services.reconciler import (
    CatalogReconciler,
    CatalogSyncService,
    ImportGate,
    ImportInProgressError,
    ImportOutcome,
)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def _entries(catalog_id: str, kind: MediaKind, ids: Iterable[str]) -> list[CatalogEntry]:
    return [
        CatalogEntry(
            external_id=external_id,
            display_name=f"Title {external_id}",
            media_kind=kind,
            source_catalog_id=catalog_id,
        )
        for external_id in ids
    ]


class FakeCatalog:
    """Serves fixed catalogs, honouring ``max_items`` like the real client."""

    def __init__(self) -> None:
        self.catalogs: dict[tuple[str, str], list[CatalogEntry]] = {}

    def set(self, catalog_id: str, kind: MediaKind, ids: Iterable[str]) -> None:
        self.catalogs[(catalog_id, kind)] = _entries(catalog_id, kind, ids)

    async def fetch_all(
        self, catalog_id: str, kind: MediaKind, max_items: int
    ) -> CatalogFetchResult:
        entries = self.catalogs.get((catalog_id, kind), [])
        return CatalogFetchResult(entries=entries[:max_items], total_count=len(entries))

    async def count(self, catalog_id: str, kind: MediaKind) -> int:
        return len(self.catalogs.get((catalog_id, kind), []))


class FakeLibrary:
    """In-memory library recording every batch membership call."""

    def __init__(self) -> None:
        self.items: dict[tuple[str, str], str] = {}
        self.groups: dict[str, set[str]] = {}
        self.add_calls: list[tuple[str, list[str]]] = []
        self.fail_add = False

    def add_item(self, external_id: str, kind: str) -> str:
        item_id = f"lib-{external_id}"
        self.items[(external_id, kind)] = item_id
        return item_id

    async def find_item(self, external_id: str, media_kind: str) -> str | None:
        return self.items.get((external_id, media_kind))

    async def group_member_external_ids(self, group_ref: str) -> set[str]:
        members = self.groups.get(group_ref, set())
        return {
            external_id
            for (external_id, _), item_id in self.items.items()
            if item_id in members
        }

    async def create_group(self, name: str) -> str:
        group_ref = f"group-{len(self.groups) + 1}"
        self.groups[group_ref] = set()
        return group_ref

    async def add_to_group(self, group_ref: str, item_ids: Iterable[str]) -> None:
        ids = list(item_ids)
        self.add_calls.append((group_ref, ids))
        if self.fail_add:
            raise RuntimeError("library rejected the batch")
        self.groups.setdefault(group_ref, set()).update(ids)


class FakeImporter:
    """Importer stub tracking concurrency and simulated failures."""

    def __init__(self, library: FakeLibrary, *, duration: float = 0.0) -> None:
        self.library = library
        self.duration = duration
        self.calls: list[str] = []
        self.missing: set[str] = set()
        self.broken: set[str] = set()
        self.active = 0
        self.max_active = 0
        self.started: list[float] = []
        self.finished: list[float] = []
        self.on_import: Any = None

    async def import_item(self, external_id: str, media_kind: str) -> str | None:
        self.calls.append(external_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.append(time.monotonic())
        try:
            if self.on_import is not None:
                self.on_import(external_id)
            if self.duration:
                await asyncio.sleep(self.duration)
            if external_id in self.broken:
                raise RuntimeError("upstream exploded")
            if external_id in self.missing:
                return None
            return self.library.add_item(external_id, media_kind)
        finally:
            self.active -= 1
            self.finished.append(time.monotonic())


async def _build(
    tmp_path,
    *,
    duration: float = 0.0,
    **overrides: Any,
) -> tuple[CatalogReconciler, FakeCatalog, FakeLibrary, FakeImporter, GroupStore, Database]:
    base = {"SERIES_IMPORT_DELAY_MS": 0, "MAX_PARALLEL_MOVIE_IMPORTS": 2}
    base.update(overrides)
    settings = Settings(_env_file=None, **base)  # type: ignore[arg-type]
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'shelfsync.db'}")
    await database.create_all()
    groups = GroupStore(database.session_factory)
    catalog = FakeCatalog()
    library = FakeLibrary()
    importer = FakeImporter(library, duration=duration)
    reconciler = CatalogReconciler(
        settings,
        cast(CatalogClient, catalog),
        library,
        importer,
        groups,
        ProgressRegistry(),
    )
    return reconciler, catalog, library, importer, groups, database


@pytest.mark.anyio("asyncio")
async def test_reconcile_imports_missing_items_in_one_batch(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("top", "movie", ["tt1", "tt2", "tt3"])
    library.add_item("tt2", "movie")

    result = await reconciler.reconcile("top", "movie", 10, name="Top Movies")

    assert result.imported == 2
    assert result.linked == 1
    assert result.failed == 0
    assert result.added_to_group == 3
    assert sorted(importer.calls) == ["tt1", "tt3"]
    assert len(library.add_calls) == 1
    group_ref, ids = library.add_calls[0]
    assert sorted(ids) == ["lib-tt1", "lib-tt2", "lib-tt3"]

    stored = await groups.get("top", "movie")
    assert stored is not None
    assert stored.group_ref == group_ref
    assert stored.name == "Top Movies"
    assert stored.catalog_total == 3
    assert stored.last_synced_at is not None

    progress = reconciler.progress.get("top")
    assert progress.status is ProgressStatus.COMPLETE
    assert progress.processed == progress.total == 3
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_second_pass_is_a_no_op(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("top", "movie", ["tt1", "tt2", "tt3"])

    await reconciler.reconcile("top", "movie", 10)
    calls_after_first = list(importer.calls)
    result = await reconciler.reconcile("top", "movie", 10)

    assert result.already_present == 3
    assert result.imported == 0
    assert result.added_to_group == 0
    assert importer.calls == calls_after_first
    assert len(library.add_calls) == 1
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_duplicate_catalog_entries_are_imported_once(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("dupes", "movie", ["tt1", "tt1", "tt2", "tt1"])

    result = await reconciler.reconcile("dupes", "movie", 10)

    assert sorted(importer.calls) == ["tt1", "tt2"]
    assert result.imported == 2
    assert len(result.jobs) == 2
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_failed_imports_do_not_abort_the_pass(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("mixed", "movie", ["tt1", "tt2", "tt3", "tt4"])
    importer.broken.add("tt2")
    importer.missing.add("tt3")

    result = await reconciler.reconcile("mixed", "movie", 10)

    assert result.imported == 2
    assert result.failed == 2
    assert result.error is None
    outcomes = {job.entry.external_id: job.outcome for job in result.jobs}
    assert outcomes["tt2"] is ImportOutcome.FAILED
    assert outcomes["tt3"] is ImportOutcome.FAILED
    assert sorted(library.add_calls[0][1]) == ["lib-tt1", "lib-tt4"]
    assert reconciler.progress.get("mixed").processed == 4
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_series_are_imported_sequentially_with_delay(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(
        tmp_path, duration=0.01, SERIES_IMPORT_DELAY_MS=50
    )
    catalog.set("shows", "series", ["tt1", "tt2", "tt3", "tt4"])

    result = await reconciler.reconcile("shows", "series", 10)

    assert result.imported == 4
    assert importer.calls == ["tt1", "tt2", "tt3", "tt4"]
    assert importer.max_active == 1
    window = importer.finished[-1] - importer.started[0]
    assert window >= 3 * 0.05
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_movies_are_imported_in_parallel(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(
        tmp_path, duration=0.1, MAX_PARALLEL_MOVIE_IMPORTS=2
    )
    catalog.set("films", "movie", ["tt1", "tt2", "tt3", "tt4"])

    result = await reconciler.reconcile("films", "movie", 10)

    assert result.imported == 4
    assert importer.max_active == 2
    window = importer.finished[-1] - importer.started[0]
    assert window < 0.35
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_cancellation_stops_between_jobs_and_commits_progress(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(
        tmp_path, SERIES_IMPORT_DELAY_MS=5_000
    )
    catalog.set("shows", "series", ["tt1", "tt2", "tt3"])
    cancel_event = asyncio.Event()
    importer.on_import = lambda external_id: cancel_event.set()

    started = time.monotonic()
    result = await reconciler.reconcile("shows", "series", 10, cancel_event=cancel_event)
    elapsed = time.monotonic() - started

    assert elapsed < 2.0
    assert result.cancelled is True
    assert importer.calls == ["tt1"]
    assert result.imported == 1
    assert result.skipped == 2
    assert library.add_calls[0][1] == ["lib-tt1"]
    assert reconciler.progress.get("shows").is_complete
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_collection_cap_limits_imports(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("top", "movie", ["tt1", "tt2", "tt3", "tt4", "tt5"])
    await groups.resolve("top", "movie", name="Top", catalog_total=5)
    await groups.attach_ref("top", "movie", "group-existing")
    library.groups["group-existing"] = {
        library.add_item("tt1", "movie"),
        library.add_item("tt9", "movie"),
    }

    result = await reconciler.reconcile("top", "movie", 3, cap_collection=True)

    assert result.fetched == 3
    assert result.already_present == 1
    assert importer.calls == ["tt2"]
    assert result.imported == 1
    assert result.skipped == 1
    assert library.add_calls == [("group-existing", ["lib-tt2"])]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_full_collection_skips_imports(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("top", "movie", ["tt1", "tt2", "tt3"])
    await groups.resolve("top", "movie", name="Top", catalog_total=3)
    await groups.attach_ref("top", "movie", "group-existing")
    library.groups["group-existing"] = {
        library.add_item("tt8", "movie"),
        library.add_item("tt9", "movie"),
    }

    result = await reconciler.reconcile("top", "movie", 2, cap_collection=True)

    assert importer.calls == []
    assert result.skipped == 2
    assert library.add_calls == []
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_manual_import_is_not_limited_by_collection_size(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("top", "movie", ["tt1", "tt2", "tt3"])
    await groups.resolve("top", "movie", name="Top", catalog_total=3)
    await groups.attach_ref("top", "movie", "group-existing")
    library.groups["group-existing"] = {
        library.add_item("tt8", "movie"),
        library.add_item("tt9", "movie"),
    }

    result = await reconciler.reconcile("top", "movie", 2)

    assert importer.calls == ["tt1", "tt2"]
    assert result.imported == 2
    assert result.skipped == 0
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_sync_all_applies_collection_cap(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(
        tmp_path, CATALOG_MAX_ITEMS=2
    )
    catalog.set("top", "movie", ["tt1", "tt2", "tt3"])
    await groups.resolve("top", "movie", name="Top", catalog_total=3)
    await groups.attach_ref("top", "movie", "group-existing")
    library.groups["group-existing"] = {
        library.add_item("tt8", "movie"),
        library.add_item("tt9", "movie"),
    }

    results = await reconciler.sync_all()

    assert importer.calls == []
    assert results[0].skipped == 2
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_catalog_total_is_refreshed(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("top", "movie", ["tt1", "tt2"])
    await reconciler.reconcile("top", "movie", 10)

    catalog.set("top", "movie", ["tt1", "tt2", "tt3", "tt4"])
    result = await reconciler.reconcile("top", "movie", 10)

    stored = await groups.get("top", "movie")
    assert stored is not None
    assert stored.catalog_total == 4
    assert result.total_count == 4
    assert result.imported == 2
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_batch_failure_is_reported(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("top", "movie", ["tt1", "tt2"])
    library.fail_add = True

    result = await reconciler.reconcile("top", "movie", 10)

    assert result.imported == 2
    assert result.added_to_group == 0
    assert result.error is not None
    assert reconciler.progress.get("top").status is ProgressStatus.ERROR
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_preview_counts_new_existing_and_removed(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)

    with pytest.raises(KeyError):
        await reconciler.preview("top", "movie")

    catalog.set("top", "movie", ["tt1", "tt2", "tt3"])
    await reconciler.reconcile("top", "movie", 10, name="Top")
    catalog.set("top", "movie", ["tt2", "tt3", "tt4", "tt5"])

    preview = await reconciler.preview("top", "movie", 10)

    assert preview.total == 4
    assert preview.existing == 2
    assert preview.new == 2
    assert preview.removed == 1
    assert preview.to_payload()["collectionName"] == "Top"
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_sync_all_revisits_every_group(tmp_path) -> None:
    reconciler, catalog, library, importer, groups, database = await _build(tmp_path)
    catalog.set("a", "movie", ["tt1"])
    catalog.set("b", "series", ["tt2"])
    await reconciler.reconcile("a", "movie", 10)
    await reconciler.reconcile("b", "series", 10)
    catalog.set("a", "movie", ["tt1", "tt3"])

    results = await reconciler.sync_all()

    assert [(result.catalog_id, result.media_kind) for result in results] == [
        ("a", "movie"),
        ("b", "series"),
    ]
    assert results[0].imported == 1
    assert results[1].already_present == 1
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_import_gate_admits_one_pass_at_a_time() -> None:
    gate = ImportGate()
    release = asyncio.Event()
    seen: list[asyncio.Event] = []

    async def _long_pass(cancel_event: asyncio.Event) -> str:
        seen.append(cancel_event)
        await release.wait()
        return "done"

    task = gate.schedule(_long_pass)
    await asyncio.sleep(0)
    assert gate.busy

    with pytest.raises(ImportInProgressError):
        await gate.run(_long_pass)
    with pytest.raises(ImportInProgressError):
        gate.schedule(_long_pass)

    gate.cancel()
    assert seen[0].is_set()
    release.set()
    await task
    assert not gate.busy

    async def _quick(cancel_event: asyncio.Event) -> str:
        return "quick"

    assert await gate.run(_quick) == "quick"


class CountingReconciler:
    def __init__(self) -> None:
        self.calls = 0

    async def sync_all(self, cancel_event: asyncio.Event | None = None) -> list[Any]:
        self.calls += 1
        return []


def test_sync_service_starts_and_stops_cleanly() -> None:
    async def runner() -> None:
        settings = Settings(_env_file=None)
        gate = ImportGate()
        service = CatalogSyncService(settings, cast(CatalogReconciler, object()), gate)
        await service.start()
        await asyncio.sleep(0)
        await service.stop()
        assert not gate.busy

    asyncio.run(runner())


def test_scheduled_sync_skips_cycle_while_import_runs(caplog) -> None:
    async def runner() -> None:
        settings = Settings(_env_file=None).model_copy(
            update={"catalog_sync_interval_seconds": 0}
        )
        gate = ImportGate()
        reconciler = CountingReconciler()
        release = asyncio.Event()

        async def _manual_import(cancel_event: asyncio.Event) -> None:
            await release.wait()

        manual = gate.schedule(_manual_import)
        service = CatalogSyncService(settings, cast(CatalogReconciler, reconciler), gate)
        await service.start()
        for _ in range(5):
            await asyncio.sleep(0)
        assert reconciler.calls == 0

        release.set()
        await manual
        for _ in range(5):
            await asyncio.sleep(0)
        await service.stop()
        assert reconciler.calls > 0

    with caplog.at_level("INFO", logger="app.services.reconciler"):
        asyncio.run(runner())

    assert "Skipping scheduled catalog sync" in caplog.text
