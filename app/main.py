"""Entry point for the ShelfSync FastAPI service."""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Mapping

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import TypeAdapter, ValidationError

from .config import settings
from .database import Database
from .models import MediaKind, ProbedStream, normalise_media_kind
from .services.catalog_client import CatalogClient
from .services.groups import GroupStore
from .services.library import DatabaseLibrary, MetaImporter
from .services.progress import ProgressRegistry
from .services.reconciler import (
    CatalogReconciler,
    CatalogSyncService,
    ImportGate,
    ImportInProgressError,
)
from .services.stream_cache import (
    StreamCacheReconciler,
    StreamCacheStore,
    StreamsUnavailableError,
)
from .services.stream_provider import StreamFetchParams, StreamProviderClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI

_MOVIE_ALIASES = {"movie", "movies", "film", "films"}
_PROBED_ADAPTER = TypeAdapter(list[ProbedStream])


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    headers = settings.upstream_headers
    catalog_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(settings.catalog_fetch_timeout, connect=10.0),
        )
    )
    stream_http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(settings.stream_fetch_timeout, connect=10.0),
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    catalog_base = (
        str(settings.catalog_addon_url) if settings.catalog_addon_url is not None else None
    )
    stream_base = (
        str(settings.stream_provider_url)
        if settings.stream_provider_url is not None
        else None
    )

    library = DatabaseLibrary(database.session_factory)
    reconciler = CatalogReconciler(
        settings,
        CatalogClient(catalog_http_client, catalog_base),
        library,
        MetaImporter(catalog_http_client, library, catalog_base),
        GroupStore(database.session_factory),
        ProgressRegistry(),
    )
    gate = ImportGate()
    catalog_sync = CatalogSyncService(settings, reconciler, gate)
    stream_reconciler = StreamCacheReconciler(
        StreamCacheStore(database.session_factory),
        StreamProviderClient(stream_http_client, stream_base),
        refresh_wait=settings.stream_refresh_wait,
        max_age=settings.stream_cache_max_age,
    )

    fastapi_app.state.database = database
    fastapi_app.state.reconciler = reconciler
    fastapi_app.state.import_gate = gate
    fastapi_app.state.catalog_sync = catalog_sync
    fastapi_app.state.stream_reconciler = stream_reconciler
    await catalog_sync.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await catalog_sync.stop()
        await stream_reconciler.wait_for_background()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Catalog imports and stream caching for a media server",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_reconciler(app: FastAPI) -> CatalogReconciler:
    reconciler = getattr(app.state, "reconciler", None)
    if not isinstance(reconciler, CatalogReconciler):
        raise RuntimeError("Catalog reconciler not initialised")
    return reconciler


def get_import_gate(app: FastAPI) -> ImportGate:
    gate = getattr(app.state, "import_gate", None)
    if not isinstance(gate, ImportGate):
        raise RuntimeError("Import gate not initialised")
    return gate


def get_catalog_sync(app: FastAPI) -> CatalogSyncService:
    service = getattr(app.state, "catalog_sync", None)
    if not isinstance(service, CatalogSyncService):
        raise RuntimeError("Catalog sync service not initialised")
    return service


def get_stream_reconciler(app: FastAPI) -> StreamCacheReconciler:
    service = getattr(app.state, "stream_reconciler", None)
    if not isinstance(service, StreamCacheReconciler):
        raise RuntimeError("Stream reconciler not initialised")
    return service


def register_routes(fastapi_app: FastAPI) -> None:
    async def _json_body(request: Request) -> dict[str, Any]:
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            payload = {}
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")
        return payload

    def _fetch_params(
        request: Request, body: Mapping[str, Any] | None = None
    ) -> StreamFetchParams:
        values: dict[str, Any] = dict(request.query_params)
        if body:
            values.update({key: value for key, value in body.items() if value is not None})
        return StreamFetchParams(
            stremio_id=_optional_str(values.get("stremioId")),
            imdb_id=_optional_str(values.get("imdbId")),
            tmdb_id=_optional_str(values.get("tmdbId")),
            media_kind=_optional_str(values.get("itemType")),
            user_id=_optional_str(values.get("userId")),
        )

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/api/catalogs/{catalog_id}/progress")
    async def catalog_progress(catalog_id: str) -> JSONResponse:
        reconciler = get_reconciler(fastapi_app)
        return JSONResponse(reconciler.progress.get(catalog_id).to_payload())

    @fastapi_app.post("/api/catalogs/{catalog_id}/import")
    async def import_catalog(request: Request, catalog_id: str) -> JSONResponse:
        reconciler = get_reconciler(fastapi_app)
        gate = get_import_gate(fastapi_app)
        media_kind = _parse_media_kind(request.query_params.get("type"))
        body = await _json_body(request)
        max_items = _coerce_positive_int(body.get("maxItems"))
        name = _optional_str(body.get("name"))

        def _factory(cancel_event):
            return reconciler.reconcile(
                catalog_id,
                media_kind,
                max_items,
                name=name,
                cancel_event=cancel_event,
            )

        try:
            if _coerce_bool(body.get("wait", False)):
                result = await gate.run(_factory)
                return JSONResponse(result.to_payload())
            gate.schedule(_factory)
        except ImportInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

        return JSONResponse(
            {"status": "started", "catalogId": catalog_id, "type": media_kind},
            status_code=202,
        )

    @fastapi_app.post("/api/catalogs/import/cancel")
    async def cancel_import() -> dict[str, bool]:
        gate = get_import_gate(fastapi_app)
        running = gate.busy
        gate.cancel()
        return {"cancelled": running}

    @fastapi_app.post("/api/catalogs/{catalog_id}/preview")
    async def preview_catalog(request: Request, catalog_id: str) -> JSONResponse:
        reconciler = get_reconciler(fastapi_app)
        media_kind = _parse_media_kind(request.query_params.get("type"))
        body = await _json_body(request)
        try:
            preview = await reconciler.preview(
                catalog_id, media_kind, _coerce_positive_int(body.get("maxItems"))
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return JSONResponse(preview.to_payload())

    @fastapi_app.get("/api/catalogs/{catalog_id}/count")
    async def count_catalog(request: Request, catalog_id: str) -> dict[str, Any]:
        reconciler = get_reconciler(fastapi_app)
        media_kind = _parse_media_kind(request.query_params.get("type"))
        try:
            total = await reconciler.count(catalog_id, media_kind)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"catalogId": catalog_id, "type": media_kind, "count": total}

    @fastapi_app.post("/api/catalogs/sync")
    async def sync_catalogs() -> JSONResponse:
        catalog_sync = get_catalog_sync(fastapi_app)
        try:
            catalog_sync.request_sync()
        except ImportInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return JSONResponse({"status": "started"}, status_code=202)

    @fastapi_app.post("/api/streams/probed")
    async def save_probed_streams(request: Request) -> dict[str, Any]:
        service = get_stream_reconciler(fastapi_app)
        body = await _json_body(request)
        subject_id = _optional_str(body.get("subjectId"))
        stream_key = _optional_str(body.get("streamKey"))
        if not subject_id or not stream_key:
            raise HTTPException(
                status_code=400, detail="subjectId and streamKey are required"
            )
        try:
            probed = _PROBED_ADAPTER.validate_python(body.get("streams") or [])
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors()) from exc

        if not await service.store.save_probed(subject_id, stream_key, probed):
            raise HTTPException(status_code=500, detail="Failed to save probed streams")
        return {"saved": True, "count": len(probed)}

    @fastapi_app.get("/api/streams/probed/{subject_id}")
    async def get_probed_streams(request: Request, subject_id: str) -> dict[str, Any]:
        service = get_stream_reconciler(fastapi_app)
        probed = await service.store.get_probed(
            subject_id, _optional_str(request.query_params.get("streamKey"))
        )
        return {
            "subjectId": subject_id,
            "streams": {
                key: [track.model_dump(by_alias=True) for track in tracks]
                for key, tracks in probed.items()
            },
        }

    @fastapi_app.get("/api/streams/{subject_id}")
    async def cached_streams(request: Request, subject_id: str) -> dict[str, Any]:
        service = get_stream_reconciler(fastapi_app)
        records = await service.get_cached(
            subject_id,
            _optional_str(request.query_params.get("userId")),
            direct_play_only=_coerce_bool(request.query_params.get("directPlayOnly")),
        )
        if records is None:
            raise HTTPException(status_code=404, detail="No cached streams")
        return {"streams": [record.to_payload() for record in records]}

    @fastapi_app.get("/api/streams/{subject_id}/smart")
    async def smart_streams(request: Request, subject_id: str) -> JSONResponse:
        service = get_stream_reconciler(fastapi_app)
        try:
            result = await service.get_smart(subject_id, _fetch_params(request))
        except StreamsUnavailableError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse(result.to_payload())

    @fastapi_app.post("/api/streams/{subject_id}/compare")
    async def compare_streams(request: Request, subject_id: str) -> JSONResponse:
        service = get_stream_reconciler(fastapi_app)
        body = await _json_body(request)
        try:
            diff = await service.compare(subject_id, _fetch_params(request, body))
        except StreamsUnavailableError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return JSONResponse(diff.to_payload())

    @fastapi_app.post("/api/streams/{subject_id}/refresh")
    async def refresh_streams(request: Request, subject_id: str) -> dict[str, Any]:
        service = get_stream_reconciler(fastapi_app)
        body = await _json_body(request)
        try:
            count = await service.refresh(subject_id, _fetch_params(request, body))
        except StreamsUnavailableError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"subjectId": subject_id, "count": count}

    @fastapi_app.post("/api/webcompat/analyze/{subject_id}")
    async def analyze_streams(subject_id: str) -> dict[str, Any]:
        service = get_stream_reconciler(fastapi_app)
        outcome = await service.store.analyze(subject_id)
        if outcome is None:
            raise HTTPException(status_code=404, detail="No cached streams to analyze")
        compatible, incompatible = outcome
        return {
            "subjectId": subject_id,
            "compatible": compatible,
            "incompatible": incompatible,
        }

    @fastapi_app.get("/api/webcompat/streams/{subject_id}")
    async def web_compatible_streams(
        request: Request, subject_id: str
    ) -> dict[str, Any]:
        service = get_stream_reconciler(fastapi_app)
        records = await service.get_cached(
            subject_id,
            _optional_str(request.query_params.get("userId")),
            direct_play_only=True,
        )
        if records is None:
            raise HTTPException(status_code=404, detail="No cached streams")
        return {
            "subjectId": subject_id,
            "streams": [record.to_payload() for record in records],
        }


def _parse_media_kind(value: str | None) -> MediaKind:
    cleaned = (value or "").strip().lower()
    if not cleaned:
        raise HTTPException(status_code=400, detail="Missing media type")
    if cleaned in _MOVIE_ALIASES:
        return "movie"
    kind = normalise_media_kind(cleaned)
    if kind != "series":
        raise HTTPException(status_code=400, detail="Unsupported media type")
    return kind


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return bool(value)
    return False


def _coerce_positive_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="maxItems must be an integer") from exc
    if number <= 0:
        raise HTTPException(status_code=400, detail="maxItems must be positive")
    return number


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
