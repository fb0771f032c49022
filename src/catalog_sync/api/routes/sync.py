"""Sync invocation and checkpoint/job inspection routes."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from catalog_sync.data.models import SyncMode, SyncRequest
from catalog_sync.exceptions import CheckpointStoreError, ValidationError
from catalog_sync.sync import EventSink, SyncOrchestrator, resolve_games, stream_run

if TYPE_CHECKING:
    from catalog_sync.config import Settings
    from catalog_sync.data.database import CatalogStores, DatabaseManager

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckpointResponse(BaseModel):
    """A stored stream checkpoint."""

    provider: str
    game: str
    stream_key: str
    cursor: Any = None
    complete: bool
    updated_at: datetime | None = None


class ClearCheckpointsResponse(BaseModel):
    """Result of clearing checkpoints."""

    cleared: int


class SyncJobResponse(BaseModel):
    """Bookkeeping for one phase of one game within a run."""

    id: str
    run_id: str
    provider: str
    mode: str
    game: str
    phase: str
    status: str
    progress_current: int
    progress_total: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None


async def _get_stores(request: Request, mode: SyncMode) -> CatalogStores:
    """Get the stores of a mode from app state."""
    manager: DatabaseManager = request.app.state.db_manager
    return await manager.stores(mode)


@router.post("")
async def run_sync(request: Request, body: SyncRequest) -> StreamingResponse:
    """Run a sync and stream its progress via SSE.

    Each event is a ``data:`` frame holding a JSON object with ``type``,
    ``timestamp`` and the fields of that event type. The stream ends after
    the single COMPLETE or ERROR event.
    """
    settings: Settings = request.app.state.settings
    try:
        resolve_games(body, settings)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message) from e

    active: set[SyncMode] = request.app.state.active_runs
    if body.mode in active:
        raise HTTPException(
            status_code=409, detail=f"A {body.mode.value} sync is already running"
        )

    stores = await _get_stores(request, body.mode)
    client = request.app.state.provider_factory(settings)
    active.add(body.mode)

    def build(sink: EventSink) -> SyncOrchestrator:
        return SyncOrchestrator(
            client,
            stores.checkpoints,
            stores.catalog,
            sink,
            jobs=stores.jobs,
            settings=settings,
            mode=body.mode,
        )

    async def event_generator() -> AsyncIterator[str]:
        try:
            async for event in stream_run(build, body):
                yield event.to_sse()
        finally:
            active.discard(body.mode)
            await client.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@router.get("/checkpoints")
async def list_checkpoints(
    request: Request,
    game: str | None = Query(default=None, description="Only this game"),
    mode: SyncMode = Query(default=SyncMode.LIVE),
) -> list[CheckpointResponse]:
    """List stored checkpoints, newest first."""
    settings: Settings = request.app.state.settings
    stores = await _get_stores(request, mode)
    try:
        rows = await stores.checkpoints.list_checkpoints(settings.provider_name, game)
    except CheckpointStoreError as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    return [
        CheckpointResponse(
            provider=row.provider,
            game=row.game,
            stream_key=row.stream_key,
            cursor=row.cursor.next,
            complete=row.cursor.complete,
            updated_at=row.updated_at,
        )
        for row in rows
    ]


@router.delete("/checkpoints")
async def clear_checkpoints(
    request: Request,
    game: str | None = Query(default=None, description="Only this game"),
    mode: SyncMode = Query(default=SyncMode.LIVE),
) -> ClearCheckpointsResponse:
    """Clear checkpoints so the next run starts its streams from the beginning."""
    settings: Settings = request.app.state.settings
    if mode in request.app.state.active_runs:
        raise HTTPException(status_code=409, detail=f"A {mode.value} sync is running")
    stores = await _get_stores(request, mode)
    try:
        cleared = await stores.checkpoints.clear(settings.provider_name, game)
    except CheckpointStoreError as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    return ClearCheckpointsResponse(cleared=cleared)


@router.get("/jobs")
async def list_jobs(
    request: Request,
    run_id: str | None = Query(default=None, description="Only jobs of this run"),
    limit: int = Query(default=50, ge=1, le=500),
    mode: SyncMode = Query(default=SyncMode.LIVE),
) -> list[SyncJobResponse]:
    """List recent sync jobs."""
    stores = await _get_stores(request, mode)
    jobs = await stores.jobs.list_jobs(run_id=run_id, limit=limit)
    return [
        SyncJobResponse(
            id=job.id,
            run_id=job.run_id,
            provider=job.provider,
            mode=job.mode,
            game=job.game,
            phase=job.phase,
            status=job.status.value,
            progress_current=job.progress_current,
            progress_total=job.progress_total,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_message=job.error_message,
        )
        for job in jobs
    ]
