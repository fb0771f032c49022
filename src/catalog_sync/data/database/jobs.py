"""Sync job bookkeeping.

Jobs are observability only: a failed bookkeeping write is logged and
swallowed so it can never fail a sync run.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import aiosqlite

from .base import BaseDatabase

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Lifecycle of a sync job row."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncJobRow:
    """One phase of one game within a run."""

    id: str
    run_id: str
    provider: str
    mode: str
    game: str
    phase: str
    status: JobStatus
    progress_current: int
    progress_total: int | None
    started_at: datetime | None
    completed_at: datetime | None
    error_message: str | None


class SyncJobStore(BaseDatabase):
    """Records progress of each (run, game, phase)."""

    async def start_job(
        self, run_id: str, provider: str, mode: str, game: str, phase: str
    ) -> str | None:
        """Create a running job and return its id, or None if it could not be recorded."""
        job_id = uuid.uuid4().hex
        try:
            await self._db.execute(
                """
                INSERT INTO sync_jobs (id, run_id, provider, mode, game, phase, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (job_id, run_id, provider, mode, game, phase, JobStatus.RUNNING.value),
            )
        except (aiosqlite.Error, OSError):
            logger.warning("Failed to record job start for %s/%s", game, phase, exc_info=True)
            return None
        return job_id

    async def update_progress(
        self, job_id: str | None, current: int, total: int | None = None
    ) -> None:
        """Update a job's progress counters."""
        if job_id is None:
            return
        try:
            await self._db.execute(
                """
                UPDATE sync_jobs
                SET progress_current = ?, progress_total = COALESCE(?, progress_total)
                WHERE id = ?
                """,
                (current, total, job_id),
            )
        except (aiosqlite.Error, OSError):
            logger.warning("Failed to update progress of job %s", job_id, exc_info=True)

    async def finish_job(
        self, job_id: str | None, status: JobStatus, error_message: str | None = None
    ) -> None:
        """Mark a job completed, failed or cancelled."""
        if job_id is None:
            return
        try:
            await self._db.execute(
                """
                UPDATE sync_jobs
                SET status = ?, error_message = ?, completed_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (status.value, error_message, job_id),
            )
        except (aiosqlite.Error, OSError):
            logger.warning("Failed to finish job %s", job_id, exc_info=True)

    async def list_jobs(self, run_id: str | None = None, limit: int = 50) -> list[SyncJobRow]:
        """List jobs, newest first."""
        query = "SELECT * FROM sync_jobs"
        params: tuple[str | int, ...] = ()
        if run_id is not None:
            query += " WHERE run_id = ?"
            params = (run_id,)
        query += " ORDER BY started_at DESC, rowid DESC LIMIT ?"
        params = (*params, limit)

        async with self._execute(query, params) as cursor:
            rows = await cursor.fetchall()

        return [
            SyncJobRow(
                id=row["id"],
                run_id=row["run_id"],
                provider=row["provider"],
                mode=row["mode"],
                game=row["game"],
                phase=row["phase"],
                status=JobStatus(row["status"]),
                progress_current=row["progress_current"],
                progress_total=row["progress_total"],
                started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
                completed_at=(
                    datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
                ),
                error_message=row["error_message"],
            )
            for row in rows
        ]
