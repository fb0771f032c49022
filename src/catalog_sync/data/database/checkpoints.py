"""Durable cursor checkpoints for paginated provider streams."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import aiosqlite

from ...exceptions import CheckpointStoreError
from .base import BaseDatabase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamCursor:
    """Where a stream stands.

    ``next`` is the provider's opaque continuation token (None before the
    first page and after the last one). ``complete`` is set once the final
    page of the stream has been committed.
    """

    next: Any = None
    complete: bool = False

    def to_json(self) -> str:
        return json.dumps({"next": self.next, "complete": self.complete})

    @classmethod
    def from_json(cls, text: str) -> StreamCursor:
        data = json.loads(text)
        if not isinstance(data, dict):
            # Bare provider cursor written by an older engine
            return cls(next=data)
        return cls(next=data.get("next"), complete=bool(data.get("complete", False)))


@dataclass
class CheckpointRow:
    """A stored checkpoint."""

    provider: str
    game: str
    stream_key: str
    cursor: StreamCursor
    updated_at: datetime | None


class CheckpointStore(BaseDatabase):
    """Checkpoint persistence keyed by (provider, game, stream_key).

    Every write is a single autocommitted statement, so a save is atomic and
    saves to different keys never wait on each other's transactions.
    """

    async def load(self, provider: str, game: str, stream_key: str) -> StreamCursor | None:
        """Return the saved cursor of a stream, or None if it never checkpointed."""
        try:
            async with self._execute(
                """
                SELECT cursor_json FROM sync_checkpoints
                WHERE provider = ? AND game = ? AND stream_key = ?
                """,
                (provider, game, stream_key),
            ) as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointStoreError(stream_key, str(e)) from e

        if row is None:
            return None
        try:
            return StreamCursor.from_json(row["cursor_json"])
        except (json.JSONDecodeError, TypeError) as e:
            raise CheckpointStoreError(stream_key, f"corrupt cursor: {e}") from e

    async def save(
        self, provider: str, game: str, stream_key: str, cursor: StreamCursor
    ) -> None:
        """Persist the cursor of a stream. Durable once this returns."""
        try:
            await self._db.execute(
                """
                INSERT INTO sync_checkpoints (provider, game, stream_key, cursor_json, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT (provider, game, stream_key) DO UPDATE SET
                    cursor_json = excluded.cursor_json,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (provider, game, stream_key, cursor.to_json()),
            )
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointStoreError(stream_key, str(e)) from e
        logger.debug("Checkpoint %s/%s/%s -> %s", provider, game, stream_key, cursor)

    async def clear(self, provider: str, game: str | None = None) -> int:
        """Delete checkpoints of a provider, optionally only for one game.

        Returns:
            Number of checkpoints removed.
        """
        query = "DELETE FROM sync_checkpoints WHERE provider = ?"
        params: tuple[str, ...] = (provider,)
        if game is not None:
            query += " AND game = ?"
            params = (provider, game)
        try:
            cursor = await self._db.execute(query, params)
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointStoreError(game or "*", str(e)) from e
        logger.info("Cleared %d checkpoints for %s/%s", cursor.rowcount, provider, game or "*")
        return cursor.rowcount

    async def list_checkpoints(
        self, provider: str, game: str | None = None
    ) -> list[CheckpointRow]:
        """List checkpoints, newest first."""
        query = """
            SELECT provider, game, stream_key, cursor_json, updated_at
            FROM sync_checkpoints WHERE provider = ?
        """
        params: tuple[str, ...] = (provider,)
        if game is not None:
            query += " AND game = ?"
            params = (provider, game)
        query += " ORDER BY updated_at DESC, stream_key"

        try:
            async with self._execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except (aiosqlite.Error, OSError) as e:
            raise CheckpointStoreError(game or "*", str(e)) from e

        checkpoints = []
        for row in rows:
            try:
                cursor = StreamCursor.from_json(row["cursor_json"])
            except (json.JSONDecodeError, TypeError) as e:
                raise CheckpointStoreError(row["stream_key"], f"corrupt cursor: {e}") from e
            checkpoints.append(
                CheckpointRow(
                    provider=row["provider"],
                    game=row["game"],
                    stream_key=row["stream_key"],
                    cursor=cursor,
                    updated_at=_parse_timestamp(row["updated_at"]),
                )
            )
        return checkpoints


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
