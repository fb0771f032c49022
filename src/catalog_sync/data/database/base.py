"""Base database class with shared connection patterns."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from ...config import get_settings

logger = logging.getLogger(__name__)


async def open_connection(db_path: Path | str) -> aiosqlite.Connection:
    """Open a catalog connection in autocommit mode.

    Transactions are opened explicitly (``BEGIN IMMEDIATE``) by the callers
    that need multi-statement atomicity; every other statement commits on its
    own.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path, isolation_level=None)
    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA foreign_keys = ON")
    await conn.execute("PRAGMA busy_timeout = 5000")  # 5 seconds
    return conn


class BaseDatabase:
    """Shared base of the catalog, checkpoint and job stores.

    Each store wraps one connection from ``open_connection``. Reads go
    through ``_execute``, which bounds how many queries a store has in
    flight while a fan-out runs and reports reads slower than
    ``slow_query_threshold_ms``. Writes are issued by the stores themselves,
    since each needs its own transaction and error mapping.
    """

    def __init__(self, db: aiosqlite.Connection, max_connections: int = 5):
        self._db = db
        self._semaphore = asyncio.Semaphore(max_connections)

    @property
    def connection(self) -> aiosqlite.Connection:
        """The store's connection, shared with stores opened on it."""
        return self._db

    @asynccontextmanager
    async def _execute(
        self, query: str, params: Sequence[Any] = ()
    ) -> AsyncIterator[aiosqlite.Cursor]:
        """Run a read and yield its cursor."""
        settings = get_settings()
        async with self._semaphore:
            start = time.perf_counter()
            try:
                async with self._db.execute(query, params) as cursor:
                    yield cursor
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                if settings.log_slow_queries and elapsed_ms > settings.slow_query_threshold_ms:
                    statement = " ".join(query.split())[:100]
                    logger.warning("Slow catalog read (%.1fms): %s", elapsed_ms, statement)
