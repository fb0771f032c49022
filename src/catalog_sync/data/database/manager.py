"""Database connection management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite

from ...config import Settings, get_settings
from ..models.requests import SyncMode
from .base import open_connection
from .catalog import CatalogDatabase
from .checkpoints import CheckpointStore
from .jobs import SyncJobStore
from .migrations import enable_wal_mode, run_catalog_migrations

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


@dataclass
class CatalogStores:
    """The stores a sync run writes to, all backed by one database file.

    The catalog gets its own connection so its chunk transactions never
    hold up checkpoint and job writes, which share the second one.
    """

    path: Path | str
    catalog: CatalogDatabase
    checkpoints: CheckpointStore
    jobs: SyncJobStore
    _catalog_conn: aiosqlite.Connection
    _state_conn: aiosqlite.Connection

    @classmethod
    async def open(cls, db_path: Path | str, max_connections: int = 5) -> CatalogStores:
        """Open both connections and bring the schema up to date."""
        catalog_conn = await open_connection(db_path)
        try:
            await enable_wal_mode(catalog_conn)
            await run_catalog_migrations(catalog_conn)
            state_conn = await open_connection(db_path)
        except BaseException:
            await catalog_conn.close()
            raise

        logger.info("Catalog database opened at %s", db_path)
        return cls(
            path=db_path,
            catalog=CatalogDatabase(catalog_conn, max_connections=max_connections),
            checkpoints=CheckpointStore(state_conn, max_connections=max_connections),
            jobs=SyncJobStore(state_conn, max_connections=max_connections),
            _catalog_conn=catalog_conn,
            _state_conn=state_conn,
        )

    async def close(self) -> None:
        """Close both connections."""
        await self._state_conn.close()
        await self._catalog_conn.close()


class DatabaseManager:
    """Manages the live and shadow catalog databases for the API and CLI."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._stores: dict[SyncMode, CatalogStores] = {}

    def _path_for(self, mode: SyncMode) -> Path:
        if mode is SyncMode.SHADOW:
            return self._settings.shadow_db_path
        return self._settings.catalog_db_path

    async def start(self) -> None:
        """Open the live catalog. The shadow catalog opens on first use."""
        await self.stores(SyncMode.LIVE)

    async def stores(self, mode: SyncMode = SyncMode.LIVE) -> CatalogStores:
        """Get the stores of a mode, opening its database if needed."""
        if mode not in self._stores:
            self._stores[mode] = await CatalogStores.open(
                self._path_for(mode), max_connections=self._settings.db_max_connections
            )
        return self._stores[mode]

    async def stop(self) -> None:
        """Close every open database."""
        for mode, stores in list(self._stores.items()):
            try:
                await stores.close()
            except (aiosqlite.Error, OSError):
                logger.exception("Failed to close %s catalog database", mode.value)
        self._stores.clear()


@asynccontextmanager
async def open_stores(
    mode: SyncMode = SyncMode.LIVE, settings: Settings | None = None
) -> AsyncIterator[CatalogStores]:
    """Open the stores of one mode as a context manager."""
    manager = DatabaseManager(settings)
    try:
        yield await manager.stores(mode)
    finally:
        await manager.stop()
