"""Async SQLite stores for the local catalog, checkpoints and sync jobs."""

from .base import BaseDatabase, open_connection
from .catalog import (
    CardRow,
    CatalogDatabase,
    CatalogRow,
    CatalogStats,
    GameRow,
    GuardrailRow,
    SetRow,
    UpsertResult,
    VariantRow,
)
from .checkpoints import CheckpointRow, CheckpointStore, StreamCursor
from .jobs import JobStatus, SyncJobRow, SyncJobStore
from .manager import CatalogStores, DatabaseManager, open_stores
from .migrations import SCHEMA_VERSION, enable_wal_mode, run_catalog_migrations

__all__ = [
    "SCHEMA_VERSION",
    "BaseDatabase",
    "CardRow",
    "CatalogDatabase",
    "CatalogRow",
    "CatalogStats",
    "CatalogStores",
    "CheckpointRow",
    "CheckpointStore",
    "DatabaseManager",
    "GameRow",
    "GuardrailRow",
    "JobStatus",
    "SetRow",
    "StreamCursor",
    "SyncJobRow",
    "SyncJobStore",
    "UpsertResult",
    "VariantRow",
    "enable_wal_mode",
    "open_connection",
    "open_stores",
    "run_catalog_migrations",
]
