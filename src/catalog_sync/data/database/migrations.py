"""Catalog schema creation and migrations.

All functions here are idempotent and safe to run on every start.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 2

CATALOG_SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Games: root of the hierarchy, deactivated but never deleted
CREATE TABLE IF NOT EXISTS games (
    provider TEXT NOT NULL,
    id TEXT NOT NULL,
    provider_id TEXT,
    name TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    raw TEXT,
    created_run TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (provider, id)
);

-- Sets: id is provider-qualified (<provider>-<provider_id>)
CREATE TABLE IF NOT EXISTS sets (
    provider TEXT NOT NULL,
    game TEXT NOT NULL,
    id TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    name TEXT,
    code TEXT,
    series TEXT,
    release_date TEXT,
    total_count INTEGER,
    images TEXT,
    raw TEXT,
    not_found_in_latest_sync INTEGER NOT NULL DEFAULT 0,
    created_run TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_seen_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (provider, game, id),
    FOREIGN KEY (provider, game) REFERENCES games(provider, id)
);

CREATE INDEX IF NOT EXISTS idx_sets_provider_id ON sets(provider, game, provider_id);

-- Cards
CREATE TABLE IF NOT EXISTS cards (
    provider TEXT NOT NULL,
    id TEXT NOT NULL,
    game TEXT NOT NULL,
    set_id TEXT NOT NULL,
    name TEXT,
    number TEXT,
    rarity TEXT,
    images TEXT,
    external_product_ref TEXT,
    raw TEXT,
    not_found_in_latest_sync INTEGER NOT NULL DEFAULT 0,
    created_run TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_seen_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (provider, id),
    FOREIGN KEY (provider, game, set_id) REFERENCES sets(provider, game, id)
);

CREATE INDEX IF NOT EXISTS idx_cards_game ON cards(provider, game);
CREATE INDEX IF NOT EXISTS idx_cards_set ON cards(provider, game, set_id);

-- Variants: priced SKUs of a card
CREATE TABLE IF NOT EXISTS variants (
    provider TEXT NOT NULL,
    id TEXT NOT NULL,
    card_id TEXT NOT NULL,
    game TEXT NOT NULL,
    language TEXT,
    printing TEXT,
    condition TEXT,
    sku TEXT,
    price REAL,
    market_price REAL,
    low_price REAL,
    high_price REAL,
    currency TEXT NOT NULL DEFAULT 'USD',
    raw TEXT,
    not_found_in_latest_sync INTEGER NOT NULL DEFAULT 0,
    created_run TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_seen_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (provider, id),
    FOREIGN KEY (provider, card_id) REFERENCES cards(provider, id)
);

CREATE INDEX IF NOT EXISTS idx_variants_card ON variants(provider, card_id);
CREATE INDEX IF NOT EXISTS idx_variants_game ON variants(provider, game);

-- Cursor checkpoints, one row per paginated stream
CREATE TABLE IF NOT EXISTS sync_checkpoints (
    provider TEXT NOT NULL,
    game TEXT NOT NULL,
    stream_key TEXT NOT NULL,
    cursor_json TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (provider, game, stream_key)
);
"""

# Migration 1 -> 2: job bookkeeping
SYNC_JOBS_SQL = """
CREATE TABLE IF NOT EXISTS sync_jobs (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    provider TEXT NOT NULL,
    mode TEXT NOT NULL,
    game TEXT NOT NULL,
    phase TEXT NOT NULL,
    status TEXT NOT NULL,
    progress_current INTEGER NOT NULL DEFAULT 0,
    progress_total INTEGER,
    started_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    completed_at TIMESTAMP,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_run ON sync_jobs(run_id);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_started ON sync_jobs(started_at DESC);
"""


async def enable_wal_mode(conn: aiosqlite.Connection) -> bool:
    """Enable WAL mode so checkpoint writes do not wait on catalog readers.

    Returns:
        True if WAL mode was enabled or already active, False on failure.
    """
    try:
        async with conn.execute("PRAGMA journal_mode") as cursor:
            row = await cursor.fetchone()
            current_mode = row[0] if row else None

        if current_mode and current_mode.lower() == "wal":
            logger.debug("WAL mode already enabled")
            return True

        async with conn.execute("PRAGMA journal_mode=WAL") as cursor:
            row = await cursor.fetchone()
        await conn.execute("PRAGMA synchronous=NORMAL")
        enabled = bool(row) and str(row[0]).lower() == "wal"
        if enabled:
            logger.info("Enabled WAL mode for database")
        else:
            # In-memory databases stay in "memory" mode
            logger.debug("WAL mode not available, journal mode is %s", row[0] if row else None)
        return enabled
    except Exception:
        logger.exception("Failed to enable WAL mode")
        return False


async def get_schema_version(conn: aiosqlite.Connection) -> int:
    """Return the stored schema version, 0 for a fresh database."""
    async with conn.execute("SELECT version FROM schema_version LIMIT 1") as cursor:
        row = await cursor.fetchone()
        return int(row[0]) if row else 0


async def run_catalog_migrations(conn: aiosqlite.Connection) -> int:
    """Create the catalog schema and bring it to SCHEMA_VERSION.

    Returns:
        The schema version after migration.
    """
    await conn.executescript(CATALOG_SCHEMA_SQL)

    current_version = await get_schema_version(conn)

    if current_version < 2:
        logger.info("Running migration %d -> 2: Adding sync_jobs table", current_version)
        await conn.executescript(SYNC_JOBS_SQL)
        logger.info("Migration %d -> 2 complete", current_version)

    if current_version == 0:
        await conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif current_version < SCHEMA_VERSION:
        await conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    return SCHEMA_VERSION
