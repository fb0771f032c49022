"""Local catalog store: batched idempotent upserts and reconciliation queries."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

import aiosqlite

from ...config import get_settings
from ...exceptions import UpsertGatewayError
from ..models.records import EntityKind
from .base import BaseDatabase

logger = logging.getLogger(__name__)


@dataclass
class GameRow:
    """A game in the local catalog."""

    provider: str
    id: str
    provider_id: str | None
    name: str | None
    active: bool = True
    raw: dict[str, Any] | None = None


@dataclass
class SetRow:
    """A set in the local catalog. ``id`` is provider-qualified."""

    provider: str
    game: str
    id: str
    provider_id: str
    name: str | None
    code: str | None = None
    series: str | None = None
    release_date: str | None = None
    total_count: int | None = None
    images: dict[str, Any] | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    not_found_in_latest_sync: bool = False
    created_run: str | None = None


@dataclass
class CardRow:
    """A card in the local catalog."""

    provider: str
    id: str
    game: str
    set_id: str
    name: str | None
    number: str | None = None
    rarity: str | None = None
    images: dict[str, Any] | None = None
    external_product_ref: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    not_found_in_latest_sync: bool = False
    created_run: str | None = None


@dataclass
class VariantRow:
    """A priced variant of a card in the local catalog."""

    provider: str
    id: str
    card_id: str
    game: str
    language: str | None = None
    printing: str | None = None
    condition: str | None = None
    sku: str | None = None
    price: float | None = None
    market_price: float | None = None
    low_price: float | None = None
    high_price: float | None = None
    currency: str = "USD"
    raw: dict[str, Any] = field(default_factory=dict)


CatalogRow = Union[GameRow, SetRow, CardRow, VariantRow]


@dataclass
class UpsertResult:
    """Outcome of one upsert_batch call."""

    written: int = 0
    rejected: list[str] = field(default_factory=list)  # ids whose parent is missing


@dataclass
class GuardrailRow:
    """The fields the guardrail compares against a provider snapshot."""

    id: str
    name: str | None
    created_run: str | None


@dataclass
class CatalogStats:
    """Per-game record counts."""

    game: str
    active: bool
    sets: int
    cards: int
    variants: int
    sets_not_found: int
    cards_not_found: int


def _json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


# ─────────────────────────────────────────────────────────────────────────────
# Upsert statements, keyed by natural identifiers
# ─────────────────────────────────────────────────────────────────────────────

_UPSERT_GAME = """
INSERT INTO games (provider, id, provider_id, name, active, raw, created_run)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (provider, id) DO UPDATE SET
    provider_id = COALESCE(excluded.provider_id, games.provider_id),
    name = COALESCE(excluded.name, games.name),
    active = excluded.active,
    raw = COALESCE(excluded.raw, games.raw),
    updated_at = CURRENT_TIMESTAMP
"""

# A stored set name is kept: drift against the provider is resolved by the
# guardrail, which nulls it so the next run refills it.
_UPSERT_SET = """
INSERT INTO sets (
    provider, game, id, provider_id, name, code, series, release_date,
    total_count, images, raw, created_run
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (provider, game, id) DO UPDATE SET
    provider_id = excluded.provider_id,
    name = COALESCE(sets.name, excluded.name),
    code = excluded.code,
    series = excluded.series,
    release_date = excluded.release_date,
    total_count = excluded.total_count,
    images = excluded.images,
    raw = excluded.raw,
    not_found_in_latest_sync = 0,
    updated_at = CURRENT_TIMESTAMP,
    last_seen_at = CURRENT_TIMESTAMP
"""

_UPSERT_CARD_TEMPLATE = """
INSERT INTO cards (
    provider, id, game, set_id, name, number, rarity, images,
    external_product_ref, raw, created_run
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (provider, id) DO UPDATE SET
    game = excluded.game,
    set_id = excluded.set_id,
    name = {name},
    number = excluded.number,
    rarity = excluded.rarity,
    images = excluded.images,
    external_product_ref = excluded.external_product_ref,
    raw = excluded.raw,
    not_found_in_latest_sync = 0,
    updated_at = CURRENT_TIMESTAMP,
    last_seen_at = CURRENT_TIMESTAMP
"""

_UPSERT_CARD = _UPSERT_CARD_TEMPLATE.format(name="excluded.name")
# Used while the card guardrail is on, so drift is seen before the name changes
_UPSERT_CARD_KEEP_NAME = _UPSERT_CARD_TEMPLATE.format(name="COALESCE(cards.name, excluded.name)")

_UPSERT_VARIANT = """
INSERT INTO variants (
    provider, id, card_id, game, language, printing, condition, sku,
    price, market_price, low_price, high_price, currency, raw, created_run
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (provider, id) DO UPDATE SET
    card_id = excluded.card_id,
    game = excluded.game,
    language = excluded.language,
    printing = excluded.printing,
    condition = excluded.condition,
    sku = excluded.sku,
    price = excluded.price,
    market_price = excluded.market_price,
    low_price = excluded.low_price,
    high_price = excluded.high_price,
    currency = excluded.currency,
    raw = excluded.raw,
    not_found_in_latest_sync = 0,
    updated_at = CURRENT_TIMESTAMP,
    last_seen_at = CURRENT_TIMESTAMP
"""


def _game_params(row: GameRow, run_id: str) -> tuple[Any, ...]:
    return (row.provider, row.id, row.provider_id, row.name, int(row.active), _json(row.raw), run_id)


def _set_params(row: SetRow, run_id: str) -> tuple[Any, ...]:
    return (
        row.provider,
        row.game,
        row.id,
        row.provider_id,
        row.name,
        row.code,
        row.series,
        row.release_date,
        row.total_count,
        _json(row.images),
        _json(row.raw),
        run_id,
    )


def _card_params(row: CardRow, run_id: str) -> tuple[Any, ...]:
    return (
        row.provider,
        row.id,
        row.game,
        row.set_id,
        row.name,
        row.number,
        row.rarity,
        _json(row.images),
        row.external_product_ref,
        _json(row.raw),
        run_id,
    )


def _variant_params(row: VariantRow, run_id: str) -> tuple[Any, ...]:
    return (
        row.provider,
        row.id,
        row.card_id,
        row.game,
        row.language,
        row.printing,
        row.condition,
        row.sku,
        row.price,
        row.market_price,
        row.low_price,
        row.high_price,
        row.currency,
        _json(row.raw),
        run_id,
    )


_UPSERTS: dict[EntityKind, tuple[str, Callable[[Any, str], tuple[Any, ...]]]] = {
    EntityKind.GAMES: (_UPSERT_GAME, _game_params),
    EntityKind.SETS: (_UPSERT_SET, _set_params),
    EntityKind.CARDS: (_UPSERT_CARD, _card_params),
    EntityKind.VARIANTS: (_UPSERT_VARIANT, _variant_params),
}

# Parent lookup per child kind: query over a JSON array of parent ids, and
# the parent key of a row in the shape the query returns it
_PARENT_LOOKUPS: dict[EntityKind, tuple[str, Callable[[Any], tuple[str, ...]]]] = {
    EntityKind.SETS: (
        "SELECT id FROM games WHERE provider = ? AND id IN (SELECT value FROM json_each(?))",
        lambda row: (row.game,),
    ),
    EntityKind.CARDS: (
        "SELECT game, id FROM sets WHERE provider = ? AND id IN (SELECT value FROM json_each(?))",
        lambda row: (row.game, row.set_id),
    ),
    EntityKind.VARIANTS: (
        "SELECT id FROM cards WHERE provider = ? AND id IN (SELECT value FROM json_each(?))",
        lambda row: (row.card_id,),
    ),
}

# Tables the guardrail may reconcile, with the display fields it nulls on drift
_GUARDED_TABLES: dict[EntityKind, tuple[str, tuple[str, ...]]] = {
    EntityKind.SETS: ("sets", ("name",)),
    EntityKind.CARDS: ("cards", ("name",)),
}


class CatalogDatabase(BaseDatabase):
    """The Upsert Gateway plus the read and reconciliation queries of a sync run.

    Writes are serialized through one lock so a chunk's transaction never
    interleaves with another chunk on the shared connection.
    """

    def __init__(self, db: aiosqlite.Connection, max_connections: int = 5):
        super().__init__(db, max_connections=max_connections)
        self._write_lock = asyncio.Lock()

    # ─────────────────────────────────────────────────────────────────────────
    # Upsert Gateway
    # ─────────────────────────────────────────────────────────────────────────

    async def upsert_batch(
        self,
        kind: EntityKind,
        rows: Sequence[CatalogRow],
        *,
        run_id: str,
        chunk_size: int | None = None,
        keep_card_names: bool = False,
    ) -> UpsertResult:
        """Insert or update rows by natural key, in chunks.

        Each chunk commits atomically or raises; chunks committed before a
        failure stay committed. Rows whose parent is missing are left out and
        reported in ``UpsertResult.rejected``. Stored set names are always
        kept; stored card names only with ``keep_card_names``.

        Raises:
            UpsertGatewayError: If a chunk cannot be written.
        """
        size = chunk_size or get_settings().upsert_chunk_size
        result = UpsertResult()
        for start in range(0, len(rows), size):
            chunk = rows[start : start + size]
            written, rejected = await self._upsert_chunk(kind, chunk, run_id, keep_card_names)
            result.written += written
            result.rejected.extend(rejected)
        return result

    async def _upsert_chunk(
        self,
        kind: EntityKind,
        chunk: Sequence[CatalogRow],
        run_id: str,
        keep_card_names: bool = False,
    ) -> tuple[int, list[str]]:
        sql, to_params = _UPSERTS[kind]
        if kind is EntityKind.CARDS and keep_card_names:
            sql = _UPSERT_CARD_KEEP_NAME
        async with self._write_lock:
            try:
                await self._db.execute("BEGIN IMMEDIATE")
            except (aiosqlite.Error, OSError) as e:
                raise UpsertGatewayError(kind.value, str(e)) from e

            try:
                accepted, rejected = await self._split_orphans(kind, chunk)
                if accepted:
                    await self._db.executemany(sql, [to_params(row, run_id) for row in accepted])
                await self._db.execute("COMMIT")
            except (aiosqlite.Error, OSError) as e:
                await self._rollback()
                raise UpsertGatewayError(kind.value, str(e)) from e
            except BaseException:
                await self._rollback()
                raise

        if rejected:
            logger.warning(
                "Skipped %d %s with missing parent: %s", len(rejected), kind.value, rejected[:5]
            )
        return len(accepted), rejected

    async def _rollback(self) -> None:
        try:
            await self._db.execute("ROLLBACK")
        except (aiosqlite.Error, OSError):
            logger.exception("Rollback failed")

    async def _split_orphans(
        self, kind: EntityKind, chunk: Sequence[CatalogRow]
    ) -> tuple[list[CatalogRow], list[str]]:
        """Partition a chunk into rows whose parent exists and ids of orphans."""
        if kind is EntityKind.GAMES or not chunk:
            return list(chunk), []

        query, parent_of = _PARENT_LOOKUPS[kind]
        parent_ids = sorted({parent_of(row)[-1] for row in chunk})
        async with self._db.execute(query, (chunk[0].provider, json.dumps(parent_ids))) as cursor:
            existing = {tuple(row) for row in await cursor.fetchall()}

        accepted: list[CatalogRow] = []
        rejected: list[str] = []
        for row in chunk:
            if parent_of(row) in existing:
                accepted.append(row)
            else:
                rejected.append(row.id)
        return accepted, rejected

    async def _write(self, kind: EntityKind, query: str, params: Sequence[Any]) -> int:
        """Run one autocommitted write outside any open chunk transaction."""
        async with self._write_lock:
            try:
                cursor = await self._db.execute(query, params)
            except (aiosqlite.Error, OSError) as e:
                raise UpsertGatewayError(kind.value, str(e)) from e
        return cursor.rowcount

    async def ensure_game(self, provider: str, game: str, *, run_id: str) -> bool:
        """Create a minimal game row if none exists. Returns True if one was created."""
        created = await self._write(
            EntityKind.GAMES,
            """
            INSERT INTO games (provider, id, provider_id, name, active, created_run)
            VALUES (?, ?, ?, NULL, 1, ?)
            ON CONFLICT (provider, id) DO NOTHING
            """,
            (provider, game, game, run_id),
        )
        return created > 0

    async def deactivate_games(self, provider: str, observed_ids: set[str]) -> int:
        """Set active = 0 on games absent from a fully observed games stream."""
        count = await self._write(
            EntityKind.GAMES,
            """
            UPDATE games SET active = 0, updated_at = CURRENT_TIMESTAMP
            WHERE provider = ? AND active = 1
              AND id NOT IN (SELECT value FROM json_each(?))
            """,
            (provider, json.dumps(sorted(observed_ids))),
        )
        if count:
            logger.info("Deactivated %d games missing upstream", count)
        return count

    # ─────────────────────────────────────────────────────────────────────────
    # Fan-out parents
    # ─────────────────────────────────────────────────────────────────────────

    async def list_set_refs(self, provider: str, game: str) -> list[tuple[str, str]]:
        """All known sets of a game as (id, provider_id), in id order."""
        async with self._execute(
            "SELECT id, provider_id FROM sets WHERE provider = ? AND game = ? ORDER BY id",
            (provider, game),
        ) as cursor:
            rows = await cursor.fetchall()
        return [(row["id"], row["provider_id"]) for row in rows]

    async def list_card_ids(self, provider: str, game: str) -> list[str]:
        """All known card ids of a game, in id order."""
        async with self._execute(
            "SELECT id FROM cards WHERE provider = ? AND game = ? ORDER BY id",
            (provider, game),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["id"] for row in rows]

    # ─────────────────────────────────────────────────────────────────────────
    # Guardrail support
    # ─────────────────────────────────────────────────────────────────────────

    async def guardrail_rows(
        self, kind: EntityKind, provider: str, game: str, set_id: str | None = None
    ) -> list[GuardrailRow]:
        """Stored records a guardrail pass compares against the provider."""
        table, _ = _GUARDED_TABLES[kind]
        query = f"SELECT id, name, created_run FROM {table} WHERE provider = ? AND game = ?"
        params: tuple[str, ...] = (provider, game)
        if set_id is not None:
            query += " AND set_id = ?"
            params = (provider, game, set_id)
        async with self._execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [GuardrailRow(row["id"], row["name"], row["created_run"]) for row in rows]

    async def flag_not_found(
        self, kind: EntityKind, provider: str, game: str, ids: Sequence[str]
    ) -> int:
        """Flag records missing from the latest snapshot. Never deletes.

        Returns:
            Number of records newly flagged; records already flagged are not
            counted again.
        """
        if not ids:
            return 0
        table, _ = _GUARDED_TABLES[kind]
        return await self._write(
            kind,
            f"""
            UPDATE {table} SET not_found_in_latest_sync = 1, updated_at = CURRENT_TIMESTAMP
            WHERE provider = ? AND game = ? AND id IN (SELECT value FROM json_each(?))
              AND not_found_in_latest_sync = 0
            """,
            (provider, game, json.dumps(list(ids))),
        )

    async def null_display_fields(
        self, kind: EntityKind, provider: str, game: str, ids: Sequence[str]
    ) -> int:
        """Null the drift-prone display fields of records whose name drifted."""
        if not ids:
            return 0
        table, fields = _GUARDED_TABLES[kind]
        assignments = ", ".join(f"{name} = NULL" for name in fields)
        return await self._write(
            kind,
            f"""
            UPDATE {table} SET {assignments}, updated_at = CURRENT_TIMESTAMP
            WHERE provider = ? AND game = ? AND id IN (SELECT value FROM json_each(?))
            """,
            (provider, game, json.dumps(list(ids))),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────────────

    async def get_game(self, provider: str, game_id: str) -> GameRow | None:
        """Get a game by id."""
        async with self._execute(
            "SELECT * FROM games WHERE provider = ? AND id = ?", (provider, game_id)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return GameRow(
            provider=row["provider"],
            id=row["id"],
            provider_id=row["provider_id"],
            name=row["name"],
            active=bool(row["active"]),
            raw=_loads(row["raw"]),
        )

    async def get_set(self, provider: str, game: str, set_id: str) -> SetRow | None:
        """Get a set by its provider-qualified id."""
        async with self._execute(
            "SELECT * FROM sets WHERE provider = ? AND game = ? AND id = ?",
            (provider, game, set_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return SetRow(
            provider=row["provider"],
            game=row["game"],
            id=row["id"],
            provider_id=row["provider_id"],
            name=row["name"],
            code=row["code"],
            series=row["series"],
            release_date=row["release_date"],
            total_count=row["total_count"],
            images=_loads(row["images"]),
            raw=_loads(row["raw"]) or {},
            not_found_in_latest_sync=bool(row["not_found_in_latest_sync"]),
            created_run=row["created_run"],
        )

    async def get_card(self, provider: str, card_id: str) -> CardRow | None:
        """Get a card by id."""
        async with self._execute(
            "SELECT * FROM cards WHERE provider = ? AND id = ?", (provider, card_id)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return CardRow(
            provider=row["provider"],
            id=row["id"],
            game=row["game"],
            set_id=row["set_id"],
            name=row["name"],
            number=row["number"],
            rarity=row["rarity"],
            images=_loads(row["images"]),
            external_product_ref=row["external_product_ref"],
            raw=_loads(row["raw"]) or {},
            not_found_in_latest_sync=bool(row["not_found_in_latest_sync"]),
            created_run=row["created_run"],
        )

    async def get_variant(self, provider: str, variant_id: str) -> VariantRow | None:
        """Get a variant by id."""
        async with self._execute(
            "SELECT * FROM variants WHERE provider = ? AND id = ?", (provider, variant_id)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return VariantRow(
            provider=row["provider"],
            id=row["id"],
            card_id=row["card_id"],
            game=row["game"],
            language=row["language"],
            printing=row["printing"],
            condition=row["condition"],
            sku=row["sku"],
            price=row["price"],
            market_price=row["market_price"],
            low_price=row["low_price"],
            high_price=row["high_price"],
            currency=row["currency"],
            raw=_loads(row["raw"]) or {},
        )

    async def count(self, kind: EntityKind, provider: str, game: str | None = None) -> int:
        """Count records of a kind, optionally for one game."""
        table = kind.value
        column = "id" if kind is EntityKind.GAMES else "game"
        query = f"SELECT COUNT(*) FROM {table} WHERE provider = ?"
        params: tuple[str, ...] = (provider,)
        if game is not None:
            query += f" AND {column} = ?"
            params = (provider, game)
        async with self._execute(query, params) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def get_stats(self, provider: str) -> list[CatalogStats]:
        """Per-game record counts, including records flagged missing upstream."""
        async with self._execute(
            """
            SELECT
                g.id AS game,
                g.active AS active,
                (SELECT COUNT(*) FROM sets s
                 WHERE s.provider = g.provider AND s.game = g.id) AS sets,
                (SELECT COUNT(*) FROM cards c
                 WHERE c.provider = g.provider AND c.game = g.id) AS cards,
                (SELECT COUNT(*) FROM variants v
                 WHERE v.provider = g.provider AND v.game = g.id) AS variants,
                (SELECT COUNT(*) FROM sets s
                 WHERE s.provider = g.provider AND s.game = g.id
                   AND s.not_found_in_latest_sync = 1) AS sets_not_found,
                (SELECT COUNT(*) FROM cards c
                 WHERE c.provider = g.provider AND c.game = g.id
                   AND c.not_found_in_latest_sync = 1) AS cards_not_found
            FROM games g
            WHERE g.provider = ?
            ORDER BY g.id
            """,
            (provider,),
        ) as cursor:
            rows = await cursor.fetchall()

        return [
            CatalogStats(
                game=row["game"],
                active=bool(row["active"]),
                sets=row["sets"],
                cards=row["cards"],
                variants=row["variants"],
                sets_not_found=row["sets_not_found"],
                cards_not_found=row["cards_not_found"],
            )
            for row in rows
        ]
