"""Pytest fixtures for catalog sync tests."""

from __future__ import annotations

import copy
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

from catalog_sync import config
from catalog_sync.config import Settings
from catalog_sync.data.database import CatalogStores
from catalog_sync.data.models import EntityKind, SyncEvent, SyncMode, SyncRequest
from catalog_sync.provider import Page
from catalog_sync.sync import CancellationToken, ListEventSink, SyncOrchestrator

CATALOG: dict[str, Any] = {
    "games": [
        {"id": "pokemon", "name": "Pokémon"},
        {"id": "magic-the-gathering", "name": "Magic: The Gathering"},
    ],
    "sets": {
        "pokemon": [
            {"id": "base1", "name": "Base Set", "releaseDate": "1999/01/09", "total": 102},
            {"id": "jungle", "name": "Jungle", "releaseDate": "1999-06-16"},
            {"id": "fossil", "name": "Fossil"},
        ],
        "mtg": [{"id": "lea", "name": "Limited Edition Alpha"}],
    },
    "cards": {
        "base1": [
            {
                "id": "base1-4",
                "name": "Charizard",
                "number": "4",
                "rarity": "Rare Holo",
                "tcgplayerProductId": 42382,
            },
            {"id": "base1-2", "name": "Blastoise", "number": "2"},
            {"id": "base1-15", "name": "Venusaur", "number": "15"},
        ],
        "jungle": [{"id": "jungle-1", "name": "Clefable"}],
        "fossil": [],
        "lea": [{"id": "lea-232", "name": "Black Lotus"}],
    },
    "variants": {
        "base1-4": [
            {
                "id": "v-char-nm",
                "language": "English",
                "printing": "Holofoil",
                "condition": "Near Mint",
                "price": 350.0,
            },
            {"id": "v-char-lp", "condition": "Lightly Played", "price": 250.0},
        ],
        "base1-2": [
            {
                "language": "English",
                "printing": "Holofoil",
                "condition": "Near Mint",
                "marketPrice": 120.5,
            }
        ],
    },
}


class FakeProvider:
    """In-memory provider serving a catalog in fixed-size pages.

    Cursors are string offsets. Errors queued with ``fail`` are raised, in
    order, by the matching calls before any page is served.
    """

    def __init__(self, catalog: dict[str, Any] | None = None, page_size: int = 2):
        self.catalog = copy.deepcopy(catalog if catalog is not None else CATALOG)
        self.page_size = page_size
        self.calls: list[tuple[EntityKind, str, str | None, Any]] = []
        self.failures: dict[tuple[EntityKind, str | None, Any], list[BaseException]] = {}
        self.closed = False

    async def __aenter__(self) -> FakeProvider:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def fail(
        self,
        kind: EntityKind,
        parent_id: str | None,
        *errors: BaseException,
        cursor: Any = None,
    ) -> None:
        """Queue errors for the page of ``kind``/``parent_id`` at ``cursor``."""
        self.failures.setdefault((kind, parent_id, cursor), []).extend(errors)

    def calls_for(self, kind: EntityKind, parent_id: str | None = None) -> list[Any]:
        """Cursors requested for one stream, in call order."""
        return [
            cursor
            for call_kind, _, call_parent, cursor in self.calls
            if call_kind is kind and call_parent == parent_id
        ]

    def _items(self, kind: EntityKind, game: str, parent_id: str | None) -> list[Any]:
        if kind is EntityKind.GAMES:
            return self.catalog["games"]
        if kind is EntityKind.SETS:
            return self.catalog["sets"].get(game, [])
        return self.catalog[kind.value].get(parent_id, [])

    async def list_page(
        self,
        kind: EntityKind,
        game: str,
        parent_id: str | None = None,
        cursor: Any = None,
    ) -> Page:
        self.calls.append((kind, game, parent_id, cursor))
        queued = self.failures.get((kind, parent_id, cursor))
        if queued:
            raise queued.pop(0)

        items = self._items(kind, game, parent_id)
        start = int(cursor or 0)
        end = start + self.page_size
        next_cursor = str(end) if end < len(items) else None
        return Page(items=list(items[start:end]), next_cursor=next_cursor, total=len(items))

    async def aclose(self) -> None:
        self.closed = True


@dataclass
class RunResult:
    """Outcome of one orchestrated run."""

    terminal: SyncEvent
    sink: ListEventSink
    orchestrator: SyncOrchestrator

    @property
    def events(self) -> list[SyncEvent]:
        return self.sink.events

    def types(self) -> list[str]:
        return [event.type.value for event in self.sink.events]


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Test settings on temporary databases, installed as the process settings."""
    test_settings = Settings(
        catalog_db_path=tmp_path / "catalog.sqlite",
        shadow_db_path=tmp_path / "catalog_shadow.sqlite",
        provider_api_key="test-key",
        provider_base_url="https://provider.test/v1",
        provider_min_request_interval_ms=0,
        retry_max_attempts=3,
        retry_base_delay_seconds=0.01,
        retry_jitter=0.0,
        upsert_chunk_size=2,
    )
    monkeypatch.setattr(config, "_settings", test_settings)
    return test_settings


@pytest.fixture
async def stores(settings: Settings) -> AsyncGenerator[CatalogStores, None]:
    """Open the live catalog stores on a temporary database."""
    opened = await CatalogStores.open(settings.catalog_db_path)
    yield opened
    await opened.close()


@pytest.fixture
def provider() -> FakeProvider:
    """Provider serving the sample catalog in pages of two."""
    return FakeProvider()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested through the fake sleep."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    """Sleep that records its delay instead of waiting."""

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


@pytest.fixture
def run_sync(provider: FakeProvider, stores: CatalogStores, settings: Settings, fake_sleep):
    """Run the orchestrator against the fake provider and temporary stores."""

    async def _run(
        *games: str,
        force: bool = False,
        mode: SyncMode = SyncMode.LIVE,
        client: Any = None,
        checkpoints: Any = None,
        catalog: Any = None,
        sink: ListEventSink | None = None,
        cancel_token: CancellationToken | None = None,
        run_settings: Settings | None = None,
    ) -> RunResult:
        sink = sink or ListEventSink()
        orchestrator = SyncOrchestrator(
            client or provider,
            checkpoints or stores.checkpoints,
            catalog or stores.catalog,
            sink,
            jobs=stores.jobs,
            settings=run_settings or settings,
            mode=mode,
            cancel_token=cancel_token,
            sleep=fake_sleep,
        )
        request = SyncRequest(
            provider=settings.provider_name,
            games=list(games or ("pokemon",)),
            force=force,
            mode=mode,
        )
        terminal = await orchestrator.run(request)
        return RunResult(terminal, sink, orchestrator)

    return _run
