"""Tests for SyncOrchestrator runs against the fake provider."""

from __future__ import annotations

from contextlib import aclosing

import pytest

from catalog_sync.config import Settings
from catalog_sync.data.database import (
    CatalogDatabase,
    CatalogStores,
    CheckpointStore,
    DatabaseManager,
    GameRow,
    JobStatus,
    StreamCursor,
)
from catalog_sync.data.models import EntityKind, EventType, SyncMode, SyncRequest
from catalog_sync.exceptions import (
    CheckpointStoreError,
    PermanentProviderError,
    TransientProviderError,
    UpsertGatewayError,
    ValidationError,
)
from catalog_sync.sync import (
    CancellationToken,
    ListEventSink,
    SyncOrchestrator,
    SyncStatus,
    resolve_games,
    stream_run,
)

PROVIDER = "justtcg"


class FailingCheckpointStore(CheckpointStore):
    """Fails the first save of one stream."""

    def __init__(self, db, fail_key: str):
        super().__init__(db)
        self.fail_key = fail_key
        self.tripped = False

    async def save(self, provider, game, stream_key, cursor):
        if stream_key == self.fail_key and not self.tripped:
            self.tripped = True
            raise CheckpointStoreError(stream_key, "disk I/O error")
        await super().save(provider, game, stream_key, cursor)


class BrokenCatalog(CatalogDatabase):
    """Every batch write fails."""

    async def upsert_batch(self, kind, rows, *, run_id, **options):
        raise UpsertGatewayError(kind.value, "database is locked")


class CancellingSink(ListEventSink):
    """Cancels the run after the first page of the cards phase."""

    def __init__(self, token: CancellationToken):
        super().__init__()
        self.token = token

    async def send(self, event):
        await super().send(event)
        if event.type is EventType.UPSERT_PROGRESS and event.phase == "cards":
            self.token.cancel()


class TestFreshRun:
    """Tests for a run against an empty catalog."""

    async def test_completes_with_store_totals(self, run_sync):
        """A fresh run ends with COMPLETE summing every level of the game."""
        result = await run_sync("pokemon")

        assert result.terminal.type is EventType.COMPLETE
        assert result.terminal.sets == 3
        assert result.terminal.cards == 4
        assert result.terminal.variants == 3
        assert result.terminal.failures == []

    async def test_event_order(self, run_sync):
        """Events follow games, then sets, cards and variants of each game."""
        result = await run_sync("pokemon")

        assert result.types() == [
            "START",
            "PHASE_START",
            "UPSERT_PROGRESS",
            "START_GAME",
            "PHASE_START",
            "UPSERT_PROGRESS",
            "UPSERT_PROGRESS",
            "GUARDRAIL_RESULT",
            "PHASE_START",
            "UPSERT_PROGRESS",
            "UPSERT_PROGRESS",
            "UPSERT_PROGRESS",
            "UPSERT_PROGRESS",
            "PHASE_START",
            "UPSERT_PROGRESS",
            "UPSERT_PROGRESS",
            "UPSERT_PROGRESS",
            "UPSERT_PROGRESS",
            "GAME_DONE",
            "COMPLETE",
        ]
        phases = [e.phase for e in result.sink.of_type("PHASE_START")]
        assert phases == ["games", "sets", "cards", "variants"]

    async def test_single_terminal_event_and_sink_closed_once(self, run_sync):
        """Exactly one terminal event, last, and the sink is closed once."""
        result = await run_sync("pokemon")

        terminal = [e for e in result.events if e.is_terminal]
        assert terminal == [result.events[-1]]
        assert result.sink.close_count == 1
        assert result.orchestrator.state.status is SyncStatus.COMPLETE

    async def test_records_written_with_qualified_ids(self, run_sync, stores: CatalogStores):
        """Sets get provider-qualified ids; cards and variants keep their parents."""
        await run_sync("pokemon")
        catalog = stores.catalog

        base = await catalog.get_set(PROVIDER, "pokemon", "justtcg-base1")
        assert base is not None
        assert base.provider_id == "base1"
        assert base.name == "Base Set"
        assert base.release_date == "1999-01-09"
        assert base.total_count == 102

        card = await catalog.get_card(PROVIDER, "base1-4")
        assert card is not None
        assert card.set_id == "justtcg-base1"
        assert card.external_product_ref == "42382"

        variant = await catalog.get_variant(PROVIDER, "base1-2:English:Holofoil:Near Mint")
        assert variant is not None
        assert variant.card_id == "base1-2"
        assert variant.market_price == 120.5

    async def test_provider_receives_parent_provider_ids(self, run_sync, provider):
        """Card streams are requested with the set's provider id."""
        await run_sync("pokemon")

        assert provider.calls_for(EntityKind.CARDS, "base1") == [None, "2"]
        assert provider.calls_for(EntityKind.CARDS, "fossil") == [None]
        assert provider.calls_for(EntityKind.VARIANTS, "base1-4") == [None]

    async def test_checkpoints_complete(self, run_sync, stores: CatalogStores):
        """Every stream and the pass marker end complete."""
        await run_sync("pokemon")

        rows = await stores.checkpoints.list_checkpoints(PROVIDER)
        assert len(rows) == 10
        assert all(row.cursor.complete for row in rows)
        assert await stores.checkpoints.load(PROVIDER, "pokemon", "pass") == StreamCursor(
            complete=True
        )

    async def test_jobs_recorded_per_phase(self, run_sync, stores: CatalogStores):
        """Each phase of each game gets a completed job."""
        result = await run_sync("pokemon")

        jobs = await stores.jobs.list_jobs(run_id=result.orchestrator.run_id)
        assert {job.phase for job in jobs} == {"sets", "cards", "variants"}
        assert all(job.status is JobStatus.COMPLETED for job in jobs)
        cards_job = next(job for job in jobs if job.phase == "cards")
        assert cards_job.progress_current == 3
        assert cards_job.progress_total == 3

    async def test_multiple_games_in_request_order(self, run_sync):
        """Games run in request order and COMPLETE sums them."""
        result = await run_sync("pokemon", "magic-the-gathering")

        assert result.events[0].games == ["pokemon", "mtg"]
        done = result.sink.of_type("GAME_DONE")
        assert [e.game for e in done] == ["pokemon", "mtg"]
        assert done[1].sets == 1
        assert done[1].cards == 1
        assert result.terminal.sets == 4
        assert result.terminal.cards == 5

    async def test_concurrent_fan_out(self, run_sync, settings: Settings):
        """Bounded concurrency gives the same catalog as sequential fan-out."""
        concurrent = settings.model_copy(update={"fanout_concurrency": 3})
        result = await run_sync("pokemon", run_settings=concurrent)

        assert result.terminal.type is EventType.COMPLETE
        assert (result.terminal.sets, result.terminal.cards, result.terminal.variants) == (3, 4, 3)


class TestRerun:
    """Tests for running again over an existing catalog."""

    async def test_rerun_is_idempotent(self, run_sync, stores: CatalogStores):
        """A second run leaves the same records and keeps their creating run."""
        first = await run_sync("pokemon")
        second = await run_sync("pokemon")

        assert second.terminal.type is EventType.COMPLETE
        assert (second.terminal.sets, second.terminal.cards, second.terminal.variants) == (
            3,
            4,
            3,
        )
        base = await stores.catalog.get_set(PROVIDER, "pokemon", "justtcg-base1")
        assert base.created_run == first.orchestrator.run_id

    async def test_completed_pass_refetches_everything(self, run_sync, provider):
        """After a finished pass the next run starts every stream over."""
        await run_sync("pokemon")
        await run_sync("pokemon")

        assert provider.calls_for(EntityKind.CARDS, "base1") == [None, "2", None, "2"]


class TestResume:
    """Tests for resuming interrupted runs from checkpoints."""

    async def test_checkpoint_failure_is_fatal_and_rerun_refetches_page_once(
        self, run_sync, stores: CatalogStores, provider
    ):
        """A page committed without its checkpoint is fetched again exactly once."""
        failing = FailingCheckpointStore(stores.checkpoints.connection, "cards:justtcg-base1")
        first = await run_sync("pokemon", checkpoints=failing)

        assert first.terminal.type is EventType.ERROR
        assert first.terminal.partial is True
        assert "Checkpoint store failure" in first.terminal.error
        # The page was committed before its checkpoint failed
        assert await stores.catalog.count(EntityKind.CARDS, PROVIDER, "pokemon") == 2

        second = await run_sync("pokemon")

        assert second.terminal.type is EventType.COMPLETE
        assert provider.calls_for(EntityKind.CARDS, "base1") == [None, None, "2"]
        assert await stores.catalog.count(EntityKind.CARDS, PROVIDER, "pokemon") == 4

    async def test_resumed_run_skips_complete_streams(self, run_sync, provider):
        """Streams completed before the interruption are not fetched again."""
        provider.fail(EntityKind.CARDS, "jungle", PermanentProviderError("forbidden", 403))
        await run_sync("pokemon")
        second = await run_sync("pokemon")

        assert second.terminal.type is EventType.COMPLETE
        assert provider.calls_for(EntityKind.SETS) == [None, "2"]
        assert provider.calls_for(EntityKind.CARDS, "base1") == [None, "2"]
        assert provider.calls_for(EntityKind.CARDS, "jungle") == [None, None]

    async def test_resumed_sets_stream_skips_guardrail(self, run_sync, provider):
        """The guardrail needs a start-to-end snapshot, which a resume lacks."""
        provider.fail(EntityKind.CARDS, "jungle", PermanentProviderError("forbidden", 403))
        await run_sync("pokemon")
        second = await run_sync("pokemon")

        assert second.sink.of_type("GUARDRAIL_RESULT") == []
        skipped = [
            e
            for e in second.sink.of_type("WARNING")
            if e.message and e.message.startswith("Guardrail skipped")
        ]
        assert len(skipped) == 1

    async def test_stream_checkpoints_resume_without_pass_marker(
        self, run_sync, stores: CatalogStores, provider
    ):
        """A card stream stopped mid-way resumes at its next page; finished ones are skipped."""
        await run_sync("pokemon")
        checkpoints = stores.checkpoints
        await checkpoints.clear(PROVIDER, "pokemon")
        await checkpoints.save(PROVIDER, "pokemon", "sets", StreamCursor(complete=True))
        await checkpoints.save(
            PROVIDER, "pokemon", "cards:justtcg-jungle", StreamCursor(complete=True)
        )
        await checkpoints.save(PROVIDER, "pokemon", "cards:justtcg-base1", StreamCursor(next="2"))
        provider.calls.clear()

        result = await run_sync("pokemon")

        assert result.terminal.type is EventType.COMPLETE
        assert provider.calls_for(EntityKind.SETS) == []
        assert provider.calls_for(EntityKind.CARDS, "jungle") == []
        assert provider.calls_for(EntityKind.CARDS, "base1") == ["2"]
        assert provider.calls_for(EntityKind.CARDS, "fossil") == [None]
        assert (result.terminal.sets, result.terminal.cards, result.terminal.variants) == (3, 4, 3)
        assert await checkpoints.load(PROVIDER, "pokemon", "pass") == StreamCursor(complete=True)

    async def test_force_clears_checkpoints(self, run_sync, provider):
        """force restarts every stream of the requested games."""
        provider.fail(EntityKind.CARDS, "jungle", PermanentProviderError("forbidden", 403))
        await run_sync("pokemon")
        await run_sync("pokemon", force=True)

        assert provider.calls_for(EntityKind.CARDS, "base1") == [None, "2", None, "2"]


class TestGuardrail:
    """Tests for drift reconciliation after the sets stream."""

    async def test_renamed_set_is_nulled_then_refilled(
        self, run_sync, stores: CatalogStores, provider
    ):
        """A drifted name is nulled, then refilled by the following run."""
        await run_sync("pokemon")
        provider.catalog["sets"]["pokemon"][0]["name"] = "Base Set (Unlimited)"

        second = await run_sync("pokemon")
        guard = second.sink.of_type("GUARDRAIL_RESULT")[0]
        assert guard.rolled_back == 1
        assert guard.not_found == 0
        base = await stores.catalog.get_set(PROVIDER, "pokemon", "justtcg-base1")
        assert base.name is None

        third = await run_sync("pokemon")
        assert third.sink.of_type("GUARDRAIL_RESULT")[0].rolled_back == 0
        base = await stores.catalog.get_set(PROVIDER, "pokemon", "justtcg-base1")
        assert base.name == "Base Set (Unlimited)"

    async def test_cosmetic_rename_is_not_drift(
        self, run_sync, stores: CatalogStores, provider
    ):
        """Case and punctuation changes normalize to the same name."""
        await run_sync("pokemon")
        provider.catalog["sets"]["pokemon"][0]["name"] = "BASE-SET!"

        second = await run_sync("pokemon")

        assert second.sink.of_type("GUARDRAIL_RESULT")[0].rolled_back == 0
        base = await stores.catalog.get_set(PROVIDER, "pokemon", "justtcg-base1")
        assert base.name == "Base Set"

    async def test_missing_set_flagged_not_deleted(
        self, run_sync, stores: CatalogStores, provider
    ):
        """Sets missing upstream are flagged, and unflagged when they return."""
        await run_sync("pokemon")
        fossil = provider.catalog["sets"]["pokemon"].pop()

        second = await run_sync("pokemon")
        assert second.sink.of_type("GUARDRAIL_RESULT")[0].not_found == 1
        row = await stores.catalog.get_set(PROVIDER, "pokemon", "justtcg-fossil")
        assert row is not None
        assert row.not_found_in_latest_sync is True

        provider.catalog["sets"]["pokemon"].append(fossil)
        await run_sync("pokemon")
        row = await stores.catalog.get_set(PROVIDER, "pokemon", "justtcg-fossil")
        assert row.not_found_in_latest_sync is False

    async def test_card_guardrail_flags_missing_cards(
        self, run_sync, stores: CatalogStores, provider, settings: Settings
    ):
        """With card guardrails on, cards missing from their set are flagged."""
        guarded = settings.model_copy(update={"guardrail_cards": True})
        await run_sync("pokemon", run_settings=guarded)
        provider.catalog["cards"]["base1"] = [
            c for c in provider.catalog["cards"]["base1"] if c["id"] != "base1-15"
        ]

        second = await run_sync("pokemon", run_settings=guarded)

        results = {e.stream: e for e in second.sink.of_type("GUARDRAIL_RESULT")}
        assert results["cards:justtcg-base1"].not_found == 1
        card = await stores.catalog.get_card(PROVIDER, "base1-15")
        assert card.not_found_in_latest_sync is True

    async def test_card_guardrail_nulls_renamed_card(
        self, run_sync, stores: CatalogStores, provider, settings: Settings
    ):
        """With card guardrails on, a renamed card is nulled before the new name lands."""
        guarded = settings.model_copy(update={"guardrail_cards": True})
        await run_sync("pokemon", run_settings=guarded)
        provider.catalog["cards"]["base1"][0]["name"] = "Dark Charizard"

        second = await run_sync("pokemon", run_settings=guarded)

        results = {e.stream: e for e in second.sink.of_type("GUARDRAIL_RESULT")}
        assert results["cards:justtcg-base1"].rolled_back == 1
        card = await stores.catalog.get_card(PROVIDER, "base1-4")
        assert card.name is None
        assert card.set_id == "justtcg-base1"

        third = await run_sync("pokemon", run_settings=guarded)
        results = {e.stream: e for e in third.sink.of_type("GUARDRAIL_RESULT")}
        assert results["cards:justtcg-base1"].rolled_back == 0
        assert (await stores.catalog.get_card(PROVIDER, "base1-4")).name == "Dark Charizard"

    async def test_missing_set_counted_once(self, run_sync, provider):
        """A set still missing on the next run is not reported again."""
        await run_sync("pokemon")
        provider.catalog["sets"]["pokemon"].pop()

        second = await run_sync("pokemon")
        third = await run_sync("pokemon")

        assert second.sink.of_type("GUARDRAIL_RESULT")[0].not_found == 1
        assert third.sink.of_type("GUARDRAIL_RESULT")[0].not_found == 0


class TestFailures:
    """Tests for failure containment."""

    async def test_failed_stream_does_not_stop_siblings(
        self, run_sync, stores: CatalogStores, provider
    ):
        """A stream that fails permanently is reported while the rest complete."""
        provider.fail(EntityKind.CARDS, "jungle", PermanentProviderError("forbidden", 403))
        result = await run_sync("pokemon")

        assert result.terminal.type is EventType.COMPLETE
        assert [f.stream for f in result.terminal.failures] == ["cards:justtcg-jungle"]
        warnings = [e for e in result.sink.of_type("WARNING") if e.stream == "cards:justtcg-jungle"]
        assert len(warnings) == 1
        assert result.terminal.cards == 3
        assert await stores.checkpoints.load(PROVIDER, "pokemon", "pass") == StreamCursor()

        jobs = await stores.jobs.list_jobs(run_id=result.orchestrator.run_id)
        cards_job = next(job for job in jobs if job.phase == "cards")
        assert cards_job.status is JobStatus.FAILED

    async def test_transient_error_retried(self, run_sync, provider, sleeps):
        """A transient page error is retried with backoff."""
        provider.fail(EntityKind.SETS, None, TransientProviderError("unavailable", 503))
        result = await run_sync("pokemon")

        assert result.terminal.type is EventType.COMPLETE
        assert result.terminal.failures == []
        assert provider.calls_for(EntityKind.SETS) == [None, None, "2"]
        assert sleeps == [pytest.approx(0.01)]

    async def test_exhausted_retries_abandon_stream(self, run_sync, provider):
        """After the last attempt the stream is abandoned, not the run."""
        provider.fail(
            EntityKind.SETS,
            None,
            *(TransientProviderError("unavailable", 503) for _ in range(3)),
        )
        result = await run_sync("pokemon")

        assert result.terminal.type is EventType.COMPLETE
        assert [f.stream for f in result.terminal.failures] == ["sets"]
        assert any(
            e.message == "Guardrail skipped: stream failed" for e in result.sink.of_type("WARNING")
        )

    async def test_invalid_record_skipped(self, run_sync, provider):
        """Records that fail validation become warnings."""
        provider.catalog["sets"]["pokemon"].append({"id": "broken"})
        result = await run_sync("pokemon")

        assert result.terminal.type is EventType.COMPLETE
        assert result.terminal.sets == 3
        invalid = [e for e in result.sink.of_type("WARNING") if e.record_id == "broken"]
        assert len(invalid) == 1
        assert invalid[0].message == "Skipped invalid record"

    async def test_catalog_failure_is_fatal(self, run_sync, stores: CatalogStores):
        """An unavailable catalog ends the run with a partial ERROR."""
        broken = BrokenCatalog(stores.catalog.connection)
        result = await run_sync("pokemon", catalog=broken)

        assert result.types() == ["START", "PHASE_START", "ERROR"]
        assert result.terminal.partial is True
        assert "database is locked" in result.terminal.error
        assert await stores.checkpoints.load(PROVIDER, "*", "games") is None


class TestCancellation:
    """Tests for cooperative cancellation."""

    async def test_cancel_between_pages(
        self, run_sync, stores: CatalogStores, provider
    ):
        """Cancellation stops at a page boundary and leaves a resumable checkpoint."""
        token = CancellationToken()
        first = await run_sync("pokemon", sink=CancellingSink(token), cancel_token=token)

        assert first.terminal.type is EventType.ERROR
        assert first.terminal.error == "cancelled"
        assert first.terminal.partial is True
        assert await stores.checkpoints.load(
            PROVIDER, "pokemon", "cards:justtcg-base1"
        ) == StreamCursor(next="2")

        jobs = await stores.jobs.list_jobs(run_id=first.orchestrator.run_id)
        cards_job = next(job for job in jobs if job.phase == "cards")
        assert cards_job.status is JobStatus.CANCELLED

        second = await run_sync("pokemon")
        assert second.terminal.type is EventType.COMPLETE
        assert provider.calls_for(EntityKind.CARDS, "base1") == [None, "2"]

    async def test_stream_run_yields_until_terminal(
        self, provider, stores: CatalogStores, settings: Settings, fake_sleep
    ):
        """stream_run hands over every event and stops after the terminal one."""

        def build(sink):
            return SyncOrchestrator(
                provider, stores.checkpoints, stores.catalog, sink, settings=settings, sleep=fake_sleep
            )

        events = [event async for event in stream_run(build, SyncRequest(games=["pokemon"]))]

        assert events[0].type is EventType.START
        assert events[-1].type is EventType.COMPLETE

    async def test_stream_run_cancels_when_consumer_leaves(
        self, provider, stores: CatalogStores, settings: Settings, fake_sleep
    ):
        """Closing the event stream early cancels the run at its next page."""
        built: list[SyncOrchestrator] = []

        def build(sink):
            orchestrator = SyncOrchestrator(
                provider, stores.checkpoints, stores.catalog, sink, settings=settings, sleep=fake_sleep
            )
            built.append(orchestrator)
            return orchestrator

        async with aclosing(stream_run(build, SyncRequest(games=["pokemon"]))) as events:
            async for event in events:
                if event.type is EventType.START_GAME:
                    break

        assert built[0].cancel_token.cancelled
        assert built[0].state.status is SyncStatus.FAILED


class TestValidation:
    """Tests for request validation."""

    async def test_unsupported_game_single_error(self, run_sync, provider):
        """An invalid request emits one non-partial ERROR and touches nothing."""
        result = await run_sync("yugioh")

        assert result.types() == ["ERROR"]
        assert result.terminal.partial is False
        assert "yugioh" in result.terminal.error
        assert result.sink.close_count == 1
        assert provider.calls == []

    def test_resolve_games_maps_and_dedupes(self, settings: Settings):
        """Provider slugs map to internal ones and duplicates collapse."""
        request = SyncRequest(games=["Magic-The-Gathering", "mtg", "pokemon"])
        assert resolve_games(request, settings) == ["mtg", "pokemon"]

    def test_resolve_games_unknown_provider(self, settings: Settings):
        """Only the configured provider is accepted."""
        with pytest.raises(ValidationError, match="Unknown provider"):
            resolve_games(SyncRequest(provider="tcgplayer", games=["pokemon"]), settings)


class TestGamesPhase:
    """Tests for the games stream."""

    async def test_unlisted_games_deactivated(self, run_sync, stores: CatalogStores):
        """Games absent from a full games listing are marked inactive."""
        await stores.catalog.upsert_batch(
            EntityKind.GAMES,
            [GameRow(provider=PROVIDER, id="lorcana", provider_id="lorcana", name="Lorcana")],
            run_id="seed",
        )
        await run_sync("pokemon")

        lorcana = await stores.catalog.get_game(PROVIDER, "lorcana")
        assert lorcana.active is False
        mtg = await stores.catalog.get_game(PROVIDER, "mtg")
        assert mtg.active is True
        assert mtg.provider_id == "magic-the-gathering"

    async def test_requested_game_missing_upstream(self, run_sync, stores: CatalogStores):
        """A requested game the provider does not list still gets a row and a warning."""
        result = await run_sync("pokemon-japan")

        assert result.terminal.type is EventType.COMPLETE
        warnings = [e for e in result.sink.of_type("WARNING") if e.game == "pokemon-japan"]
        assert len(warnings) == 1
        game = await stores.catalog.get_game(PROVIDER, "pokemon-japan")
        assert game is not None
        assert game.name is None


class TestShadowMode:
    """Tests for shadow runs."""

    async def test_shadow_run_leaves_live_catalog_untouched(
        self, provider, stores: CatalogStores, settings: Settings, fake_sleep
    ):
        """A shadow run writes only to the shadow database."""
        manager = DatabaseManager(settings)
        shadow = await manager.stores(SyncMode.SHADOW)
        try:
            sink = ListEventSink()
            orchestrator = SyncOrchestrator(
                provider,
                shadow.checkpoints,
                shadow.catalog,
                sink,
                jobs=shadow.jobs,
                settings=settings,
                mode=SyncMode.SHADOW,
                sleep=fake_sleep,
            )
            terminal = await orchestrator.run(
                SyncRequest(games=["pokemon"], mode=SyncMode.SHADOW)
            )

            assert terminal.type is EventType.COMPLETE
            assert sink.events[0].mode == "shadow"
            assert shadow.path == settings.shadow_db_path
            assert await shadow.catalog.count(EntityKind.SETS, PROVIDER, "pokemon") == 3
            assert await stores.catalog.count(EntityKind.SETS, PROVIDER, "pokemon") == 0
            assert await stores.checkpoints.list_checkpoints(PROVIDER) == []
        finally:
            await manager.stop()
