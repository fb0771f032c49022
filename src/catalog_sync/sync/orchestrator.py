"""Sync orchestrator: drives games -> sets -> cards -> variants for a run.

Within a paged stream every page is written, then checkpointed, then
reported, in that order, so a crash at any point resumes from the last
committed page. Failures are contained as locally as possible: a bad record
is skipped, a stream that exhausts its retries is abandoned while its
siblings continue, and only an unavailable checkpoint store or catalog ends
the run.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any

from ..config import Settings, get_settings
from ..data.database.catalog import CatalogDatabase, CatalogRow
from ..data.database.checkpoints import CheckpointStore, StreamCursor
from ..data.database.jobs import JobStatus, SyncJobStore
from ..data.models.events import EventType, StreamFailure, SyncEvent
from ..data.models.records import EntityKind, parse_record
from ..data.models.requests import SyncMode, SyncRequest
from ..exceptions import (
    GuardrailError,
    InfrastructureError,
    RecordValidationError,
    SyncCancelledError,
    ValidationError,
)
from ..provider.backoff import BackoffPolicy, retry_async
from ..provider.base import Page, ProviderClient
from ..provider.justtcg import normalize_game_slug
from .channel import EventSink, ProgressChannel, QueueEventSink
from .guardrail import GuardrailPass
from .state import RUN_SCOPE, SyncState, transition
from .transform import to_row

logger = logging.getLogger(__name__)

GAMES_STREAM = "games"
SETS_STREAM = "sets"
# Marks a game's pass through sets, cards and variants as finished
PASS_STREAM = "pass"


def cards_stream(set_id: str) -> str:
    return f"cards:{set_id}"


def variants_stream(card_id: str) -> str:
    return f"variants:{card_id}"


def resolve_games(request: SyncRequest, settings: Settings) -> list[str]:
    """Normalize and validate the requested games, keeping request order.

    Raises:
        ValidationError: For an unknown provider or unsupported game.
    """
    if request.provider != settings.provider_name:
        raise ValidationError(
            f"Unknown provider '{request.provider}', expected '{settings.provider_name}'"
        )
    games: list[str] = []
    for slug in request.games:
        game = normalize_game_slug(slug)
        if game not in games:
            games.append(game)
    invalid = [game for game in games if game not in settings.supported_games]
    if invalid:
        raise ValidationError(
            f"Unsupported game(s): {', '.join(invalid)}. "
            f"Valid games: {', '.join(settings.supported_games)}"
        )
    return games


class CancellationToken:
    """Cooperative cancellation, checked between pages."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError()


@dataclass(frozen=True)
class StreamSpec:
    """One paginated provider stream and where its rows belong."""

    kind: EntityKind
    game: str
    stream_key: str
    parent_id: str | None = None  # provider id of the parent, sent to the provider
    parent_key: str | None = None  # local id of the parent, stored on the rows


@dataclass
class StreamOutcome:
    """What happened to one stream in this run."""

    written: int = 0
    skipped: bool = False  # already complete from an interrupted earlier pass
    observed: dict[str, str | None] | None = None  # set only when seen start to end
    failure: StreamFailure | None = None


@dataclass
class GameSummary:
    """Counts reported in GAME_DONE."""

    sets: int = 0
    cards: int = 0
    variants: int = 0
    failures: list[StreamFailure] = field(default_factory=list)


class SyncOrchestrator:
    """Runs one sync invocation against injected collaborators.

    Args:
        client: Provider client the catalog is read from.
        checkpoints: Checkpoint store for stream cursors.
        catalog: Upsert gateway for the local catalog.
        sink: Receives the run's progress events.
        jobs: Optional sync job bookkeeping.
        settings: Chunk size, fan-out and guardrail options.
        policy: Page-level retry policy. Defaults from settings, or to a
            single attempt for clients that retry their own requests.
        mode: Recorded on events and jobs.
        cancel_token: Checked between pages.
    """

    def __init__(
        self,
        client: ProviderClient,
        checkpoints: CheckpointStore,
        catalog: CatalogDatabase,
        sink: EventSink,
        *,
        jobs: SyncJobStore | None = None,
        settings: Settings | None = None,
        policy: BackoffPolicy | None = None,
        mode: SyncMode = SyncMode.LIVE,
        cancel_token: CancellationToken | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self._client = client
        self._checkpoints = checkpoints
        self._catalog = catalog
        self._channel = ProgressChannel(sink)
        self._jobs = jobs
        self._settings = settings or get_settings()
        if policy is None:
            policy = BackoffPolicy.from_settings(self._settings)
            if getattr(client, "retries_requests", False):
                policy = replace(policy, max_attempts=1)
        self._policy = policy
        self._mode = mode
        self.cancel_token = cancel_token or CancellationToken()
        self._sleep = sleep
        self._guardrail = GuardrailPass(catalog)

        self.run_id = uuid.uuid4().hex
        self.state = SyncState()
        self._provider = self._settings.provider_name

    # ─────────────────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────────────────

    async def run(self, request: SyncRequest) -> SyncEvent:
        """Run the whole pipeline and return the terminal event.

        Every outcome, including failures, is reported through the sink; this
        only raises if the task itself is cancelled.
        """
        try:
            games = resolve_games(request, self._settings)
        except ValidationError as e:
            logger.warning("Rejected sync request: %s", e.message)
            return await self._emit(EventType.ERROR, error=e.message, partial=False)

        logger.info(
            "Sync run %s started: provider=%s mode=%s games=%s",
            self.run_id,
            self._provider,
            self._mode.value,
            games,
        )
        try:
            await self._emit(
                EventType.START, provider=self._provider, mode=self._mode.value, games=games
            )
            if request.force:
                for game in games:
                    await self._checkpoints.clear(self._provider, game)

            await self._sync_games(games)

            totals = GameSummary()
            for game in games:
                summary = await self._sync_game(game)
                totals.sets += summary.sets
                totals.cards += summary.cards
                totals.variants += summary.variants
                totals.failures.extend(summary.failures)

            logger.info(
                "Sync run %s complete: %d sets, %d cards, %d variants, %d failed streams",
                self.run_id,
                totals.sets,
                totals.cards,
                totals.variants,
                len(totals.failures),
            )
            return await self._emit(
                EventType.COMPLETE,
                sets=totals.sets,
                cards=totals.cards,
                variants=totals.variants,
                failures=totals.failures,
            )
        except SyncCancelledError:
            logger.warning("Sync run %s cancelled", self.run_id)
            return await self._emit_fatal("cancelled")
        except InfrastructureError as e:
            logger.error("Sync run %s aborted: %s", self.run_id, e.message)
            return await self._emit_fatal(e.message)
        except asyncio.CancelledError:
            await self._channel.close()
            raise
        except Exception as e:
            logger.exception("Sync run %s crashed", self.run_id)
            return await self._emit_fatal(str(e))

    # ─────────────────────────────────────────────────────────────────────────
    # Phases
    # ─────────────────────────────────────────────────────────────────────────

    async def _sync_games(self, games: list[str]) -> None:
        """Games stream, once per run. Ensures every requested game has a row."""
        await self._emit(EventType.PHASE_START, game=RUN_SCOPE, phase=EntityKind.GAMES.value)
        spec = StreamSpec(EntityKind.GAMES, RUN_SCOPE, GAMES_STREAM)
        outcome = await self._run_stream(spec, restart_if_complete=True)

        listed: set[str] = set()
        if outcome.observed is not None:
            listed = set(outcome.observed)
            await self._catalog.deactivate_games(self._provider, listed)

        for game in games:
            if game in listed:
                continue
            await self._catalog.ensure_game(self._provider, game, run_id=self.run_id)
            if outcome.observed is not None:
                await self._emit(
                    EventType.WARNING,
                    game=game,
                    phase=EntityKind.GAMES.value,
                    message=f"Game '{game}' is not listed by {self._provider}",
                )

    async def _sync_game(self, game: str) -> GameSummary:
        summary = GameSummary()
        await self._emit(EventType.START_GAME, game=game)
        await self._begin_pass(game)

        # Sets
        await self._emit(EventType.PHASE_START, game=game, phase=EntityKind.SETS.value)
        job_id = await self._start_job(game, EntityKind.SETS)
        try:
            outcome = await self._run_stream(StreamSpec(EntityKind.SETS, game, SETS_STREAM))
            if outcome.failure:
                summary.failures.append(outcome.failure)
            await self._guard_sets(game, outcome)
        except BaseException as e:
            await self._fail_job(job_id, e)
            raise
        await self._finish_job(job_id, outcome.written, summary.failures)

        # Cards, one stream per known set
        await self._emit(EventType.PHASE_START, game=game, phase=EntityKind.CARDS.value)
        set_refs = await self._catalog.list_set_refs(self._provider, game)
        card_specs = [
            StreamSpec(EntityKind.CARDS, game, cards_stream(set_id), provider_id, set_id)
            for set_id, provider_id in set_refs
        ]
        summary.failures.extend(await self._run_phase(game, EntityKind.CARDS, card_specs))

        # Variants, one stream per known card
        await self._emit(EventType.PHASE_START, game=game, phase=EntityKind.VARIANTS.value)
        card_ids = await self._catalog.list_card_ids(self._provider, game)
        variant_specs = [
            StreamSpec(EntityKind.VARIANTS, game, variants_stream(card_id), card_id, card_id)
            for card_id in card_ids
        ]
        summary.failures.extend(await self._run_phase(game, EntityKind.VARIANTS, variant_specs))

        if not summary.failures:
            await self._checkpoints.save(
                self._provider, game, PASS_STREAM, StreamCursor(complete=True)
            )

        summary.sets = await self._catalog.count(EntityKind.SETS, self._provider, game)
        summary.cards = await self._catalog.count(EntityKind.CARDS, self._provider, game)
        summary.variants = await self._catalog.count(EntityKind.VARIANTS, self._provider, game)
        await self._emit(
            EventType.GAME_DONE,
            game=game,
            sets=summary.sets,
            cards=summary.cards,
            variants=summary.variants,
            failures=summary.failures,
        )
        return summary

    async def _begin_pass(self, game: str) -> None:
        """Resume from the game's stream checkpoints unless its last pass finished.

        Only a completed pass marker clears the checkpoints. Without a marker
        the stored stream checkpoints are trusted as they are.
        """
        marker = await self._checkpoints.load(self._provider, game, PASS_STREAM)
        if marker is not None and marker.complete:
            await self._checkpoints.clear(self._provider, game)
        elif marker is not None:
            logger.info("Resuming interrupted pass for %s", game)
            return
        await self._checkpoints.save(self._provider, game, PASS_STREAM, StreamCursor())

    async def _run_phase(
        self, game: str, kind: EntityKind, specs: list[StreamSpec]
    ) -> list[StreamFailure]:
        """Fan out over child streams with bounded concurrency."""
        failures: list[StreamFailure] = []
        done = 0
        job_id = await self._start_job(game, kind)

        async def handle(spec: StreamSpec) -> None:
            nonlocal done
            outcome = await self._run_stream(spec)
            if outcome.failure:
                failures.append(outcome.failure)
            elif kind is EntityKind.CARDS and self._settings.guardrail_cards:
                await self._guard_cards(spec, outcome)
            done += 1
            if self._jobs is not None:
                await self._jobs.update_progress(job_id, done, len(specs))

        try:
            await self._fan_out(specs, handle)
        except BaseException as e:
            await self._fail_job(job_id, e)
            raise
        await self._finish_job(job_id, done, failures)
        return failures

    async def _fan_out(
        self, specs: list[StreamSpec], handle: Callable[[StreamSpec], Awaitable[None]]
    ) -> None:
        """Run ``handle`` for every stream on at most ``fanout_concurrency`` workers."""
        concurrency = min(self._settings.fanout_concurrency, len(specs))
        if concurrency <= 1:
            for spec in specs:
                await handle(spec)
            return

        pending = iter(specs)

        async def worker() -> None:
            for spec in pending:
                await handle(spec)

        workers = [asyncio.create_task(worker()) for _ in range(concurrency)]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Streams
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_stream(
        self, spec: StreamSpec, *, restart_if_complete: bool = False
    ) -> StreamOutcome:
        """Page through one stream from its checkpoint to the end.

        Raises:
            InfrastructureError: If a page cannot be committed or checkpointed.
            SyncCancelledError: If the run was cancelled.
        """
        checkpoint = await self._checkpoints.load(self._provider, spec.game, spec.stream_key)
        if checkpoint is not None and checkpoint.complete:
            if not restart_if_complete:
                logger.debug("Stream %s/%s already complete", spec.game, spec.stream_key)
                return StreamOutcome(skipped=True)
            checkpoint = None

        cursor = checkpoint.next if checkpoint is not None else None
        outcome = StreamOutcome(observed={} if cursor is None else None)

        while True:
            self.cancel_token.raise_if_cancelled()
            try:
                page = await self._fetch_page(spec, cursor)
            except Exception as e:
                logger.warning("Abandoning stream %s/%s: %s", spec.game, spec.stream_key, e)
                outcome.failure = StreamFailure(game=spec.game, stream=spec.stream_key, error=str(e))
                outcome.observed = None
                await self._emit(
                    EventType.WARNING,
                    game=spec.game,
                    phase=spec.kind.value,
                    stream=spec.stream_key,
                    error=str(e),
                    message="Stream abandoned after retries",
                )
                return outcome

            rows = await self._parse_page(spec, page)
            if outcome.observed is not None and spec.kind is not EntityKind.VARIANTS:
                outcome.observed.update((row.id, row.name) for row in rows)

            if rows:
                result = await self._catalog.upsert_batch(
                    spec.kind,
                    rows,
                    run_id=self.run_id,
                    chunk_size=self._settings.upsert_chunk_size,
                    keep_card_names=self._settings.guardrail_cards,
                )
                outcome.written += result.written
                for record_id in result.rejected:
                    await self._emit(
                        EventType.WARNING,
                        game=spec.game,
                        phase=spec.kind.value,
                        stream=spec.stream_key,
                        record_id=record_id,
                        message="Skipped record whose parent is not in the catalog",
                    )

            next_cursor = page.next_cursor
            await self._checkpoints.save(
                self._provider,
                spec.game,
                spec.stream_key,
                StreamCursor(next=next_cursor, complete=next_cursor is None),
            )
            await self._emit(
                EventType.UPSERT_PROGRESS,
                game=spec.game,
                phase=spec.kind.value,
                stream=spec.stream_key,
                count=outcome.written,
                total=page.total,
            )
            if next_cursor is None:
                return outcome
            cursor = next_cursor

    async def _fetch_page(self, spec: StreamSpec, cursor: Any) -> Page:
        return await retry_async(
            lambda: self._client.list_page(spec.kind, spec.game, spec.parent_id, cursor),
            self._policy,
            description=f"{spec.kind.value} page of {spec.game}/{spec.stream_key}",
            sleep=self._sleep,
        )

    async def _parse_page(self, spec: StreamSpec, page: Page) -> list[CatalogRow]:
        """Validate page items; invalid records are reported and skipped."""
        rows: list[CatalogRow] = []
        for item in page.items:
            try:
                view = parse_record(spec.kind, item)
            except RecordValidationError as e:
                logger.warning("Skipping invalid record in %s: %s", spec.stream_key, e.message)
                await self._emit(
                    EventType.WARNING,
                    game=spec.game,
                    phase=spec.kind.value,
                    stream=spec.stream_key,
                    record_id=e.record_id,
                    error=e.reason,
                    message="Skipped invalid record",
                )
                continue
            rows.append(to_row(spec.kind, self._provider, spec.game, spec.parent_key, view))
        return rows

    # ─────────────────────────────────────────────────────────────────────────
    # Guardrails
    # ─────────────────────────────────────────────────────────────────────────

    async def _guard_sets(self, game: str, outcome: StreamOutcome) -> None:
        if outcome.observed is None:
            reason = "stream failed" if outcome.failure else "stream resumed from a checkpoint"
            await self._emit(
                EventType.WARNING,
                game=game,
                phase=EntityKind.SETS.value,
                message=f"Guardrail skipped: {reason}",
            )
            return
        try:
            result = await self._guardrail.run(
                EntityKind.SETS, self._provider, game, outcome.observed, run_id=self.run_id
            )
        except GuardrailError as e:
            logger.warning("%s", e.message)
            await self._emit(
                EventType.WARNING, game=game, phase=EntityKind.SETS.value, error=e.message
            )
            return
        await self._emit(
            EventType.GUARDRAIL_RESULT,
            game=game,
            phase=EntityKind.SETS.value,
            stream=SETS_STREAM,
            rolled_back=result.rolled_back,
            not_found=result.not_found,
        )

    async def _guard_cards(self, spec: StreamSpec, outcome: StreamOutcome) -> None:
        if outcome.observed is None:
            return
        try:
            result = await self._guardrail.run(
                EntityKind.CARDS,
                self._provider,
                spec.game,
                outcome.observed,
                run_id=self.run_id,
                set_id=spec.parent_key,
            )
        except GuardrailError as e:
            logger.warning("%s", e.message)
            await self._emit(
                EventType.WARNING,
                game=spec.game,
                phase=EntityKind.CARDS.value,
                stream=spec.stream_key,
                error=e.message,
            )
            return
        await self._emit(
            EventType.GUARDRAIL_RESULT,
            game=spec.game,
            phase=EntityKind.CARDS.value,
            stream=spec.stream_key,
            rolled_back=result.rolled_back,
            not_found=result.not_found,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Events and jobs
    # ─────────────────────────────────────────────────────────────────────────

    async def _emit(self, event_type: EventType, **fields: Any) -> SyncEvent:
        event = SyncEvent(type=event_type, **fields)
        self.state = transition(self.state, event)
        await self._channel.emit(event)
        return event

    async def _emit_fatal(self, error: str) -> SyncEvent:
        if self._channel.closed and self._channel.terminal_event is not None:
            return self._channel.terminal_event
        return await self._emit(EventType.ERROR, error=error, partial=True)

    async def _start_job(self, game: str, kind: EntityKind) -> str | None:
        if self._jobs is None:
            return None
        return await self._jobs.start_job(
            self.run_id, self._provider, self._mode.value, game, kind.value
        )

    async def _finish_job(
        self, job_id: str | None, current: int, failures: list[StreamFailure]
    ) -> None:
        if self._jobs is None:
            return
        await self._jobs.update_progress(job_id, current)
        if failures:
            await self._jobs.finish_job(
                job_id, JobStatus.FAILED, f"{len(failures)} stream(s) abandoned"
            )
        else:
            await self._jobs.finish_job(job_id, JobStatus.COMPLETED)

    async def _fail_job(self, job_id: str | None, error: BaseException) -> None:
        if self._jobs is None:
            return
        if isinstance(error, (SyncCancelledError, asyncio.CancelledError)):
            await self._jobs.finish_job(job_id, JobStatus.CANCELLED, "cancelled")
        else:
            await self._jobs.finish_job(job_id, JobStatus.FAILED, str(error))


async def stream_run(
    build: Callable[[EventSink], SyncOrchestrator], request: SyncRequest
) -> AsyncIterator[SyncEvent]:
    """Run a sync in the background and yield its events as they are emitted.

    If the consumer stops early the run is cancelled at its next page
    boundary, leaving consistent checkpoints behind.
    """
    sink = QueueEventSink()
    orchestrator = build(sink)
    task = asyncio.create_task(orchestrator.run(request))
    try:
        async for event in sink:
            yield event
    finally:
        if not task.done():
            orchestrator.cancel_token.cancel()
        await task
