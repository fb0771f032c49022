"""Run state machine.

The orchestrator never mutates its position directly: every event it emits
is folded into the state with ``transition``, which rejects events that do
not make sense in the current state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from ..data.models.events import EventType, SyncEvent
from ..data.models.records import EntityKind

# Phase order within a game. The games phase runs once per run, before any game.
PHASE_ORDER: tuple[EntityKind, ...] = (
    EntityKind.GAMES,
    EntityKind.SETS,
    EntityKind.CARDS,
    EntityKind.VARIANTS,
)

RUN_SCOPE = "*"


class SyncStatus(str, Enum):
    """Where a run stands."""

    IDLE = "idle"
    RUNNING_GAME = "running_game"
    RUNNING_PHASE = "running_phase"
    PAGING = "paging"
    GUARDRAIL = "guardrail"
    GAME_DONE = "game_done"
    COMPLETE = "complete"
    FAILED = "failed"


class InvalidTransitionError(RuntimeError):
    """Raised for an event that cannot happen in the current state."""

    def __init__(self, state: SyncState, event: SyncEvent):
        super().__init__(f"{event.type.value} not allowed in state {state.status.value}")
        self.state = state
        self.event = event


@dataclass(frozen=True)
class SyncState:
    """Immutable snapshot of a run's position in the pipeline."""

    status: SyncStatus = SyncStatus.IDLE
    started: bool = False
    game: str | None = None
    phase: EntityKind | None = None
    parent: str | None = None
    games_done: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in (SyncStatus.COMPLETE, SyncStatus.FAILED)


def _parent_of(stream: str | None) -> str | None:
    if stream and ":" in stream:
        return stream.split(":", 1)[1]
    return None


def _phase_of(event: SyncEvent) -> EntityKind | None:
    return EntityKind(event.phase) if event.phase else None


def transition(state: SyncState, event: SyncEvent) -> SyncState:
    """Fold one event into the run state.

    Raises:
        InvalidTransitionError: If the event is out of order.
    """
    if state.is_terminal:
        raise InvalidTransitionError(state, event)

    kind = event.type

    if kind is EventType.ERROR:
        return replace(state, status=SyncStatus.FAILED, started=True)

    if kind is EventType.START:
        if state.started:
            raise InvalidTransitionError(state, event)
        return replace(state, started=True)

    if not state.started:
        raise InvalidTransitionError(state, event)

    if kind is EventType.WARNING:
        return state

    if kind is EventType.START_GAME:
        in_game = state.game not in (None, RUN_SCOPE) and state.status is not SyncStatus.GAME_DONE
        if in_game or not event.game:
            raise InvalidTransitionError(state, event)
        return replace(
            state, status=SyncStatus.RUNNING_GAME, game=event.game, phase=None, parent=None
        )

    if kind is EventType.PHASE_START:
        phase = _phase_of(event)
        if phase is None:
            raise InvalidTransitionError(state, event)
        if phase is EntityKind.GAMES:
            if state.game is not None:
                raise InvalidTransitionError(state, event)
            return replace(
                state, status=SyncStatus.RUNNING_PHASE, game=RUN_SCOPE, phase=phase, parent=None
            )
        if event.game != state.game or state.status is SyncStatus.GAME_DONE:
            raise InvalidTransitionError(state, event)
        if state.phase is not None and PHASE_ORDER.index(phase) <= PHASE_ORDER.index(state.phase):
            raise InvalidTransitionError(state, event)
        return replace(state, status=SyncStatus.RUNNING_PHASE, phase=phase, parent=None)

    if kind is EventType.UPSERT_PROGRESS:
        if state.phase is None or state.status not in (
            SyncStatus.RUNNING_PHASE,
            SyncStatus.PAGING,
            SyncStatus.GUARDRAIL,
        ):
            raise InvalidTransitionError(state, event)
        return replace(state, status=SyncStatus.PAGING, parent=_parent_of(event.stream))

    if kind is EventType.GUARDRAIL_RESULT:
        if state.phase is None or state.status not in (
            SyncStatus.RUNNING_PHASE,
            SyncStatus.PAGING,
            SyncStatus.GUARDRAIL,
        ):
            raise InvalidTransitionError(state, event)
        return replace(state, status=SyncStatus.GUARDRAIL, parent=_parent_of(event.stream))

    if kind is EventType.GAME_DONE:
        if event.game != state.game or state.status is SyncStatus.GAME_DONE:
            raise InvalidTransitionError(state, event)
        return replace(
            state,
            status=SyncStatus.GAME_DONE,
            phase=None,
            parent=None,
            games_done=(*state.games_done, event.game),
        )

    if kind is EventType.COMPLETE:
        if state.game not in (None, RUN_SCOPE) and state.status is not SyncStatus.GAME_DONE:
            raise InvalidTransitionError(state, event)
        return replace(state, status=SyncStatus.COMPLETE, phase=None, parent=None)

    raise InvalidTransitionError(state, event)
