"""Progress events emitted by a sync run."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Event types on the progress channel."""

    START = "START"
    START_GAME = "START_GAME"
    PHASE_START = "PHASE_START"
    UPSERT_PROGRESS = "UPSERT_PROGRESS"
    GUARDRAIL_RESULT = "GUARDRAIL_RESULT"
    GAME_DONE = "GAME_DONE"
    WARNING = "WARNING"
    ERROR = "ERROR"
    COMPLETE = "COMPLETE"


TERMINAL_EVENTS = frozenset({EventType.COMPLETE, EventType.ERROR})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StreamFailure(BaseModel):
    """A stream that was abandoned after its retries were exhausted."""

    game: str
    stream: str
    error: str


class SyncEvent(BaseModel):
    """One event on the progress channel.

    Only ``type`` and ``timestamp`` are always present; the other fields are
    set by the event types that need them and dropped from the wire when unset.
    """

    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    message: str | None = None

    # Run scope
    provider: str | None = None
    mode: str | None = None
    games: list[str] | None = None

    # Position in the pipeline
    game: str | None = None
    phase: str | None = None
    stream: str | None = None
    record_id: str | None = None

    # UPSERT_PROGRESS
    count: int | None = None
    total: int | None = None

    # GUARDRAIL_RESULT
    rolled_back: int | None = None
    not_found: int | None = None

    # GAME_DONE / COMPLETE summaries
    sets: int | None = None
    cards: int | None = None
    variants: int | None = None
    failures: list[StreamFailure] | None = None

    # WARNING / ERROR
    error: str | None = None
    partial: bool | None = None

    @property
    def is_terminal(self) -> bool:
        """COMPLETE and ERROR end the run; nothing follows them."""
        return self.type in TERMINAL_EVENTS

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict without unset fields."""
        return self.model_dump(mode="json", exclude_none=True)

    def to_sse(self) -> str:
        """Format as a Server-Sent Events ``data:`` frame."""
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"
