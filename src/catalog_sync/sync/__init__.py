"""Sync engine: orchestration, state machine, guardrails and progress events."""

from .channel import ChannelClosedError, EventSink, ListEventSink, ProgressChannel, QueueEventSink
from .guardrail import GuardrailPass, GuardrailResult
from .orchestrator import (
    CancellationToken,
    StreamSpec,
    SyncOrchestrator,
    cards_stream,
    resolve_games,
    stream_run,
    variants_stream,
)
from .state import InvalidTransitionError, SyncState, SyncStatus, transition

__all__ = [
    "CancellationToken",
    "ChannelClosedError",
    "EventSink",
    "GuardrailPass",
    "GuardrailResult",
    "InvalidTransitionError",
    "ListEventSink",
    "ProgressChannel",
    "QueueEventSink",
    "StreamSpec",
    "SyncOrchestrator",
    "SyncState",
    "SyncStatus",
    "cards_stream",
    "resolve_games",
    "stream_run",
    "transition",
    "variants_stream",
]
