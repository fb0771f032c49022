"""Pydantic models for provider records, progress events and requests."""

from .events import TERMINAL_EVENTS, EventType, StreamFailure, SyncEvent
from .records import (
    EntityKind,
    ProviderCard,
    ProviderGame,
    ProviderRecord,
    ProviderSet,
    ProviderVariant,
    normalize_name,
    parse_record,
    parse_release_date,
)
from .requests import SyncMode, SyncRequest

__all__ = [
    "TERMINAL_EVENTS",
    "EntityKind",
    "EventType",
    "ProviderCard",
    "ProviderGame",
    "ProviderRecord",
    "ProviderSet",
    "ProviderVariant",
    "StreamFailure",
    "SyncEvent",
    "SyncMode",
    "SyncRequest",
    "normalize_name",
    "parse_record",
    "parse_release_date",
]
