"""Catalog provider clients."""

from .backoff import BackoffPolicy, is_transient, retry_async
from .base import Page, ProviderClient
from .justtcg import GAME_SLUG_MAP, JustTCGClient, normalize_game_slug, provider_game_slug

__all__ = [
    "GAME_SLUG_MAP",
    "BackoffPolicy",
    "JustTCGClient",
    "Page",
    "ProviderClient",
    "is_transient",
    "normalize_game_slug",
    "provider_game_slug",
    "retry_async",
]
