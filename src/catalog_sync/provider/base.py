"""Contract between the sync engine and a catalog provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from ..data.models.records import EntityKind


@dataclass
class Page:
    """One page of a provider list endpoint.

    ``next_cursor`` is opaque to the engine; None means the stream is done.
    """

    items: list[Any] = field(default_factory=list)
    next_cursor: Any = None
    total: int | None = None


class ProviderClient(Protocol):
    """Paged, read-only access to a provider catalog.

    ``game`` is the internal game slug. ``parent_id`` is the provider id of
    the parent record (the set for cards, the card for variants).
    Implementations raise PermanentProviderError for errors a retry cannot
    fix; anything else is treated as transient. A client that already
    retries its own requests sets ``retries_requests = True`` so the
    orchestrator makes a single attempt per page instead of retrying again.
    """

    async def list_page(
        self,
        kind: EntityKind,
        game: str,
        parent_id: str | None = None,
        cursor: Any = None,
    ) -> Page: ...

    async def aclose(self) -> None: ...
