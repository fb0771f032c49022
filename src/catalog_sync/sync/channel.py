"""Progress channel: ordered, append-only delivery of sync events to a sink."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Protocol

from ..data.models.events import SyncEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Where progress events end up (SSE response, CLI, tests)."""

    async def send(self, event: SyncEvent) -> None: ...

    async def close(self) -> None: ...


class ListEventSink:
    """Collects events in memory."""

    def __init__(self) -> None:
        self.events: list[SyncEvent] = []
        self.close_count = 0

    async def send(self, event: SyncEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        self.close_count += 1

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def of_type(self, *types: str) -> list[SyncEvent]:
        """Events whose type is one of ``types``."""
        return [event for event in self.events if event.type.value in types]


class QueueEventSink:
    """Hands events to a consumer through an asyncio.Queue.

    Iterating the sink yields events until the producer closes it.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[SyncEvent | None] = asyncio.Queue()

    async def send(self, event: SyncEvent) -> None:
        await self._queue.put(event)

    async def close(self) -> None:
        await self._queue.put(None)

    async def __aiter__(self) -> AsyncIterator[SyncEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class ChannelClosedError(RuntimeError):
    """Raised when an event is emitted after the terminal event."""


class ProgressChannel:
    """Wraps a sink so that a run's event stream is well formed.

    The first terminal event (COMPLETE or ERROR) closes the channel; the sink
    is closed exactly once and nothing can be emitted afterwards.
    """

    def __init__(self, sink: EventSink):
        self._sink = sink
        self._closed = False
        self._lock = asyncio.Lock()
        self.terminal_event: SyncEvent | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: SyncEvent) -> None:
        """Deliver one event. A terminal event also closes the channel.

        Raises:
            ChannelClosedError: If the channel already closed.
        """
        async with self._lock:
            if self._closed:
                raise ChannelClosedError(f"{event.type.value} emitted after channel closed")
            await self._sink.send(event)
            if event.is_terminal:
                self.terminal_event = event
                await self._close()

    async def close(self) -> None:
        """Close without a terminal event (only used when the run itself crashed)."""
        async with self._lock:
            await self._close()

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._sink.close()
        except Exception:
            logger.exception("Failed to close event sink")
