"""Tests for the progress channel and event sinks."""

from __future__ import annotations

import pytest

from catalog_sync.data.models import EventType, SyncEvent
from catalog_sync.sync import ChannelClosedError, ListEventSink, ProgressChannel, QueueEventSink


class FailingCloseSink(ListEventSink):
    async def close(self) -> None:
        await super().close()
        raise RuntimeError("socket gone")


class TestProgressChannel:
    """Tests for ordered delivery and closing."""

    async def test_events_delivered_in_order(self):
        """Events reach the sink in emission order."""
        sink = ListEventSink()
        channel = ProgressChannel(sink)

        await channel.emit(SyncEvent(type=EventType.START))
        await channel.emit(SyncEvent(type=EventType.WARNING, message="one"))
        await channel.emit(SyncEvent(type=EventType.WARNING, message="two"))

        assert [e.message for e in sink.events] == [None, "one", "two"]
        assert not channel.closed

    async def test_terminal_event_closes_sink_once(self):
        """The first terminal event closes the sink, and later closes do nothing."""
        sink = ListEventSink()
        channel = ProgressChannel(sink)

        await channel.emit(SyncEvent(type=EventType.START))
        await channel.emit(SyncEvent(type=EventType.COMPLETE, sets=1))
        await channel.close()

        assert channel.closed
        assert sink.close_count == 1
        assert channel.terminal_event is sink.events[-1]

    async def test_emit_after_close_rejected(self):
        """Nothing may follow the terminal event."""
        channel = ProgressChannel(ListEventSink())
        await channel.emit(SyncEvent(type=EventType.ERROR, error="boom"))

        with pytest.raises(ChannelClosedError):
            await channel.emit(SyncEvent(type=EventType.WARNING))

    async def test_close_failure_is_contained(self):
        """A sink that fails to close still counts as closed."""
        sink = FailingCloseSink()
        channel = ProgressChannel(sink)

        await channel.emit(SyncEvent(type=EventType.COMPLETE))

        assert channel.closed
        assert sink.close_count == 1


class TestQueueEventSink:
    """Tests for the queue-backed sink."""

    async def test_iterates_until_closed(self):
        """Iteration yields queued events and ends at close."""
        sink = QueueEventSink()
        await sink.send(SyncEvent(type=EventType.START))
        await sink.send(SyncEvent(type=EventType.COMPLETE))
        await sink.close()

        events = [event async for event in sink]
        assert [e.type for e in events] == [EventType.START, EventType.COMPLETE]
