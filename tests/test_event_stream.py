"""Tests for the per-turn event stream."""

import asyncio

import pytest

from genagent.domain.entities import ChatEventType
from genagent.orchestrator import TurnEventStream


class TestTurnEventStream:
    @pytest.mark.asyncio
    async def test_events_in_order_until_close(self):
        stream = TurnEventStream("turn_1")
        stream.emit(ChatEventType.TURN_STARTED)
        stream.emit(ChatEventType.TEXT_DELTA, content="Hel")
        stream.emit(ChatEventType.TEXT_DELTA, content="lo")
        stream.close()

        events = [event async for event in stream]

        assert [e.sequence for e in events] == [1, 2, 3]
        assert all(e.correlation_id == "turn_1" for e in events)
        assert "".join(e.content for e in events[1:]) == "Hello"

    @pytest.mark.asyncio
    async def test_consumer_waits_for_producer(self):
        stream = TurnEventStream("turn_1")

        async def produce():
            await asyncio.sleep(0.01)
            stream.emit(ChatEventType.TEXT_DELTA, content="late")
            stream.close()

        producer = asyncio.create_task(produce())
        events = [event async for event in stream]
        await producer

        assert [e.content for e in events] == ["late"]

    def test_emit_after_close_dropped(self):
        stream = TurnEventStream()
        stream.close()
        stream.close()

        assert stream.closed
        assert stream.emit(ChatEventType.TEXT_DELTA, content="x") is None
        assert stream.sequence == 0

    def test_build_continues_sequence_and_counts(self):
        stream = TurnEventStream("turn_1")
        stream.emit(ChatEventType.TEXT_DELTA, content="a")
        stream.emit(ChatEventType.TEXT_DELTA, content="b")
        stream.close()

        cancel = stream.build(ChatEventType.CANCEL)

        assert cancel.sequence == 3
        assert stream.counts() == {"text_delta": 2, "cancel": 1}
