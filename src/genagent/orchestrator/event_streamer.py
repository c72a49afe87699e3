"""
Per-turn event stream.

A turn's producer (the background task driving the model and tools)
emits events while the caller iterates them. Each emitted event gets
the next sequence number and the turn id as correlation id, so the
consumer sees one strictly ordered stream per turn.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, AsyncIterator, Optional

from ..domain.entities import ChatEvent, ChatEventType

_END = object()


class TurnEventStream:
    """Queue-backed stream of ChatEvents for a single turn.

    Usage:
        stream = TurnEventStream(turn_id)
        stream.emit(ChatEventType.TEXT_DELTA, content="Hello")
        stream.close()

        async for event in stream:
            ...
    """

    def __init__(self, turn_id: Optional[str] = None):
        self.turn_id = turn_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._sequence = 0
        self._counts: Counter = Counter()
        self._closed = False

    def build(self, event_type: ChatEventType, **fields: Any) -> ChatEvent:
        """Create the next event in sequence without queueing it."""
        self._sequence += 1
        self._counts[event_type.value] += 1
        return ChatEvent(
            type=event_type,
            sequence=self._sequence,
            correlation_id=self.turn_id,
            **fields,
        )

    def emit(self, event_type: ChatEventType, **fields: Any) -> Optional[ChatEvent]:
        """Create the next event and hand it to the consumer.

        Returns None once the stream is closed; late events are dropped.
        """
        if self._closed:
            return None
        event = self.build(event_type, **fields)
        self._queue.put_nowait(event)
        return event

    def close(self) -> None:
        """Mark the end of the turn. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END)

    async def __aiter__(self) -> AsyncIterator[ChatEvent]:
        while True:
            event = await self._queue.get()
            if event is _END:
                return
            yield event

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sequence(self) -> int:
        """Sequence number of the last event built."""
        return self._sequence

    def counts(self) -> dict[str, int]:
        """Number of events built so far, by event type."""
        return dict(self._counts)
