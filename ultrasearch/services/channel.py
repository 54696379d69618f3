"""Single ordered output channel for one chat turn.

Text deltas and annotations are written through one lock so every event gets
a strictly increasing sequence number and no two writers interleave. The
queue is bounded; a slow consumer applies backpressure to the producer.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

from ultrasearch.models.annotations import Annotation
from ultrasearch.models.events import EventType, StreamEvent
from ultrasearch.services import streaming


class ChannelClosedError(RuntimeError):
    pass


class StreamChannel:
    def __init__(self, max_size: int = 256):
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(maxsize=max_size)
        self._lock = asyncio.Lock()
        self._seq = 0
        self._closed = False
        self.events: list[StreamEvent] = []
        self._text_parts: list[str] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def annotation_log(self) -> list[Annotation]:
        """Every annotation written this turn, transient ones included, in order."""
        return [
            e.data
            for e in self.events
            if e.event in (EventType.ANNOTATION, EventType.DATA)
        ]

    @property
    def persistable_annotations(self) -> list[Annotation]:
        return [e.data for e in self.events if e.persist]

    async def write(self, event: StreamEvent) -> StreamEvent:
        async with self._lock:
            if self._closed:
                raise ChannelClosedError("Cannot write to a closed stream channel")
            self._seq += 1
            event.seq = self._seq
            self.events.append(event)
            if event.event is EventType.TEXT:
                self._text_parts.append(event.data.get("text", ""))
            await self._queue.put(event)
        return event

    async def write_text(self, text: str) -> None:
        if text:
            await self.write(streaming.text_delta(text))

    async def write_annotation(self, annotation: Annotation, *, persist: bool = True) -> None:
        await self.write(streaming.annotation(annotation, persist=persist))

    async def write_reasoning(self, text: str) -> None:
        if text:
            await self.write(streaming.reasoning_delta(text))

    async def write_error(self, message: str, stage: str | None = None) -> None:
        await self.write(streaming.error(message, stage))

    async def write_finish(self, message_id: str, **kwargs) -> None:
        await self.write(streaming.finish(message_id, **kwargs))

    async def close(self) -> None:
        async with self._lock:
            if self._closed:
                return
            self._closed = True
        # The sentinel may wait on a full queue; it is put outside the lock so
        # a consumer draining the queue never blocks on a writer.
        await self._queue.put(None)

    def close_nowait(self) -> None:
        """Close without waiting; used when the producer is cancelled.

        On a full queue the end marker is not queued; consumers stop once
        they have drained the queue of a closed channel instead.
        """
        if self._closed:
            return
        self._closed = True
        if not self._queue.full():
            self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            if self._closed and self._queue.empty():
                return
            event = await self._queue.get()
            if event is None:
                return
            yield event
