from __future__ import annotations

import asyncio

import pytest

from ultrasearch.models.annotations import Stage
from ultrasearch.models.events import EventType
from ultrasearch.services import streaming
from ultrasearch.services.channel import ChannelClosedError, StreamChannel


async def _drain(channel):
    return [event async for event in channel]


@pytest.mark.asyncio
async def test_events_are_sequenced_and_consumed_in_order():
    channel = StreamChannel()
    header = streaming.stage_header(Stage.PLANNER, "Planning", "Analyzing")

    async def produce():
        await channel.write_annotation(header)
        await channel.write_text("Hello ")
        await channel.write_text("world")
        await channel.write_finish("m1")
        await channel.close()

    producer = asyncio.create_task(produce())
    received = [event async for event in channel]
    await producer

    assert [e.seq for e in received] == [1, 2, 3, 4]
    assert [e.event for e in received] == [EventType.ANNOTATION, EventType.TEXT, EventType.TEXT, EventType.FINISH]
    assert channel.text == "Hello world"


@pytest.mark.asyncio
async def test_concurrent_writers_get_unique_sequence_numbers():
    channel = StreamChannel(max_size=1000)

    await asyncio.gather(*(channel.write_text(f"{i} ") for i in range(50)))

    assert sorted(e.seq for e in channel.events) == list(range(1, 51))
    assert [e.seq for e in channel.events] == list(range(1, 51))


@pytest.mark.asyncio
async def test_transient_annotations_are_not_persisted():
    channel = StreamChannel()

    await channel.write_annotation(streaming.related_questions(None), persist=False)
    await channel.write_annotation(streaming.related_questions(["next?"]))

    assert channel.persistable_annotations == [streaming.related_questions(["next?"])]
    assert len(channel.annotation_log) == 2
    assert channel.events[0].event is EventType.DATA


@pytest.mark.asyncio
async def test_empty_text_is_not_written():
    channel = StreamChannel()

    await channel.write_text("")
    await channel.write_reasoning("")

    assert channel.events == []


@pytest.mark.asyncio
async def test_write_after_close_raises():
    channel = StreamChannel()
    await channel.close()

    with pytest.raises(ChannelClosedError):
        await channel.write_text("late")


@pytest.mark.asyncio
async def test_close_nowait_with_full_queue_still_ends_the_stream():
    channel = StreamChannel(max_size=1)
    await channel.write_text("fills the queue")

    channel.close_nowait()
    received = await asyncio.wait_for(_drain(channel), timeout=1)

    assert channel.closed
    assert [e.data["text"] for e in received] == ["fills the queue"]


def test_sse_frame_shape():
    event = streaming.error("boom", stage="finish")
    event.seq = 7

    assert event.to_sse() == {"event": "error", "id": "7", "data": '{"message": "boom", "stage": "finish"}'}
    assert event.format() == 'event: error\ndata: {"message": "boom", "stage": "finish"}\n\n'
