"""Tests for ergon/events.py -- the rendezvous event stream."""

import asyncio

import pytest

from ergon.events import EventStream, LoopEvent


def _delta(text: str) -> LoopEvent:
    return LoopEvent(type="text_delta", session_id="s1", text=text)


class TestEventStream:
    @pytest.mark.asyncio
    async def test_events_arrive_in_order_and_stop_at_terminal(self):
        stream = EventStream()

        async def produce():
            for text in ("a", "b", "c"):
                await stream.emit(_delta(text))
            await stream.emit(LoopEvent(type="terminal", session_id="s1", reason="completed"))

        producer = asyncio.create_task(produce())
        events = [event async for event in stream]
        await producer

        assert [e.text for e in events[:3]] == ["a", "b", "c"]
        assert events[-1].is_terminal
        assert len(events) == 4

    @pytest.mark.asyncio
    async def test_emit_waits_for_consumer(self):
        stream = EventStream()
        progress = []

        async def produce():
            await stream.emit(_delta("first"))
            progress.append("first delivered")
            await stream.emit(_delta("second"))
            progress.append("second delivered")

        producer = asyncio.create_task(produce())
        iterator = stream.__aiter__()
        first = await iterator.__anext__()
        for _ in range(5):
            await asyncio.sleep(0)
        # consumer holds event 1, so the producer is still parked on it
        assert first.text == "first"
        assert progress == []

        second = await iterator.__anext__()
        for _ in range(5):
            await asyncio.sleep(0)
        assert second.text == "second"
        assert progress == ["first delivered"]

        await iterator.aclose()
        await producer
        assert progress == ["first delivered", "second delivered"]

    @pytest.mark.asyncio
    async def test_close_ends_iteration_and_drops_later_emits(self):
        stream = EventStream()
        stream.close()
        assert stream.closed
        await stream.emit(_delta("late"))
        assert [event async for event in stream] == []

    def test_terminal_flag(self):
        assert LoopEvent(type="terminal", session_id="s").is_terminal
        assert not _delta("x").is_terminal
