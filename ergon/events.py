"""Loop events and the ordered stream that carries them to the caller.

The stream is a rendezvous: ``emit`` returns only once the consumer has
asked for the next event, so the loop never runs ahead of its caller and a
cancellation issued while handling event N lands before event N+1 exists.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from ergon.agent.models import ToolInvocationResult, TokenUsage

logger = logging.getLogger(__name__)

EventType = Literal["text_delta", "tool_started", "tool_result", "turn_summary", "terminal"]


@dataclass
class LoopEvent:
    """One event produced by a run.

    Fields are populated according to ``type``: ``text`` for text_delta,
    ``tool_name``/``call_id``/``input`` for tool_started, ``result`` for
    tool_result, ``usage`` for turn_summary, ``reason``/``error`` for
    terminal.
    """

    type: EventType
    session_id: str
    iteration: int = 0
    text: str = ""
    tool_name: str = ""
    call_id: str = ""
    input: dict[str, Any] = field(default_factory=dict)
    result: ToolInvocationResult | None = None
    reason: str = ""
    error: str = ""
    usage: TokenUsage | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.type == "terminal"


class EventStream:
    """Single-producer, single-consumer ordered event channel."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[LoopEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: LoopEvent) -> None:
        """Deliver ``event`` and wait until the consumer has taken it."""
        if self._closed:
            logger.debug("Stream closed, dropping %s event", event.type)
            return
        self._queue.put_nowait(event)
        await self._queue.join()

    def close(self) -> None:
        """End the stream; later emits are dropped and the consumer stops."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[LoopEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                self._queue.task_done()
                return
            try:
                yield event
            finally:
                self._queue.task_done()
            if event.is_terminal:
                return
