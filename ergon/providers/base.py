"""Provider-neutral request/response shapes and the adapter contract.

Every backend converges on these types. Backend-specific chunking and
stop-reason vocabularies are normalised inside the adapter; the loop never
special-cases a backend.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Protocol

from ergon.agent.models import ContentBlock, Message, TextBlock, TokenUsage, ToolUseBlock


class StopReason(StrEnum):
    NATURAL_STOP = "natural_stop"
    TOOL_REQUESTED = "tool_requested"
    LENGTH_LIMIT = "length_limit"


@dataclass
class ProviderRequest:
    """Everything a provider needs for one call."""

    system: str
    messages: list[Message]
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int | None = None
    model: str | None = None
    estimated_tokens: int = 0


@dataclass
class ProviderResponse:
    content: list[ContentBlock]
    stop_reason: StopReason
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]


@dataclass
class StreamChunk:
    """One normalised streaming unit.

    ``text_delta`` carries text, ``tool_use`` carries a fully resolved tool
    block, ``done`` closes the stream with the stop reason and usage.
    """

    type: Literal["text_delta", "tool_use", "done"]
    text: str = ""
    block: ToolUseBlock | None = None
    stop_reason: StopReason | None = None
    usage: TokenUsage | None = None


class ReasoningProvider(Protocol):
    name: str

    @property
    def context_window(self) -> int: ...

    async def chat(self, request: ProviderRequest) -> ProviderResponse: ...

    def chat_stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]: ...

    async def count_tokens(self, messages: list[Message], system: str = "") -> int: ...

    async def close(self) -> None: ...


def summary_preamble(message: Message) -> str:
    """Text used when a backend cannot place a system message mid-history."""
    return f"[Previous conversation summary]\n\n{message.text}"
