"""Shared fixtures: settings, scripted provider, runner wiring.

Nothing here touches the network. The scripted provider plays back a
fixed sequence of responses (or errors) and records every request.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from typing import Any

import pytest

from ergon.agent.models import TextBlock, TokenUsage, ToolUseBlock
from ergon.agent.policy import PolicyConfig, PolicyEngine
from ergon.agent.runner import AgentRunner
from ergon.agent.tools import ToolContext, ToolDefinition, ToolExecutor, ToolRegistry, mcp_response
from ergon.config import Settings
from ergon.events import LoopEvent
from ergon.providers.base import ProviderRequest, ProviderResponse, StopReason, StreamChunk
from ergon.storage.memory import InMemorySessionStore

# ---------------------------------------------------------------------------
# Response builders
# ---------------------------------------------------------------------------


def text_response(text: str, stop_reason: StopReason = StopReason.NATURAL_STOP) -> ProviderResponse:
    return ProviderResponse(
        content=[TextBlock(text=text)] if text else [],
        stop_reason=stop_reason,
        usage=TokenUsage(input_tokens=10, output_tokens=5),
    )


def tool_response(
    name: str, tool_input: dict[str, Any] | None = None, call_id: str | None = None, text: str = ""
) -> ProviderResponse:
    content: list = [TextBlock(text=text)] if text else []
    content.append(
        ToolUseBlock(
            id=call_id or f"toolu_{uuid.uuid4().hex[:12]}",
            name=name,
            input=tool_input or {},
        )
    )
    return ProviderResponse(
        content=content,
        stop_reason=StopReason.TOOL_REQUESTED,
        usage=TokenUsage(input_tokens=10, output_tokens=5),
    )


def response_chunks(response: ProviderResponse) -> list[StreamChunk]:
    chunks = [StreamChunk(type="text_delta", text=response.text)] if response.text else []
    chunks += [StreamChunk(type="tool_use", block=b) for b in response.tool_uses]
    chunks.append(StreamChunk(type="done", stop_reason=response.stop_reason, usage=response.usage))
    return chunks


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

Step = ProviderResponse | list | Exception | Callable[[ProviderRequest], Any]


class ScriptedProvider:
    """ReasoningProvider that replays scripted steps.

    A step is a ProviderResponse, a list of StreamChunks (an Exception in
    the list is raised at that point of the stream), an Exception raised
    before anything is produced, or a callable producing one of those.
    """

    name = "scripted"

    def __init__(self, steps: list[Step] | None = None, *, default: Step | None = None, context_window: int = 200_000):
        self.steps = list(steps or [])
        self.default = default
        self.requests: list[ProviderRequest] = []
        self._context_window = context_window
        self.closed = False

    @property
    def context_window(self) -> int:
        return self._context_window

    def _next(self, request: ProviderRequest) -> Any:
        self.requests.append(request)
        if self.steps:
            step = self.steps.pop(0)
        elif self.default is not None:
            step = self.default
        else:
            raise AssertionError("ScriptedProvider ran out of steps")
        return step(request) if callable(step) else step

    async def chat(self, request: ProviderRequest) -> ProviderResponse:
        step = self._next(request)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, list):
            raise AssertionError("chunk list scripted for a non-streaming call")
        return step

    async def chat_stream(self, request: ProviderRequest):
        step = self._next(request)
        if isinstance(step, Exception):
            raise step
        chunks = step if isinstance(step, list) else response_chunks(step)
        for chunk in chunks:
            await asyncio.sleep(0)
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    async def count_tokens(self, messages, system: str = "") -> int:
        return sum(len(m.text) for m in messages) // 4

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Test tools
# ---------------------------------------------------------------------------

ECHO = ToolDefinition(
    name="echo",
    description="Echo text back",
    input_schema={
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
        "additionalProperties": False,
    },
)


class EchoTool:
    """Echo handler that records its calls."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, text: str, *, _context: ToolContext) -> dict[str, Any]:
        self.calls.append({"text": text, "call_id": _context.call_id})
        return mcp_response(f"echo: {text}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        workspace_dir=str(tmp_path / "workspace"),
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'ergon.db'}",
        provider_backoff_base=0.01,
    )


@pytest.fixture
def echo_tool() -> EchoTool:
    return EchoTool()


@pytest.fixture
def registry(echo_tool) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(ECHO, echo_tool)
    return registry


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


def make_executor(
    registry: ToolRegistry, policy: PolicyConfig | None = None, **kwargs: Any
) -> ToolExecutor:
    return ToolExecutor(registry, PolicyEngine(policy or PolicyConfig()), **kwargs)


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_runner(
    settings: Settings,
    provider: ScriptedProvider,
    store: InMemorySessionStore,
    registry: ToolRegistry,
    policy: PolicyConfig | None = None,
    **kwargs: Any,
) -> AgentRunner:
    kwargs.setdefault("sleep", SleepRecorder())
    return AgentRunner(settings, provider, store, make_executor(registry, policy), **kwargs)


async def collect(runner: AgentRunner, session_id: str, utterance: str) -> list[LoopEvent]:
    return [event async for event in runner.run(session_id, utterance)]
