"""Agent loop: drives assemble -> provider -> tools -> observe until a terminal state.

Each ``run`` executes in its own task and reports through an EventStream,
so the caller sees events in order and a cancellation (``cancel`` or the
caller closing the iterator) reaches the task at its current await: the
provider stream closes, tool subprocess groups are killed, partial text is
kept, and a ``cancelled`` terminal event is emitted. The session is saved
through the store before the iterator finishes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from ergon.agent.compaction import ConversationCompactor
from ergon.agent.context import ContextAssembler
from ergon.agent.models import Message, Session, TextBlock, TokenUsage, ToolInvocationResult, ToolUseBlock
from ergon.agent.tokens import TokenAccountant, TokenEstimator, message_chars
from ergon.agent.tools import ToolContext, ToolExecutor
from ergon.config import Settings
from ergon.errors import ContextOverflowError, ProviderError, SessionBusyError, SessionNotFoundError
from ergon.events import EventStream, LoopEvent
from ergon.providers.base import ProviderRequest, ProviderResponse, ReasoningProvider, StopReason
from ergon.storage.protocols import DurableMemory, SessionStore

logger = logging.getLogger(__name__)


class LoopState(StrEnum):
    ASSEMBLING = "assembling"
    AWAITING_PROVIDER = "awaiting_provider"
    INTERPRETING = "interpreting"
    EXECUTING_TOOLS = "executing_tools"
    OBSERVING = "observing"
    TERMINAL = "terminal"


class TerminalReason(StrEnum):
    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"
    CANCELLED = "cancelled"
    FATAL_ERROR = "fatal_error"


@dataclass
class RunState:
    """Working state of one run, visible to cancellation handling."""

    session_id: str
    stream: EventStream
    session: Session | None = None
    state: LoopState = LoopState.ASSEMBLING
    iteration: int = 0
    pending_text: list[str] = field(default_factory=list)
    delta_emitted: bool = False
    in_flight: ToolUseBlock | None = None

    async def emit(self, event_type: str, **kwargs) -> None:
        await self.stream.emit(
            LoopEvent(type=event_type, session_id=self.session_id, iteration=self.iteration, **kwargs)
        )


def _request_chars(request: ProviderRequest) -> int:
    return (
        len(request.system)
        + sum(message_chars(m) for m in request.messages)
        + (len(str(request.tools)) if request.tools else 0)
    )


class AgentRunner:
    """Runs agent turns for sessions, one sequential run per session at a time."""

    def __init__(
        self,
        settings: Settings,
        provider: ReasoningProvider,
        store: SessionStore,
        executor: ToolExecutor,
        *,
        memory: DurableMemory | None = None,
        assembler: ContextAssembler | None = None,
        compactor: ConversationCompactor | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._store = store
        self._executor = executor
        self._estimator = TokenEstimator()
        self._assembler = assembler or ContextAssembler(
            settings,
            memory,
            TokenAccountant(provider.context_window, settings.compaction_threshold, self._estimator),
        )
        self._compactor = compactor or ConversationCompactor(settings, provider, memory)
        self._sleep = sleep
        self._workspace = Path(settings.workspace_dir)
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = defaultdict(int)  # runs holding or awaiting a lock
        self._active: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, session_id: str, utterance: str) -> AsyncIterator[LoopEvent]:
        """Run the agent on ``utterance`` and yield events until a terminal one.

        A second run for a busy session waits its turn, or raises
        SessionBusyError when ``concurrent_run_mode`` is ``reject``.
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if self._settings.concurrent_run_mode == "reject" and lock.locked():
            raise SessionBusyError(session_id)

        self._lock_users[session_id] += 1
        try:
            async with lock:
                stream = EventStream()
                run = RunState(session_id=session_id, stream=stream)
                task = asyncio.create_task(self._drive(run, utterance), name=f"agent-run-{session_id}")
                task.add_done_callback(lambda _: stream.close())
                self._active[session_id] = task
                saw_terminal = False
                try:
                    async for event in stream:
                        saw_terminal = event.is_terminal
                        yield event
                    if not saw_terminal:
                        # Task ended before it could report (cancelled before start)
                        await asyncio.wait({task})
                        reason = (
                            TerminalReason.CANCELLED if task.cancelled() else TerminalReason.FATAL_ERROR
                        )
                        yield LoopEvent(type="terminal", session_id=session_id, reason=reason.value)
                finally:
                    stream.close()
                    if not task.done():
                        task.cancel()
                    await asyncio.wait({task})
                    if self._active.get(session_id) is task:
                        del self._active[session_id]
        finally:
            self._release_lock(session_id)

    def _release_lock(self, session_id: str) -> None:
        self._lock_users[session_id] -= 1
        if self._lock_users[session_id] <= 0:
            del self._lock_users[session_id]
            self._locks.pop(session_id, None)

    def cancel(self, session_id: str) -> bool:
        """Cancel the in-flight run for ``session_id``. Returns False if none."""
        task = self._active.get(session_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling run for session %s", session_id)
        task.cancel()
        return True

    def is_running(self, session_id: str) -> bool:
        task = self._active.get(session_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    async def _load_or_create(self, session_id: str) -> Session:
        try:
            return await self._store.load(session_id)
        except SessionNotFoundError:
            logger.info("Creating session %s", session_id)
            return await self._store.create(session_id)

    async def _drive(self, run: RunState, utterance: str) -> None:
        reason = TerminalReason.FATAL_ERROR
        error = ""
        try:
            run.session = await self._load_or_create(run.session_id)
            run.session.append(Message(role="user", content=utterance))
            reason = await self._loop(run, self._executor.snapshot())
        except asyncio.CancelledError:
            reason = TerminalReason.CANCELLED
            await self._record_cancellation(run)
        except Exception as e:
            logger.exception("Run failed for session %s", run.session_id)
            reason = TerminalReason.FATAL_ERROR
            error = str(e) or type(e).__name__
            self._keep_partial_text(run)

        run.state = LoopState.TERMINAL
        if run.session is not None:
            try:
                await self._store.save(run.session)
            except Exception as e:
                logger.exception("Failed to persist session %s", run.session_id)
                reason = TerminalReason.FATAL_ERROR
                error = f"Failed to persist session: {e}"

        logger.info(
            "Run for session %s ended: %s after %d iterations", run.session_id, reason, run.iteration
        )
        await run.emit("terminal", reason=reason.value, error=error)

    @staticmethod
    def _keep_partial_text(run: RunState) -> None:
        """Text the caller already saw stays in history, tagged partial."""
        if run.session is None or not run.pending_text:
            return
        run.session.append(
            Message(role="assistant", content="".join(run.pending_text), metadata={"partial": True})
        )
        run.pending_text = []

    async def _record_cancellation(self, run: RunState) -> None:
        """Keep partial text and close any open tool call."""
        session = run.session
        if session is None:
            return
        self._keep_partial_text(run)
        if run.in_flight is not None:
            block = run.in_flight
            run.in_flight = None
            result = self._executor.cancelled_result(block.name, block.id)
            session.append(self._tool_message(result))
            await run.emit("tool_result", tool_name=block.name, call_id=block.id, result=result)

    async def _loop(self, run: RunState, executor: ToolExecutor) -> TerminalReason:
        session = run.session
        assert session is not None
        accountant = TokenAccountant(
            self._provider.context_window, self._settings.compaction_threshold, self._estimator
        )

        for iteration in range(1, self._settings.max_iterations + 1):
            run.iteration = iteration
            run.state = LoopState.ASSEMBLING
            request = await self._prepare_request(session, executor, accountant)

            run.state = LoopState.AWAITING_PROVIDER
            response = await self._call_provider(run, request)
            accountant.record(response.usage, _request_chars(request))
            session.usage.add(response.usage)

            run.state = LoopState.INTERPRETING
            tool_blocks = response.tool_uses
            if tool_blocks:
                run.state = LoopState.EXECUTING_TOOLS
                for block in tool_blocks:
                    await self._run_tool(run, executor, block)
            if run.pending_text:
                session.append(Message(role="assistant", content="".join(run.pending_text)))
                run.pending_text = []

            run.state = LoopState.OBSERVING
            await run.emit("turn_summary", usage=response.usage, reason=response.stop_reason.value)

            if not tool_blocks and response.stop_reason == StopReason.NATURAL_STOP:
                return TerminalReason.COMPLETED

        logger.warning(
            "Session %s reached max_iterations=%d", session.id, self._settings.max_iterations
        )
        return TerminalReason.ITERATION_LIMIT

    async def _prepare_request(
        self, session: Session, executor: ToolExecutor, accountant: TokenAccountant
    ) -> ProviderRequest:
        request = await self._assembler.assemble(session, executor)
        if accountant.should_compact(request.estimated_tokens):
            logger.info(
                "Session %s at ~%d tokens (budget %d), compacting",
                session.id, request.estimated_tokens, accountant.budget,
            )
            before = session.compaction_count
            await self._compactor.compact(session)
            if session.compaction_count != before:
                await self._store.save(session)
                request = await self._assembler.assemble(session, executor)
        if not accountant.fits(request.estimated_tokens):
            raise ContextOverflowError(
                f"Request of ~{request.estimated_tokens} tokens exceeds the "
                f"{accountant.context_window}-token context window after compaction"
            )
        request.messages = self._compactor.prune_tool_results(request.messages)
        return request

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _call_provider(self, run: RunState, request: ProviderRequest) -> ProviderResponse:
        """Call the provider with bounded exponential backoff.

        A streamed call is only retried while no text has reached the caller.
        """
        s = self._settings
        for attempt in range(1, s.provider_max_attempts + 1):
            try:
                if s.prefer_streaming:
                    return await self._stream_once(run, request)
                return await self._chat_once(run, request)
            except ProviderError as e:
                if run.delta_emitted or not e.retryable or attempt == s.provider_max_attempts:
                    raise
                delay = min(s.provider_backoff_base * 2 ** (attempt - 1), s.provider_backoff_max)
                if e.retry_after:
                    delay = min(max(delay, e.retry_after), s.provider_backoff_max)
                logger.warning(
                    "Provider call failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, s.provider_max_attempts, delay, e,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _chat_once(self, run: RunState, request: ProviderRequest) -> ProviderResponse:
        run.delta_emitted = False
        response = await self._provider.chat(request)
        if response.text:
            run.pending_text.append(response.text)
            await run.emit("text_delta", text=response.text)
        return response

    async def _stream_once(self, run: RunState, request: ProviderRequest) -> ProviderResponse:
        run.delta_emitted = False
        tool_blocks: list[ToolUseBlock] = []
        stop_reason = StopReason.NATURAL_STOP
        usage = TokenUsage()

        async with aclosing(self._provider.chat_stream(request)) as chunks:
            async for chunk in chunks:
                if chunk.type == "text_delta":
                    run.pending_text.append(chunk.text)
                    run.delta_emitted = True
                    await run.emit("text_delta", text=chunk.text)
                elif chunk.type == "tool_use" and chunk.block is not None:
                    tool_blocks.append(chunk.block)
                elif chunk.type == "done":
                    stop_reason = chunk.stop_reason or StopReason.NATURAL_STOP
                    usage = chunk.usage or TokenUsage()

        content = [TextBlock(text="".join(run.pending_text))] if run.pending_text else []
        return ProviderResponse(content=[*content, *tool_blocks], stop_reason=stop_reason, usage=usage)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    @staticmethod
    def _tool_message(result: ToolInvocationResult) -> Message:
        return Message(
            role="tool",
            content=result.to_content(),
            tool_call_id=result.call_id,
            is_error=result.is_error,
            metadata={
                "tool_name": result.tool_name,
                "error": result.error.value if result.error else None,
                "duration_ms": result.duration_ms,
            },
        )

    async def _run_tool(self, run: RunState, executor: ToolExecutor, block: ToolUseBlock) -> None:
        session = run.session
        assert session is not None

        # Assistant message recording the call; carries any text streamed before it
        content: list = []
        if run.pending_text:
            content.append(TextBlock(text="".join(run.pending_text)))
            run.pending_text = []
        content.append(block)
        session.append(Message(role="assistant", content=content))

        run.in_flight = block
        await run.emit("tool_started", tool_name=block.name, call_id=block.id, input=block.input)
        context = ToolContext(session_id=session.id, call_id=block.id, workspace=self._workspace)
        result = await executor.execute(block.name, block.input, context)
        run.in_flight = None

        session.append(self._tool_message(result))
        logger.info(
            "Tool %s (%s) -> %s in %dms",
            block.name, block.id, result.error or "ok", result.duration_ms,
        )
        await run.emit("tool_result", tool_name=block.name, call_id=block.id, result=result)
