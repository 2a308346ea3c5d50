"""Tool registry and executor.

Provides:
- ToolDefinition: the contract every tool satisfies, built-in or plugin
- ToolRegistry: registers definition/handler pairs, produces provider schemas
- ToolExecutor: the gated path from a tool_use block to a ToolInvocationResult

Handlers are async callables that accept the validated input as **kwargs
plus a keyword-only ``_context`` (ToolContext) and return an MCP-format
response: {"content": [{"type": "text", "text": "..."}]}. Optional keys:
"exit_code", "is_error", "timed_out" (the tool enforced its own deadline),
"artifacts".
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator

from ergon.agent.models import ErrorKind, ToolInvocationResult
from ergon.agent.policy import PolicyEngine, SandboxPlan, ToolGroup
from ergon.utils import truncate_output

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Awaitable[dict[str, Any]]]

DEFAULT_TOOL_TIMEOUT = 300.0  # seconds
DEFAULT_MAX_OUTPUT_CHARS = 20_000


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any]
    group: ToolGroup = "system"
    dangerous: bool = False
    requires_approval: bool = False
    timeout: float | None = None  # None -> executor default
    command_field: str = "command"  # input key holding the command line (process tools)

    def to_schema(self) -> dict[str, Any]:
        """Provider-neutral function schema."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class ToolContext:
    """Per-invocation context handed to handlers."""

    session_id: str
    call_id: str
    workspace: Path
    sandbox: SandboxPlan = field(default_factory=SandboxPlan)


def mcp_response(text: str, **extra: Any) -> dict[str, Any]:
    """Build MCP-format response."""
    return {"content": [{"type": "text", "text": text}], **extra}


def _extract_text(response: dict[str, Any]) -> str:
    parts = [
        block.get("text", "")
        for block in response.get("content", [])
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Registers tool handlers with their definitions.

    Plugin-provided tools register exactly like built-ins; nothing
    downstream distinguishes them. ``snapshot()`` returns a copy that a
    run holds fixed for its whole duration.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, ToolHandler] = {}
        self._validators: dict[str, Draft7Validator] = {}

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """Register a tool. Re-registering a name replaces the previous tool."""
        Draft7Validator.check_schema(definition.input_schema)
        if definition.name in self._tools:
            logger.warning("Replacing existing tool registration: %s", definition.name)
        self._tools[definition.name] = definition
        self._handlers[definition.name] = handler
        self._validators[definition.name] = Draft7Validator(definition.input_schema)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)
        self._handlers.pop(name, None)
        self._validators.pop(name, None)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def handler(self, name: str) -> ToolHandler:
        return self._handlers[name]

    def validator(self, name: str) -> Draft7Validator:
        return self._validators[name]

    def definitions(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def snapshot(self) -> ToolRegistry:
        copy = ToolRegistry()
        copy._tools = dict(self._tools)
        copy._handlers = dict(self._handlers)
        copy._validators = dict(self._validators)
        return copy


# ---------------------------------------------------------------------------
# ToolExecutor
# ---------------------------------------------------------------------------


class ToolExecutor:
    """Runs one tool invocation through every gate.

    Order: lookup -> input validation -> policy -> execution under timeout
    -> output capture and truncation. Each gate that fails returns a
    result with an error kind and no side effect. Nothing raises out of
    execute() except cancellation of the caller's task.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: PolicyEngine,
        *,
        default_timeout: float = DEFAULT_TOOL_TIMEOUT,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        self._registry = registry
        self._policy = policy
        self._default_timeout = default_timeout
        self._max_output_chars = max_output_chars

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def policy(self) -> PolicyEngine:
        return self._policy

    def snapshot(self) -> ToolExecutor:
        """Executor over a frozen copy of the registry, used for one run."""
        return ToolExecutor(
            self._registry.snapshot(),
            self._policy,
            default_timeout=self._default_timeout,
            max_output_chars=self._max_output_chars,
        )

    def exposed_schemas(self) -> list[dict[str, Any]]:
        """Schemas of the tools the provider may see this run."""
        return [
            tool.to_schema()
            for tool in self._registry.definitions()
            if self._policy.is_exposed(tool)
        ]

    def validate(self, tool: ToolDefinition, raw_input: Any) -> str | None:
        """Return an error description, or None if the input is valid."""
        if not isinstance(raw_input, dict):
            return f"tool input must be an object, got {type(raw_input).__name__}"
        internal = sorted(k for k in raw_input if k.startswith("_"))
        if internal:
            return f"reserved argument names: {', '.join(internal)}"
        errors = sorted(
            self._registry.validator(tool.name).iter_errors(raw_input),
            key=lambda e: list(e.absolute_path),
        )
        if errors:
            return "; ".join(
                f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
                for e in errors
            )
        return None

    async def execute(
        self,
        tool_name: str,
        raw_input: Any,
        context: ToolContext,
    ) -> ToolInvocationResult:
        start = time.monotonic()

        def _result(output: str, error: ErrorKind | None = None, **kw: Any) -> ToolInvocationResult:
            return ToolInvocationResult(
                tool_name=tool_name,
                call_id=context.call_id,
                output=output,
                error=error,
                duration_ms=int((time.monotonic() - start) * 1000),
                **kw,
            )

        # 1. Lookup
        tool = self._registry.get(tool_name)
        if tool is None:
            logger.info("Unknown tool requested: %s", tool_name)
            return _result(f"Unknown tool: {tool_name}", ErrorKind.NOT_FOUND)

        # 2. Validation
        problem = self.validate(tool, raw_input)
        if problem:
            logger.info("Invalid input for %s: %s", tool_name, problem)
            return _result(f"Invalid input for {tool_name}: {problem}", ErrorKind.VALIDATION_ERROR)

        # 3. Policy (re-evaluated on every call)
        decision = await self._policy.evaluate(tool, raw_input)
        if not decision.permitted:
            logger.info(
                "Policy denied %s (session=%s, layer=%s): %s",
                tool_name, context.session_id, decision.layer, decision.reason,
            )
            return _result(f"Policy denied: {decision.reason}", ErrorKind.POLICY_DENIED)

        # 4. Execute with enforced timeout
        sandbox = self._policy.resolve_sandbox(tool)
        call_context = dataclasses.replace(context, sandbox=sandbox)
        timeout = tool.timeout or self._default_timeout
        handler = self._registry.handler(tool_name)
        try:
            response = await asyncio.wait_for(
                handler(**raw_input, _context=call_context), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", tool_name, timeout)
            return _result(
                f"Tool {tool_name} timed out after {timeout:g}s and was terminated",
                ErrorKind.TIMEOUT,
                sandbox=sandbox.mode,
            )
        except Exception as e:
            logger.exception("Tool execution error for %s", tool_name)
            return _result(f"Tool error: {e}", ErrorKind.EXECUTION_ERROR, sandbox=sandbox.mode)

        # 5. Capture and truncate
        text, truncated = truncate_output(_extract_text(response), self._max_output_chars)
        if response.get("timed_out"):
            error = ErrorKind.TIMEOUT
            logger.warning("Tool %s hit its own deadline", tool_name)
        elif response.get("is_error"):
            error = ErrorKind.EXECUTION_ERROR
        else:
            error = None
        return _result(
            text or "(no output)",
            error,
            exit_code=response.get("exit_code"),
            truncated=truncated,
            artifacts=dict(response.get("artifacts") or {}),
            sandbox=sandbox.mode,
        )

    def cancelled_result(self, tool_name: str, call_id: str) -> ToolInvocationResult:
        """Result recorded for a call interrupted by run cancellation."""
        return ToolInvocationResult(
            tool_name=tool_name,
            call_id=call_id,
            output=f"Tool {tool_name} was cancelled before completing",
            error=ErrorKind.CANCELLED,
        )
