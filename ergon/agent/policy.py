"""Tool policy engine: three independent authorization layers.

Layer 1 (tool policy) and Layer 2 (execution approvals) decide whether a
call may run at all; Layer 3 (sandbox resolution) only decides where an
already-permitted call runs. Every call is evaluated from scratch, since
command arguments change the outcome.

The configuration models are frozen pydantic models. The engine holds no
mutable policy state, so nothing the model outputs can widen what a later
call is allowed to do.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

if TYPE_CHECKING:
    from ergon.agent.tools import ToolDefinition

logger = logging.getLogger(__name__)

ToolGroup = Literal["process", "filesystem", "network", "memory", "system"]
ExecMode = Literal["full", "allowlist", "deny"]
SandboxMode = Literal["host", "container", "namespace"]

# Characters a wildcard may never expand over. Patterns can still name them
# literally, e.g. "make && make install".
_SHELL_CONTROL = ";&|<>`$()\n\r"
_WILDCARD_CHAR = "[^" + re.escape(_SHELL_CONTROL) + "]"
_HSPACE = re.compile(r"[ \t]+")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ToolPolicy(BaseModel):
    """Layer 1: allow/deny over tool names and ``group:<name>`` entries.

    ``allow=None`` means "no restriction by allow". An empty allow list is
    normalised to ``None`` as well; use ``deny=["*"]`` to block everything.
    """

    model_config = ConfigDict(frozen=True)

    allow: tuple[str, ...] | None = None
    deny: tuple[str, ...] = ()
    allow_dangerous: bool = True

    @field_validator("allow", mode="before")
    @classmethod
    def _empty_allow_is_unrestricted(cls, value: Any) -> Any:
        if value is not None and len(value) == 0:
            return None
        return value

    @property
    def restricts_by_allow(self) -> bool:
        return self.allow is not None


class ExecApprovals(BaseModel):
    """Layer 2: command-level approvals for process-execution tools."""

    model_config = ConfigDict(frozen=True)

    mode: ExecMode = "allowlist"
    patterns: tuple[str, ...] = ()


class SandboxConfig(BaseModel):
    """Layer 3: execution environment for permitted calls."""

    model_config = ConfigDict(frozen=True)

    mode: SandboxMode = "host"
    groups: tuple[str, ...] = ("process",)
    network: bool = False
    binds: tuple[str, ...] = ()  # "src:dst" or "src:dst:ro"
    image: str = "debian:stable-slim"
    memory_limit: str | None = "512m"
    cpu_limit: float | None = 1.0
    pids_limit: int | None = 256


class PolicyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    tools: ToolPolicy = ToolPolicy()
    exec_approvals: ExecApprovals = ExecApprovals()
    sandbox: SandboxConfig = SandboxConfig()


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyDecision:
    permitted: bool
    reason: str
    layer: str = ""

    @classmethod
    def allow(cls, reason: str = "permitted", layer: str = "") -> PolicyDecision:
        return cls(True, reason, layer)

    @classmethod
    def deny(cls, reason: str, layer: str) -> PolicyDecision:
        return cls(False, reason, layer)


@dataclass(frozen=True)
class SandboxPlan:
    """Where a permitted call runs, and how to wrap a shell command for it."""

    mode: SandboxMode = "host"
    network: bool = True
    binds: tuple[str, ...] = ()
    limits: dict[str, Any] = field(default_factory=dict)
    image: str = ""

    def wrap(self, command: str, workspace: str) -> list[str]:
        """Return argv that runs ``command`` through /bin/sh inside this sandbox."""
        shell = ["/bin/sh", "-c", command]
        if self.mode == "container":
            argv = [
                "docker", "run", "--rm", "-i",
                "--network", "bridge" if self.network else "none",
                "-v", f"{workspace}:/workspace",
                "-w", "/workspace",
            ]
            for bind in self.binds:
                argv += ["-v", bind]
            if self.limits.get("memory"):
                argv += ["--memory", str(self.limits["memory"])]
            if self.limits.get("cpus"):
                argv += ["--cpus", str(self.limits["cpus"])]
            if self.limits.get("pids"):
                argv += ["--pids-limit", str(self.limits["pids"])]
            return argv + [self.image] + shell
        if self.mode == "namespace":
            argv = [
                "bwrap",
                "--ro-bind", "/usr", "/usr",
                "--ro-bind", "/bin", "/bin",
                "--ro-bind", "/lib", "/lib",
                "--ro-bind-try", "/lib64", "/lib64",
                "--proc", "/proc",
                "--dev", "/dev",
                "--bind", workspace, workspace,
                "--chdir", workspace,
                "--unshare-all",
                "--die-with-parent",
            ]
            if self.network:
                argv.append("--share-net")
            for bind in self.binds:
                parts = bind.split(":")
                src, dst = parts[0], parts[1] if len(parts) > 1 else parts[0]
                flag = "--ro-bind" if parts[-1] == "ro" and len(parts) > 2 else "--bind"
                argv += [flag, src, dst]
            return argv + shell
        return shell


class Approver(Protocol):
    """External approval hook for tools flagged ``requires_approval``."""

    async def __call__(self, tool_name: str, arguments: dict[str, Any]) -> bool: ...


# ---------------------------------------------------------------------------
# Command matching
# ---------------------------------------------------------------------------


def normalize_command(command: str) -> str:
    """Trim the command and collapse runs of spaces/tabs.

    Newlines are kept: they separate commands for the shell, so they must
    stay visible to matching.
    """
    return _HSPACE.sub(" ", command.strip())


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    for ch in normalize_command(pattern):
        if ch == "*":
            parts.append(_WILDCARD_CHAR + "*")
        elif ch == "?":
            parts.append(_WILDCARD_CHAR)
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts))


def command_matches(command: str, pattern: str) -> bool:
    """Case-sensitive glob match over the whole (normalised) command line.

    Wildcards never expand over shell control characters, so ``git *``
    matches ``git status`` but not ``git status; rm -rf /``.
    """
    return _compile_pattern(pattern).fullmatch(normalize_command(command)) is not None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _entry_matches(entry: str, tool: ToolDefinition) -> bool:
    if entry == "*":
        return True
    if entry.startswith("group:"):
        return entry[len("group:"):] == tool.group
    return entry == tool.name


class PolicyEngine:
    """Evaluates the three policy layers for one tool invocation."""

    def __init__(self, config: PolicyConfig, approver: Approver | None = None) -> None:
        self._config = config
        self._approver = approver
        self._patterns = tuple(_compile_pattern(p) for p in config.exec_approvals.patterns)

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def check_tool(self, tool: ToolDefinition) -> PolicyDecision:
        """Layer 1. Deny entries win over allow entries in every case."""
        policy = self._config.tools
        for entry in policy.deny:
            if _entry_matches(entry, tool):
                return PolicyDecision.deny(
                    f"tool '{tool.name}' is denied by tool policy ({entry})", "tool_policy"
                )
        if policy.restricts_by_allow and not any(
            _entry_matches(entry, tool) for entry in policy.allow or ()
        ):
            return PolicyDecision.deny(
                f"tool '{tool.name}' is not in the tool allow list", "tool_policy"
            )
        if tool.dangerous and not policy.allow_dangerous:
            return PolicyDecision.deny(
                f"tool '{tool.name}' is marked dangerous and dangerous tools are disabled",
                "tool_policy",
            )
        return PolicyDecision.allow(layer="tool_policy")

    def check_exec(self, tool: ToolDefinition, arguments: dict[str, Any]) -> PolicyDecision:
        """Layer 2. Only process-execution tools are subject to approvals."""
        if tool.group != "process":
            return PolicyDecision.allow("not a process tool", "exec_approvals")

        approvals = self._config.exec_approvals
        if approvals.mode == "full":
            return PolicyDecision.allow("exec mode is full", "exec_approvals")
        if approvals.mode == "deny":
            return PolicyDecision.deny("command execution is disabled (exec mode deny)", "exec_approvals")

        command = str(arguments.get(tool.command_field, ""))
        normalized = normalize_command(command)
        for pattern, compiled in zip(approvals.patterns, self._patterns):
            if compiled.fullmatch(normalized):
                return PolicyDecision.allow(f"command matches allowlist pattern '{pattern}'", "exec_approvals")
        return PolicyDecision.deny(
            f"command '{normalized}' matches no allowlist pattern", "exec_approvals"
        )

    async def evaluate(self, tool: ToolDefinition, arguments: dict[str, Any]) -> PolicyDecision:
        """Run all permission layers in order; first denial wins."""
        decision = self.check_tool(tool)
        if not decision.permitted:
            return decision
        decision = self.check_exec(tool, arguments)
        if not decision.permitted:
            return decision
        if tool.requires_approval:
            if self._approver is None:
                return PolicyDecision.deny(
                    f"tool '{tool.name}' requires external approval and no approver is configured",
                    "approval",
                )
            if not await self._approver(tool.name, arguments):
                return PolicyDecision.deny(
                    f"tool '{tool.name}' was not approved", "approval"
                )
            logger.debug("External approval granted for %s", tool.name)
        return PolicyDecision.allow(layer="all")

    def is_exposed(self, tool: ToolDefinition) -> bool:
        """Whether the tool's schema is advertised to the provider.

        Only Layer 1 hides tools. Tools that execution approvals may deny
        stay advertised; the denial comes back as a tool result.
        """
        return self.check_tool(tool).permitted

    def resolve_sandbox(self, tool: ToolDefinition) -> SandboxPlan:
        """Layer 3. Select the execution environment; never grants or denies."""
        sandbox = self._config.sandbox
        if sandbox.mode == "host" or tool.group not in sandbox.groups:
            return SandboxPlan(mode="host", network=True)
        limits: dict[str, Any] = {}
        if sandbox.memory_limit:
            limits["memory"] = sandbox.memory_limit
        if sandbox.cpu_limit:
            limits["cpus"] = sandbox.cpu_limit
        if sandbox.pids_limit:
            limits["pids"] = sandbox.pids_limit
        logger.debug("Sandbox for %s: %s (network=%s)", tool.name, sandbox.mode, sandbox.network)
        return SandboxPlan(
            mode=sandbox.mode,
            network=sandbox.network,
            binds=sandbox.binds,
            limits=limits,
            image=sandbox.image,
        )
