"""Built-in tools: bash, read_file, write_file, list_dir.

Filesystem tools resolve every path against the workspace root and refuse
anything that lands outside it, however the escape is spelled. The bash
tool runs in its own process group so a timeout or a cancelled run kills
the whole tree, and it never lets loader or search-path variables through.
All tools return MCP-format responses.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any

from ergon.agent.tools import ToolContext, ToolDefinition, ToolRegistry, mcp_response
from ergon.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_MAX_DIR_ENTRIES = 500

# Environment variables a command may never set or inherit
_BLOCKED_ENV_NAMES = frozenset({"PATH", "LIBPATH", "SHLIB_PATH"})
_BLOCKED_ENV_PREFIXES = ("LD_", "DYLD_")


class WorkspaceViolation(ValueError):
    """A path resolved outside the workspace root."""


def resolve_in_workspace(path_str: str, workspace: Path) -> Path:
    """Resolve ``path_str`` under ``workspace``.

    Symlinks are resolved before the containment check, so a link that
    points outside the root is rejected like ``..`` or an absolute path.
    Raises WorkspaceViolation if the resolved path escapes.
    """
    root = workspace.resolve()
    candidate = Path(path_str)
    target = (candidate if candidate.is_absolute() else root / candidate).resolve()
    if target != root and not target.is_relative_to(root):
        raise WorkspaceViolation(
            f"Path '{path_str}' is outside the workspace. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _is_blocked_env(name: str) -> bool:
    upper = name.upper()
    return upper in _BLOCKED_ENV_NAMES or upper.startswith(_BLOCKED_ENV_PREFIXES)


def build_command_env(
    overrides: dict[str, str] | None,
    safe_path: str,
    base: dict[str, str] | None = None,
) -> tuple[dict[str, str], list[str]]:
    """Build the child environment.

    Inherited and requested loader/library-path variables are dropped and
    PATH is pinned to ``safe_path``. Returns (env, rejected_names).
    """
    source = os.environ if base is None else base
    env = {k: v for k, v in source.items() if not _is_blocked_env(k)}
    rejected: list[str] = []
    for key, value in (overrides or {}).items():
        if _is_blocked_env(key):
            rejected.append(key)
            continue
        env[key] = str(value)
    env["PATH"] = safe_path
    return env, rejected


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(
    command: str,
    timeout: int | None = None,
    env: dict[str, str] | None = None,
    *,
    _context: ToolContext,
    _safe_path: str = "/usr/local/bin:/usr/bin:/bin",
) -> dict[str, Any]:
    """Execute a shell command in the workspace directory.

    Args:
        command: Shell command to execute
        timeout: Timeout in seconds (max 300). Without one the executor's
            tool timeout bounds the command
        env: Extra environment variables (loader and PATH overrides are refused)
        _context: Invocation context set by the executor
        _safe_path: Internal param set by registration closure

    Returns:
        MCP-format response with stdout + stderr and the exit code
    """
    effective_timeout = None if timeout is None else max(1, min(timeout, _MAX_BASH_TIMEOUT))

    workspace = _context.workspace
    workspace.mkdir(parents=True, exist_ok=True)

    child_env, rejected = build_command_env(env, _safe_path)
    if rejected:
        logger.warning("bash: refused environment overrides %s", rejected)

    argv = _context.sandbox.wrap(command, str(workspace.resolve()))
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
        env=child_env,
        start_new_session=True,
    )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except asyncio.TimeoutError:
        _kill_group(proc)
        await proc.wait()
        return mcp_response(
            f"Command timed out after {effective_timeout}s.\nCommand: {command}",
            is_error=True,
            timed_out=True,
            exit_code=proc.returncode,
        )
    except asyncio.CancelledError:
        # Executor timeout or run cancellation: take the process tree down with us
        _kill_group(proc)
        await proc.wait()
        raise

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if rejected:
        parts.append(f"Ignored environment overrides: {', '.join(sorted(rejected))}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    output = "\n".join(parts) if parts else "(no output)"
    return mcp_response(output, exit_code=proc.returncode)


async def read_file_tool(
    path: str,
    offset: int = 0,
    limit: int = 0,
    *,
    _context: ToolContext,
) -> dict[str, Any]:
    """Read a file from the workspace directory.

    Args:
        path: File path (relative to workspace or absolute within workspace)
        offset: Line offset to start reading from (0-indexed)
        limit: Number of lines to read (0 = all)

    Returns:
        MCP-format response with file contents
    """
    try:
        target = resolve_in_workspace(path, _context.workspace)
    except WorkspaceViolation as e:
        return mcp_response(str(e), is_error=True)

    if not target.exists():
        return mcp_response(f"File not found: {path}", is_error=True)
    if not target.is_file():
        return mcp_response(f"Not a file: {path}", is_error=True)

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE and offset == 0 and limit == 0:
        return mcp_response(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). "
            f"Use offset/limit to read portions.",
            is_error=True,
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")

    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        if offset > 0:
            lines = lines[offset:]
        if limit > 0:
            lines = lines[:limit]
        content = "".join(lines)

    return mcp_response(content if content else "(empty file)")


async def write_file_tool(
    path: str,
    content: str,
    *,
    _context: ToolContext,
) -> dict[str, Any]:
    """Write content to a file in the workspace directory, creating parents."""
    try:
        target = resolve_in_workspace(path, _context.workspace)
    except WorkspaceViolation as e:
        return mcp_response(str(e), is_error=True)

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")

    relative = target.relative_to(_context.workspace.resolve())
    return mcp_response(
        f"File written successfully: {relative}\nSize: {len(content):,} bytes"
    )


async def list_dir_tool(
    path: str = ".",
    *,
    _context: ToolContext,
) -> dict[str, Any]:
    """List a directory inside the workspace."""
    try:
        target = resolve_in_workspace(path, _context.workspace)
    except WorkspaceViolation as e:
        return mcp_response(str(e), is_error=True)

    if not target.is_dir():
        return mcp_response(f"Not a directory: {path}", is_error=True)

    entries = sorted(target.iterdir(), key=lambda p: p.name)
    lines = [f"{p.name}/" if p.is_dir() else p.name for p in entries[:_MAX_DIR_ENTRIES]]
    if len(entries) > _MAX_DIR_ENTRIES:
        lines.append(f"... ({len(entries) - _MAX_DIR_ENTRIES} more entries)")
    return mcp_response("\n".join(lines) if lines else "(empty directory)")


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

BASH = ToolDefinition(
    name="bash",
    description="Execute a shell command in the workspace directory",
    group="process",
    dangerous=True,
    input_schema={
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "Shell command to execute"},
            "timeout": {
                "type": "integer",
                "description": "Timeout in seconds (max 300, default: the tool timeout)",
                "minimum": 1,
                "maximum": 300,
            },
            "env": {
                "type": "object",
                "description": "Extra environment variables for the command",
                "additionalProperties": {"type": "string"},
            },
        },
        "required": ["command"],
        "additionalProperties": False,
    },
)

READ_FILE = ToolDefinition(
    name="read_file",
    description="Read a file from the workspace directory",
    group="filesystem",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
            "offset": {
                "type": "integer",
                "description": "Line offset to start reading from (0-indexed)",
                "default": 0,
                "minimum": 0,
            },
            "limit": {
                "type": "integer",
                "description": "Number of lines to read (0 = all)",
                "default": 0,
                "minimum": 0,
            },
        },
        "required": ["path"],
        "additionalProperties": False,
    },
)

WRITE_FILE = ToolDefinition(
    name="write_file",
    description="Write content to a file in the workspace directory",
    group="filesystem",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
            "content": {"type": "string", "description": "Content to write to the file"},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    },
)

LIST_DIR = ToolDefinition(
    name="list_dir",
    description="List the entries of a directory in the workspace",
    group="filesystem",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory path (default: workspace root)", "default": "."},
        },
        "additionalProperties": False,
    },
)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: ToolRegistry, settings: Settings) -> None:
    """Register bash, read_file, write_file and list_dir.

    Creates closure wrappers that inject the safe PATH from settings.
    """
    safe_path = settings.safe_path

    async def _bash(
        command: str, timeout: int | None = None, env: dict[str, str] | None = None, *, _context: ToolContext
    ) -> dict[str, Any]:
        return await bash_tool(command, timeout, env, _context=_context, _safe_path=safe_path)

    registry.register(BASH, _bash)
    registry.register(READ_FILE, read_file_tool)
    registry.register(WRITE_FILE, write_file_tool)
    registry.register(LIST_DIR, list_dir_tool)
