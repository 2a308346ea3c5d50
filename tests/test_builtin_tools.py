"""Unit tests for ergon/agent/builtin_tools.py -- bash, read_file, write_file, list_dir.

All tests are pure async (no database required). Filesystem tests use
the pytest tmp_path fixture for workspace isolation.
"""

import os
import sys

import pytest

from ergon.agent.builtin_tools import (
    WorkspaceViolation,
    bash_tool,
    build_command_env,
    list_dir_tool,
    read_file_tool,
    register_builtin_tools,
    resolve_in_workspace,
    write_file_tool,
)
from ergon.agent.models import ErrorKind
from ergon.agent.policy import ExecApprovals, PolicyConfig
from ergon.agent.tools import ToolContext, ToolRegistry
from tests.conftest import make_executor

SAFE_PATH = "/usr/local/bin:/usr/bin:/bin"


def _extract_text(result: dict) -> str:
    """Extract text from MCP-format response."""
    return result["content"][0]["text"]


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def ctx(workspace) -> ToolContext:
    return ToolContext(session_id="s1", call_id="c1", workspace=workspace)


# ---------------------------------------------------------------------------
# Workspace confinement
# ---------------------------------------------------------------------------


class TestWorkspaceConfinement:
    def test_relative_path_inside(self, workspace):
        assert resolve_in_workspace("a/b.txt", workspace) == (workspace / "a" / "b.txt").resolve()

    def test_dotdot_escape(self, workspace):
        with pytest.raises(WorkspaceViolation):
            resolve_in_workspace("../outside.txt", workspace)

    def test_dotdot_that_stays_inside(self, workspace):
        assert resolve_in_workspace("a/../b.txt", workspace) == (workspace / "b.txt").resolve()

    def test_absolute_outside(self, workspace):
        with pytest.raises(WorkspaceViolation):
            resolve_in_workspace("/etc/passwd", workspace)

    def test_absolute_inside(self, workspace):
        target = workspace / "f.txt"
        assert resolve_in_workspace(str(target), workspace) == target.resolve()

    def test_symlink_escape(self, tmp_path, workspace):
        outside = tmp_path / "secret.txt"
        outside.write_text("secret")
        (workspace / "link.txt").symlink_to(outside)
        with pytest.raises(WorkspaceViolation):
            resolve_in_workspace("link.txt", workspace)

    def test_symlinked_directory_escape(self, tmp_path, workspace):
        (tmp_path / "elsewhere").mkdir()
        (workspace / "dir").symlink_to(tmp_path / "elsewhere")
        with pytest.raises(WorkspaceViolation):
            resolve_in_workspace("dir/new.txt", workspace)

    def test_prefix_sibling_is_outside(self, tmp_path, workspace):
        sibling = tmp_path / "ws-evil"
        sibling.mkdir()
        with pytest.raises(WorkspaceViolation):
            resolve_in_workspace(str(sibling / "x"), workspace)


# ---------------------------------------------------------------------------
# Command environment
# ---------------------------------------------------------------------------


class TestCommandEnv:
    def test_loader_overrides_rejected(self):
        env, rejected = build_command_env(
            {"LD_PRELOAD": "/tmp/evil.so", "DYLD_INSERT_LIBRARIES": "x", "PATH": "/tmp", "FOO": "bar"},
            SAFE_PATH,
            base={},
        )
        assert sorted(rejected) == ["DYLD_INSERT_LIBRARIES", "LD_PRELOAD", "PATH"]
        assert env == {"FOO": "bar", "PATH": SAFE_PATH}

    def test_inherited_loader_variables_dropped(self):
        env, rejected = build_command_env(
            None,
            SAFE_PATH,
            base={"LD_LIBRARY_PATH": "/x", "LIBPATH": "/y", "SHLIB_PATH": "/z", "HOME": "/home/u", "PATH": "/evil"},
        )
        assert rejected == []
        assert env == {"HOME": "/home/u", "PATH": SAFE_PATH}

    def test_case_insensitive_names(self):
        _, rejected = build_command_env({"ld_preload": "x", "Path": "/tmp"}, SAFE_PATH, base={})
        assert sorted(rejected) == ["Path", "ld_preload"]


# ---------------------------------------------------------------------------
# bash_tool
# ---------------------------------------------------------------------------


class TestBashTool:
    @pytest.mark.asyncio
    async def test_success(self, ctx):
        result = await bash_tool(
            command=f'{sys.executable} -c "print(\'hello from bash tool\')"', _context=ctx
        )
        assert "hello from bash tool" in _extract_text(result)
        assert result["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, ctx, workspace):
        result = await bash_tool(command="pwd", _context=ctx)
        assert _extract_text(result).strip() == str(workspace)

    @pytest.mark.asyncio
    async def test_stderr_labeled(self, ctx):
        result = await bash_tool(
            command=f'{sys.executable} -c "import sys; sys.stderr.write(\'warning msg\\n\')"',
            _context=ctx,
        )
        text = _extract_text(result)
        assert "STDERR" in text
        assert "warning msg" in text

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, ctx):
        result = await bash_tool(command=f'{sys.executable} -c "import sys; sys.exit(42)"', _context=ctx)
        assert "Exit code: 42" in _extract_text(result)
        assert result["exit_code"] == 42

    @pytest.mark.asyncio
    async def test_own_timeout(self, ctx):
        result = await bash_tool(
            command=f'{sys.executable} -c "import time; time.sleep(30)"', timeout=1, _context=ctx
        )
        assert result["is_error"]
        assert result["timed_out"]
        assert "timed out after 1s" in _extract_text(result)

    @pytest.mark.asyncio
    async def test_path_is_pinned_and_overrides_reported(self, ctx):
        result = await bash_tool(
            command='echo "$PATH|$LD_PRELOAD|$GREETING"',
            env={"LD_PRELOAD": "/tmp/evil.so", "PATH": "/tmp", "GREETING": "hi"},
            _context=ctx,
            _safe_path=SAFE_PATH,
        )
        text = _extract_text(result)
        assert f"{SAFE_PATH}||hi" in text
        assert "Ignored environment overrides: LD_PRELOAD, PATH" in text

    @pytest.mark.asyncio
    async def test_inherited_ld_preload_not_passed(self, ctx, monkeypatch):
        monkeypatch.setenv("LD_AUDIT", "/tmp/audit.so")
        result = await bash_tool(command='echo "[$LD_AUDIT]"', _context=ctx)
        assert "[]" in _extract_text(result)
        assert os.environ["LD_AUDIT"] == "/tmp/audit.so"


# ---------------------------------------------------------------------------
# bash through the executor
# ---------------------------------------------------------------------------


class TestBashTimeouts:
    @pytest.fixture
    def executor(self, settings):
        registry = ToolRegistry()
        register_builtin_tools(registry, settings)
        policy = PolicyConfig(exec_approvals=ExecApprovals(mode="full"))
        return make_executor(registry, policy, default_timeout=1.0)

    @pytest.mark.asyncio
    async def test_requested_timeout_is_reported_as_timeout(self, executor, ctx):
        result = await executor.execute(
            "bash",
            {"command": f"{sys.executable} -c 'import time; time.sleep(5)'", "timeout": 1},
            ctx,
        )
        assert result.error == ErrorKind.TIMEOUT
        assert "timed out after 1s" in result.output

    @pytest.mark.asyncio
    async def test_tool_timeout_applies_without_requested_timeout(self, executor, ctx):
        result = await executor.execute(
            "bash", {"command": f"{sys.executable} -c 'import time; time.sleep(5)'"}, ctx
        )
        assert result.error == ErrorKind.TIMEOUT
        assert result.duration_ms < 4000

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_not_a_timeout(self, executor, ctx):
        result = await executor.execute("bash", {"command": "exit 3"}, ctx)
        assert result.error is None
        assert result.exit_code == 3


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


class TestFileTools:
    @pytest.mark.asyncio
    async def test_write_then_read(self, ctx, workspace):
        written = await write_file_tool(path="notes/a.txt", content="line1\nline2\nline3\n", _context=ctx)
        assert "notes/a.txt" in _extract_text(written)
        assert (workspace / "notes" / "a.txt").exists()

        result = await read_file_tool(path="notes/a.txt", _context=ctx)
        assert _extract_text(result) == "line1\nline2\nline3\n"

    @pytest.mark.asyncio
    async def test_read_offset_limit(self, ctx, workspace):
        (workspace / "f.txt").write_text("a\nb\nc\nd\n")
        result = await read_file_tool(path="f.txt", offset=1, limit=2, _context=ctx)
        assert _extract_text(result) == "b\nc\n"

    @pytest.mark.asyncio
    async def test_read_missing(self, ctx):
        result = await read_file_tool(path="nope.txt", _context=ctx)
        assert result["is_error"]
        assert "File not found" in _extract_text(result)

    @pytest.mark.asyncio
    async def test_read_outside_refused(self, ctx):
        result = await read_file_tool(path="../../etc/passwd", _context=ctx)
        assert result["is_error"]
        assert "outside the workspace" in _extract_text(result)

    @pytest.mark.asyncio
    async def test_write_through_symlink_refused(self, tmp_path, ctx, workspace):
        outside = tmp_path / "target.txt"
        outside.write_text("original")
        (workspace / "link.txt").symlink_to(outside)
        result = await write_file_tool(path="link.txt", content="overwritten", _context=ctx)
        assert result["is_error"]
        assert outside.read_text() == "original"

    @pytest.mark.asyncio
    async def test_list_dir(self, ctx, workspace):
        (workspace / "b.txt").write_text("")
        (workspace / "a_dir").mkdir()
        result = await list_dir_tool(_context=ctx)
        assert _extract_text(result).splitlines() == ["a_dir/", "b.txt"]

    @pytest.mark.asyncio
    async def test_list_dir_empty_and_escape(self, ctx):
        assert _extract_text(await list_dir_tool(_context=ctx)) == "(empty directory)"
        escaped = await list_dir_tool(path="..", _context=ctx)
        assert escaped["is_error"]
