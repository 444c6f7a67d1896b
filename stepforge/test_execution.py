"""
Execution Engine Tests

These tests verify the tool execution engine can:
1. Resolve paths against the project context
2. Validate required parameters before dispatch
3. Run filesystem tools and bounded subprocesses
4. Turn every failure into a structured result
5. Run batches sequentially with critical-stop, or in parallel

Test list:
1. test_resolve_path - Relative paths anchor on targetDir, absolute pass through
2. test_registry_contract - Required params per tool, validation errors
3. test_create_file_and_directory - Files land under targetDir with content
4. test_file_operations - copy, move, rename, delete, list
5. test_unsupported_and_missing_params - Structured failures, no exceptions
6. test_run_terminal - Output captured, non-zero exit is a failure
7. test_run_terminal_timeout - Slow command and its children killed and reported
8. test_blocked_commands - Destructive patterns refused
9. test_install_and_test_commands - npm/yarn command lines and timeouts
10. test_execute_tools_critical_stop - Batch halts on critical failure only
11. test_execute_tools_should_stop - Cooperative stop before the next tool
12. test_execute_tools_parallel - Independent tools all complete, bad descriptors fail in place
13. test_stats_and_listing - Registry introspection
"""

import os
import shutil
import tempfile
import time
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from .config import ExecutionConfig
from .errors import UnsupportedToolError, ValidationError
from .execution import ToolExecutionEngine, ToolImplementations, resolve_path


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    project = tempfile.mkdtemp(prefix="stepforge_test_")
    yield Path(project)
    shutil.rmtree(project, ignore_errors=True)


@pytest.fixture
def context(temp_project):
    return {"targetDir": str(temp_project)}


@pytest.fixture
def engine():
    return ToolExecutionEngine(ExecutionConfig(command_timeout=5.0))


# =============================================================================
# TEST 1: Path Resolution
# =============================================================================

def test_resolve_path():
    """
    Test 1: Relative paths anchor on targetDir, absolute pass through.

    Verifies:
    - a/b.txt with targetDir /proj resolves to /proj/a/b.txt
    - /abs/x is returned unchanged even with a targetDir
    - Without targetDir, relative paths resolve against the working directory
    """
    assert resolve_path("a/b.txt", {"targetDir": "/proj"}) == "/proj/a/b.txt"
    assert resolve_path("/abs/x", {"targetDir": "/proj"}) == "/abs/x"
    assert resolve_path("a/b.txt", {}) == os.path.join(os.getcwd(), "a", "b.txt")
    assert resolve_path("../x", {"targetDir": "/proj/sub"}) == "/proj/x"

    engine = ToolExecutionEngine()
    assert engine.resolve_path("a/b.txt", {"targetDir": "/proj"}) == "/proj/a/b.txt"

    print("✓ Test 1 passed: Path resolution works correctly")


# =============================================================================
# TEST 2: Registry Contract
# =============================================================================

def test_registry_contract(engine):
    """
    Test 2: Required params per tool, validation errors.

    Verifies:
    - Required parameter lists match each tool's contract
    - run_tests requires nothing
    - Registry lookups by name
    - validate_tool_params raises ValidationError naming the missing parameter
    - Unknown tools raise UnsupportedToolError from validation
    """
    assert engine.get_required_params("create_file") == ["path", "content"]
    assert engine.get_required_params("create_directory") == ["path"]
    assert engine.get_required_params("run_terminal") == ["command"]
    assert engine.get_required_params("install_dependency") == ["package"]
    assert engine.get_required_params("configure_linter") == ["configPath", "configContent"]
    assert engine.get_required_params("run_tests") == []
    assert engine.get_required_params("rename_file") == ["oldPath", "newPath"]
    assert engine.get_required_params("nonexistent") == []

    assert engine.registry.has_tool("list_files")
    assert not engine.registry.has_tool("nonexistent")
    assert engine.registry.get_tool("delete_file").dangerous is True
    assert engine.registry.get_tool("nonexistent") is None

    engine.validate_tool_params("create_file", {"path": "a", "content": ""})

    with pytest.raises(ValidationError) as exc:
        engine.validate_tool_params("create_file", {"path": "a"})
    assert "Missing required parameter: content" in str(exc.value)

    with pytest.raises(UnsupportedToolError):
        engine.validate_tool_params("frobnicate", {})

    print("✓ Test 2 passed: Registry contract works correctly")


# =============================================================================
# TEST 3: create_file / create_directory
# =============================================================================

@pytest.mark.asyncio
async def test_create_file_and_directory(engine, temp_project, context):
    """
    Test 3: Files land under targetDir with content.

    Verifies:
    - Relative file paths resolve against targetDir
    - Parent directories are created
    - Result payload reports path, size and created
    - Directories are created recursively
    """
    result = await engine.execute("create_file", {"path": "src/app/main.js", "content": "hello"}, context)

    assert result.success is True
    assert result.tool == "create_file"
    target = temp_project / "src" / "app" / "main.js"
    assert target.read_text() == "hello"
    assert result.result == {"path": str(target), "size": 5, "created": True}

    result = await engine.execute("create_directory", {"path": "a/b/c"}, context)
    assert result.success is True
    assert (temp_project / "a" / "b" / "c").is_dir()

    # Absolute paths ignore targetDir
    absolute = temp_project / "abs.txt"
    result = await engine.execute("create_file", {"path": str(absolute), "content": ""}, {"targetDir": "/nonexistent"})
    assert result.success is True
    assert absolute.exists()

    print("✓ Test 3 passed: create_file and create_directory work correctly")


# =============================================================================
# TEST 4: File Operations
# =============================================================================

@pytest.mark.asyncio
async def test_file_operations(engine, temp_project, context):
    """
    Test 4: copy, move, rename, delete, list.

    Verifies:
    - copy_file leaves the source in place
    - move_file and rename_file remove the source
    - delete_file removes the file, and fails for a missing one
    - list_files reports entries sorted by name with their kind
    """
    (temp_project / "a.txt").write_text("A")

    result = await engine.execute("copy_file", {"source": "a.txt", "destination": "copies/b.txt"}, context)
    assert result.success is True
    assert (temp_project / "a.txt").exists()
    assert (temp_project / "copies" / "b.txt").read_text() == "A"

    result = await engine.execute("move_file", {"source": "copies/b.txt", "destination": "c.txt"}, context)
    assert result.success is True
    assert not (temp_project / "copies" / "b.txt").exists()
    assert (temp_project / "c.txt").read_text() == "A"

    result = await engine.execute("rename_file", {"oldPath": "c.txt", "newPath": "d.txt"}, context)
    assert result.success is True
    assert result.result["renamed"] is True
    assert (temp_project / "d.txt").exists()

    result = await engine.execute("list_files", {"path": "."}, context)
    assert result.success is True
    names = [f["name"] for f in result.result["files"]]
    assert names == sorted(names)
    assert {"a.txt", "copies", "d.txt"} <= set(names)
    copies = next(f for f in result.result["files"] if f["name"] == "copies")
    assert copies["isDirectory"] is True and copies["isFile"] is False

    result = await engine.execute("delete_file", {"path": "d.txt"}, context)
    assert result.success is True
    assert not (temp_project / "d.txt").exists()

    result = await engine.execute("delete_file", {"path": "d.txt"}, context)
    assert result.success is False
    assert result.error

    print("✓ Test 4 passed: File operations work correctly")


# =============================================================================
# TEST 5: Structured Failures
# =============================================================================

@pytest.mark.asyncio
async def test_unsupported_and_missing_params(engine, context):
    """
    Test 5: Structured failures, no exceptions.

    Verifies:
    - Unknown tool names come back as success=False with the tool named
    - Missing required parameters come back as success=False before dispatch
    - Parameters are echoed on the result
    """
    result = await engine.execute("frobnicate", {"x": 1}, context)
    assert result.success is False
    assert result.error == "Unsupported tool: frobnicate"
    assert result.parameters == {"x": 1}

    result = await engine.execute("create_file", {"path": "never.txt"}, context)
    assert result.success is False
    assert "Missing required parameter: content" in result.error
    assert not (Path(context["targetDir"]) / "never.txt").exists()

    print("✓ Test 5 passed: Failures are structured")


# =============================================================================
# TEST 6: run_terminal
# =============================================================================

@pytest.mark.asyncio
async def test_run_terminal(engine, temp_project, context):
    """
    Test 6: Output captured, non-zero exit is a failure.

    Verifies:
    - stdout is captured and stripped
    - The default working directory is targetDir
    - A non-zero exit produces success=False with the exit code
    """
    result = await engine.execute("run_terminal", {"command": "echo hello"}, context)
    assert result.success is True
    assert result.result["stdout"] == "hello"
    assert result.result["exitCode"] == 0

    result = await engine.execute("run_terminal", {"command": "pwd"}, context)
    assert result.success is True
    assert os.path.realpath(result.result["stdout"]) == os.path.realpath(str(temp_project))

    result = await engine.execute("run_terminal", {"command": "exit 3"}, context)
    assert result.success is False
    assert "exit code 3" in result.error

    print("✓ Test 6 passed: run_terminal works correctly")


# =============================================================================
# TEST 7: Timeouts
# =============================================================================

@pytest.mark.asyncio
async def test_run_terminal_timeout(context):
    """
    Test 7: Slow command killed and reported.

    Verifies:
    - A command exceeding command_timeout fails instead of hanging
    - The error mentions the timeout
    - Processes started by the shell are killed too, so the call
      returns near the timeout instead of waiting for them
    """
    engine = ToolExecutionEngine(ExecutionConfig(command_timeout=0.3))

    result = await engine.execute("run_terminal", {"command": "sleep 5"}, context)

    assert result.success is False
    assert "timed out" in result.error

    engine = ToolExecutionEngine(ExecutionConfig(command_timeout=1))
    started = time.monotonic()
    result = await engine.execute("run_terminal", {"command": "true; sleep 8"}, context)
    elapsed = time.monotonic() - started

    assert result.success is False
    assert "timed out" in result.error
    assert elapsed < 4

    print("✓ Test 7 passed: Timeouts work correctly")


# =============================================================================
# TEST 8: Blocked Commands
# =============================================================================

@pytest.mark.asyncio
async def test_blocked_commands(engine, context):
    """
    Test 8: Destructive patterns refused.

    Verifies:
    - rm -rf / and mkfs are blocked before anything runs
    - Ordinary rm of a relative path is not blocked
    """
    for command in ["rm -rf /", "mkfs.ext4 /dev/sda1", "dd if=/dev/zero of=/dev/sda"]:
        result = await engine.execute("run_terminal", {"command": command}, context)
        assert result.success is False
        assert "Blocked" in result.error

    Path(context["targetDir"], "junk").mkdir()
    result = await engine.execute("run_terminal", {"command": "rm -rf junk"}, context)
    assert result.success is True

    print("✓ Test 8 passed: Blocked commands are refused")


# =============================================================================
# TEST 9: install_dependency / run_tests
# =============================================================================

@pytest.mark.asyncio
async def test_install_and_test_commands(context):
    """
    Test 9: npm/yarn command lines and timeouts.

    Verifies:
    - install_dependency uses npm install by default and yarn add for yarn
    - run_tests runs the named script with the test timeout
    - Payloads carry the package and script names
    """
    shell = AsyncMock(return_value={"stdout": "ok", "stderr": "", "exitCode": 0})
    engine = ToolExecutionEngine(ExecutionConfig())

    with patch.object(ToolImplementations, "_run_shell", shell):
        result = await engine.execute("install_dependency", {"package": "express"}, context)
        assert result.success is True
        assert result.result["installed"] is True
        assert result.result["packageManager"] == "npm"
        command, cwd, timeout = shell.call_args.args
        assert command == "npm install express"
        assert cwd == context["targetDir"]
        assert timeout == 60.0

        await engine.execute("install_dependency", {"package": "lodash", "packageManager": "yarn"}, context)
        assert shell.call_args.args[0] == "yarn add lodash"

        result = await engine.execute("run_tests", {}, context)
        assert result.success is True
        assert result.result["testScript"] == "test"
        assert result.result["testsRun"] is True
        command, _, timeout = shell.call_args.args
        assert command == "npm run test"
        assert timeout == 120.0

    print("✓ Test 9 passed: install_dependency and run_tests build correct commands")


# =============================================================================
# TEST 10: Sequential Batches
# =============================================================================

@pytest.mark.asyncio
async def test_execute_tools_critical_stop(engine, temp_project, context):
    """
    Test 10: Batch halts on critical failure only.

    Verifies:
    - A failing tool with critical unset stops the batch
    - A failing tool with critical=False does not
    - Descriptor aliases (tool/params) are accepted
    - A malformed descriptor fails the batch without raising
    """
    results = await engine.execute_tools([
        {"name": "create_file", "parameters": {"path": "one.txt", "content": "1"}},
        {"name": "delete_file", "parameters": {"path": "missing.txt"}},
        {"name": "create_file", "parameters": {"path": "two.txt", "content": "2"}},
    ], context)

    assert [r.success for r in results] == [True, False]
    assert not (temp_project / "two.txt").exists()

    results = await engine.execute_tools([
        {"tool": "delete_file", "params": {"path": "missing.txt"}, "critical": False},
        {"toolName": "create_file", "params": {"path": "two.txt", "content": "2"}},
    ], context)

    assert [r.success for r in results] == [False, True]
    assert (temp_project / "two.txt").read_text() == "2"

    results = await engine.execute_tools([{"parameters": {}}], context)
    assert len(results) == 1
    assert results[0].success is False
    assert "Invalid tool descriptor" in results[0].error

    print("✓ Test 10 passed: Sequential batches stop on critical failures")


# =============================================================================
# TEST 11: Cooperative Stop
# =============================================================================

@pytest.mark.asyncio
async def test_execute_tools_should_stop(engine, temp_project, context):
    """
    Test 11: Cooperative stop before the next tool.

    Verifies:
    - should_stop is consulted before each tool
    - The tool already running completes
    """
    calls = []

    def should_stop():
        calls.append(True)
        return len(calls) > 1

    results = await engine.execute_tools([
        {"name": "create_file", "parameters": {"path": "first.txt", "content": ""}},
        {"name": "create_file", "parameters": {"path": "second.txt", "content": ""}},
    ], context, should_stop=should_stop)

    assert len(results) == 1
    assert (temp_project / "first.txt").exists()
    assert not (temp_project / "second.txt").exists()

    print("✓ Test 11 passed: Cooperative stop works correctly")


# =============================================================================
# TEST 12: Parallel Batches
# =============================================================================

@pytest.mark.asyncio
async def test_execute_tools_parallel(engine, temp_project, context):
    """
    Test 12: Independent tools all complete.

    Verifies:
    - Every tool runs even when one fails
    - Results come back in descriptor order
    - A malformed descriptor fails in its own slot without raising
    """
    results = await engine.execute_tools_parallel([
        {"name": "create_file", "parameters": {"path": f"p{i}.txt", "content": str(i)}}
        for i in range(5)
    ] + [{"name": "delete_file", "parameters": {"path": "missing.txt"}}], context)

    assert [r.success for r in results] == [True] * 5 + [False]
    for i in range(5):
        assert (temp_project / f"p{i}.txt").read_text() == str(i)

    results = await engine.execute_tools_parallel([
        {"name": "create_file", "parameters": {"path": "ok.txt", "content": "ok"}},
        {"parameters": {}},
        "not a descriptor",
    ], context)

    assert [r.success for r in results] == [True, False, False]
    assert results[1].tool == "unknown"
    assert "Invalid tool descriptor" in results[1].error
    assert "Invalid tool descriptor" in results[2].error
    assert (temp_project / "ok.txt").read_text() == "ok"

    print("✓ Test 12 passed: Parallel batches work correctly")


# =============================================================================
# TEST 13: Introspection
# =============================================================================

def test_stats_and_listing(engine):
    """
    Test 13: Registry introspection.

    Verifies:
    - All eleven tools are registered
    - list_tools reports required parameters and danger flags
    """
    stats = engine.get_stats()
    assert stats["totalTools"] == 11
    assert set(stats["supportedTools"]) == {
        "create_file", "create_directory", "run_terminal", "install_dependency",
        "configure_linter", "run_tests", "copy_file", "move_file", "delete_file",
        "rename_file", "list_files",
    }

    tools = {t["name"]: t for t in engine.list_tools()}
    assert tools["run_terminal"]["dangerous"] is True
    assert tools["create_file"]["requiredParams"] == ["path", "content"]

    print("✓ Test 13 passed: Introspection works correctly")
