"""
Tool Execution Engine for stepforge.

WHAT THIS FILE DOES:
-------------------
Runs primitive tools: filesystem operations and timeout-bounded
subprocesses. Both orchestrators hand their work to this module, and it is
the only place that touches the disk or spawns processes.

HOW IT WORKS:
------------
1. ToolRegistry: Maps tool names to definitions and implementations
2. ToolImplementations: Actually performs the tool operations
3. ToolExecutionEngine: Validates, dispatches and records every invocation

EXECUTION FLOW:
--------------
    execute("create_file", {"path": ..., "content": ...}, context)
           │
           ▼
    Registry lookup ──── unknown name ──▶ ExecutionResult(success=False)
           │
           ▼
    Required-parameter check ── missing ──▶ ExecutionResult(success=False)
           │
           ▼
    Implementation(params, context)
           │
           ▼
    ExecutionResult(success=True, result={...})

Failures never propagate past execute(); they come back as structured
results so callers can apply their own abort policy.
"""

import asyncio
import contextlib
import logging
import os
import re
import shutil
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from .config import ExecutionConfig
from .errors import StepExecutionError, UnsupportedToolError, ValidationError
from .schemas import ExecutionResult, ToolDefinition, ToolDescriptor, ToolParameter

logger = logging.getLogger(__name__)

ToolImplementation = Callable[[dict, dict], Awaitable[dict]]


# =============================================================================
# SECTION 1: TOOL REGISTRY
# =============================================================================

class ToolRegistry:
    """
    Registry of tools the engine can execute.

    Each entry pairs a ToolDefinition (name, parameters, which ones are
    required) with an async implementation taking (params, context).

    Example usage:
        registry = ToolRegistry()
        registry.register(create_file_def, implementations.create_file)

        definition, impl = registry.resolve("create_file")
    """

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        self._implementations: dict[str, ToolImplementation] = {}

    def register(self, definition: ToolDefinition, implementation: ToolImplementation) -> None:
        """Register a tool with its implementation."""
        self._tools[definition.name] = definition
        self._implementations[definition.name] = implementation

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        """Get a tool definition by name."""
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[ToolDefinition]:
        """Get all registered tools."""
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def resolve(self, name: str) -> tuple[ToolDefinition, ToolImplementation]:
        """
        Look up a tool.

        Raises:
            UnsupportedToolError: If the tool is not registered
        """
        if name not in self._tools:
            raise UnsupportedToolError(name)
        return self._tools[name], self._implementations[name]

    def required_params(self, name: str) -> list[str]:
        """Required parameter names for a tool; empty for unknown tools."""
        tool = self._tools.get(name)
        return tool.required_params if tool else []

    def validate_params(self, name: str, params: dict) -> None:
        """
        Check a parameter dict against the tool's contract.

        Raises:
            UnsupportedToolError: If the tool is not registered
            ValidationError: If a required parameter is missing
        """
        definition, _ = self.resolve(name)
        for param in definition.required_params:
            if param not in params:
                raise ValidationError(
                    f"Missing required parameter: {param}",
                    {"tool": name, "parameter": param},
                )


# =============================================================================
# SECTION 2: TOOL IMPLEMENTATIONS
# =============================================================================

def resolve_path(file_path: str, context: Optional[dict] = None) -> str:
    """
    Resolve a path relative to the project context.

    Absolute paths pass through unchanged. Relative paths resolve against
    context['targetDir'] when present, else against the working directory.
    """
    if os.path.isabs(file_path):
        return file_path

    target_dir = (context or {}).get("targetDir")
    if target_dir:
        return os.path.abspath(os.path.join(target_dir, file_path))

    return os.path.abspath(file_path)


class ToolImplementations:
    """
    Standard tool implementations.

    Every implementation takes (params, context) and returns a result dict,
    raising on failure. Subprocess tools run with a bounded timeout; on
    expiry the process is killed and reaped before the error is raised.
    """

    def __init__(self, config: Optional[ExecutionConfig] = None):
        self.config = config or ExecutionConfig()

    def _working_dir(self, params: dict, context: dict) -> str:
        cwd = params.get("cwd")
        if cwd:
            return resolve_path(cwd, context)
        if context.get("targetDir"):
            return resolve_path(context["targetDir"], {})
        return os.getcwd()

    def _check_command(self, command: str) -> None:
        for pattern in self.config.blocked_patterns:
            if re.search(pattern, command):
                raise ValidationError(
                    f"Blocked dangerous command pattern: {pattern}",
                    {"command": command},
                )

    async def _run_shell(self, command: str, cwd: str, timeout: float) -> dict:
        """
        Run a shell command and capture its output.

        Raises:
            TimeoutError: If the command runs longer than timeout seconds
            StepExecutionError: If the command exits non-zero
        """
        logger.info(f"Running command: {command} (cwd={cwd}, timeout={timeout}s)")
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            # Kill the whole process group; children of the shell hold the pipes open
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
            await process.wait()
            raise TimeoutError(f"Command timed out after {timeout:g} seconds: {command}")

        out = stdout.decode("utf-8", errors="ignore").strip()
        err = stderr.decode("utf-8", errors="ignore").strip()

        if process.returncode != 0:
            raise StepExecutionError(
                f"Command failed with exit code {process.returncode}: {command}"
                + (f"\n{err}" if err else ""),
                context={"stdout": out, "stderr": err, "exitCode": process.returncode},
            )

        return {"stdout": out, "stderr": err, "exitCode": process.returncode}

    async def create_file(self, params: dict, context: dict) -> dict:
        """Create (or overwrite) a file, creating parent directories."""
        full_path = Path(resolve_path(params["path"], context))
        content = params["content"] if params["content"] is not None else ""

        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")

        return {"path": str(full_path), "size": len(content), "created": True}

    async def create_directory(self, params: dict, context: dict) -> dict:
        full_path = Path(resolve_path(params["path"], context))
        full_path.mkdir(parents=True, exist_ok=True)
        return {"path": str(full_path), "created": True}

    async def run_terminal(self, params: dict, context: dict) -> dict:
        """Run a shell command (30s default timeout)."""
        command = params["command"]
        self._check_command(command)
        cwd = self._working_dir(params, context)

        output = await self._run_shell(command, cwd, self.config.command_timeout)

        return {"command": command, "cwd": cwd, **output}

    async def install_dependency(self, params: dict, context: dict) -> dict:
        """Install a package with npm or yarn (60s default timeout)."""
        package = params["package"]
        package_manager = params.get("packageManager") or self.config.package_manager
        cwd = self._working_dir(params, context)

        if package_manager == "yarn":
            command = f"yarn add {package}"
        else:
            command = f"npm install {package}"

        output = await self._run_shell(command, cwd, self.config.install_timeout)

        return {
            "package": package,
            "packageManager": package_manager,
            "cwd": cwd,
            "stdout": output["stdout"],
            "stderr": output["stderr"],
            "installed": True,
        }

    async def configure_linter(self, params: dict, context: dict) -> dict:
        cwd = self._working_dir(params, context)
        config_path = Path(resolve_path(params["configPath"], {"targetDir": cwd}))

        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(params["configContent"], encoding="utf-8")

        return {"configPath": str(config_path), "configured": True}

    async def run_tests(self, params: dict, context: dict) -> dict:
        """Run the project's test script (120s default timeout)."""
        test_script = params.get("testScript") or "test"
        cwd = self._working_dir(params, context)
        command = f"{self.config.package_manager} run {test_script}"

        output = await self._run_shell(command, cwd, self.config.test_timeout)

        return {
            "testScript": test_script,
            "cwd": cwd,
            "stdout": output["stdout"],
            "stderr": output["stderr"],
            "testsRun": True,
        }

    async def copy_file(self, params: dict, context: dict) -> dict:
        source = Path(resolve_path(params["source"], context))
        destination = Path(resolve_path(params["destination"], context))

        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)

        return {"source": str(source), "destination": str(destination), "copied": True}

    async def move_file(self, params: dict, context: dict) -> dict:
        source = Path(resolve_path(params["source"], context))
        destination = Path(resolve_path(params["destination"], context))

        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(destination))

        return {"source": str(source), "destination": str(destination), "moved": True}

    async def delete_file(self, params: dict, context: dict) -> dict:
        full_path = Path(resolve_path(params["path"], context))
        full_path.unlink()
        return {"path": str(full_path), "deleted": True}

    async def rename_file(self, params: dict, context: dict) -> dict:
        old_path = Path(resolve_path(params["oldPath"], context))
        new_path = Path(resolve_path(params["newPath"], context))
        old_path.rename(new_path)
        return {"oldPath": str(old_path), "newPath": str(new_path), "renamed": True}

    async def list_files(self, params: dict, context: dict) -> dict:
        full_path = Path(resolve_path(params["path"], context))

        files = [
            {
                "name": entry.name,
                "isDirectory": entry.is_dir(),
                "isFile": entry.is_file(),
            }
            for entry in sorted(full_path.iterdir(), key=lambda p: p.name)
        ]

        return {"path": str(full_path), "files": files}


def _invalid_descriptor_result(raw: Any, error: Exception) -> ExecutionResult:
    name = raw.get("name") if isinstance(raw, dict) else None
    return ExecutionResult(
        tool=str(name or "unknown"),
        success=False,
        error=f"Invalid tool descriptor: {error}",
    )


def _param(name: str, description: str, required: bool = True, type: str = "string", default: Any = None) -> ToolParameter:
    return ToolParameter(name=name, type=type, description=description, required=required, default=default)


def create_default_tools(config: Optional[ExecutionConfig] = None) -> tuple[ToolRegistry, ToolImplementations]:
    """
    Create a registry with the standard tool set.

    Args:
        config: Execution settings (timeouts, blocked command patterns)
    """
    registry = ToolRegistry()
    impl = ToolImplementations(config)
    cwd = _param("cwd", "Working directory (resolved like any other path)", required=False)

    registry.register(
        ToolDefinition(
            name="create_file",
            description="Create or overwrite a file. Creates parent directories if needed.",
            parameters=[
                _param("path", "File path"),
                _param("content", "Content to write"),
            ],
            returns="{path, size, created}",
        ),
        impl.create_file,
    )
    registry.register(
        ToolDefinition(
            name="create_directory",
            description="Create a directory and any missing parents.",
            parameters=[_param("path", "Directory path")],
            returns="{path, created}",
        ),
        impl.create_directory,
    )
    registry.register(
        ToolDefinition(
            name="run_terminal",
            description="Run a shell command. Destructive patterns are blocked.",
            parameters=[_param("command", "Shell command to execute"), cwd],
            returns="{command, cwd, stdout, stderr, exitCode}",
            dangerous=True,
        ),
        impl.run_terminal,
    )
    registry.register(
        ToolDefinition(
            name="install_dependency",
            description="Install a package with npm or yarn.",
            parameters=[
                _param("package", "Package name"),
                _param("packageManager", "npm or yarn", required=False, default="npm"),
                cwd,
            ],
            returns="{package, packageManager, cwd, stdout, stderr, installed}",
            dangerous=True,
        ),
        impl.install_dependency,
    )
    registry.register(
        ToolDefinition(
            name="configure_linter",
            description="Write a linter configuration file.",
            parameters=[
                _param("configPath", "Config file path relative to cwd"),
                _param("configContent", "Config file content"),
                cwd,
            ],
            returns="{configPath, configured}",
        ),
        impl.configure_linter,
    )
    registry.register(
        ToolDefinition(
            name="run_tests",
            description="Run the project's test script.",
            parameters=[
                _param("testScript", "Script name", required=False, default="test"),
                cwd,
            ],
            returns="{testScript, cwd, stdout, stderr, testsRun}",
            dangerous=True,
        ),
        impl.run_tests,
    )
    registry.register(
        ToolDefinition(
            name="copy_file",
            description="Copy a file.",
            parameters=[_param("source", "Source path"), _param("destination", "Destination path")],
            returns="{source, destination, copied}",
        ),
        impl.copy_file,
    )
    registry.register(
        ToolDefinition(
            name="move_file",
            description="Move a file.",
            parameters=[_param("source", "Source path"), _param("destination", "Destination path")],
            returns="{source, destination, moved}",
        ),
        impl.move_file,
    )
    registry.register(
        ToolDefinition(
            name="delete_file",
            description="Delete a file.",
            parameters=[_param("path", "File path")],
            returns="{path, deleted}",
            dangerous=True,
        ),
        impl.delete_file,
    )
    registry.register(
        ToolDefinition(
            name="rename_file",
            description="Rename a file.",
            parameters=[_param("oldPath", "Current path"), _param("newPath", "New path")],
            returns="{oldPath, newPath, renamed}",
        ),
        impl.rename_file,
    )
    registry.register(
        ToolDefinition(
            name="list_files",
            description="List the entries of a directory.",
            parameters=[_param("path", "Directory path")],
            returns="{path, files: [{name, isDirectory, isFile}]}",
        ),
        impl.list_files,
    )

    return registry, impl


# =============================================================================
# SECTION 3: EXECUTION ENGINE
# =============================================================================

class ToolExecutionEngine:
    """
    Executes tools by name and records each invocation.

    This is the boundary for tool failures: unknown tools, missing
    parameters, filesystem errors and failed or timed-out subprocesses all
    come back as ExecutionResult(success=False, error=...).
    """

    def __init__(self, config: Optional[ExecutionConfig] = None, registry: Optional[ToolRegistry] = None):
        self.config = config or ExecutionConfig()
        if registry is None:
            registry, _ = create_default_tools(self.config)
        self.registry = registry

    @property
    def supported_tools(self) -> set[str]:
        return set(self.registry.names())

    def resolve_path(self, file_path: str, context: Optional[dict] = None) -> str:
        return resolve_path(file_path, context)

    def get_required_params(self, tool_name: str) -> list[str]:
        return self.registry.required_params(tool_name)

    def validate_tool_params(self, tool_name: str, params: dict) -> None:
        self.registry.validate_params(tool_name, params)

    async def execute(
        self,
        tool_name: str,
        params: Optional[dict] = None,
        context: Optional[dict] = None
    ) -> ExecutionResult:
        """
        Execute a single tool.

        Args:
            tool_name: Registered tool name
            params: Tool parameters
            context: Project context; 'targetDir' anchors relative paths

        Returns:
            ExecutionResult with the tool payload or the error message
        """
        params = dict(params or {})
        context = context if context is not None else {}
        logger.info(f"Executing tool: {tool_name}")

        try:
            self.registry.validate_params(tool_name, params)
            _, implementation = self.registry.resolve(tool_name)
            result = await implementation(params, context)
        except Exception as e:
            logger.error(f"Tool {tool_name} failed: {e}")
            return ExecutionResult(tool=tool_name, parameters=params, success=False, error=str(e))

        logger.info(f"Tool {tool_name} executed successfully")
        return ExecutionResult(tool=tool_name, parameters=params, success=True, result=result)

    async def execute_tools(
        self,
        tools: Iterable[Any],
        context: Optional[dict] = None,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> list[ExecutionResult]:
        """
        Execute tools sequentially.

        Halts after the first failing tool whose descriptor is critical
        (critical defaults to True). should_stop is checked before each tool
        starts; an in-flight tool always runs to completion.

        Args:
            tools: ToolDescriptors or raw descriptor dicts
            context: Project context shared by all tools
            should_stop: Optional cooperative cancellation check

        Returns:
            Results for the tools that ran, in order
        """
        results = []

        for raw in tools:
            if should_stop is not None and should_stop():
                logger.warning("Stop requested, not starting remaining tools")
                break

            try:
                descriptor = ToolDescriptor.from_raw(raw)
            except (TypeError, PydanticValidationError) as e:
                logger.error(f"Invalid tool descriptor: {e}")
                results.append(_invalid_descriptor_result(raw, e))
                break

            result = await self.execute(descriptor.name, descriptor.parameters, context)
            results.append(result)

            if not result.success and descriptor.critical:
                logger.warning(f"Critical tool {descriptor.name} failed, stopping execution")
                break

        return results

    async def execute_tools_parallel(
        self,
        tools: Iterable[Any],
        context: Optional[dict] = None
    ) -> list[ExecutionResult]:
        """
        Execute independent tools concurrently and wait for all of them.

        No ordering between the tools is guaranteed; callers must only pass
        tools that share no resources. A malformed descriptor becomes a
        failed result in its slot; the other tools still run.
        """
        async def run_one(raw: Any) -> ExecutionResult:
            try:
                descriptor = ToolDescriptor.from_raw(raw)
            except (TypeError, PydanticValidationError) as e:
                logger.error(f"Invalid tool descriptor: {e}")
                return _invalid_descriptor_result(raw, e)
            return await self.execute(descriptor.name, descriptor.parameters, context)

        return list(await asyncio.gather(*[run_one(raw) for raw in tools]))

    def list_tools(self) -> list[dict]:
        """Tool names, descriptions and required parameters."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "requiredParams": tool.required_params,
                "dangerous": tool.dangerous,
            }
            for tool in self.registry.list_tools()
        ]

    def get_stats(self) -> dict:
        names = self.registry.names()
        return {"supportedTools": names, "totalTools": len(names)}
