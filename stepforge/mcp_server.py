#!/usr/bin/env python3
"""
MCP Server for stepforge.

IMPORTANT: Never print to stdout - it breaks JSON-RPC communication.
All logging must go to stderr.

This server exposes the workflow and tool APIs as MCP tools:
- workflow_start / workflow_execute_next: Create and drive phase workflows
- workflow_status / workflow_phases / workflow_list: Inspect them
- workflow_pause / workflow_resume / workflow_retry / workflow_cancel
- workflow_cleanup: Sweep finished workflows past the retention window
- tool_execute / tool_list: Run single tools
- orchestrate_request: Decompose and execute a request in one pass

To run:
    python -m stepforge.mcp_server
"""

import sys
import json
import logging
from typing import Optional

# Configure logging to stderr before anything else logs
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stderr
)
logger = logging.getLogger("stepforge-mcp")

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .errors import StepforgeError
from .execution import ToolExecutionEngine
from .orchestrator import ToolOrchestrator
from .planner import TemplatePlanner
from .schemas import IntentMetadata
from .workflow import WorkflowOrchestrator

# Create MCP server
mcp = FastMCP("stepforge")

_config = load_config()
logging.getLogger().setLevel(_config.logging.level)

_engine = ToolExecutionEngine(_config.execution)
_planner = TemplatePlanner()
_workflows = WorkflowOrchestrator(engine=_engine, planner=_planner, config=_config.workflow)
_orchestrator = ToolOrchestrator(engine=_engine, planner=_planner, config=_config.orchestration)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _parse_json_object(text: str, what: str) -> dict:
    """
    Parse an optional JSON object argument.

    Raises:
        ValueError: If the text is not a JSON object
    """
    if not text:
        return {}
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value


def _error(e: Exception) -> str:
    return json.dumps({"error": str(e), "type": type(e).__name__})


# =============================================================================
# WORKFLOW TOOLS
# =============================================================================

@mcp.tool()
async def workflow_start(request: str, context: str = "") -> str:
    """
    Start a multi-phase workflow for a build request.

    Args:
        request: What to build (e.g., "build a REST api for todos")
        context: Optional JSON object with targetDir, projectName,
                 projectType and workflowType

    Returns:
        JSON with workflow_id, the selected template and the first phase.
    """
    logger.info(f"workflow_start called: {request[:50]}")

    try:
        started = _workflows.start_workflow(request, _parse_json_object(context, "context"))
        return json.dumps({
            "workflow_id": started.workflow_id,
            "type": started.workflow.type,
            "template": started.workflow.template.name,
            "phases": [p.name for p in started.workflow.phases],
            "next_phase": started.next_phase.model_dump() if started.next_phase else None,
        }, indent=2, default=str)
    except (StepforgeError, ValueError) as e:
        logger.error(f"workflow_start failed: {e}")
        return _error(e)


@mcp.tool()
async def workflow_execute_next(workflow_id: str) -> str:
    """
    Execute the next phase of a workflow.

    Returns:
        JSON phase outcome: status (phase_completed, phase_failed, waiting,
        completed, failed, paused, cancelled), phase, error, missing
        dependencies and tool results.
    """
    logger.info(f"workflow_execute_next: {workflow_id}")

    try:
        outcome = await _workflows.execute_next_phase(workflow_id)
        return outcome.model_dump_json(indent=2)
    except StepforgeError as e:
        logger.error(f"workflow_execute_next failed: {e}")
        return _error(e)


@mcp.tool()
async def workflow_status(workflow_id: str) -> str:
    """Progress snapshot of a workflow."""
    status = _workflows.get_workflow_status(workflow_id)
    if status is None:
        return json.dumps({"error": f"Workflow {workflow_id} not found"})
    return status.model_dump_json(indent=2)


@mcp.tool()
async def workflow_phases(workflow_id: str) -> str:
    """Every phase of a workflow with its status and whether it can run."""
    try:
        phases = _workflows.get_phases(workflow_id)
        return json.dumps([p.model_dump(mode="json") for p in phases], indent=2)
    except StepforgeError as e:
        return _error(e)


@mcp.tool()
async def workflow_list() -> str:
    """List registered workflows with status and progress."""
    return json.dumps(_workflows.get_active_workflows(), indent=2, default=str)


@mcp.tool()
async def workflow_pause(workflow_id: str) -> str:
    """Pause an executing workflow before its next tool starts."""
    try:
        return _workflows.pause(workflow_id).model_dump_json(indent=2)
    except StepforgeError as e:
        return _error(e)


@mcp.tool()
async def workflow_resume(workflow_id: str) -> str:
    """Resume a paused workflow."""
    try:
        return _workflows.resume(workflow_id).model_dump_json(indent=2)
    except StepforgeError as e:
        return _error(e)


@mcp.tool()
async def workflow_retry(workflow_id: str) -> str:
    """Move a failed workflow back to ready so its failed phase runs again."""
    try:
        return _workflows.retry(workflow_id).model_dump_json(indent=2)
    except StepforgeError as e:
        return _error(e)


@mcp.tool()
async def workflow_cancel(workflow_id: str) -> str:
    """Cancel a workflow. Already finished workflows are left unchanged."""
    try:
        return _workflows.cancel(workflow_id).model_dump_json(indent=2)
    except StepforgeError as e:
        return _error(e)


@mcp.tool()
async def workflow_cleanup(max_age_hours: Optional[float] = None) -> str:
    """
    Remove finished workflows older than the retention window.

    Args:
        max_age_hours: Override the configured retention (hours)
    """
    max_age = max_age_hours * 3600 if max_age_hours is not None else None
    removed = _workflows.cleanup_completed_workflows(max_age)
    return json.dumps({"removed": removed, "remaining": len(_workflows.registry)})


# =============================================================================
# TOOL EXECUTION
# =============================================================================

@mcp.tool()
async def tool_execute(name: str, params: str = "", context: str = "") -> str:
    """
    Execute one tool.

    Args:
        name: Tool name (see tool_list)
        params: JSON object with the tool's parameters
        context: Optional JSON object; targetDir anchors relative paths

    Returns:
        JSON ExecutionResult with success, result or error.
    """
    logger.info(f"tool_execute: {name}")

    try:
        result = await _engine.execute(
            name,
            _parse_json_object(params, "params"),
            _parse_json_object(context, "context"),
        )
        return result.model_dump_json(indent=2)
    except ValueError as e:
        return _error(e)


@mcp.tool()
async def tool_list() -> str:
    """List tools with their required parameters."""
    return json.dumps(_engine.list_tools(), indent=2)


@mcp.tool()
async def orchestrate_request(request: str, intent: str = "complex_multi_step", context: str = "") -> str:
    """
    Decompose a request into steps and execute them in dependency order.

    Args:
        request: Request text (e.g., "create a file called out.txt, calculate
                 2+3 and write x that many times")
        intent: Intent label selecting the decomposition strategy
        context: Optional JSON object; targetDir anchors relative paths

    Returns:
        JSON response envelope (execution_success, execution_failed or
        execution_error) with results or errors.
    """
    logger.info(f"orchestrate_request: {request[:50]}")

    try:
        envelope = await _orchestrator.orchestrate(
            request,
            IntentMetadata(intent=intent),
            _parse_json_object(context, "context"),
        )
        return envelope.model_dump_json(indent=2)
    except ValueError as e:
        return _error(e)


# =============================================================================
# ENTRY POINT
# =============================================================================

def main() -> None:
    logger.info("Starting stepforge MCP Server")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
