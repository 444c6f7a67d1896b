#!/usr/bin/env python3
"""
stepforge CLI - decompose requests and run them as tool workflows.

USAGE:
------
  stepforge run "request"            - Decompose and execute in one pass
  stepforge run --steps steps.json   - Execute externally decomposed steps
  stepforge decompose "request"      - Show the step graph without running it
  stepforge workflow "request"       - Drive a multi-phase workflow
  stepforge tool NAME -p key=value   - Run a single tool
  stepforge tools                    - List registered tools
  stepforge templates                - List workflow templates

Logs go to stderr; results are rendered on stdout with rich.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from . import ui
from .config import Config, load_config
from .decomposer import TaskDecomposer
from .errors import StepforgeError
from .execution import ToolExecutionEngine
from .orchestrator import ToolOrchestrator
from .planner import TemplatePlanner
from .schemas import IntentMetadata, PhaseOutcomeStatus, WorkflowStatus
from .workflow import WorkflowOrchestrator

logger = logging.getLogger(__name__)


# =============================================================================
# CLI ARGUMENT PARSING
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="stepforge",
        description="Decompose requests into step graphs and execute them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stepforge run "create a file called out.txt, calculate 2+3 and write x that many times"
  stepforge decompose "make a file named notes.md in a folder named docs"
  stepforge workflow "build a REST api" --target-dir /tmp/api
  stepforge tool list_files -p path=.
        """
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to a YAML config file (default: ~/.stepforge/config.yaml)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Decompose a request and execute it")
    run.add_argument("request", nargs="?", default="", help="Request text")
    run.add_argument("--steps", type=Path, help="JSON file with pre-decomposed steps")
    run.add_argument("--target-dir", help="Directory relative paths resolve against")
    run.add_argument(
        "--intent",
        default="complex_multi_step",
        help="Intent label selecting the decomposition strategy (default: complex_multi_step)"
    )
    run.add_argument("--json", action="store_true", help="Print the response envelope as JSON")

    decompose = subparsers.add_parser("decompose", help="Show the step graph for a request")
    decompose.add_argument("request", help="Request text")
    decompose.add_argument("--intent", default="complex_multi_step", help="Intent label")
    decompose.add_argument("--json", action="store_true", help="Print the decomposition as JSON")

    workflow = subparsers.add_parser("workflow", help="Run a multi-phase workflow")
    workflow.add_argument("request", help="What to build")
    workflow.add_argument("--target-dir", help="Project directory")
    workflow.add_argument("--project-name", help="Project name")
    workflow.add_argument("--project-type", help="Project type (e.g. nodejs, fullstack, simple)")
    workflow.add_argument("--type", dest="workflow_type", help="Workflow template to use")
    workflow.add_argument("--max-phases", type=int, help="Stop after this many phases")

    tool = subparsers.add_parser("tool", help="Execute a single tool")
    tool.add_argument("name", help="Tool name")
    tool.add_argument(
        "-p", "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Tool parameter (repeatable); values are parsed as JSON when possible"
    )
    tool.add_argument("--target-dir", help="Directory relative paths resolve against")

    subparsers.add_parser("tools", help="List registered tools")
    subparsers.add_parser("templates", help="List workflow templates")

    return parser


def parse_params(pairs: list[str]) -> dict[str, Any]:
    """
    Parse KEY=VALUE pairs.

    Raises:
        ValueError: If a pair has no '='
    """
    params = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected KEY=VALUE, got: {pair}")
        key, value = pair.split("=", 1)
        try:
            params[key] = json.loads(value)
        except json.JSONDecodeError:
            params[key] = value
    return params


def setup_logging(config: Config, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level, logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )


def _target_context(target_dir: Optional[str]) -> dict:
    return {"targetDir": target_dir} if target_dir else {}


# =============================================================================
# COMMANDS
# =============================================================================

async def run_request(args: argparse.Namespace, config: Config) -> int:
    engine = ToolExecutionEngine(config.execution)
    orchestrator = ToolOrchestrator(engine=engine, planner=TemplatePlanner(), config=config.orchestration)
    context = _target_context(args.target_dir)

    if args.steps:
        steps = json.loads(args.steps.read_text())
        with ui.create_progress() as progress:
            progress.add_task("Executing steps...", total=None)
            envelope = await orchestrator.orchestrate_steps(steps, context, request=str(args.steps))
    elif args.request:
        with ui.create_progress() as progress:
            progress.add_task("Executing request...", total=None)
            envelope = await orchestrator.orchestrate(args.request, IntentMetadata(intent=args.intent), context)
    else:
        ui.show_error("Provide a request or --steps FILE")
        return 2

    if args.json:
        ui.console.print_json(envelope.model_dump_json())
    else:
        ui.show_envelope(envelope)
    return 0 if envelope.success else 1


def show_decomposition(args: argparse.Namespace) -> int:
    decomposition = TaskDecomposer().decompose(args.request, IntentMetadata(intent=args.intent))
    if args.json:
        ui.console.print_json(decomposition.model_dump_json())
    else:
        ui.show_decomposition(decomposition)
    return 0


async def run_workflow(args: argparse.Namespace, config: Config) -> int:
    """Start a workflow and execute phases until it stops advancing."""
    engine = ToolExecutionEngine(config.execution)
    orchestrator = WorkflowOrchestrator(engine=engine, planner=TemplatePlanner(), config=config.workflow)

    context = _target_context(args.target_dir)
    if args.project_name:
        context["projectName"] = args.project_name
    if args.project_type:
        context["projectType"] = args.project_type
    if args.workflow_type:
        context["workflowType"] = args.workflow_type

    started = orchestrator.start_workflow(args.request, context)
    ui.show_header(f"Workflow {started.workflow_id}", started.workflow.template.name)
    ui.show_phases(orchestrator.get_phases(started.workflow_id))

    executed = 0
    while args.max_phases is None or executed < args.max_phases:
        outcome = await orchestrator.execute_next_phase(started.workflow_id)
        ui.show_phase_outcome(outcome)

        if outcome.status != PhaseOutcomeStatus.PHASE_COMPLETED or outcome.next_phase is None:
            break
        executed += 1

    status = orchestrator.get_workflow_status(started.workflow_id)
    ui.show_workflow_status(status)
    if status.status == WorkflowStatus.COMPLETED:
        ui.show_success(f"All {status.total_phases} phases completed")
    return 0 if status.failed_phases == 0 else 1


async def run_tool(args: argparse.Namespace, config: Config) -> int:
    engine = ToolExecutionEngine(config.execution)
    try:
        params = parse_params(args.param)
    except ValueError as e:
        ui.show_error(str(e))
        return 2

    result = await engine.execute(args.name, params, _target_context(args.target_dir))
    ui.show_tool_results([result])
    return 0 if result.success else 1


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace, config: Config) -> int:
    """
    Dispatch a parsed command.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    if args.command == "run":
        return await run_request(args, config)
    if args.command == "decompose":
        return show_decomposition(args)
    if args.command == "workflow":
        return await run_workflow(args, config)
    if args.command == "tool":
        return await run_tool(args, config)
    if args.command == "tools":
        ui.show_tools_list(ToolExecutionEngine(config.execution).list_tools())
        return 0
    if args.command == "templates":
        ui.show_templates(WorkflowOrchestrator(config=config.workflow).list_templates())
        return 0
    return 2


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        ui.show_error(str(e))
        sys.exit(2)

    setup_logging(config, args.verbose)

    try:
        exit_code = asyncio.run(async_main(args, config))
    except KeyboardInterrupt:
        ui.console.print("\n")
        ui.show_warning("Interrupted")
        sys.exit(130)
    except (StepforgeError, OSError, json.JSONDecodeError) as e:
        ui.show_error(str(e))
        if args.verbose:
            logger.exception("Command failed")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
