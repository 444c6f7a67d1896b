"""
Rich terminal UI components for stepforge.

WHY THIS FILE EXISTS:
--------------------
The CLI shows decompositions, tool results and workflow progress. Rich gives
us tables, panels and colors so those stay readable in a terminal.

COMPONENTS:
----------
- show_decomposition() - Steps and their execution order
- show_envelope() - Outcome of a single-pass orchestration
- show_tool_results() - Per-tool execution results
- show_phase_outcome() / show_workflow_status() / show_phases() - Workflows
- show_tools_list() / show_templates() - Listings
"""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from .schemas import (
    Decomposition,
    ExecutionResult,
    PhaseOutcome,
    PhaseView,
    ResponseEnvelope,
    WorkflowStatusSnapshot,
)

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

COMPLEXITY_COLORS = {
    "low": "green",
    "medium": "yellow",
    "high": "red",
}

# Workflow statuses and phase outcomes share one palette
STATUS_COLORS = {
    "initializing": "dim",
    "ready": "cyan",
    "executing": "yellow",
    "paused": "magenta",
    "completed": "green",
    "phase_completed": "green",
    "failed": "red",
    "phase_failed": "red",
    "cancelled": "red",
    "waiting": "yellow",
    "current": "yellow",
    "pending": "dim",
}


def _colored(value: str, palette: dict[str, str] = STATUS_COLORS) -> str:
    color = palette.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _short(value: Any, limit: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = text.replace("\n", "\\n")
    return text if len(text) <= limit else text[:limit - 3] + "..."


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


# =============================================================================
# DECOMPOSITION DISPLAY
# =============================================================================

def show_decomposition(decomposition: Decomposition) -> None:
    """
    Display a decomposition as an ordered step table.

    Args:
        decomposition: The Decomposition to display
    """
    complexity = _colored(decomposition.complexity, COMPLEXITY_COLORS)
    show_header("Decomposition", f"{decomposition.type} | complexity {decomposition.complexity}")

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Execution Order[/bold]")
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Step", style="white")
    table.add_column("Tool", style="green")
    table.add_column("Parameters", style="white")
    table.add_column("Depends On", style="dim")
    table.add_column("Output", style="magenta")

    for entry in decomposition.execution_plan.order:
        params = ", ".join(
            f"{k}={'<from deps>' if v is None else _short(v, 30)}" for k, v in entry.parameters.items()
        )
        table.add_row(
            str(entry.order),
            entry.step_id,
            entry.tool,
            params or "-",
            ", ".join(entry.dependencies) or "-",
            entry.output or "-",
        )

    console.print(table)
    console.print(f"\n[bold]Complexity:[/bold] {complexity}")
    if decomposition.context:
        console.print(f"[bold]Context:[/bold] {_short(decomposition.context, 120)}")


# =============================================================================
# EXECUTION DISPLAY
# =============================================================================

def show_tool_results(results: list[ExecutionResult], title: str = "Tool Results") -> None:
    """Display tool execution results as a table."""
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title=f"[bold]{title}[/bold]")
    table.add_column("Tool", style="green")
    table.add_column("Status", justify="center")
    table.add_column("Details", style="white")

    for result in results:
        status = "[green]✓[/green]" if result.success else "[red]✗[/red]"
        details = _short(result.result) if result.success else f"[red]{_short(result.error)}[/red]"
        table.add_row(result.tool, status, details)

    console.print(table)


def show_envelope(envelope: ResponseEnvelope) -> None:
    """
    Display the outcome of an orchestrated request.

    Args:
        envelope: The ResponseEnvelope returned by ToolOrchestrator
    """
    if envelope.type == "execution_success":
        show_header("Execution SUCCESS", envelope.message)
        table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
        table.add_column("Step", style="cyan")
        table.add_column("Tool", style="green")
        table.add_column("Description", style="white")
        for tool in envelope.tools:
            table.add_row(tool.context.replace("Step: ", ""), tool.name, tool.description)
        console.print(table)

        results = envelope.context.get("results", {})
        if results:
            console.print("[bold]Outputs:[/bold]")
            for key, value in results.items():
                console.print(f"  [magenta]{key}[/magenta]: {_short(value, 100)}")
        return

    if envelope.type == "execution_failed":
        show_header("Execution FAILED", envelope.message)
        content = Text()
        for error in envelope.context.get("errors", []):
            content.append(f"{error['step']}: ", style="bold red")
            content.append(f"{error['error']}\n")
        console.print(Panel(content, title="[bold red]Errors[/bold red]", border_style="red", box=box.ROUNDED))

        partial = envelope.context.get("partialResults", {})
        if partial:
            console.print(f"[bold]Completed before failure:[/bold] {', '.join(partial.keys())}")
        return

    show_header("Execution ERROR")
    show_error(envelope.message)


# =============================================================================
# WORKFLOW DISPLAY
# =============================================================================

def show_phase_outcome(outcome: PhaseOutcome) -> None:
    """Display the result of one execute_next_phase() call."""
    label = outcome.phase or "workflow"
    console.print(f"\n[bold]{label}[/bold] → {_colored(outcome.status.value)}")

    if outcome.results:
        show_tool_results(outcome.results, title=f"Phase {label}")
    if outcome.dependencies:
        show_warning(f"Waiting for: {', '.join(outcome.dependencies)}")
    if outcome.error:
        show_error(outcome.error)
    if outcome.message:
        console.print(f"[dim]{outcome.message}[/dim]")
    if outcome.next_phase:
        show_info(f"Next phase: {outcome.next_phase.name} ({outcome.next_phase.estimated_time})")


def show_workflow_status(status: WorkflowStatusSnapshot) -> None:
    """Display a workflow progress snapshot."""
    content = Text()
    content.append("Type: ", style="bold")
    content.append(f"{status.type}\n")
    content.append("Status: ", style="bold")
    content.append(f"{status.status.value}\n", style=STATUS_COLORS.get(status.status.value, "white"))
    content.append("Progress: ", style="bold")
    content.append(f"{status.progress}% ({status.completed_phases}/{status.total_phases} phases)\n")
    content.append("Failed phases: ", style="bold")
    content.append(f"{status.failed_phases}\n", style="red" if status.failed_phases else "white")
    content.append("Remaining: ", style="bold")
    content.append(f"{status.estimated_time_remaining}\n")
    content.append("Started: ", style="bold")
    content.append(status.start_time.strftime("%Y-%m-%d %H:%M:%S"))
    if status.total_execution_time:
        content.append(f"\nTotal time: {status.total_execution_time:.1f}s")

    for error in status.errors:
        content.append(f"\n{error.phase}: ", style="bold red")
        content.append(error.error)

    console.print(Panel(
        content,
        title=f"[bold]Workflow {status.id}[/bold]",
        border_style=STATUS_COLORS.get(status.status.value, "blue"),
        box=box.ROUNDED,
    ))


def show_phases(phases: list[PhaseView]) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Phases[/bold]")
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Phase", style="white")
    table.add_column("Status", justify="center")
    table.add_column("Estimate", style="dim")
    table.add_column("Depends On", style="dim")
    table.add_column("Ready", justify="center")

    for view in phases:
        table.add_row(
            str(view.index + 1),
            view.phase.name,
            _colored(view.status),
            view.phase.estimated_time,
            ", ".join(view.phase.dependencies) or "-",
            "[green]yes[/green]" if view.can_execute else "[dim]no[/dim]",
        )

    console.print(table)


# =============================================================================
# REGISTRY LISTINGS
# =============================================================================

def show_tools_list(tools: list[dict]) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Tools[/bold]")
    table.add_column("Tool", style="green")
    table.add_column("Required", style="cyan")
    table.add_column("Description", style="white")

    for tool in tools:
        name = f"{tool['name']} [red]![/red]" if tool.get("dangerous") else tool["name"]
        table.add_row(name, ", ".join(tool["requiredParams"]) or "-", tool["description"])

    console.print(table)
    console.print("[red]![/red] = spawns processes or deletes data")


def show_templates(templates: list[dict]) -> None:
    for template in templates:
        complexity = _colored(template["complexity"], COMPLEXITY_COLORS)
        content = Text()
        content.append(f"{template['description']}\n\n")
        content.append("Phases: ", style="bold")
        content.append(" → ".join(template["phases"]))
        console.print(Panel(
            content,
            title=f"[bold]{template['type']}[/bold] {template['name']}",
            subtitle=f"{template['totalEstimatedTime']} | {complexity}",
            border_style="blue",
            box=box.ROUNDED,
        ))


# =============================================================================
# PROGRESS INDICATORS
# =============================================================================

def create_progress() -> Progress:
    """Create a spinner for long-running operations."""
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    )
