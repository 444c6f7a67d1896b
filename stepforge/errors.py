"""
Error taxonomy for stepforge.

Tool-level failures are recovered into ExecutionResult(success=False) by the
execution engine and never leave it as exceptions. The classes here are for
the places that must fail loudly: decomposition (cycles, bad step graphs),
descriptor validation, workflow lookups and illegal state transitions.
"""

from typing import Any, Optional


class StepforgeError(Exception):
    """Base exception for all stepforge errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(StepforgeError):
    """A required tool field or parameter is missing or malformed. Never retried."""
    pass


class ExpressionError(ValidationError):
    """An arithmetic expression could not be parsed or evaluated."""

    def __init__(self, message: str, expression: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message, context)
        self.expression = expression


class DependencyCycleError(StepforgeError):
    """The step graph contains a circular dependency."""

    def __init__(self, message: str, cycle: Optional[list[str]] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message, context)
        self.cycle = cycle or []


class UnsupportedToolError(StepforgeError):
    """A tool name is not in the registry."""

    def __init__(self, tool: str, context: Optional[dict[str, Any]] = None):
        super().__init__(f"Unsupported tool: {tool}", context)
        self.tool = tool


class StepExecutionError(StepforgeError):
    """A step handler failed."""

    def __init__(self, message: str, step_id: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message, context)
        self.step_id = step_id


class CriticalStepFailure(StepExecutionError):
    """A step in the critical set failed and the run was aborted."""
    pass


class PlannerError(StepforgeError):
    """The planner could not produce a tool list."""

    def __init__(self, message: str, phase: Optional[str] = None, context: Optional[dict[str, Any]] = None):
        super().__init__(message, context)
        self.phase = phase


class WorkflowNotFoundError(StepforgeError):
    """No workflow with the given id is registered."""

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} not found", {"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class InvalidTransitionError(StepforgeError):
    """A workflow state transition is not allowed from the current state."""

    def __init__(self, current: str, target: str, allowed: Optional[list[str]] = None):
        super().__init__(
            f"Invalid workflow transition: {current} -> {target}. Allowed: {allowed or []}",
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target
