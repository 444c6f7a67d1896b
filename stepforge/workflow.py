"""
Workflow Orchestrator for stepforge.

WHAT THIS FILE DOES:
-------------------
Drives larger builds ("create a REST API", "full-stack react app") as a
sequence of named phases. Each phase asks the Planner for its tool list and
runs it through the ToolExecutionEngine. Workflows live in an in-memory
WorkflowRegistry owned by the orchestrator.

WORKFLOW STATES:
---------------
    initializing ──▶ executing ──▶ ready ──▶ executing ──▶ ... ──▶ completed
                         │  ▲                    │
                         ▼  │                    ▼
                       paused ──▶ ready        failed ──retry──▶ ready

    any non-terminal state ──▶ cancelled

Pause is only legal while a phase is executing and takes effect before the
next tool starts; a running tool is never interrupted. Cancelling a
completed, failed or cancelled workflow is a no-op.

PHASE OUTCOMES (execute_next_phase):
-----------------------------------
- phase_completed: the phase ran; next_phase says what comes after
- phase_failed: a tool failed or no plan could be made; workflow is failed
- waiting: a prerequisite phase has not completed; nothing was changed
- completed / failed / paused / cancelled: the workflow was already there
"""

import logging
import math
import re
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .config import WorkflowConfig
from .errors import (
    InvalidTransitionError,
    PlannerError,
    StepforgeError,
    WorkflowNotFoundError,
)
from .execution import ToolExecutionEngine
from .planner import Planner, TemplatePlanner, normalize_tool_descriptors
from .schemas import (
    ControlResult,
    ExecutionResult,
    PhaseOutcome,
    PhaseOutcomeStatus,
    PhaseSpec,
    PhaseView,
    StartedWorkflow,
    ToolDescriptor,
    Workflow,
    WorkflowErrorEntry,
    WorkflowStatus,
    WorkflowStatusSnapshot,
    WorkflowTemplate,
)

logger = logging.getLogger(__name__)

CUSTOM_PHASE = "custom_phase"
DEFAULT_WORKFLOW_TYPE = "nodejs_api"


# =============================================================================
# STATE MACHINE
# =============================================================================

# Valid status transitions
STATUS_TRANSITIONS = {
    WorkflowStatus.INITIALIZING: [WorkflowStatus.EXECUTING, WorkflowStatus.READY, WorkflowStatus.CANCELLED],
    WorkflowStatus.READY: [WorkflowStatus.EXECUTING, WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED],
    WorkflowStatus.EXECUTING: [
        WorkflowStatus.READY,
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.PAUSED,
        WorkflowStatus.CANCELLED,
    ],
    WorkflowStatus.PAUSED: [WorkflowStatus.READY, WorkflowStatus.CANCELLED],
    WorkflowStatus.FAILED: [WorkflowStatus.READY],
    WorkflowStatus.COMPLETED: [],
    WorkflowStatus.CANCELLED: [],
}

TERMINAL_STATUSES = {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}


def can_transition(current: WorkflowStatus, target: WorkflowStatus) -> bool:
    """Check if a status transition is valid."""
    return target in STATUS_TRANSITIONS.get(current, [])


def transition(workflow: Workflow, target: WorkflowStatus) -> None:
    """
    Move a workflow to a new status and log it.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(workflow.status, target):
        raise InvalidTransitionError(
            workflow.status.value,
            target.value,
            [s.value for s in STATUS_TRANSITIONS.get(workflow.status, [])],
        )

    previous = workflow.status
    workflow.status = target
    workflow.add_log("status_changed", f"{previous.value} -> {target.value}")

    if target in TERMINAL_STATUSES:
        workflow.total_execution_time = (datetime.now() - workflow.start_time).total_seconds()


# =============================================================================
# TEMPLATES
# =============================================================================

def default_templates() -> dict[str, WorkflowTemplate]:
    """Built-in workflow templates, keyed by workflow type."""
    return {
        "fullstack_react": WorkflowTemplate(
            name="Full-Stack React Application",
            description="Complete React frontend + Node.js backend + database setup",
            phases=[
                PhaseSpec(
                    name="project_setup",
                    description="Initialize project structure and dependencies",
                    tools=["create_directory", "create_file", "install_dependency"],
                    estimated_time="5-8 minutes",
                    complexity="medium",
                ),
                PhaseSpec(
                    name="backend_development",
                    description="Create Express.js server with API endpoints",
                    tools=["create_directory", "create_file"],
                    dependencies=["project_setup"],
                    estimated_time="10-15 minutes",
                    complexity="high",
                ),
                PhaseSpec(
                    name="frontend_development",
                    description="Build React components and state management",
                    tools=["create_directory", "create_file"],
                    dependencies=["project_setup"],
                    estimated_time="15-20 minutes",
                    complexity="high",
                ),
                PhaseSpec(
                    name="testing_setup",
                    description="Configure testing framework and generate tests",
                    tools=["create_file", "configure_linter"],
                    dependencies=["backend_development", "frontend_development"],
                    estimated_time="8-12 minutes",
                    complexity="medium",
                ),
                PhaseSpec(
                    name="deployment_prep",
                    description="Prepare for deployment with Docker",
                    tools=["create_file"],
                    dependencies=["testing_setup"],
                    estimated_time="5-8 minutes",
                    complexity="medium",
                ),
            ],
            total_estimated_time="43-63 minutes",
            complexity="high",
        ),
        "nodejs_api": WorkflowTemplate(
            name="Node.js REST API",
            description="Express.js API with database integration",
            phases=[
                PhaseSpec(
                    name="project_setup",
                    description="Initialize Node.js project structure",
                    tools=["create_directory", "create_file", "install_dependency"],
                    estimated_time="3-5 minutes",
                    complexity="low",
                ),
                PhaseSpec(
                    name="api_development",
                    description="Create Express.js server and routes",
                    tools=["create_file"],
                    dependencies=["project_setup"],
                    estimated_time="8-12 minutes",
                    complexity="medium",
                ),
                PhaseSpec(
                    name="testing",
                    description="Set up testing framework and generate tests",
                    tools=["create_file", "run_tests"],
                    dependencies=["api_development"],
                    estimated_time="5-8 minutes",
                    complexity="low",
                ),
            ],
            total_estimated_time="16-25 minutes",
            complexity="medium",
        ),
    }


def custom_template(user_request: str) -> WorkflowTemplate:
    return WorkflowTemplate(
        name="Custom Workflow",
        description=f"Custom workflow for: {user_request}",
        phases=[
            PhaseSpec(
                name=CUSTOM_PHASE,
                description="Custom implementation phase",
                tools=["create_file", "install_dependency"],
                estimated_time="10-15 minutes",
                complexity="medium",
            )
        ],
        total_estimated_time="10-15 minutes",
        complexity="medium",
    )


def scale_estimate(estimate: str, multiplier: float) -> str:
    """'5-8 minutes' scaled by 1.5 is '8-12 minutes' (each bound rounded up)."""
    match = re.search(r"(\d+)-(\d+)", estimate)
    if not match:
        return estimate
    low = math.ceil(int(match.group(1)) * multiplier)
    high = math.ceil(int(match.group(2)) * multiplier)
    return f"{low}-{high} minutes"


def customize_template(template: WorkflowTemplate, context: dict) -> WorkflowTemplate:
    """
    Adjust complexity and phase estimates to the project type.

    projectType 'fullstack' makes the workflow high complexity, 'simple'
    makes it low. High complexity stretches phase estimates by 1.5, low
    shrinks them by 0.7.
    """
    customized = template.model_copy(deep=True)

    project_type = context.get("projectType")
    if project_type == "fullstack":
        customized.complexity = "high"
    elif project_type == "simple":
        customized.complexity = "low"

    for phase in customized.phases:
        if customized.complexity == "high":
            phase.estimated_time = scale_estimate(phase.estimated_time, 1.5)
        elif customized.complexity == "low":
            phase.estimated_time = scale_estimate(phase.estimated_time, 0.7)

    return customized


def select_workflow_type(user_request: str, context: dict) -> str:
    """
    Pick a workflow type for a request.

    An explicit context['workflowType'] wins. Otherwise keywords decide,
    defaulting to nodejs_api.
    """
    explicit = context.get("workflowType")
    if explicit:
        return explicit

    request = user_request.lower()
    if "full-stack" in request or "fullstack" in request or ("react" in request and "backend" in request):
        return "fullstack_react"
    if any(k in request for k in ("api", "rest", "express", "server")):
        return "nodejs_api"

    return DEFAULT_WORKFLOW_TYPE


def remaining_minutes(phases: list[PhaseSpec]) -> int:
    """Sum of the upper bounds of the phase estimates."""
    total = 0
    for phase in phases:
        match = re.search(r"(\d+)-(\d+)", phase.estimated_time)
        if match:
            total += int(match.group(2))
    return total


# =============================================================================
# WORKFLOW REGISTRY
# =============================================================================

class WorkflowRegistry:
    """
    In-memory store of workflows keyed by id.

    The only state shared between concurrently running workflows. Each
    WorkflowOrchestrator owns one.

    Usage:
        registry = WorkflowRegistry()
        registry.create(workflow)
        workflow = registry.require(workflow.id)
        removed = registry.sweep(lambda wf: wf.status == WorkflowStatus.COMPLETED)
    """

    def __init__(self):
        self._workflows: dict[str, Workflow] = {}

    def create(self, workflow: Workflow) -> Workflow:
        if workflow.id in self._workflows:
            raise StepforgeError(f"Workflow {workflow.id} already exists", {"workflow_id": workflow.id})
        self._workflows[workflow.id] = workflow
        return workflow

    def get(self, workflow_id: str) -> Optional[Workflow]:
        return self._workflows.get(workflow_id)

    def require(self, workflow_id: str) -> Workflow:
        """
        Get a workflow or fail.

        Raises:
            WorkflowNotFoundError: If no workflow has this id
        """
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    def remove(self, workflow_id: str) -> bool:
        """Remove a workflow. Returns True if it existed."""
        return self._workflows.pop(workflow_id, None) is not None

    def sweep(self, predicate: Callable[[Workflow], bool]) -> list[str]:
        """Remove every workflow matching predicate; returns the removed ids."""
        removed = [wid for wid, wf in self._workflows.items() if predicate(wf)]
        for workflow_id in removed:
            del self._workflows[workflow_id]
        return removed

    def values(self) -> list[Workflow]:
        return list(self._workflows.values())

    def __len__(self) -> int:
        return len(self._workflows)

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._workflows


# =============================================================================
# WORKFLOW ORCHESTRATOR
# =============================================================================

def generate_workflow_id() -> str:
    return f"workflow_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class WorkflowOrchestrator:
    """
    Runs multi-phase workflows one phase at a time.

    Example usage:
        orchestrator = WorkflowOrchestrator()
        started = orchestrator.start_workflow("build a REST api", {"targetDir": "/tmp/api"})

        while True:
            outcome = await orchestrator.execute_next_phase(started.workflow_id)
            if outcome.status != PhaseOutcomeStatus.PHASE_COMPLETED or outcome.next_phase is None:
                break
    """

    def __init__(
        self,
        engine: Optional[ToolExecutionEngine] = None,
        planner: Optional[Planner] = None,
        config: Optional[WorkflowConfig] = None,
        registry: Optional[WorkflowRegistry] = None,
        templates: Optional[dict[str, WorkflowTemplate]] = None
    ):
        self.engine = engine or ToolExecutionEngine()
        self.planner = planner or TemplatePlanner()
        self.config = config or WorkflowConfig()
        self.registry = registry if registry is not None else WorkflowRegistry()
        self.templates = templates if templates is not None else default_templates()

        logger.info(f"Workflow templates initialized: {list(self.templates.keys())}")

    # =========================================================================
    # TEMPLATES
    # =========================================================================

    def register_template(self, workflow_type: str, template: WorkflowTemplate) -> None:
        self.templates[workflow_type] = template

    def list_templates(self) -> list[dict]:
        return [
            {
                "type": key,
                "name": template.name,
                "description": template.description,
                "phases": [phase.name for phase in template.phases],
                "totalEstimatedTime": template.total_estimated_time,
                "complexity": template.complexity,
            }
            for key, template in self.templates.items()
        ]

    def get_template(self, workflow_type: str, user_request: str, context: dict) -> WorkflowTemplate:
        template = self.templates.get(workflow_type)
        if template is None:
            logger.info(f"No template for {workflow_type}, using a custom workflow")
            template = custom_template(user_request)
        return customize_template(template, context)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start_workflow(self, user_request: str, context: Optional[dict] = None) -> StartedWorkflow:
        """
        Create and register a workflow for a request.

        Args:
            user_request: What to build
            context: Project context (targetDir, projectName, projectType,
                     optional workflowType); merged over the configured defaults

        Returns:
            StartedWorkflow with the new id and the first phase
        """
        merged = {**self.config.default_context, **(context or {})}
        workflow_type = select_workflow_type(user_request, merged)
        template = self.get_template(workflow_type, user_request, merged)

        workflow = Workflow(
            id=generate_workflow_id(),
            type=workflow_type,
            template=template,
            phases=list(template.phases),
            user_request=user_request,
            context=merged,
        )
        workflow.add_log("workflow_started", f"{workflow_type}: {user_request}")
        self.registry.create(workflow)

        logger.info(
            f"Workflow started: {workflow.id} ({workflow_type}, {len(workflow.phases)} phases, "
            f"estimated {template.total_estimated_time})"
        )

        return StartedWorkflow(workflow_id=workflow.id, workflow=workflow, next_phase=workflow.next_phase)

    async def execute_next_phase(self, workflow_id: str) -> PhaseOutcome:
        """
        Execute the workflow's next phase.

        Raises:
            WorkflowNotFoundError: If the id is not registered
            InvalidTransitionError: If a phase of this workflow is already executing
        """
        workflow = self.registry.require(workflow_id)

        early = self._outcome_for_status(workflow)
        if early is not None:
            return early

        phase = workflow.next_phase
        if phase is None:
            transition(workflow, WorkflowStatus.COMPLETED)
            workflow.add_log("workflow_completed", f"{len(workflow.completed_phases)} phases completed")
            logger.info(f"Workflow completed: {workflow_id}")
            return PhaseOutcome(status=PhaseOutcomeStatus.COMPLETED, message="Workflow completed")

        missing = [dep for dep in phase.dependencies if dep not in workflow.completed_phases]
        if missing:
            logger.warning(f"Phase {phase.name} waiting for dependencies: {missing}")
            return PhaseOutcome(
                status=PhaseOutcomeStatus.WAITING,
                phase=phase.name,
                dependencies=missing,
                message=f"Phase {phase.name} waiting for dependencies",
            )

        transition(workflow, WorkflowStatus.EXECUTING)
        workflow.current_phase_start_time = datetime.now()
        workflow.add_log("phase_started", phase.description, phase=phase.name)
        logger.info(f"Executing workflow phase: {workflow_id} / {phase.name} (estimated {phase.estimated_time})")

        success, results, error, interrupted = await self._execute_phase(phase, workflow)

        if interrupted:
            workflow.add_log("phase_interrupted", f"stopped before completion ({workflow.status.value})", phase=phase.name)
            logger.warning(f"Phase {phase.name} interrupted: workflow is {workflow.status.value}")
            return PhaseOutcome(
                status=PhaseOutcomeStatus(workflow.status.value),
                phase=phase.name,
                message=f"Phase {phase.name} interrupted; it will run again on resume",
                results=results,
            )

        if success:
            return self._complete_phase(workflow, phase, results)
        return self._fail_phase(workflow, phase, results, error)

    def _outcome_for_status(self, workflow: Workflow) -> Optional[PhaseOutcome]:
        if workflow.status == WorkflowStatus.COMPLETED:
            return PhaseOutcome(status=PhaseOutcomeStatus.COMPLETED, message="Workflow already completed")
        if workflow.status == WorkflowStatus.FAILED:
            return PhaseOutcome(
                status=PhaseOutcomeStatus.FAILED,
                message="Workflow has failed and cannot continue; retry it first",
            )
        if workflow.status == WorkflowStatus.PAUSED:
            return PhaseOutcome(status=PhaseOutcomeStatus.PAUSED, message="Workflow is paused; resume it first")
        if workflow.status == WorkflowStatus.CANCELLED:
            return PhaseOutcome(status=PhaseOutcomeStatus.CANCELLED, message="Workflow was cancelled")
        return None

    def _complete_phase(self, workflow: Workflow, phase: PhaseSpec, results: list[ExecutionResult]) -> PhaseOutcome:
        workflow.completed_phases.append(phase.name)
        workflow.current_phase += 1
        elapsed = (datetime.now() - workflow.current_phase_start_time).total_seconds()
        workflow.add_log("phase_completed", f"{len(results)} tools in {elapsed:.1f}s", phase=phase.name)
        logger.info(f"Phase completed successfully: {workflow.id} / {phase.name}")

        # A pause or cancel requested mid-phase wins over the normal transition
        if workflow.status == WorkflowStatus.EXECUTING:
            if workflow.next_phase is None:
                transition(workflow, WorkflowStatus.COMPLETED)
                workflow.add_log("workflow_completed", f"{len(workflow.completed_phases)} phases completed")
                logger.info(f"Workflow completed: {workflow.id}")
            else:
                transition(workflow, WorkflowStatus.READY)

        return PhaseOutcome(
            status=PhaseOutcomeStatus.PHASE_COMPLETED,
            phase=phase.name,
            next_phase=workflow.next_phase,
            results=results,
        )

    def _fail_phase(
        self,
        workflow: Workflow,
        phase: PhaseSpec,
        results: list[ExecutionResult],
        error: str
    ) -> PhaseOutcome:
        workflow.failed_phases.append(phase.name)
        workflow.errors.append(WorkflowErrorEntry(phase=phase.name, error=error))
        workflow.add_log("phase_failed", error, phase=phase.name)
        logger.error(f"Phase failed: {workflow.id} / {phase.name}: {error}")

        if workflow.status == WorkflowStatus.EXECUTING:
            transition(workflow, WorkflowStatus.FAILED)

        return PhaseOutcome(
            status=PhaseOutcomeStatus.PHASE_FAILED,
            phase=phase.name,
            error=error,
            results=results,
        )

    async def _plan_phase(self, phase: PhaseSpec, workflow: Workflow) -> list[ToolDescriptor]:
        """
        Ask the planner for a phase's tools and normalize them.

        Raises:
            PlannerError: If the planner fails or returns nothing
        """
        try:
            if phase.name == CUSTOM_PHASE:
                raw = await self.planner.tools_for_request(workflow.user_request, workflow.context)
            else:
                raw = await self.planner.tools_for_phase(phase.name, workflow.context)
            descriptors = normalize_tool_descriptors(raw, self.engine.supported_tools)
        except PlannerError:
            raise
        except StepforgeError as e:
            raise PlannerError(e.message, phase=phase.name) from e

        if not descriptors:
            raise PlannerError(f"No tools generated for phase: {phase.name}", phase=phase.name)

        return [
            d.model_copy(update={"critical": d.critical or d.name in self.config.critical_tools})
            for d in descriptors
        ]

    async def _execute_phase(
        self,
        phase: PhaseSpec,
        workflow: Workflow
    ) -> tuple[bool, list[ExecutionResult], Optional[str], bool]:
        """Returns (success, results, error, interrupted)."""
        try:
            descriptors = await self._plan_phase(phase, workflow)
        except PlannerError as e:
            return False, [], f"Failed to generate tool execution plan: {e.message}", False

        results = await self.engine.execute_tools(
            descriptors,
            workflow.context,
            should_stop=lambda: workflow.status in (WorkflowStatus.PAUSED, WorkflowStatus.CANCELLED),
        )

        failed = [r for r in results if not r.success]
        if failed:
            return False, results, f"Phase {phase.name} failed: {len(failed)} tools failed ({failed[0].error})", False

        if len(results) < len(descriptors):
            return False, results, None, True

        return True, results, None, False

    # =========================================================================
    # CONTROL
    # =========================================================================

    def _control(self, workflow_id: str, target: WorkflowStatus, event: str) -> ControlResult:
        workflow = self.registry.require(workflow_id)

        if not can_transition(workflow.status, target):
            message = f"Cannot {event} workflow in status {workflow.status.value}"
            logger.warning(f"{message} ({workflow_id})")
            return ControlResult(success=False, workflow_id=workflow_id, status=workflow.status, message=message)

        transition(workflow, target)
        workflow.add_log(f"workflow_{event}", f"workflow {target.value}")
        logger.info(f"Workflow {workflow_id}: {event} -> {target.value}")
        return ControlResult(success=True, workflow_id=workflow_id, status=workflow.status)

    def pause(self, workflow_id: str) -> ControlResult:
        """Pause an executing workflow; takes effect before its next tool."""
        return self._control(workflow_id, WorkflowStatus.PAUSED, "paused")

    def resume(self, workflow_id: str) -> ControlResult:
        """Move a paused workflow back to ready."""
        workflow = self.registry.require(workflow_id)
        if workflow.status != WorkflowStatus.PAUSED:
            message = f"Cannot resume workflow in status {workflow.status.value}"
            logger.warning(f"{message} ({workflow_id})")
            return ControlResult(success=False, workflow_id=workflow_id, status=workflow.status, message=message)
        return self._control(workflow_id, WorkflowStatus.READY, "resumed")

    def retry(self, workflow_id: str) -> ControlResult:
        """Move a failed workflow back to ready so the failed phase runs again."""
        workflow = self.registry.require(workflow_id)
        if workflow.status != WorkflowStatus.FAILED:
            message = f"Cannot retry workflow in status {workflow.status.value}"
            logger.warning(f"{message} ({workflow_id})")
            return ControlResult(success=False, workflow_id=workflow_id, status=workflow.status, message=message)
        return self._control(workflow_id, WorkflowStatus.READY, "retried")

    def cancel(self, workflow_id: str) -> ControlResult:
        """Cancel a workflow. Terminal workflows are left as they are."""
        workflow = self.registry.require(workflow_id)
        if workflow.status in TERMINAL_STATUSES:
            return ControlResult(
                success=True,
                workflow_id=workflow_id,
                status=workflow.status,
                message=f"Workflow already {workflow.status.value}",
            )
        return self._control(workflow_id, WorkflowStatus.CANCELLED, "cancelled")

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return self.registry.get(workflow_id)

    def calculate_remaining_time(self, workflow: Workflow) -> str:
        if workflow.status in TERMINAL_STATUSES:
            return "0 minutes"
        return f"{remaining_minutes(workflow.phases[workflow.current_phase:])} minutes"

    def get_workflow_status(self, workflow_id: str) -> Optional[WorkflowStatusSnapshot]:
        """Progress snapshot, or None for an unknown id."""
        workflow = self.registry.get(workflow_id)
        if workflow is None:
            return None

        return WorkflowStatusSnapshot(
            id=workflow.id,
            type=workflow.type,
            status=workflow.status,
            progress=workflow.progress,
            current_phase=workflow.current_phase,
            total_phases=len(workflow.phases),
            completed_phases=len(workflow.completed_phases),
            failed_phases=len(workflow.failed_phases),
            estimated_time_remaining=self.calculate_remaining_time(workflow),
            errors=list(workflow.errors),
            start_time=workflow.start_time,
            total_execution_time=workflow.total_execution_time,
        )

    def get_phases(self, workflow_id: str) -> list[PhaseView]:
        """
        Every phase with its status relative to the workflow position.

        Raises:
            WorkflowNotFoundError: If the id is not registered
        """
        workflow = self.registry.require(workflow_id)
        views = []
        for index, phase in enumerate(workflow.phases):
            if phase.name in workflow.completed_phases:
                status = "completed"
            elif index == workflow.current_phase:
                status = "current"
            else:
                status = "pending"
            views.append(PhaseView(
                index=index,
                phase=phase,
                status=status,
                can_execute=all(dep in workflow.completed_phases for dep in phase.dependencies),
            ))
        return views

    def get_active_workflows(self) -> list[dict[str, Any]]:
        return [
            {
                "id": wf.id,
                "type": wf.type,
                "status": wf.status.value,
                "progress": wf.progress,
                "startTime": wf.start_time.isoformat(),
            }
            for wf in self.registry.values()
        ]

    def cleanup_completed_workflows(self, max_age: Optional[float] = None) -> int:
        """
        Remove terminal workflows older than max_age seconds.

        Args:
            max_age: Age threshold in seconds, measured from start time.
                     Defaults to the configured retention window.

        Returns:
            Number of workflows removed
        """
        max_age = self.config.retention_seconds if max_age is None else max_age
        now = datetime.now()

        removed = self.registry.sweep(
            lambda wf: wf.status in TERMINAL_STATUSES
            and (now - wf.start_time).total_seconds() > max_age
        )
        for workflow_id in removed:
            logger.info(f"Cleaned up old workflow: {workflow_id}")
        return len(removed)

    # =========================================================================
    # DIRECT TOOL ACCESS
    # =========================================================================

    async def execute_tool(self, name: str, params: Optional[dict] = None, context: Optional[dict] = None) -> ExecutionResult:
        return await self.engine.execute(name, params, context)

    async def execute_tools(self, tools: Iterable[Any], context: Optional[dict] = None) -> list[ExecutionResult]:
        return await self.engine.execute_tools(tools, context)

    def get_tool_stats(self) -> dict:
        return self.engine.get_stats()
