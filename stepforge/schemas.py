"""
Pydantic schemas for stepforge.

WHY THIS FILE EXISTS:
--------------------
Every component hands structured records to the next one: the decomposer
produces Steps and an ExecutionPlan, the orchestrators turn those into tool
calls, the execution engine returns ExecutionResults, and the workflow
orchestrator keeps a Workflow per session. Defining these as Pydantic models:
1. Validates descriptors coming from outside (planners, callers, MCP clients)
2. Gives typed Python objects to work with inside the engine
3. Serializes cleanly to JSON for the CLI and MCP surfaces

SECTIONS:
--------
- Decomposition schemas: Step, ExecutionPlan, Decomposition
- Tool schemas: ToolParameter, ToolDefinition, ToolDescriptor, ExecutionResult
- Orchestration schemas: StepError, StepRecord, ExecutionSummary, ResponseEnvelope
- Workflow schemas: PhaseSpec, WorkflowTemplate, Workflow, PhaseOutcome, snapshots
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .errors import CriticalStepFailure


# =============================================================================
# INTENT SCHEMAS
# =============================================================================

class IntentMetadata(BaseModel):
    """
    Output of the external intent/approach classifiers.

    Only used to pick a decomposition strategy; the execution core never
    interprets raw natural language beyond the decomposer's fixed rules.
    """
    intent: str = Field(
        default="general",
        description="Classified intent, e.g. 'complex_multi_step'"
    )
    complexity: Optional[str] = Field(
        default=None,
        description="Classifier's complexity estimate"
    )
    approach: Optional[str] = Field(
        default=None,
        description="Suggested orchestration approach"
    )


# =============================================================================
# DECOMPOSITION SCHEMAS
# =============================================================================

class Step(BaseModel):
    """
    A single unit of work in a decomposed request.

    A None parameter value is a placeholder filled from a dependency's output
    at execution time.

    Example:
        Step(
            id="repetition_logic",
            type="repetition_logic",
            tool="content_repeat",
            description="Repeat content based on calculation result",
            parameters={"content": None, "count": None, "targetFile": None},
            dependencies=["file_creation", "math_calculation", "content_generation"],
            output="finalFile"
        )
    """
    id: str = Field(description="Unique step identifier")
    type: str = Field(description="Step category, e.g. 'math_calculation'")
    tool: str = Field(description="Handler that executes this step")
    description: str = Field(default="", description="Human readable summary")
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Tool parameters; None marks a value filled by data flow"
    )
    dependencies: list[str] = Field(
        default_factory=list,
        description="Step ids that must complete before this one"
    )
    output: Optional[str] = Field(
        default=None,
        description="Key under which this step's data is published"
    )


class ExecutionPlanEntry(BaseModel):
    """One scheduled step in topological order."""
    step_id: str
    order: int = Field(ge=1, description="1-indexed position in the plan")
    tool: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    output: Optional[str] = None


class DataFlowEntry(BaseModel):
    """
    Where a named output comes from.

    value is None in a decomposition's plan; ExecutionSummary.data_flow
    carries a per-run copy with the published value filled in.
    """
    source: str = Field(description="Step id producing this output")
    type: str = Field(description="Type of the producing step")
    value: Any = None


class ExecutionPlan(BaseModel):
    """Topologically ordered steps plus the data-flow map."""
    order: list[ExecutionPlanEntry] = Field(default_factory=list)
    data_flow: dict[str, DataFlowEntry] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)


class Decomposition(BaseModel):
    """
    The step graph derived from one request, with its execution plan.
    """
    type: Literal["multi_step_workflow", "general_complex", "fallback", "custom"] = Field(
        description="Which decomposition strategy produced this"
    )
    steps: list[Step] = Field(default_factory=list)
    execution_plan: ExecutionPlan = Field(default_factory=ExecutionPlan)
    context: dict[str, Any] = Field(default_factory=dict)
    complexity: Literal["low", "medium", "high"] = "high"
    requires_orchestration: bool = True

    def get_step(self, step_id: str) -> Optional[Step]:
        """Find a step by id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# =============================================================================
# TOOL SCHEMAS
# =============================================================================

class ToolParameter(BaseModel):
    """Schema for a single tool parameter."""
    name: str = Field(description="Parameter name")
    type: Literal["string", "integer", "boolean", "object", "array"] = Field(
        default="string",
        description="Parameter type"
    )
    description: str = Field(default="", description="What this parameter does")
    required: bool = Field(default=True, description="Whether this parameter is required")
    default: Optional[Any] = Field(default=None, description="Default value if not required")


class ToolDefinition(BaseModel):
    """
    Definition of a primitive tool in the execution registry.

    The ToolRegistry uses these to validate parameters before dispatch.
    """
    name: str = Field(description="Tool name, e.g. 'create_file'")
    description: str = Field(description="What the tool does")
    parameters: list[ToolParameter] = Field(
        default_factory=list,
        description="Parameters the tool accepts"
    )
    returns: str = Field(default="", description="What the tool returns")
    dangerous: bool = Field(
        default=False,
        description="Whether the tool spawns processes or deletes data"
    )

    @property
    def required_params(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]


class ToolDescriptor(BaseModel):
    """
    Unit of work handed to the execution engine.

    Produced by the decomposer for inline steps or by a Planner per phase.
    """
    name: str = Field(description="Tool name")
    parameters: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=0, description="Lower runs first")
    dependencies: list[str] = Field(default_factory=list)
    critical: bool = Field(
        default=True,
        description="Whether a failure stops the remaining tools"
    )
    description: str = Field(default="")
    estimated_time: Optional[str] = None

    @classmethod
    def from_raw(cls, data: Any) -> "ToolDescriptor":
        """
        Build a descriptor from planner or caller output.

        Accepts 'name', 'tool' or 'toolName' for the tool and 'parameters'
        or 'params' for its arguments.
        """
        if isinstance(data, ToolDescriptor):
            return data
        if not isinstance(data, dict):
            raise TypeError(f"Tool descriptor must be a dict, got {type(data).__name__}")
        payload = dict(data)
        name = payload.pop("name", None) or payload.pop("tool", None) or payload.pop("toolName", None)
        parameters = payload.pop("parameters", None)
        if parameters is None:
            parameters = payload.pop("params", None)
        if "estimatedTime" in payload:
            payload["estimated_time"] = payload.pop("estimatedTime")
        payload.pop("tool", None)
        payload.pop("toolName", None)
        payload.pop("params", None)
        return cls.model_validate({
            **{k: v for k, v in payload.items() if k in cls.model_fields},
            "name": name,
            "parameters": parameters if parameters is not None else {},
        })


class ExecutionResult(BaseModel):
    """
    Append-only record of one tool invocation.
    """
    tool: str = Field(description="Tool that was invoked")
    parameters: dict[str, Any] = Field(default_factory=dict)
    success: bool = Field(description="Whether the invocation succeeded")
    result: Optional[dict[str, Any]] = Field(default=None, description="Tool payload on success")
    error: Optional[str] = Field(default=None, description="Error message on failure")
    timestamp: datetime = Field(default_factory=datetime.now)


# =============================================================================
# ORCHESTRATION SCHEMAS
# =============================================================================

class StepError(BaseModel):
    """A failed step in an orchestration run."""
    step: str
    error: str
    timestamp: datetime = Field(default_factory=datetime.now)


class StepRecord(BaseModel):
    """Per-step outcome kept in the orchestration step log."""
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ExecutionSummary(BaseModel):
    """
    Raw result of executing a decomposition.

    results holds the data published under each step's output key, so a
    failed run still shows which steps completed.
    """
    success: bool
    results: dict[str, Any] = Field(default_factory=dict)
    errors: list[StepError] = Field(default_factory=list)
    context: dict[str, StepRecord] = Field(default_factory=dict)
    aborted: bool = Field(default=False, description="Whether the abort policy stopped the run")
    aborted_at: Optional[str] = Field(default=None, description="Step id that triggered the abort")
    data_flow: dict[str, DataFlowEntry] = Field(
        default_factory=dict,
        description="Per-run copy of the plan's data-flow map with published values"
    )

    def raise_for_abort(self) -> None:
        """
        Raise if the abort policy stopped this run.

        Raises:
            CriticalStepFailure: Carrying the aborting step id and its error
        """
        if not self.aborted:
            return
        message = next(
            (e.error for e in self.errors if e.step == self.aborted_at),
            "Execution aborted",
        )
        raise CriticalStepFailure(
            f"Step {self.aborted_at} aborted the run: {message}",
            step_id=self.aborted_at,
            context={"errors": [e.error for e in self.errors]},
        )


class ResponseTool(BaseModel):
    """A tool summary entry in the response envelope."""
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    context: str = ""


class ResponseEnvelope(BaseModel):
    """Uniform response returned by ToolOrchestrator.orchestrate()."""
    type: Literal["execution_success", "execution_failed", "execution_error"]
    message: str
    tools: list[ResponseTool] = Field(default_factory=list)
    requires_approval: bool = False
    model_used: str = "tool_orchestration"
    action_type: Literal["execution_complex", "execution_failed", "execution_error"]
    context: dict[str, Any] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.type == "execution_success"


# =============================================================================
# WORKFLOW SCHEMAS
# =============================================================================

class WorkflowStatus(str, Enum):
    """Lifecycle state of a workflow."""
    INITIALIZING = "initializing"
    READY = "ready"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PhaseOutcomeStatus(str, Enum):
    """What a call to execute_next_phase() produced."""
    PHASE_COMPLETED = "phase_completed"
    PHASE_FAILED = "phase_failed"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PhaseSpec(BaseModel):
    """
    A named bundle of work inside a workflow template.

    Example:
        PhaseSpec(
            name="api_development",
            description="Create Express.js server and routes",
            tools=["create_file", "install_dependency"],
            dependencies=["project_setup"],
            estimated_time="8-12 minutes",
            complexity="medium"
        )
    """
    name: str
    description: str = ""
    tools: list[str] = Field(default_factory=list, description="Tool kinds this phase uses")
    dependencies: list[str] = Field(default_factory=list, description="Phase names that must complete first")
    estimated_time: str = "10-15 minutes"
    complexity: Literal["low", "medium", "high"] = "medium"


class WorkflowTemplate(BaseModel):
    """A named ordered list of phases."""
    name: str
    description: str = ""
    phases: list[PhaseSpec]
    total_estimated_time: str = ""
    complexity: Literal["low", "medium", "high"] = "medium"

    @field_validator("phases")
    @classmethod
    def phases_not_empty(cls, v: list[PhaseSpec]) -> list[PhaseSpec]:
        if not v:
            raise ValueError("A workflow template needs at least one phase")
        return v


class WorkflowErrorEntry(BaseModel):
    """An error recorded against a workflow phase."""
    phase: str
    error: str
    timestamp: datetime = Field(default_factory=datetime.now)


class WorkflowLogEntry(BaseModel):
    """A single event in a workflow's timeline."""
    timestamp: datetime = Field(default_factory=datetime.now)
    event_type: str
    phase: Optional[str] = None
    details: str = ""


class Workflow(BaseModel):
    """
    A stateful multi-phase execution session.

    Owned exclusively by the WorkflowOrchestrator holding it in its registry.
    """
    id: str
    type: str
    template: WorkflowTemplate
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    current_phase: int = 0
    phases: list[PhaseSpec] = Field(default_factory=list)
    completed_phases: list[str] = Field(default_factory=list)
    failed_phases: list[str] = Field(default_factory=list)
    user_request: str
    context: dict[str, Any] = Field(default_factory=dict)
    errors: list[WorkflowErrorEntry] = Field(default_factory=list)
    logs: list[WorkflowLogEntry] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=datetime.now)
    current_phase_start_time: Optional[datetime] = None
    total_execution_time: float = Field(default=0.0, description="Seconds from start to terminal state")

    @property
    def next_phase(self) -> Optional[PhaseSpec]:
        if self.current_phase < len(self.phases):
            return self.phases[self.current_phase]
        return None

    @property
    def progress(self) -> int:
        if not self.phases:
            return 100
        return round(len(self.completed_phases) / len(self.phases) * 100)

    def add_log(self, event_type: str, details: str, phase: Optional[str] = None) -> None:
        self.logs.append(WorkflowLogEntry(event_type=event_type, phase=phase, details=details))


class PhaseOutcome(BaseModel):
    """Result of execute_next_phase()."""
    status: PhaseOutcomeStatus
    phase: Optional[str] = None
    error: Optional[str] = None
    dependencies: list[str] = Field(
        default_factory=list,
        description="Missing prerequisite phases when waiting"
    )
    message: str = ""
    next_phase: Optional[PhaseSpec] = None
    results: list[ExecutionResult] = Field(default_factory=list)


class StartedWorkflow(BaseModel):
    """Result of start_workflow()."""
    workflow_id: str
    workflow: Workflow
    next_phase: Optional[PhaseSpec] = None


class WorkflowStatusSnapshot(BaseModel):
    """Read-only progress view of a workflow."""
    id: str
    type: str
    status: WorkflowStatus
    progress: int = Field(ge=0, le=100)
    current_phase: int
    total_phases: int
    completed_phases: int
    failed_phases: int
    estimated_time_remaining: str
    errors: list[WorkflowErrorEntry] = Field(default_factory=list)
    start_time: datetime
    total_execution_time: float = 0.0


class PhaseView(BaseModel):
    """A phase with its position-derived status."""
    index: int
    phase: PhaseSpec
    status: Literal["completed", "current", "pending"]
    can_execute: bool


class ControlResult(BaseModel):
    """Result of pause/resume/cancel/retry."""
    success: bool
    workflow_id: str
    status: WorkflowStatus
    message: str = ""
