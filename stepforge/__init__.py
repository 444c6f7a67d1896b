"""
stepforge - turn requests into step graphs and run them as tool workflows.

COMPONENTS:
----------
TaskDecomposer: request -> steps + topologically ordered execution plan
ToolOrchestrator: single-pass execution with data flow and an abort policy
WorkflowOrchestrator: multi-phase workflows with pause/resume/cancel
ToolExecutionEngine: filesystem and subprocess tools with timeouts
"""

__version__ = "0.3.0"

# Re-export key classes for convenience
from .schemas import (
    Step,
    ExecutionPlan,
    Decomposition,
    IntentMetadata,
    ToolDescriptor,
    ExecutionResult,
    ExecutionSummary,
    ResponseEnvelope,
    Workflow,
    WorkflowStatus,
    WorkflowTemplate,
    PhaseSpec,
    PhaseOutcome,
    PhaseOutcomeStatus,
)

from .errors import (
    StepforgeError,
    ValidationError,
    ExpressionError,
    DependencyCycleError,
    UnsupportedToolError,
    StepExecutionError,
    CriticalStepFailure,
    PlannerError,
    WorkflowNotFoundError,
    InvalidTransitionError,
)

from .arithmetic import evaluate_expression

from .config import (
    Config,
    load_config,
    save_config,
    get_default_config,
)

from .execution import (
    ToolRegistry,
    ToolExecutionEngine,
    create_default_tools,
    resolve_path,
)

from .decomposer import (
    TaskDecomposer,
    ExtractionRule,
    topological_sort,
)

from .planner import (
    Planner,
    TemplatePlanner,
    normalize_tool_descriptors,
)

from .orchestrator import ToolOrchestrator

from .workflow import (
    WorkflowOrchestrator,
    WorkflowRegistry,
)

__all__ = [
    # Schemas
    "Step",
    "ExecutionPlan",
    "Decomposition",
    "IntentMetadata",
    "ToolDescriptor",
    "ExecutionResult",
    "ExecutionSummary",
    "ResponseEnvelope",
    "Workflow",
    "WorkflowStatus",
    "WorkflowTemplate",
    "PhaseSpec",
    "PhaseOutcome",
    "PhaseOutcomeStatus",
    # Errors
    "StepforgeError",
    "ValidationError",
    "ExpressionError",
    "DependencyCycleError",
    "UnsupportedToolError",
    "StepExecutionError",
    "CriticalStepFailure",
    "PlannerError",
    "WorkflowNotFoundError",
    "InvalidTransitionError",
    # Components
    "evaluate_expression",
    "Config",
    "load_config",
    "save_config",
    "get_default_config",
    "ToolRegistry",
    "ToolExecutionEngine",
    "create_default_tools",
    "resolve_path",
    "TaskDecomposer",
    "ExtractionRule",
    "topological_sort",
    "Planner",
    "TemplatePlanner",
    "normalize_tool_descriptors",
    "ToolOrchestrator",
    "WorkflowOrchestrator",
    "WorkflowRegistry",
]
