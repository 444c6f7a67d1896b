"""
Task Decomposer for stepforge.

WHAT THIS FILE DOES:
-------------------
Turns a request into a graph of typed steps and a topologically ordered
execution plan. No natural-language understanding happens here: a fixed
table of extraction rules matches slots in the text (target file, math
expression, content, repetition), and each rule that matches emits one step.

EXAMPLE:
-------
    "create a file called out.txt, calculate 2+3 and write x that many times"

    file_creation       create_file     -> targetFile
    math_calculation    math_evaluate   -> mathResult
    content_generation  content_prepare -> preparedContent   (after math)
    repetition_logic    content_repeat  -> finalFile         (after all three)

DECOMPOSITION TYPES:
-------------------
- multi_step_workflow: at least one extraction rule matched
- general_complex: a single general_planning step wrapping the request
- fallback: extraction itself blew up; a single step, no orchestration
- custom: built by decompose_steps() from caller-supplied steps

Cycles are never recovered from: DependencyCycleError reaches the caller
before anything executes.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .errors import DependencyCycleError, ValidationError
from .schemas import (
    DataFlowEntry,
    Decomposition,
    ExecutionPlan,
    ExecutionPlanEntry,
    IntentMetadata,
    Step,
)

logger = logging.getLogger(__name__)

MULTI_STEP_INTENT = "complex_multi_step"


# =============================================================================
# SECTION 1: EXTRACTION RULES
# =============================================================================

DIRECTORY_PATTERNS = [
    re.compile(r"(?:in\s+(?:a\s+)?(?:folder\s+named\s+|directory\s+named\s+|folder\s+called\s+|directory\s+called\s+))([a-zA-Z0-9._-]+)", re.IGNORECASE),
    re.compile(r"(?:in\s+(?:a\s+)?(?:folder\s+|directory\s+))([a-zA-Z0-9._-]+)", re.IGNORECASE),
    re.compile(r"(?:folder\s+named\s+|directory\s+named\s+|folder\s+called\s+|directory\s+called\s+)([a-zA-Z0-9._-]+)", re.IGNORECASE),
]

FILE_PATTERNS = [
    re.compile(r"(?:make|create|new)\s+(?:a\s+)?file\s+(?:called\s+|named\s+)?([a-zA-Z0-9._-]+)", re.IGNORECASE),
    re.compile(r"(?:make|create|new)\s+(?:a\s+)?file\s+([a-zA-Z0-9._-]+)", re.IGNORECASE),
    re.compile(r"file\s+(?:called\s+|named\s+)?([a-zA-Z0-9._-]+)", re.IGNORECASE),
]

MATH_PATTERN = re.compile(r"(?:calculate|compute|solve)\s+(.+?)(?:\s+and|\s+then|\s*[.,]|\s*$)", re.IGNORECASE)
CONTENT_PATTERN = re.compile(r"(?:write|put)\s+(.+?)\s+(?:that\s+many\s+times|in\s+the\s+file|to\s+the\s+file)", re.IGNORECASE)
REPETITION_PATTERN = re.compile(r"(?:that\s+many\s+times|(\d+)\s+times)", re.IGNORECASE)


@dataclass
class Extraction:
    """A matched step plus the decomposition context entries it contributes."""
    step: Step
    context: dict[str, Any]


@dataclass
class ExtractionRule:
    """
    One slot-extraction strategy.

    extract() returns None when the rule's pattern does not match; the rule
    then contributes no step.
    """
    name: str
    extract: Callable[[str], Optional[Extraction]]


def extract_file_creation(request: str) -> Optional[Extraction]:
    target_directory = None
    for pattern in DIRECTORY_PATTERNS:
        match = pattern.search(request)
        if match:
            target_directory = match.group(1)
            break

    for pattern in FILE_PATTERNS:
        match = pattern.search(request)
        if not match:
            continue

        file_name = match.group(1)
        parameters: dict[str, Any] = {"name": file_name, "content": ""}
        description = f"Create file {file_name}"
        if target_directory:
            parameters["targetDirectory"] = target_directory
            description += f" in directory {target_directory}"

        step = Step(
            id="file_creation",
            type="file_creation",
            tool="create_file",
            description=description,
            parameters=parameters,
            dependencies=[],
            output="targetFile",
        )
        return Extraction(step=step, context={"targetFile": file_name})

    return None


def extract_math_calculation(request: str) -> Optional[Extraction]:
    match = MATH_PATTERN.search(request)
    if not match:
        return None

    expression = match.group(1).strip()
    step = Step(
        id="math_calculation",
        type="math_calculation",
        tool="math_evaluate",
        description=f"Calculate: {expression}",
        parameters={"expression": expression},
        dependencies=[],
        output="mathResult",
    )
    return Extraction(step=step, context={"mathResult": None})


def extract_content_generation(request: str) -> Optional[Extraction]:
    match = CONTENT_PATTERN.search(request)
    if not match:
        return None

    content = match.group(1).strip()
    step = Step(
        id="content_generation",
        type="content_generation",
        tool="content_prepare",
        description=f'Generate content: "{content}"',
        parameters={"content": content},
        dependencies=["math_calculation"],
        output="preparedContent",
    )
    return Extraction(step=step, context={"content": content})


def extract_repetition(request: str) -> Optional[Extraction]:
    match = REPETITION_PATTERN.search(request)
    if not match:
        return None

    # "<N> times" carries its own count; "that many times" waits for the math step
    count = int(match.group(1)) if match.group(1) else None
    step = Step(
        id="repetition_logic",
        type="repetition_logic",
        tool="content_repeat",
        description="Repeat content based on calculation result",
        parameters={"content": None, "count": count, "targetFile": None},
        dependencies=["file_creation", "math_calculation", "content_generation"],
        output="finalFile",
    )
    return Extraction(step=step, context={"repetitionCount": count})


DEFAULT_RULES = [
    ExtractionRule("file_creation", extract_file_creation),
    ExtractionRule("math_calculation", extract_math_calculation),
    ExtractionRule("content_generation", extract_content_generation),
    ExtractionRule("repetition_logic", extract_repetition),
]


# =============================================================================
# SECTION 2: ORDERING
# =============================================================================

def topological_sort(steps: list[Step]) -> list[Step]:
    """
    Order steps so every step follows all of its dependencies.

    Depth-first with visiting/visited sets. Dependencies naming steps that
    are not in the list are ignored here; decompose_steps() rejects them
    earlier.

    Raises:
        DependencyCycleError: A step was reached again while still visiting
    """
    by_id = {step.id: step for step in steps}
    ordered: list[Step] = []
    visited: set[str] = set()
    visiting: list[str] = []

    def visit(step: Step) -> None:
        if step.id in visiting:
            cycle = visiting[visiting.index(step.id):] + [step.id]
            raise DependencyCycleError(
                f"Circular dependency detected: {' -> '.join(cycle)}",
                cycle=cycle,
            )
        if step.id in visited:
            return

        visiting.append(step.id)
        for dep_id in step.dependencies:
            dep = by_id.get(dep_id)
            if dep is not None:
                visit(dep)
        visiting.pop()

        visited.add(step.id)
        ordered.append(step)

    for step in steps:
        visit(step)

    return ordered


def build_execution_plan(steps: list[Step], context: Optional[dict] = None) -> ExecutionPlan:
    """
    Sort steps and derive the ordered plan plus the data-flow map.

    Raises:
        DependencyCycleError: If the step graph is cyclic
    """
    order = []
    data_flow = {}

    for index, step in enumerate(topological_sort(steps), start=1):
        order.append(ExecutionPlanEntry(
            step_id=step.id,
            order=index,
            tool=step.tool,
            parameters=dict(step.parameters),
            dependencies=list(step.dependencies),
            output=step.output,
        ))
        if step.output:
            data_flow[step.output] = DataFlowEntry(source=step.id, type=step.type)

    return ExecutionPlan(order=order, data_flow=data_flow, context=dict(context or {}))


# =============================================================================
# SECTION 3: DECOMPOSER
# =============================================================================

class TaskDecomposer:
    """
    Builds Decompositions from requests or from caller-supplied steps.

    Example usage:
        decomposer = TaskDecomposer()
        decomposition = decomposer.decompose(
            "create a file called out.txt, calculate 2+3 and write x that many times",
            IntentMetadata(intent="complex_multi_step"),
        )
        for entry in decomposition.execution_plan.order:
            print(entry.order, entry.step_id)
    """

    def __init__(self, rules: Optional[list[ExtractionRule]] = None):
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)

    def decompose(self, request: str, intent: Union[IntentMetadata, dict, None] = None) -> Decomposition:
        """
        Decompose a request.

        Args:
            request: The raw request text
            intent: Classifier output; intent 'complex_multi_step' selects
                    rule-based extraction

        Raises:
            DependencyCycleError: If the extracted graph is cyclic
            ValidationError: If intent is a dict that is not valid intent metadata
        """
        if isinstance(intent, dict):
            try:
                intent = IntentMetadata.model_validate(intent)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid intent metadata: {e}", {"intent": intent}) from e
        intent = intent or IntentMetadata()

        logger.info(f"Decomposing request: {request!r} (intent={intent.intent})")

        try:
            if intent.intent == MULTI_STEP_INTENT:
                return self.decompose_multi_step(request)
            return self.decompose_general(request)
        except DependencyCycleError:
            raise
        except (re.error, PydanticValidationError, ValidationError) as e:
            logger.error(f"Task decomposition failed: {e}")
            return self.fallback(request)

    def decompose_multi_step(self, request: str) -> Decomposition:
        """Apply every extraction rule; fall back to general when none match."""
        extractions = []
        context: dict[str, Any] = {}

        for rule in self.rules:
            extraction = rule.extract(request)
            if extraction is None:
                logger.warning(f"No {rule.name} step detected in request")
                continue
            logger.info(f"Extracted {rule.name} step: {extraction.step.description}")
            extractions.append(extraction)
            context.update(extraction.context)

        if not extractions:
            logger.warning("No steps extracted, using general decomposition")
            return self.decompose_general(request)

        # Only keep dependencies on steps that were actually extracted
        extracted_ids = {e.step.id for e in extractions}
        steps = [
            e.step.model_copy(update={
                "dependencies": [d for d in e.step.dependencies if d in extracted_ids],
            })
            for e in extractions
        ]

        plan = build_execution_plan(steps, context)
        logger.info(f"Decomposed into {len(steps)} steps with data flow")

        return Decomposition(
            type="multi_step_workflow",
            steps=steps,
            execution_plan=plan,
            context=context,
            complexity="high",
            requires_orchestration=True,
        )

    def decompose_general(self, request: str) -> Decomposition:
        step = Step(
            id="general_execution",
            type="general_execution",
            tool="general_planning",
            description=f"Execute: {request}",
            parameters={"prompt": request},
            output="result",
        )
        return Decomposition(
            type="general_complex",
            steps=[step],
            execution_plan=build_execution_plan([step]),
            complexity="high",
            requires_orchestration=True,
        )

    def fallback(self, request: str) -> Decomposition:
        logger.warning(f"Creating fallback decomposition for: {request!r}")
        step = Step(
            id="fallback_execution",
            type="fallback_execution",
            tool="fallback_planning",
            description=f"Fallback execution for: {request}",
            parameters={"prompt": request},
            output="result",
        )
        return Decomposition(
            type="fallback",
            steps=[step],
            execution_plan=build_execution_plan([step]),
            complexity="medium",
            requires_orchestration=False,
        )

    def decompose_steps(self, steps: Iterable[Union[Step, dict]], context: Optional[dict] = None) -> Decomposition:
        """
        Build a Decomposition from externally decomposed steps.

        Raises:
            ValidationError: Malformed steps, duplicate ids or dependencies
                             on unknown step ids
            DependencyCycleError: If the graph is cyclic
        """
        parsed = []
        for raw in steps:
            try:
                parsed.append(raw if isinstance(raw, Step) else Step.model_validate(raw))
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid step: {e}") from e

        ids = [step.id for step in parsed]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate step ids: {', '.join(duplicates)}", {"steps": duplicates})

        known = set(ids)
        for step in parsed:
            unknown = [d for d in step.dependencies if d not in known]
            if unknown:
                raise ValidationError(
                    f"Step {step.id} depends on unknown steps: {', '.join(unknown)}",
                    {"step": step.id, "unknown": unknown},
                )

        context = dict(context or {})
        return Decomposition(
            type="custom",
            steps=parsed,
            execution_plan=build_execution_plan(parsed, context),
            context=context,
            complexity="high" if len(parsed) > 1 else "low",
            requires_orchestration=True,
        )
