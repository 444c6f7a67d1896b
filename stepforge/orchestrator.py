"""
Tool Orchestrator for stepforge.

WHAT THIS FILE DOES:
-------------------
Runs a Decomposition in a single pass: steps execute strictly in plan
order, each step's unset (None) parameters are filled from the outputs of
the steps it depends on, and an abort policy decides whether a failure ends
the run.

DATA FLOW:
---------
    math_calculation  ──▶ results["mathResult"]      = {"result": 5, ...}
    content_generation ─▶ results["preparedContent"] = {"preparedContent": "x", ...}
    file_creation     ──▶ results["targetFile"]      = {"filePath": "/.../out.txt", ...}
                                    │
                                    ▼
    repetition_logic.parameters  {count: 5, content: "x", targetFile: "/.../out.txt"}

Which field of a dependency's output fills which parameter is declared in
PARAMETER_MAPPINGS. Whatever is still None afterwards is looked up in the
decomposition context.

ABORT POLICY:
------------
Stop when the failing step id is in the critical set, or when more errors
than max_errors have accumulated. Otherwise continue with the next step.
"""

import logging
import os
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from .arithmetic import evaluate_expression
from .config import OrchestrationConfig
from .decomposer import TaskDecomposer
from .errors import ExpressionError, StepExecutionError, StepforgeError
from .execution import ToolExecutionEngine
from .planner import Planner, normalize_tool_descriptors
from .schemas import (
    Decomposition,
    ExecutionSummary,
    IntentMetadata,
    ResponseEnvelope,
    ResponseTool,
    Step,
    StepError,
    StepRecord,
)

logger = logging.getLogger(__name__)

StepHandler = Callable[[Step, dict, dict], Awaitable[dict]]

# (parameter key, dependency output key) -> field of the dependency's output
PARAMETER_MAPPINGS: dict[tuple[str, str], str] = {
    ("count", "mathResult"): "result",
    ("content", "preparedContent"): "preparedContent",
    ("targetFile", "targetFile"): "filePath",
}

_SURROUNDING_QUOTES = re.compile(r"^[\"']|[\"']$")


def map_dependency_output(param_key: str, output_key: str, output: Any) -> Any:
    """Value a dependency's output supplies for a parameter, or None."""
    field_name = PARAMETER_MAPPINGS.get((param_key, output_key))
    if field_name is None or not isinstance(output, dict):
        return None
    return output.get(field_name)


class ToolOrchestrator:
    """
    Single-pass executor for decomposed requests.

    Step tools are dispatched through a handler table; register_handler()
    adds or replaces one. Handlers take (step, parameters, context) and
    return the step's output data, raising on failure.

    Example usage:
        orchestrator = ToolOrchestrator()
        envelope = await orchestrator.orchestrate(
            "create a file called out.txt, calculate 2+3 and write x that many times",
            IntentMetadata(intent="complex_multi_step"),
            context={"targetDir": "/tmp/demo"},
        )
        print(envelope.type, envelope.message)
    """

    def __init__(
        self,
        engine: Optional[ToolExecutionEngine] = None,
        decomposer: Optional[TaskDecomposer] = None,
        planner: Optional[Planner] = None,
        config: Optional[OrchestrationConfig] = None
    ):
        self.engine = engine or ToolExecutionEngine()
        self.decomposer = decomposer or TaskDecomposer()
        self.planner = planner
        self.config = config or OrchestrationConfig()

        self.handlers: dict[str, StepHandler] = {}
        self.register_handler("create_file", self._handle_create_file)
        self.register_handler("math_evaluate", self._handle_math_evaluate)
        self.register_handler("content_prepare", self._handle_content_prepare)
        self.register_handler("content_repeat", self._handle_content_repeat)
        self.register_handler("edit_file", self._handle_edit_file)
        self.register_handler("general_planning", self._handle_planning)
        self.register_handler("fallback_planning", self._handle_planning)

    def register_handler(self, tool: str, handler: StepHandler) -> None:
        self.handlers[tool] = handler

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def orchestrate(
        self,
        request: str,
        intent: Union[IntentMetadata, dict, None] = None,
        context: Optional[dict] = None
    ) -> ResponseEnvelope:
        """
        Decompose a request, execute it and wrap the outcome in an envelope.

        Args:
            request: Raw request text
            intent: Classifier output used to pick the decomposition strategy
            context: Project context for the engine ('targetDir' anchors paths)

        Returns:
            execution_success, execution_failed, or execution_error when the
            request could not be decomposed (for example a dependency cycle)
        """
        logger.info(f"Orchestrating execution for: {request!r}")

        try:
            decomposition = self.decomposer.decompose(request, intent)
        except StepforgeError as e:
            logger.error(f"Tool orchestration failed: {e}")
            return self.error_envelope(e, request)

        logger.info(f"Decomposed into {len(decomposition.steps)} steps")
        summary = await self.execute_steps(decomposition, context)
        return self.format_result(summary, decomposition)

    async def orchestrate_steps(
        self,
        steps: Iterable[Union[Step, dict]],
        context: Optional[dict] = None,
        request: str = ""
    ) -> ResponseEnvelope:
        """Same as orchestrate() for steps that were decomposed elsewhere."""
        try:
            decomposition = self.decomposer.decompose_steps(steps)
        except StepforgeError as e:
            logger.error(f"Tool orchestration failed: {e}")
            return self.error_envelope(e, request)

        summary = await self.execute_steps(decomposition, context)
        return self.format_result(summary, decomposition)

    async def execute_steps(self, decomposition: Decomposition, context: Optional[dict] = None) -> ExecutionSummary:
        """
        Execute a decomposition's plan in order with data flow.

        The decomposition itself is not mutated; outputs accumulate in
        per-run copies of its context and data-flow map.

        Args:
            decomposition: Steps and their topologically ordered plan
            context: Project context handed to the execution engine

        Returns:
            ExecutionSummary with published outputs, errors and the step log
        """
        project_context = dict(context or {})
        data_context = {**decomposition.execution_plan.context, **decomposition.context}
        results: dict[str, Any] = {}
        errors: list[StepError] = []
        step_log: dict[str, StepRecord] = {}
        plan = decomposition.execution_plan.order
        data_flow = {
            key: flow.model_copy() for key, flow in decomposition.execution_plan.data_flow.items()
        }

        logger.info(f"Starting execution of {len(plan)} steps")

        for entry in plan:
            logger.info(f"Executing step {entry.order}: {entry.step_id}")

            try:
                step = decomposition.get_step(entry.step_id)
                if step is None:
                    raise StepExecutionError(f"Step {entry.step_id} not found", step_id=entry.step_id)

                parameters = self.prepare_parameters(step, decomposition, results, data_context)
                data = await self.execute_step(step, parameters, project_context)
            except Exception as e:
                logger.error(f"Step {entry.step_id} failed: {e}")
                errors.append(StepError(step=entry.step_id, error=str(e)))
                step_log[entry.step_id] = StepRecord(success=False, error=str(e))

                if self.should_abort(entry.step_id, errors):
                    logger.warning(f"Aborting execution after failure of step {entry.step_id}")
                    return ExecutionSummary(
                        success=False,
                        results=results,
                        errors=errors,
                        context=step_log,
                        aborted=True,
                        aborted_at=entry.step_id,
                        data_flow=data_flow,
                    )
                continue

            if step.output:
                results[step.output] = data
                data_context[step.output] = data
                if step.output in data_flow:
                    data_flow[step.output].value = data
                logger.info(f"Step {entry.step_id} completed, output: {step.output}")

            step_log[entry.step_id] = StepRecord(success=True, result=data)

        return ExecutionSummary(
            success=not errors,
            results=results,
            errors=errors,
            context=step_log,
            data_flow=data_flow,
        )

    # =========================================================================
    # STEP EXECUTION
    # =========================================================================

    def prepare_parameters(
        self,
        step: Step,
        decomposition: Decomposition,
        results: dict[str, Any],
        context: dict[str, Any]
    ) -> dict:
        """Fill a step's None parameters from dependency outputs, then context."""
        parameters = dict(step.parameters)

        for key, value in parameters.items():
            if value is not None:
                continue
            for dep_id in step.dependencies:
                dep = decomposition.get_step(dep_id)
                if dep is None or not dep.output or dep.output not in results:
                    continue
                mapped = map_dependency_output(key, dep.output, results[dep.output])
                if mapped is not None:
                    parameters[key] = mapped
                    logger.debug(f"Mapped {dep.output} to {key}: {mapped!r}")
                    break

        for key, value in parameters.items():
            if value is None and context.get(key) is not None:
                parameters[key] = context[key]
                logger.debug(f"Populated {key} from context")

        return parameters

    async def execute_step(self, step: Step, parameters: dict, context: dict) -> dict:
        """
        Dispatch a step to its handler.

        Raises:
            StepExecutionError: Unknown tool or handler failure
        """
        handler = self.handlers.get(step.tool)
        if handler is None:
            raise StepExecutionError(f"Unknown tool: {step.tool}", step_id=step.id)

        logger.info(f"Executing {step.type} with tool: {step.tool}")
        return await handler(step, parameters, context)

    def should_abort(self, step_id: str, errors: list[StepError]) -> bool:
        if step_id in self.config.critical_steps:
            return True
        return len(errors) > self.config.max_errors

    async def _write_file(self, step: Step, path: str, content: str, context: dict) -> dict:
        result = await self.engine.execute("create_file", {"path": path, "content": content}, context)
        if not result.success:
            raise StepExecutionError(result.error or f"Could not write {path}", step_id=step.id)
        return result.result or {}

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def _handle_create_file(self, step: Step, params: dict, context: dict) -> dict:
        file_name = params.get("name") or params.get("path")
        if not file_name:
            raise StepExecutionError("File creation failed: no file name", step_id=step.id)

        target_directory = params.get("targetDirectory") or params.get("directory")
        path = os.path.join(target_directory, file_name) if target_directory else file_name
        content = params.get("content") or ""

        try:
            tool_result = await self._write_file(step, path, content, context)
        except StepExecutionError as e:
            raise StepExecutionError(f"File creation failed: {e.message}", step_id=step.id) from e

        data = {
            "filePath": tool_result.get("path", path),
            "fileName": file_name,
            "content": content,
            "created": True,
            "toolResult": tool_result,
        }
        if target_directory:
            data["targetDirectory"] = target_directory
        return data

    async def _handle_math_evaluate(self, step: Step, params: dict, context: dict) -> dict:
        expression = params.get("expression")
        logger.info(f"Evaluating math expression: {expression}")

        try:
            result = evaluate_expression(expression)
        except ExpressionError as e:
            raise StepExecutionError(f"Math evaluation failed: {e.message}", step_id=step.id) from e

        logger.info(f"Math result: {expression} = {result}")
        return {"expression": expression, "result": result, "type": "math_result"}

    async def _handle_content_prepare(self, step: Step, params: dict, context: dict) -> dict:
        content = params.get("content")
        if content is None:
            raise StepExecutionError("Content preparation failed: no content", step_id=step.id)

        content = str(content)
        return {
            "originalContent": content,
            "preparedContent": _SURROUNDING_QUOTES.sub("", content),
            "type": "content",
        }

    async def _handle_content_repeat(self, step: Step, params: dict, context: dict) -> dict:
        content = params.get("content")
        count = params.get("count")
        target_file = params.get("targetFile")

        if not content or not count or not target_file:
            raise StepExecutionError(
                "Missing required parameters for content repetition. "
                f"Content: {content}, Count: {count}, TargetFile: {target_file}",
                step_id=step.id,
            )

        try:
            repetitions = int(count)
        except (TypeError, ValueError) as e:
            raise StepExecutionError(f"Invalid repetition count: {count!r}", step_id=step.id) from e

        logger.info(f"Repeating content {content!r} {repetitions} times in {target_file}")
        final_content = "\n".join([str(content)] * repetitions) + "\n"
        tool_result = await self._write_file(step, str(target_file), final_content, context)

        return {
            "originalContent": content,
            "repetitionCount": repetitions,
            "finalContent": final_content,
            "targetFile": tool_result.get("path", target_file),
            "type": "repeated_content",
        }

    async def _handle_edit_file(self, step: Step, params: dict, context: dict) -> dict:
        path = params.get("path")
        content = params.get("content")
        if not path or content is None:
            raise StepExecutionError("File editing failed: path and content are required", step_id=step.id)

        logger.info(f"Editing file: {path}")
        tool_result = await self._write_file(step, path, str(content), context)

        return {
            "filePath": tool_result.get("path", path),
            "content": content,
            "edited": True,
            "type": "file_edit",
        }

    async def _handle_planning(self, step: Step, params: dict, context: dict) -> dict:
        if self.planner is None:
            raise StepExecutionError("No planner configured for general requests", step_id=step.id)

        prompt = params.get("prompt") or step.description
        raw_tools = await self.planner.tools_for_request(prompt, context)
        if not raw_tools:
            raise StepExecutionError(f"Planner produced no tools for: {prompt}", step_id=step.id)

        descriptors = normalize_tool_descriptors(raw_tools, self.engine.supported_tools)
        tool_results = await self.engine.execute_tools(descriptors, context)

        failed = [r for r in tool_results if not r.success]
        if failed:
            raise StepExecutionError(
                f"{len(failed)} of {len(tool_results)} tools failed: {failed[0].error}",
                step_id=step.id,
            )

        return {
            "tools": [d.name for d in descriptors],
            "toolResults": [r.model_dump(mode="json") for r in tool_results],
            "type": "planned_execution",
        }

    # =========================================================================
    # RESPONSE FORMATTING
    # =========================================================================

    def format_result(self, summary: ExecutionSummary, decomposition: Decomposition) -> ResponseEnvelope:
        if summary.success:
            return ResponseEnvelope(
                type="execution_success",
                message=f"Successfully executed {len(decomposition.steps)}-step workflow",
                tools=[
                    ResponseTool(
                        name=step.tool,
                        description=step.description,
                        parameters=step.parameters,
                        context=f"Step: {step.id}",
                    )
                    for step in decomposition.steps
                ],
                action_type="execution_complex",
                context={
                    "steps": len(decomposition.steps),
                    "executionTime": datetime.now().isoformat(),
                    "results": summary.results,
                },
            )

        return ResponseEnvelope(
            type="execution_failed",
            message=f"Workflow execution failed after {len(summary.errors)} errors",
            action_type="execution_failed",
            context={
                "errors": [e.model_dump(mode="json") for e in summary.errors],
                "partialResults": summary.results,
                "aborted": summary.aborted,
            },
        )

    def error_envelope(self, error: Exception, request: str) -> ResponseEnvelope:
        return ResponseEnvelope(
            type="execution_error",
            message=f"Failed to orchestrate execution: {error}",
            action_type="execution_error",
            context={"error": str(error), "prompt": request, "errorType": type(error).__name__},
        )
