"""
Workflow Orchestrator Tests

These tests verify multi-phase workflows:
1. Template selection and customization
2. Phase execution, dependency gating and failure handling
3. Pause / resume / retry / cancel legality
4. Status snapshots, phase views and cleanup

Test list:
1. test_select_and_customize - Workflow type picking and estimate scaling
2. test_start_workflow - Registration, merged context, first phase
3. test_phases_run_to_completion - Every phase completes, files land on disk
4. test_phase_failure_and_retry - Failed tool fails the workflow until retried
5. test_planner_failures - Planner errors and bad descriptors fail the phase
6. test_waiting_for_dependencies - Missing prerequisites change nothing
7. test_pause_and_resume - Pause mid-phase, phase reruns after resume
8. test_cancel - Cancel is terminal and idempotent
9. test_status_snapshot_and_phases - Progress, remaining time, phase views
10. test_cleanup - Only old terminal workflows are swept
11. test_unknown_workflow - Lookups by unknown id
12. test_state_machine_and_registry - transition() and WorkflowRegistry
13. test_templates_and_direct_tools - Template listing and engine passthrough
"""

import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from .errors import InvalidTransitionError, PlannerError, StepforgeError, WorkflowNotFoundError
from .execution import ToolExecutionEngine
from .schemas import PhaseOutcomeStatus, PhaseSpec, Workflow, WorkflowStatus, WorkflowTemplate
from .workflow import (
    WorkflowOrchestrator,
    WorkflowRegistry,
    can_transition,
    customize_template,
    default_templates,
    scale_estimate,
    select_workflow_type,
    transition,
)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    project = tempfile.mkdtemp(prefix="stepforge_wf_")
    yield Path(project)
    shutil.rmtree(project, ignore_errors=True)


def file_planner(files_per_phase: int = 1) -> MagicMock:
    """Planner that creates <phase>_<n>.txt files for every phase."""
    planner = MagicMock()
    planner.tools_for_phase = AsyncMock(side_effect=lambda name, ctx: [
        {"name": "create_file", "parameters": {"path": f"{name}_{i}.txt", "content": name}, "priority": i}
        for i in range(files_per_phase)
    ])
    planner.tools_for_request = AsyncMock(return_value=[
        {"name": "create_file", "parameters": {"path": "custom.txt", "content": "custom"}},
    ])
    return planner


@pytest.fixture
def planner():
    return file_planner()


@pytest.fixture
def orchestrator(planner):
    return WorkflowOrchestrator(planner=planner)


# =============================================================================
# TEST 1: Selection / Customization
# =============================================================================

def test_select_and_customize():
    """
    Test 1: Workflow type picking and estimate scaling.

    Verifies:
    - Explicit workflowType wins over keywords
    - full-stack requests pick fullstack_react, API requests nodejs_api
    - Unmatched requests default to nodejs_api
    - simple shrinks estimates, fullstack stretches them (bounds rounded up)
    """
    assert select_workflow_type("build a REST api", {"workflowType": "custom_thing"}) == "custom_thing"
    assert select_workflow_type("build a full-stack react app", {}) == "fullstack_react"
    assert select_workflow_type("react frontend with a node backend", {}) == "fullstack_react"
    assert select_workflow_type("build a REST api", {}) == "nodejs_api"
    assert select_workflow_type("write a poem", {}) == "nodejs_api"

    assert scale_estimate("5-8 minutes", 1.5) == "8-12 minutes"
    assert scale_estimate("3-5 minutes", 0.7) == "3-4 minutes"
    assert scale_estimate("a while", 1.5) == "a while"

    templates = default_templates()
    api = templates["nodejs_api"]

    simple = customize_template(api, {"projectType": "simple"})
    assert simple.complexity == "low"
    assert simple.phases[0].estimated_time == "3-4 minutes"
    assert api.phases[0].estimated_time == "3-5 minutes"

    heavy = customize_template(api, {"projectType": "fullstack"})
    assert heavy.complexity == "high"
    assert heavy.phases[1].estimated_time == "12-18 minutes"

    unchanged = customize_template(api, {"projectType": "nodejs"})
    assert [p.estimated_time for p in unchanged.phases] == [p.estimated_time for p in api.phases]

    print("✓ Test 1 passed: Selection and customization work correctly")


# =============================================================================
# TEST 2: Start
# =============================================================================

def test_start_workflow(orchestrator, temp_project):
    """
    Test 2: Registration, merged context, first phase.

    Verifies:
    - The workflow is registered in initializing state
    - Caller context overrides configured defaults
    - The first phase is reported
    - Unknown workflow types get a single custom phase
    """
    started = orchestrator.start_workflow("build a REST api", {"targetDir": str(temp_project)})

    workflow = orchestrator.get_workflow(started.workflow_id)
    assert workflow is started.workflow
    assert started.workflow_id.startswith("workflow_")
    assert workflow.type == "nodejs_api"
    assert workflow.status == WorkflowStatus.INITIALIZING
    assert [p.name for p in workflow.phases] == ["project_setup", "api_development", "testing"]
    assert workflow.context["targetDir"] == str(temp_project)
    assert workflow.context["projectName"] == "workflow-project"
    assert started.next_phase.name == "project_setup"
    assert workflow.logs[0].event_type == "workflow_started"

    custom = orchestrator.start_workflow("anything", {"workflowType": "mystery"})
    assert custom.workflow.type == "mystery"
    assert [p.name for p in custom.workflow.phases] == ["custom_phase"]

    assert started.workflow_id != custom.workflow_id
    assert len(orchestrator.registry) == 2

    print("✓ Test 2 passed: Workflows start correctly")


# =============================================================================
# TEST 3: Happy Path
# =============================================================================

@pytest.mark.asyncio
async def test_phases_run_to_completion(orchestrator, planner, temp_project):
    """
    Test 3: Every phase completes, files land on disk.

    Verifies:
    - Each call runs one phase and reports the next
    - The last phase moves the workflow to completed
    - Further calls report completed without running anything
    - The custom phase plans from the request text
    """
    started = orchestrator.start_workflow("build a REST api", {"targetDir": str(temp_project)})
    wid = started.workflow_id

    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.PHASE_COMPLETED
    assert outcome.phase == "project_setup"
    assert outcome.next_phase.name == "api_development"
    assert outcome.results[0].success is True
    assert orchestrator.get_workflow(wid).status == WorkflowStatus.READY

    await orchestrator.execute_next_phase(wid)
    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.phase == "testing"
    assert outcome.next_phase is None

    workflow = orchestrator.get_workflow(wid)
    assert workflow.status == WorkflowStatus.COMPLETED
    assert workflow.completed_phases == ["project_setup", "api_development", "testing"]
    assert workflow.progress == 100
    assert workflow.total_execution_time >= 0
    for phase in workflow.completed_phases:
        assert (temp_project / f"{phase}_0.txt").read_text() == phase

    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.COMPLETED
    assert planner.tools_for_phase.await_count == 3

    custom = orchestrator.start_workflow("anything", {"workflowType": "mystery", "targetDir": str(temp_project)})
    outcome = await orchestrator.execute_next_phase(custom.workflow_id)
    assert outcome.status == PhaseOutcomeStatus.PHASE_COMPLETED
    assert (temp_project / "custom.txt").read_text() == "custom"
    planner.tools_for_request.assert_awaited_once()

    print("✓ Test 3 passed: Phases run to completion")


# =============================================================================
# TEST 4: Failure / Retry
# =============================================================================

@pytest.mark.asyncio
async def test_phase_failure_and_retry(orchestrator, planner, temp_project):
    """
    Test 4: Failed tool fails the workflow until retried.

    Verifies:
    - A failing tool yields phase_failed and a failed workflow
    - The error is recorded and the phase does not advance
    - Further calls report failed until retry()
    - After retry the same phase runs again
    """
    started = orchestrator.start_workflow("build a REST api", {"targetDir": str(temp_project)})
    wid = started.workflow_id

    planner.tools_for_phase = AsyncMock(return_value=[
        {"name": "delete_file", "parameters": {"path": "missing.txt"}},
    ])
    outcome = await orchestrator.execute_next_phase(wid)

    assert outcome.status == PhaseOutcomeStatus.PHASE_FAILED
    assert outcome.phase == "project_setup"
    assert "1 tools failed" in outcome.error

    workflow = orchestrator.get_workflow(wid)
    assert workflow.status == WorkflowStatus.FAILED
    assert workflow.failed_phases == ["project_setup"]
    assert workflow.errors[0].phase == "project_setup"
    assert workflow.current_phase == 0

    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.FAILED

    assert orchestrator.retry(wid).success is True
    assert workflow.status == WorkflowStatus.READY
    assert orchestrator.retry(wid).success is False

    planner.tools_for_phase = file_planner().tools_for_phase
    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.PHASE_COMPLETED
    assert outcome.phase == "project_setup"

    print("✓ Test 4 passed: Failure and retry work correctly")


# =============================================================================
# TEST 5: Planner Failures
# =============================================================================

@pytest.mark.asyncio
async def test_planner_failures(orchestrator, planner, temp_project):
    """
    Test 5: Planner errors and bad descriptors fail the phase.

    Verifies:
    - PlannerError becomes a phase failure with a plan-generation message
    - Unknown tool names from the planner fail the phase before anything runs
    - An empty plan fails the phase
    """
    context = {"targetDir": str(temp_project)}

    planner.tools_for_phase = AsyncMock(side_effect=PlannerError("no idea", phase="project_setup"))
    wid = orchestrator.start_workflow("build a REST api", context).workflow_id
    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.PHASE_FAILED
    assert outcome.error == "Failed to generate tool execution plan: no idea"

    planner.tools_for_phase = AsyncMock(return_value=[
        {"name": "create_file", "parameters": {"path": "never.txt", "content": ""}},
        {"name": "frobnicate", "parameters": {}},
    ])
    wid = orchestrator.start_workflow("build a REST api", context).workflow_id
    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.PHASE_FAILED
    assert "Unsupported tool: frobnicate" in outcome.error
    assert not (temp_project / "never.txt").exists()

    planner.tools_for_phase = AsyncMock(return_value=[])
    wid = orchestrator.start_workflow("build a REST api", context).workflow_id
    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.PHASE_FAILED
    assert "No tools generated" in outcome.error

    print("✓ Test 5 passed: Planner failures fail the phase")


# =============================================================================
# TEST 6: Dependency Gating
# =============================================================================

@pytest.mark.asyncio
async def test_waiting_for_dependencies(orchestrator, planner):
    """
    Test 6: Missing prerequisites change nothing.

    Verifies:
    - A phase whose dependency has not completed returns waiting
    - Only the missing dependencies are reported
    - Status, position and planner are untouched
    """
    orchestrator.register_template("backwards", WorkflowTemplate(
        name="Backwards",
        phases=[
            PhaseSpec(name="second", dependencies=["first", "zeroth"]),
            PhaseSpec(name="first"),
        ],
    ))
    wid = orchestrator.start_workflow("anything", {"workflowType": "backwards"}).workflow_id
    workflow = orchestrator.get_workflow(wid)
    workflow.completed_phases.append("zeroth")

    outcome = await orchestrator.execute_next_phase(wid)

    assert outcome.status == PhaseOutcomeStatus.WAITING
    assert outcome.phase == "second"
    assert outcome.dependencies == ["first"]
    assert workflow.status == WorkflowStatus.INITIALIZING
    assert workflow.current_phase == 0
    planner.tools_for_phase.assert_not_awaited()

    print("✓ Test 6 passed: Dependency gating works correctly")


# =============================================================================
# TEST 7: Pause / Resume
# =============================================================================

@pytest.mark.asyncio
async def test_pause_and_resume(temp_project):
    """
    Test 7: Pause mid-phase, phase reruns after resume.

    Verifies:
    - Pausing is rejected unless a phase is executing
    - A pause during a phase stops before the next tool
    - The interrupted phase is neither completed nor failed
    - Resume moves paused -> ready and the phase runs again in full
    """
    engine = ToolExecutionEngine()
    orchestrator = WorkflowOrchestrator(engine=engine, planner=file_planner(files_per_phase=2))
    wid = orchestrator.start_workflow("build a REST api", {"targetDir": str(temp_project)}).workflow_id

    rejected = orchestrator.pause(wid)
    assert rejected.success is False
    assert rejected.status == WorkflowStatus.INITIALIZING

    original_execute = engine.execute
    paused = []

    async def pausing_execute(name, params=None, context=None):
        result = await original_execute(name, params, context)
        if not paused:
            paused.append(orchestrator.pause(wid))
        return result

    engine.execute = pausing_execute
    outcome = await orchestrator.execute_next_phase(wid)

    assert paused[0].success is True
    assert outcome.status == PhaseOutcomeStatus.PAUSED
    assert outcome.phase == "project_setup"
    assert len(outcome.results) == 1
    assert not (temp_project / "project_setup_1.txt").exists()

    workflow = orchestrator.get_workflow(wid)
    assert workflow.status == WorkflowStatus.PAUSED
    assert workflow.current_phase == 0
    assert workflow.completed_phases == []
    assert workflow.failed_phases == []

    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.PAUSED

    del engine.execute
    assert orchestrator.resume(wid).success is True
    assert workflow.status == WorkflowStatus.READY
    assert orchestrator.resume(wid).success is False

    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.PHASE_COMPLETED
    assert len(outcome.results) == 2
    assert (temp_project / "project_setup_1.txt").exists()

    print("✓ Test 7 passed: Pause and resume work correctly")


# =============================================================================
# TEST 8: Cancel
# =============================================================================

@pytest.mark.asyncio
async def test_cancel(orchestrator, temp_project):
    """
    Test 8: Cancel is terminal and idempotent.

    Verifies:
    - Cancelling moves the workflow to cancelled and records the duration
    - Cancelling again succeeds without changing anything
    - Cancelling a completed workflow leaves it completed
    - Cancelled workflows stay registered until cleanup
    """
    wid = orchestrator.start_workflow("build a REST api", {"targetDir": str(temp_project)}).workflow_id

    result = orchestrator.cancel(wid)
    assert result.success is True
    assert result.status == WorkflowStatus.CANCELLED

    again = orchestrator.cancel(wid)
    assert again.success is True
    assert again.message == "Workflow already cancelled"

    outcome = await orchestrator.execute_next_phase(wid)
    assert outcome.status == PhaseOutcomeStatus.CANCELLED
    assert wid in orchestrator.registry
    assert orchestrator.resume(wid).success is False

    done = orchestrator.start_workflow("anything", {"workflowType": "mystery", "targetDir": str(temp_project)})
    await orchestrator.execute_next_phase(done.workflow_id)
    assert done.workflow.status == WorkflowStatus.COMPLETED
    assert orchestrator.cancel(done.workflow_id).status == WorkflowStatus.COMPLETED

    print("✓ Test 8 passed: Cancel works correctly")


# =============================================================================
# TEST 9: Status / Phases
# =============================================================================

@pytest.mark.asyncio
async def test_status_snapshot_and_phases(orchestrator, temp_project):
    """
    Test 9: Progress, remaining time, phase views.

    Verifies:
    - Remaining time sums the upper bounds of the remaining phases
    - Progress follows completed phases
    - Phase views mark completed / current / pending and executability
    - Unknown ids give None for status
    """
    wid = orchestrator.start_workflow("build a REST api", {"targetDir": str(temp_project)}).workflow_id

    status = orchestrator.get_workflow_status(wid)
    assert status.progress == 0
    assert status.total_phases == 3
    assert status.estimated_time_remaining == "25 minutes"

    await orchestrator.execute_next_phase(wid)
    status = orchestrator.get_workflow_status(wid)
    assert status.progress == 33
    assert status.completed_phases == 1
    assert status.current_phase == 1
    assert status.estimated_time_remaining == "20 minutes"

    views = orchestrator.get_phases(wid)
    assert [v.status for v in views] == ["completed", "current", "pending"]
    assert [v.can_execute for v in views] == [True, True, False]

    listing = orchestrator.get_active_workflows()
    assert listing[0]["id"] == wid
    assert listing[0]["status"] == "ready"

    orchestrator.cancel(wid)
    assert orchestrator.get_workflow_status(wid).estimated_time_remaining == "0 minutes"
    assert orchestrator.get_workflow_status("missing") is None

    print("✓ Test 9 passed: Status snapshot and phases work correctly")


# =============================================================================
# TEST 10: Cleanup
# =============================================================================

def test_cleanup(orchestrator):
    """
    Test 10: Only old terminal workflows are swept.

    Verifies:
    - Terminal workflows older than the retention window are removed
    - Recent terminal workflows and old running ones stay
    - max_age overrides the configured window
    """
    old_done = orchestrator.start_workflow("a").workflow
    recent_done = orchestrator.start_workflow("b").workflow
    old_running = orchestrator.start_workflow("c").workflow

    orchestrator.cancel(old_done.id)
    orchestrator.cancel(recent_done.id)
    old_done.start_time = datetime.now() - timedelta(hours=25)
    old_running.start_time = datetime.now() - timedelta(hours=25)
    recent_done.start_time = datetime.now() - timedelta(seconds=10)

    assert orchestrator.cleanup_completed_workflows() == 1
    assert old_done.id not in orchestrator.registry
    assert recent_done.id in orchestrator.registry
    assert old_running.id in orchestrator.registry

    assert orchestrator.cleanup_completed_workflows(max_age=5) == 1
    assert len(orchestrator.registry) == 1

    print("✓ Test 10 passed: Cleanup works correctly")


# =============================================================================
# TEST 11: Unknown Ids
# =============================================================================

@pytest.mark.asyncio
async def test_unknown_workflow(orchestrator):
    """
    Test 11: Lookups by unknown id.

    Verifies:
    - Execution and control calls raise WorkflowNotFoundError
    - get_workflow returns None
    """
    with pytest.raises(WorkflowNotFoundError, match="Workflow nope not found"):
        await orchestrator.execute_next_phase("nope")

    for control in (orchestrator.pause, orchestrator.resume, orchestrator.cancel, orchestrator.get_phases):
        with pytest.raises(WorkflowNotFoundError):
            control("nope")

    assert orchestrator.get_workflow("nope") is None

    print("✓ Test 11 passed: Unknown workflows are reported")


# =============================================================================
# TEST 12: State Machine / Registry
# =============================================================================

def test_state_machine_and_registry():
    """
    Test 12: transition() and WorkflowRegistry.

    Verifies:
    - Terminal states allow no transitions except failed -> ready
    - Illegal transitions raise InvalidTransitionError and change nothing
    - The registry rejects duplicate ids and supports sweep/remove
    """
    assert can_transition(WorkflowStatus.EXECUTING, WorkflowStatus.PAUSED)
    assert not can_transition(WorkflowStatus.READY, WorkflowStatus.PAUSED)
    assert not can_transition(WorkflowStatus.COMPLETED, WorkflowStatus.READY)
    assert can_transition(WorkflowStatus.FAILED, WorkflowStatus.READY)

    template = default_templates()["nodejs_api"]
    workflow = Workflow(id="w1", type="nodejs_api", template=template, phases=template.phases, user_request="x")

    with pytest.raises(InvalidTransitionError):
        transition(workflow, WorkflowStatus.COMPLETED)
    assert workflow.status == WorkflowStatus.INITIALIZING

    transition(workflow, WorkflowStatus.CANCELLED)
    assert workflow.status == WorkflowStatus.CANCELLED
    assert workflow.logs[-1].event_type == "status_changed"

    registry = WorkflowRegistry()
    registry.create(workflow)
    with pytest.raises(StepforgeError, match="already exists"):
        registry.create(workflow)

    other = workflow.model_copy(update={"id": "w2", "status": WorkflowStatus.READY})
    registry.create(other)
    assert len(registry) == 2
    assert registry.sweep(lambda wf: wf.status == WorkflowStatus.CANCELLED) == ["w1"]
    assert registry.get("w1") is None
    assert registry.remove("w2") is True
    assert registry.remove("w2") is False

    print("✓ Test 12 passed: State machine and registry work correctly")


# =============================================================================
# TEST 13: Templates / Direct Tool Access
# =============================================================================

@pytest.mark.asyncio
async def test_templates_and_direct_tools(orchestrator, temp_project):
    """
    Test 13: Template listing and engine passthrough.

    Verifies:
    - Built-in and registered templates are listed with their phases
    - execute_tool / execute_tools run through the engine
    - Tool stats come from the engine registry
    """
    listing = {t["type"]: t for t in orchestrator.list_templates()}
    assert listing["nodejs_api"]["phases"] == ["project_setup", "api_development", "testing"]
    assert listing["fullstack_react"]["complexity"] == "high"

    context = {"targetDir": str(temp_project)}
    result = await orchestrator.execute_tool("create_file", {"path": "direct.txt", "content": "d"}, context)
    assert result.success is True
    assert (temp_project / "direct.txt").read_text() == "d"

    results = await orchestrator.execute_tools([
        {"name": "copy_file", "parameters": {"source": "direct.txt", "destination": "copy.txt"}},
        {"name": "list_files", "parameters": {"path": "."}},
    ], context)
    assert [r.success for r in results] == [True, True]
    assert [f["name"] for f in results[1].result["files"]] == ["copy.txt", "direct.txt"]

    assert orchestrator.get_tool_stats()["totalTools"] == 11

    print("✓ Test 13 passed: Templates and direct tool access work correctly")
