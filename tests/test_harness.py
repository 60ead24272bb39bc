import asyncio
import json

import pytest

from conftest import FakeAgent
from plan_gate.config import Settings
from plan_gate.errors import InvalidTransition, PlanGateError
from plan_gate.harness import PLAN_ACTION_PERMISSIONS, Session, plan_step_to_workflow
from plan_gate.models import (
    Action,
    Choice,
    OnError,
    PlanAction,
    PlanStatus,
    PlanStep,
    PlanStepStatus,
    PolicyTier,
)
from plan_gate.policy import ScriptedProvider
from test_planner import AGENT_PLAN


@pytest.fixture
def settings(tmp_path):
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return Settings(
        tier=PolicyTier.BALANCED,
        audit_path=tmp_path / "audit.log",
        plans_dir=tmp_path,
        workspace=workspace,
        commands_dir=tmp_path / ".commands",
    )


def _session(settings, answers=(), replies=(AGENT_PLAN,), **overrides):
    settings = settings.model_copy(update=overrides)
    agent = FakeAgent(replies=list(replies), default="step done")
    provider = ScriptedProvider(list(answers))
    return Session(settings, agent=agent, provider=provider), agent, provider


def _step_statuses(session, plan_id):
    return [s.status for s in session.plans.find(plan_id).plan.steps]


# ---------------------------------------------------------------------------
# Plan step mapping
# ---------------------------------------------------------------------------


def test_plan_step_to_workflow():
    step = PlanStep(id="step-1", name="Run tests", action=PlanAction.COMMAND, target="pytest -q", purpose="Verify")

    workflow_step = plan_step_to_workflow(step, OnError.CONTINUE)

    assert workflow_step.action is Action.EXECUTE_COMMAND
    assert workflow_step.input == "pytest -q"
    assert workflow_step.on_error is OnError.CONTINUE
    assert "Target: pytest -q" in workflow_step.prompt


def test_query_steps_need_no_permission():
    assert PLAN_ACTION_PERMISSIONS[PlanAction.QUERY] is None
    assert PLAN_ACTION_PERMISSIONS[PlanAction.EDIT] is Action.MODIFY


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


async def test_create_plan_saves_pending_document(settings):
    session, agent, _ = _session(settings)

    plan, path = await session.create_plan("rename settings")

    assert path.exists()
    assert "PLANNING MODE" in agent.prompts[0]
    assert "REQUEST: rename settings" in agent.prompts[0]
    assert [e.plan.id for e in session.plans.pending()] == [plan.id]
    assert len(plan.steps) == 3


async def test_create_plan_requires_agent(settings):
    session = Session(settings, provider=ScriptedProvider([]))

    with pytest.raises(PlanGateError):
        await session.create_plan("anything")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


async def test_execute_plan_completes(settings, tmp_path):
    session, agent, provider = _session(settings, answers=[Choice.ALLOW_ONCE, Choice.ALLOW_ONCE])
    plan, _ = await session.create_plan("rename settings")

    finished = await session.execute_plan(plan)

    assert finished.status is PlanStatus.COMPLETED
    assert _step_statuses(session, plan.id) == [PlanStepStatus.COMPLETED] * 3
    assert len(agent.prompts) == 4
    assert [r.action for r in provider.requests] == [Action.EXECUTE_COMMAND, Action.MODIFY]
    assert provider.requests[0].resource == "git mv settings.py config.py"
    audit = [json.loads(line) for line in (tmp_path / "audit.log").read_text().splitlines()]
    assert [e["source"] for e in audit] == ["prompt", "prompt"]


async def test_denied_step_fails_plan_and_leaves_tail_pending(settings):
    session, agent, _ = _session(settings, answers=[Choice.DENY_ONCE])
    plan, _ = await session.create_plan("rename settings")

    finished = await session.execute_plan(plan)

    assert finished.status is PlanStatus.FAILED
    assert _step_statuses(session, plan.id) == [
        PlanStepStatus.COMPLETED,
        PlanStepStatus.FAILED,
        PlanStepStatus.PENDING,
    ]
    assert len(agent.prompts) == 2


async def test_restrictive_tier_denies_commands_without_prompt(settings):
    session, _, provider = _session(settings, tier=PolicyTier.RESTRICTIVE)
    plan, _ = await session.create_plan("rename settings")

    finished = await session.execute_plan(plan)

    assert finished.status is PlanStatus.FAILED
    assert provider.requests == []


async def test_continue_policy_runs_remaining_steps(settings):
    session, _, _ = _session(settings, answers=[Choice.DENY_ONCE, Choice.ALLOW_ONCE])
    plan, _ = await session.create_plan("rename settings")

    finished = await session.execute_plan(plan, on_error=OnError.CONTINUE)

    assert finished.status is PlanStatus.COMPLETED
    assert _step_statuses(session, plan.id) == [
        PlanStepStatus.COMPLETED,
        PlanStepStatus.FAILED,
        PlanStepStatus.COMPLETED,
    ]


async def test_finished_plans_cannot_run_again(settings):
    session, _, _ = _session(settings, answers=[Choice.ALLOW_ACTION, Choice.ALLOW_ACTION])
    plan, _ = await session.create_plan("rename settings")
    await session.execute_plan(plan)

    with pytest.raises(InvalidTransition):
        await session.execute_plan(plan)


async def test_unsaved_plan_is_saved_before_execution(settings):
    session, _, _ = _session(settings)
    plan = session.plans.create("ask only", "Ask a question", steps=[PlanStep(id="step-1", name="Ask")])

    finished = await session.execute_plan(plan)

    assert finished.status is PlanStatus.COMPLETED
    assert session.plans.find(plan.id).plan.status is PlanStatus.COMPLETED


async def test_cancellation_marks_plan_failed(settings):
    session, _, _ = _session(settings, replies=[AGENT_PLAN, asyncio.CancelledError()])
    plan, _ = await session.create_plan("rename settings")

    with pytest.raises(asyncio.CancelledError):
        await session.execute_plan(plan)

    assert session.plans.find(plan.id).plan.status is PlanStatus.FAILED


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


async def test_run_workflow_by_name(settings):
    settings.commands_dir.mkdir()
    (settings.commands_dir / "hello.json").write_text(json.dumps({
        "name": "hello",
        "arguments": [{"name": "who", "required": True}],
        "workflow": {"steps": [{"name": "greet", "prompt": "Say hi to {{who}}", "output": "{{$result}}"}]},
    }))
    session, agent, _ = _session(settings, replies=["hi there"])

    result = await session.run_workflow("hello", {"who": "Sam"})

    assert result == "hi there"
    assert agent.prompts == ["Say hi to Sam"]
