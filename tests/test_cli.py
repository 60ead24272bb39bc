import json
from datetime import datetime, timedelta, timezone

import pytest
from typer.testing import CliRunner

from conftest import FakeAgent
from plan_gate import cli, display
from plan_gate.harness import Session
from plan_gate.models import PlanStatus, PlanStep
from plan_gate.planner import PlanManager
from test_planner import AGENT_PLAN

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # keep tables and messages on one line for substring checks
    monkeypatch.setattr(display.console, "width", 200)


@pytest.fixture
def agent(monkeypatch):
    fake = FakeAgent(replies=[AGENT_PLAN], default="step done")
    monkeypatch.setattr(cli, "OpenRouterAgent", lambda model: fake)
    return fake


@pytest.fixture
def invoke(tmp_path, monkeypatch):
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    monkeypatch.setenv("PLAN_GATE_COMMANDS_DIR", str(tmp_path / ".commands"))

    def _invoke(*args, input=None):
        base = [
            "--plans-dir", str(tmp_path),
            "--audit-path", str(tmp_path / "audit.log"),
            "--workspace", str(workspace),
        ]
        return runner.invoke(cli.app, base + list(args), input=input)

    return _invoke


@pytest.fixture
def manager(tmp_path):
    return PlanManager(tmp_path)


def _seed(manager, summary, created, status=PlanStatus.PENDING):
    plan = manager.create("q", summary, steps=[PlanStep(id="step-1", name="Ask")])
    plan.created = created
    plan.status = status
    manager.save(plan)
    return plan


# ---------------------------------------------------------------------------
# plan / plans
# ---------------------------------------------------------------------------


def test_plans_when_empty(invoke):
    result = invoke("plans")

    assert result.exit_code == 0
    assert "No plans found" in result.output


def test_plan_headless_only_saves(invoke, agent, manager):
    result = invoke("--headless", "plan", "rename settings")

    assert result.exit_code == 0, result.output
    assert "1 pending plan(s)" in result.output
    assert len(manager.pending()) == 1
    assert len(agent.prompts) == 1


def test_plan_execute_permissive_completes(invoke, agent, manager):
    result = invoke("--tier", "permissive", "plan", "rename settings", "--execute")

    assert result.exit_code == 0, result.output
    assert manager.list_plans()[0].plan.status is PlanStatus.COMPLETED


def test_plan_execute_headless_denial_exits_nonzero(invoke, agent, manager):
    result = invoke("--headless", "plan", "rename settings", "--execute")

    assert result.exit_code == 1
    assert manager.list_plans()[0].plan.status is PlanStatus.FAILED


def test_plans_lists_pending_with_ordinals(invoke, manager):
    now = datetime.now(timezone.utc)
    _seed(manager, "Older pending", now - timedelta(hours=2))
    _seed(manager, "Newer pending", now)
    _seed(manager, "Finished", now, PlanStatus.COMPLETED)

    result = invoke("plans")

    assert result.exit_code == 0
    assert "1. Newer pending" in result.output
    assert "2. Older pending" in result.output
    assert "1 completed plan(s)" in result.output


# ---------------------------------------------------------------------------
# execute / delete
# ---------------------------------------------------------------------------


def test_execute_by_ordinal(invoke, agent, manager):
    plan = _seed(manager, "Just ask", datetime.now(timezone.utc))

    result = invoke("--headless", "execute", "1")

    assert result.exit_code == 0, result.output
    assert manager.find(plan.id).plan.status is PlanStatus.COMPLETED


def test_execute_invalid_ordinal(invoke, agent):
    result = invoke("execute", "5")

    assert result.exit_code == 1
    assert "Invalid plan number 5" in result.output


def test_delete_ordinal_targets_pending_list(invoke, manager):
    now = datetime.now(timezone.utc)
    older = _seed(manager, "Older pending", now - timedelta(hours=1))
    newer = _seed(manager, "Newer pending", now)
    done = _seed(manager, "Finished", now + timedelta(hours=1), PlanStatus.COMPLETED)

    result = invoke("delete", "1")

    assert result.exit_code == 0, result.output
    assert {e.plan.id for e in manager.list_plans()} == {older.id, done.id}
    assert newer.id not in {e.plan.id for e in manager.list_plans()}
    assert "Deleted 1 plan(s)" in result.output


def test_delete_all_completed(invoke, manager):
    now = datetime.now(timezone.utc)
    pending = _seed(manager, "Pending", now)
    _seed(manager, "Done", now, PlanStatus.COMPLETED)

    result = invoke("delete", "all-completed")

    assert "Deleted 1 completed plan(s)" in result.output
    assert [e.plan.id for e in manager.list_plans()] == [pending.id]


def test_delete_all_asks_first(invoke, manager):
    _seed(manager, "Pending", datetime.now(timezone.utc))

    declined = invoke("delete", "all", input="n\n")
    assert len(manager.list_plans()) == 1

    accepted = invoke("delete", "all", input="y\n")
    assert declined.exit_code == 0 and accepted.exit_code == 0
    assert manager.list_plans() == []


def test_delete_unknown_id(invoke):
    result = invoke("delete", "plan-does-not-exist")

    assert result.exit_code == 1
    assert "No plan with id" in result.output


# ---------------------------------------------------------------------------
# run / audit
# ---------------------------------------------------------------------------


def _write_workflow(tmp_path, **extra):
    commands = tmp_path / ".commands"
    commands.mkdir(exist_ok=True)
    definition = {
        "name": "note",
        "arguments": [{"name": "name", "required": True}],
        "workflow": {
            "steps": [
                {
                    "name": "save",
                    "tool": "write_file",
                    "input": {"path": "{{name}}.md", "content": "hello"},
                    "output": "{{$result}}",
                }
            ]
        },
    }
    definition.update(extra)
    (commands / "note.json").write_text(json.dumps(definition))


def test_run_workflow(invoke, agent, tmp_path):
    _write_workflow(tmp_path)

    result = invoke("--tier", "permissive", "run", "note", "--arg", "name=today")

    assert result.exit_code == 0, result.output
    assert (tmp_path / "workspace" / "today.md").read_text() == "hello"


def test_run_goes_through_the_session(invoke, agent, tmp_path, monkeypatch):
    _write_workflow(tmp_path)
    seen = []
    original = Session.run_workflow

    async def recording(self, workflow, args=None):
        seen.append((workflow.name, args))
        return await original(self, workflow, args)

    monkeypatch.setattr(Session, "run_workflow", recording)

    result = invoke("--tier", "permissive", "run", "note", "--arg", "name=today")

    assert result.exit_code == 0, result.output
    assert seen == [("note", {"name": "today"})]


def test_plans_listing_leaves_no_plans_dir(invoke, tmp_path):
    invoke("plans")

    assert not (tmp_path / ".plans").exists()


def test_run_workflow_requiring_approval_can_be_declined(invoke, agent, tmp_path):
    _write_workflow(tmp_path, requiresApproval=True)

    result = invoke("--tier", "permissive", "run", "note", "--arg", "name=today", input="n\n")

    assert result.exit_code != 0
    assert not (tmp_path / "workspace" / "today.md").exists()


def test_run_workflow_headless_denial(invoke, agent, tmp_path):
    _write_workflow(tmp_path)

    result = invoke("--headless", "run", "note", "--arg", "name=today")

    assert result.exit_code == 1
    assert "Permission denied" in result.output


def test_run_rejects_malformed_args(invoke, agent, tmp_path):
    _write_workflow(tmp_path)

    result = invoke("run", "note", "--arg", "novalue")

    assert result.exit_code != 0


def test_audit_shows_records(invoke, agent, tmp_path):
    _write_workflow(tmp_path)
    invoke("--headless", "run", "note", "--arg", "name=today")

    result = invoke("audit", "--limit", "5")

    assert result.exit_code == 0
    assert "today.md" in result.output
