# harness.py
# Session harness.
#
# The Session is the kernel: it owns one policy engine, one audit log, one
# toolbox, one executor and one plan manager. The agent is a passive
# responder — this class owns all control flow, routing and state.
#
# Control flow:
#   query → agent (planning mode) → Plan → saved document
#   → execute: status executing → per-step permission gate + agent prompt
#   → step status recorded → plan completed | failed
#
# All terminal output is delegated to display.py — no formatting here.

import asyncio
import logging
from pathlib import Path
from typing import Any

from plan_gate import display
from plan_gate.agent import AgentClient, collect_text
from plan_gate.audit import AuditLog
from plan_gate.config import Settings
from plan_gate.errors import PlanGateError, PlanNotFoundError, WorkflowStepFailure
from plan_gate.executor import ExecutionContext, StepExecutor, load_workflow
from plan_gate.models import (
    Action,
    OnError,
    Plan,
    PlanAction,
    PlanStatus,
    PlanStep,
    PlanStepStatus,
    StepStatus,
    WorkflowDefinition,
    WorkflowStep,
)
from plan_gate.planner import PLANNING_PROMPT, PlanManager, parse_plan_response
from plan_gate.policy import DecisionProvider, InteractiveProvider, PolicyEngine
from plan_gate.tools import Toolbox

logger = logging.getLogger(__name__)

# Permission each plan action needs before the agent may carry it out.
PLAN_ACTION_PERMISSIONS: dict[PlanAction, Action | None] = {
    PlanAction.READ: Action.READ,
    PlanAction.WRITE: Action.WRITE,
    PlanAction.EDIT: Action.MODIFY,
    PlanAction.COMMAND: Action.EXECUTE_COMMAND,
    PlanAction.QUERY: None,
}

STEP_PROMPT = """\
Execute this step of the plan:
Step: {name}
Action: {action}
Target: {target}
Purpose: {purpose}

Please execute this step now.\
"""

_STEP_OUTCOME = {
    StepStatus.COMPLETED: PlanStepStatus.COMPLETED,
    StepStatus.FAILED: PlanStepStatus.FAILED,
    StepStatus.SKIPPED: PlanStepStatus.SKIPPED,
}


def plan_step_to_workflow(step: PlanStep, on_error: OnError = OnError.STOP) -> WorkflowStep:
    """A plan step runs as an agent prompt gated by the permission its action needs."""
    return WorkflowStep(
        name=step.name,
        prompt=STEP_PROMPT.format(
            name=step.name,
            action=step.action.value,
            target=step.target or "N/A",
            purpose=step.purpose,
        ),
        input=step.target,
        action=PLAN_ACTION_PERMISSIONS[step.action],
        on_error=on_error,
    )


class Session:
    """
    One execution session: a fixed policy tier and its own decision caches.

    Example:
        session = Session(Settings.from_env(), agent=OpenRouterAgent())
        plan, path = await session.create_plan("Rename the config module.")
        plan = await session.execute_plan(plan)
    """

    def __init__(
        self,
        settings: Settings,
        agent: AgentClient | None = None,
        provider: DecisionProvider | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.agent = agent
        self.audit = AuditLog(settings.audit_path)
        self.engine = PolicyEngine(settings.tier, provider or InteractiveProvider(), self.audit)
        self.tools = Toolbox(settings.workspace, settings.command_timeout)
        self.executor = StepExecutor(self.engine, self.tools, agent, self.audit, sleep=sleep)
        self.plans = PlanManager(settings.plans_dir)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def propose_plan(self, query: str) -> Plan:
        if self.agent is None:
            raise PlanGateError("No agent configured; cannot create a plan")
        text = await collect_text(self.agent.query(PLANNING_PROMPT.format(query=query), []))
        return parse_plan_response(text, query)

    async def create_plan(self, query: str) -> tuple[Plan, Path]:
        plan = await self.propose_plan(query)
        display.plan_created(plan)
        path = self.plans.save(plan)
        display.plan_saved(str(path))
        return plan, path

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_plan(self, plan: Plan, on_error: OnError | None = None) -> Plan:
        """
        Execute pending steps in order and persist progress after each one.

        A `stop` failure marks the plan failed and leaves the remaining steps
        pending. Cancellation marks the plan failed and propagates; nothing
        already done is rolled back.
        """
        on_error = OnError(on_error or self.settings.plan_on_error)
        try:
            self.plans.find(plan.id)
        except PlanNotFoundError:
            self.plans.save(plan)

        plan = self.plans.update_status(plan.id, PlanStatus.EXECUTING)
        display.plan_execution_start(plan)

        ctx = ExecutionContext(query=plan.query, plan_id=plan.id)
        total = len(plan.steps)
        try:
            for index, step in enumerate(plan.steps):
                if step.status is not PlanStepStatus.PENDING:
                    continue
                display.step_start(index, total, step.name)
                try:
                    outcome = await self.executor.execute(plan_step_to_workflow(step, on_error), ctx)
                except WorkflowStepFailure as exc:
                    logger.info("Plan %s halted at %s: %s", plan.id, step.id, exc)
                    self._record_step(plan.id, step, PlanStepStatus.FAILED)
                    return self._finish(plan.id, PlanStatus.FAILED)

                ctx[step.id] = outcome.result
                self._record_step(plan.id, step, _STEP_OUTCOME[outcome.status])
        except (asyncio.CancelledError, KeyboardInterrupt):
            logger.warning("Plan %s interrupted", plan.id)
            self._finish(plan.id, PlanStatus.FAILED)
            raise

        return self._finish(plan.id, PlanStatus.COMPLETED)

    def _record_step(self, plan_id: str, step: PlanStep, status: PlanStepStatus) -> None:
        self.plans.update_step_status(plan_id, step.id, status)
        display.plan_step_status(step.name, status)

    def _finish(self, plan_id: str, status: PlanStatus) -> Plan:
        plan = self.plans.update_status(plan_id, status)
        display.plan_finished(plan)
        return plan

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def run_workflow(self, workflow: str | WorkflowDefinition, args: dict | None = None) -> Any:
        """Run a workflow given by name (looked up under commands_dir) or as a loaded definition."""
        if isinstance(workflow, str):
            workflow = load_workflow(workflow, self.settings.commands_dir)
        return await self.executor.run_workflow(workflow, args)
