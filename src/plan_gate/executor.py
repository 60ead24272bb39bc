# executor.py
# Step Executor.
#
# Walks declared steps in order. For each step:
#   resolve {{templates}} → expand fan-out → gate on permission
#   → invoke tool or query agent → retry per policy → apply on-error policy
#   → bind the finalized result into the shared context
#
# All retry/backoff decisions live here; tools and the policy engine never
# retry on their own.

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from plan_gate import display
from plan_gate.agent import AgentClient, collect_text
from plan_gate.audit import AuditLog
from plan_gate.errors import (
    PermissionDenied,
    PlanGateError,
    WorkflowArgumentError,
    WorkflowStepFailure,
)
from plan_gate.models import (
    Action,
    Backoff,
    OnError,
    PermissionRequest,
    RetryPolicy,
    StepFailureEntry,
    StepResult,
    StepStatus,
    WorkflowDefinition,
    WorkflowStep,
)
from plan_gate.policy import PolicyEngine
from plan_gate.tools import Toolbox, find_matches

logger = logging.getLogger(__name__)

SENSITIVE_ACTIONS = frozenset(
    {Action.WRITE, Action.MODIFY, Action.DELETE, Action.EXECUTE_COMMAND, Action.NETWORK}
)

_TEMPLATE = re.compile(r"\{\{([^}]+)\}\}")


class ExecutionContext(dict):
    """Variable bindings for one run, plus the agent conversation it produced."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.history: list[dict] = []


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stringify(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_templates(value: Any, variables: dict) -> Any:
    """Substitute {{name}} in every string, recursively. Unknown names stay verbatim."""
    if isinstance(value, str):
        def _sub(match: re.Match) -> str:
            name = match.group(1).strip()
            if name in variables:
                return _stringify(variables[name])
            return match.group(0)

        return _TEMPLATE.sub(_sub, value)
    if isinstance(value, dict):
        return {k: resolve_templates(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_templates(v, variables) for v in value]
    return value


def output_name(output: str) -> str:
    """'{{$claims}}' → '$claims'; a bare name is returned unchanged."""
    match = _TEMPLATE.search(output)
    return match.group(1).strip() if match else output.strip()


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    if policy.backoff is Backoff.EXPONENTIAL:
        return min(policy.base_delay * 2 ** (attempt - 1), policy.max_delay)
    return attempt * policy.base_delay


def should_retry(exc: BaseException, policy: RetryPolicy | None) -> bool:
    if policy is None or policy.retry_on is None:
        return True
    kinds = {cls.__name__ for cls in type(exc).__mro__}
    return bool(kinds & set(policy.retry_on))


def _coerce(value: Any, kind: str) -> Any:
    if not isinstance(value, str):
        return value
    if kind == "number":
        try:
            return int(value)
        except ValueError:
            return float(value)
    if kind == "boolean":
        return value.strip().lower() in ("1", "true", "yes", "y")
    return value


def load_workflow(name: str, commands_dir: str | Path = ".commands") -> WorkflowDefinition:
    path = Path(commands_dir) / f"{name}.json"
    try:
        return WorkflowDefinition.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PlanGateError(f"Failed to load workflow: {name}") from exc
    except ValidationError as exc:
        raise PlanGateError(f"Workflow {name} is invalid: {exc}") from exc


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class StepExecutor:
    """
    Runs workflow steps against a toolbox and an agent, gated by a policy engine.

    `sleep` is injectable so backoff can be observed without waiting.
    """

    def __init__(
        self,
        engine: PolicyEngine,
        tools: Toolbox,
        agent: AgentClient | None = None,
        audit_log: AuditLog | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._tools = tools
        self._agent = agent
        self._audit = audit_log
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, steps: list[WorkflowStep], ctx: dict | None = None) -> dict:
        """
        Execute `steps` in declared order against `ctx`.

        Raises WorkflowStepFailure as soon as a `stop` step fails; earlier
        bindings remain in `ctx`.
        """
        ctx = ctx if ctx is not None else ExecutionContext()
        total = len(steps)
        for index, step in enumerate(steps):
            display.step_start(index, total, step.name)
            outcome = await self.execute(step, ctx)
            if step.output and outcome.status is not StepStatus.SKIPPED:
                ctx[output_name(step.output)] = outcome.result
            if outcome.status is StepStatus.COMPLETED:
                display.step_completed(step.name)
        return ctx

    async def execute(self, step: WorkflowStep, ctx: dict) -> StepResult:
        """Run one step with retries, then apply its on-error policy."""
        policy = step.retry or RetryPolicy()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._execute_once(step, ctx)
                return StepResult(name=step.name, status=StepStatus.COMPLETED, result=result, attempts=attempt)
            except Exception as exc:
                if attempt < policy.max_attempts and should_retry(exc, step.retry):
                    delay = backoff_delay(attempt, policy)
                    logger.info("Step %s failed (%s), retrying in %.2fs", step.name, exc, delay)
                    display.step_retry(step.name, attempt, policy.max_attempts, delay)
                    await self._sleep(delay)
                    continue
                return self._handle_failure(step, exc, attempt)

    async def run_workflow(self, definition: WorkflowDefinition, args: dict | None = None) -> Any:
        """Seed a fresh context from the definition's arguments and run its steps."""
        args = dict(args or {})
        ctx = ExecutionContext()
        for argument in definition.arguments:
            if argument.name in args:
                ctx[argument.name] = _coerce(args.pop(argument.name), argument.type)
            elif argument.default is not None:
                ctx[argument.name] = argument.default
            elif argument.required:
                raise WorkflowArgumentError(
                    f"Workflow {definition.name} requires argument '{argument.name}'"
                )
        ctx.update(args)
        ctx["timestamp"] = re.sub(r"[:.]", "-", datetime.now(timezone.utc).isoformat())

        display.workflow_start(definition.name, len(definition.workflow.steps))
        await self.run(definition.workflow.steps, ctx)
        display.workflow_complete(definition.name)

        result = ctx.get("$result")
        return result if result is not None else ctx.get("$output")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _handle_failure(self, step: WorkflowStep, exc: Exception, attempts: int) -> StepResult:
        message = str(exc) or type(exc).__name__
        if self._audit is not None:
            self._audit.append(
                StepFailureEntry(
                    timestamp=self._audit.now(),
                    step=step.name,
                    error_kind=type(exc).__name__,
                    message=message,
                    attempts=attempts,
                    on_error=step.on_error.value,
                )
            )

        if step.on_error is OnError.CONTINUE:
            logger.warning("Step %s failed, continuing: %s", step.name, message)
            display.step_continued(step.name, message)
            return StepResult(name=step.name, status=StepStatus.FAILED, error=message, attempts=attempts)

        if step.on_error is OnError.SKIP:
            logger.debug("Step %s failed, skipped: %s", step.name, message)
            display.step_skipped(step.name, message)
            return StepResult(name=step.name, status=StepStatus.SKIPPED, error=message, attempts=attempts)

        logger.error("Step %s failed: %s", step.name, message)
        display.step_failed(step.name, message)
        raise WorkflowStepFailure(step.name, exc, attempts) from exc

    async def _execute_once(self, step: WorkflowStep, ctx: dict, scope: dict | None = None) -> Any:
        variables = {**ctx, **scope} if scope else ctx

        if step.for_each:
            pattern = resolve_templates(step.for_each, variables)
            matches = await self._expand(pattern)
            display.fan_out(step.name, len(matches))
            body = step.model_copy(update={"for_each": None})
            results = await asyncio.gather(
                *(self._execute_once(body, ctx, {"item": match}) for match in matches),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            return list(results)

        if scope and "item" in scope and step.input is None:
            resolved_input = scope["item"]
        else:
            resolved_input = resolve_templates(step.input, variables)

        if step.tool:
            args = self._tools.normalize_args(step.tool, resolved_input)
            spec = self._tools.get(step.tool)
            resource = self._tools.resource_for(step.tool, args)
            await self._authorize(spec.action, resource, f"{step.name} → {step.tool}")
            display.tool_call(step.tool, args)
            return await self._tools.call(step.tool, args)

        if step.prompt:
            prompt = resolve_templates(step.prompt, variables)
            if step.action is not None:
                resource = _stringify(resolved_input) if resolved_input is not None else step.name
                await self._authorize(step.action, resource, step.name)
            return await self._query(prompt, getattr(ctx, "history", None))

        raise PlanGateError(f"Step {step.name} has no executable action (tool or prompt)")

    async def _expand(self, pattern: str) -> list[str]:
        return await asyncio.to_thread(find_matches, pattern, self._tools.root)

    async def _authorize(self, action: Action, resource: str, details: str | None = None) -> None:
        if action not in SENSITIVE_ACTIONS:
            return
        request = PermissionRequest(action=action, resource=resource, details=details)
        decision = await self._engine.decide(request)
        if not decision.allowed:
            raise PermissionDenied(action.value, resource)

    async def _query(self, prompt: str, history: list[dict] | None) -> str:
        if self._agent is None:
            raise PlanGateError("No agent configured for prompt steps")
        display.agent_query(prompt)
        text = await collect_text(
            self._agent.query(prompt, list(history or [])),
            on_delta=display.agent_delta,
            on_tool=display.agent_tool_start,
        )
        display.agent_done()
        if history is not None:
            history.append({"role": "user", "content": prompt})
            history.append({"role": "assistant", "content": text})
        return text
