# cli.py
# Entry point. Option parsing and wiring only — no logic lives here.
#
# Exit codes: 0 on success, 1 on any error surfaced to the top level
# (including a plan that ends in `failed`).

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import typer

from plan_gate import display
from plan_gate.agent import OpenRouterAgent
from plan_gate.config import Settings
from plan_gate.errors import PlanNotFoundError
from plan_gate.executor import load_workflow
from plan_gate.harness import Session
from plan_gate.logging_config import setup_logging
from plan_gate.models import OnError, PlanStatus, PolicyTier
from plan_gate.planner import format_age
from plan_gate.policy import AlwaysDenyProvider, InteractiveProvider

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, help="Permission-gated plan and workflow execution.")


@dataclass
class CliState:
    settings: Settings
    headless: bool = False


@contextmanager
def _errors():
    try:
        yield
    except (typer.Exit, typer.Abort):
        raise
    except KeyboardInterrupt:
        display.error("Interrupted.")
        raise typer.Exit(1)
    except Exception as exc:
        logger.debug("Unhandled error", exc_info=True)
        display.error(str(exc) or type(exc).__name__)
        raise typer.Exit(1)


def _session(state: CliState, with_agent: bool = True) -> Session:
    provider = AlwaysDenyProvider() if state.headless else InteractiveProvider()
    agent = None
    if with_agent:
        display.banner(state.settings.tier.value, state.settings.model)
        agent = OpenRouterAgent(state.settings.model)
    return Session(state.settings, agent=agent, provider=provider)


def _parse_args(pairs: List[str]) -> dict:
    args = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {pair!r}")
        args[key.strip()] = value
    return args


@app.callback()
def main_callback(
    ctx: typer.Context,
    tier: Optional[PolicyTier] = typer.Option(None, "--tier", help="Policy tier for this session."),
    plans_dir: Optional[Path] = typer.Option(None, "--plans-dir", help="Directory holding .plans/."),
    audit_path: Optional[Path] = typer.Option(None, "--audit-path", help="Audit log file."),
    workspace: Optional[Path] = typer.Option(None, "--workspace", help="Root for file and command tools."),
    model: Optional[str] = typer.Option(None, "--model", help="Agent model name."),
    headless: bool = typer.Option(False, "--headless", help="Deny anything that would need a prompt."),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Enable debug logging."),
    quiet: bool = typer.Option(False, "-q", "--quiet", help="Only log errors."),
) -> None:
    setup_logging(verbose=verbose, quiet=quiet)
    settings = Settings.from_env(
        tier=tier,
        plans_dir=plans_dir,
        audit_path=audit_path,
        workspace=workspace,
        model=model,
    )
    ctx.obj = CliState(settings=settings, headless=headless)


@app.command()
def plan(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="What the agent should plan for."),
    execute: bool = typer.Option(False, "--execute", help="Execute immediately after saving."),
) -> None:
    """Ask the agent for a plan and save it."""
    state: CliState = ctx.obj

    async def _plan_flow(session: Session) -> Optional[PlanStatus]:
        new_plan, _ = await session.create_plan(query)
        if execute or (not state.headless and typer.confirm("Execute now?", default=False)):
            return (await session.execute_plan(new_plan)).status
        return None

    with _errors():
        session = _session(state)
        status = asyncio.run(_plan_flow(session))
        if status is PlanStatus.FAILED:
            raise typer.Exit(1)
        if status is None:
            pending = len(session.plans.pending())
            display.info(f"Plan saved. You now have {pending} pending plan(s).")


@app.command("plans")
def list_plans(ctx: typer.Context) -> None:
    """List pending plans (numbered) and count completed ones."""
    state: CliState = ctx.obj
    with _errors():
        session = _session(state, with_agent=False)
        entries = session.plans.list_plans()
        pending = [(e.plan, format_age(e.plan.created)) for e in entries if e.plan.status is PlanStatus.PENDING]
        completed = sum(1 for e in entries if e.plan.status is PlanStatus.COMPLETED)
        display.plan_list(pending, completed)


@app.command()
def execute(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Pending-plan number, plan id, or plan file path."),
    on_error: OnError = typer.Option(OnError.STOP, "--on-error", help="What a failed step does to the plan."),
) -> None:
    """Execute a saved plan."""
    state: CliState = ctx.obj
    with _errors():
        session = _session(state)
        entry = session.plans.resolve(ref)
        finished = asyncio.run(session.execute_plan(entry.plan, on_error=on_error))
        if finished.status is PlanStatus.FAILED:
            raise typer.Exit(1)


@app.command()
def delete(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="'all', 'all-completed', a pending-plan number, or a plan id."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete plans."""
    state: CliState = ctx.obj
    with _errors():
        manager = _session(state, with_agent=False).plans
        if ref == "all-completed":
            display.plans_deleted(manager.delete_completed(), "completed plan(s)")
            return
        if ref == "all":
            if yes or typer.confirm("Delete ALL plans (pending and completed)?", default=False):
                display.plans_deleted(manager.delete_all())
            return
        plan_id = manager.resolve(ref).plan.id if ref.isdigit() else ref
        if not manager.delete(plan_id):
            raise PlanNotFoundError(f"No plan with id {plan_id!r}")
        display.plans_deleted(1)


@app.command()
def run(
    ctx: typer.Context,
    workflow: str = typer.Argument(..., help="Workflow name under the commands directory."),
    arg: List[str] = typer.Option([], "--arg", "-a", help="Workflow argument as key=value."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the approval prompt."),
) -> None:
    """Run a declared workflow."""
    state: CliState = ctx.obj
    with _errors():
        args = _parse_args(arg)
        definition = load_workflow(workflow, state.settings.commands_dir)
        if definition.requires_approval and not yes:
            typer.confirm(f"Workflow {definition.name} requires approval. Run it?", abort=True)
        session = _session(state)
        result = asyncio.run(session.run_workflow(definition, args))
        display.final_result(result)


@app.command()
def audit(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of most recent records."),
) -> None:
    """Show the most recent audit records."""
    state: CliState = ctx.obj
    with _errors():
        display.audit_table(_session(state, with_agent=False).audit.read_entries(limit))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
