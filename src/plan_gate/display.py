# display.py
# All terminal output for plan-gate.
#
# This module owns presentation entirely. The engine, executor and harness
# never format strings — they call named functions here. Swap this file to
# change the entire UI.
#
# Colour language:
#   cyan    — scaffolding / routing events
#   blue    — agent queries and streamed text
#   yellow  — permission checkpoints and retries
#   green   — success / allowed
#   red     — failures, denials, halts
#   magenta — individual step internals (tool calls, observations)

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from plan_gate.models import (
    Decision,
    DecisionSource,
    PermissionRequest,
    Plan,
    PlanStepStatus,
    Risk,
)

console = Console()

_ACTION_NAMES = {
    "read": "file read",
    "write": "file writing",
    "delete": "file deletion",
    "modify": "file modification",
    "execute-command": "command execution",
    "network": "network requests",
}

_RISK_STYLE = {Risk.LOW: "green", Risk.MEDIUM: "yellow", Risk.HIGH: "red"}

_STEP_STATUS_STYLE = {
    PlanStepStatus.PENDING: "dim",
    PlanStepStatus.COMPLETED: "green",
    PlanStepStatus.FAILED: "red",
    PlanStepStatus.SKIPPED: "yellow",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return escape(value[:max_len]) + "…"
    return escape(value)


def action_name(action: str) -> str:
    return _ACTION_NAMES.get(action, action)


# ---------------------------------------------------------------------------
# Session entry
# ---------------------------------------------------------------------------


def banner(tier: str, model: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]plan-gate[/bold cyan]\n"
            "[dim]Permission-gated plan and workflow execution[/dim]\n\n"
            f"[dim]Policy tier :[/dim] [white]{tier}[/white]\n"
            f"[dim]Agent model :[/dim] [white]{model}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def error(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")


def info(message: str) -> None:
    console.print(f"[dim]{message}[/dim]")


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def permission_required(request: PermissionRequest) -> None:
    console.print()
    lines = (
        f"[white]Action  :[/white] {action_name(request.action.value)}\n"
        f"[white]Resource:[/white] {escape(request.resource)}"
    )
    if request.details:
        lines += f"\n[dim]Details : {escape(request.details)}[/dim]"
    console.print(
        Panel(
            lines,
            title=_label("PERMISSION REQUIRED", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def permission_choices(action: str) -> list[tuple[str, str]]:
    """(value, label) pairs in the order they are offered."""
    name = action_name(action)
    return [
        ("allow-once", "Allow once"),
        ("allow-resource", "Allow always for this resource"),
        ("allow-action", f"Always allow {name}"),
        ("deny-once", "Deny once"),
        ("deny-resource", "Deny always for this resource"),
        ("deny-action", f"Always deny {name}"),
    ]


def permission_menu(action: str) -> None:
    for i, (_, label) in enumerate(permission_choices(action), start=1):
        console.print(f"  [yellow]{i}.[/yellow] {label}")


def decision_made(request: PermissionRequest, decision: Decision, source: DecisionSource) -> None:
    if decision.allowed:
        return
    console.print(
        f"  [bold red]✗ Denied[/bold red] [white]{action_name(request.action.value)}[/white]"
        f" [dim]{_mono(request.resource, 80)} ({source.value})[/dim]"
    )


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


def workflow_start(name: str, total: int) -> None:
    console.print()
    console.print(Rule(f"[cyan]WORKFLOW {name} — {total} step(s)[/cyan]", style="cyan"))


def workflow_complete(name: str) -> None:
    console.print(f"\n[bold green]✓ Workflow {name} completed[/bold green]")


def step_start(index: int, total: int, name: str) -> None:
    console.print()
    console.print(f"[bold cyan]  STEP [{index + 1}/{total}][/bold cyan]  [white]{name}[/white]")


def fan_out(name: str, count: int) -> None:
    console.print(f"  [magenta]Fan-out[/magenta]  [white]{name}[/white] [dim]× {count}[/dim]")


def tool_call(tool: str, args: Any) -> None:
    try:
        rendered = json.dumps(args)
    except (TypeError, ValueError):
        rendered = str(args)
    console.print(
        f"  [magenta]Tool[/magenta]     [bold white]{tool}[/bold white]  [dim]{_mono(rendered, 100)}[/dim]"
    )


def agent_query(prompt: str) -> None:
    console.print(f"  [blue]Query[/blue]    [dim white]{_mono(prompt, 100)}[/dim white]")


def agent_delta(text: str) -> None:
    console.print(text, end="", markup=False, highlight=False)


def agent_tool_start(name: str) -> None:
    console.print(f"\n  [blue]↳ agent tool[/blue] [white]{name}[/white]")


def agent_done() -> None:
    console.print()


def step_retry(name: str, attempt: int, max_attempts: int, delay: float) -> None:
    console.print(
        f"  [yellow]↻ Retrying {name} in {delay:g}s[/yellow] "
        f"[dim](attempt {attempt + 1}/{max_attempts})[/dim]"
    )


def step_continued(name: str, message: str) -> None:
    console.print(f"  [yellow]⚠ Step {name} failed, continuing:[/yellow] [white]{escape(message)}[/white]")


def step_skipped(name: str, message: str) -> None:
    console.print(f"  [dim]– Step {name} skipped: {escape(message)}[/dim]")


def step_failed(name: str, message: str) -> None:
    console.print(f"  [bold red]✗ Step {name} failed:[/bold red] [white]{escape(message)}[/white]")


def step_completed(name: str) -> None:
    console.print(f"  [bold green]✓ {name}[/bold green]")


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def plan_created(plan: Plan) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Step", style="bold white")
    table.add_column("Action", width=8)
    table.add_column("Target", style="dim white")
    table.add_column("Purpose", style="white")
    table.add_column("Risk", justify="center", width=7)

    for i, step in enumerate(plan.steps, start=1):
        style = _RISK_STYLE.get(step.risk, "white")
        table.add_row(
            str(i),
            step.name,
            step.action.value,
            _mono(step.target or "", 40),
            step.purpose,
            f"[{style}]{step.risk.value}[/{style}]",
        )

    header = f"[bold white]{escape(plan.summary)}[/bold white]"
    if plan.analysis:
        header += f"\n\n[dim]{escape(plan.analysis)}[/dim]"
    console.print(
        Panel(
            header,
            title=_label("PLAN CREATED", "cyan"),
            subtitle=f"[dim]{plan.id}[/dim]",
            border_style="cyan",
            padding=(0, 2),
        )
    )
    console.print(table)

    if plan.rollback_strategy:
        console.print("[white]Rollback Strategy:[/white]")
        for line in plan.rollback_strategy:
            console.print(f"  [dim]- {escape(line)}[/dim]")


def plan_saved(path: str) -> None:
    console.print(f"[dim]Plan saved: {path}[/dim]")


def plan_list(pending: list[tuple[Plan, str]], completed_count: int) -> None:
    """`pending` pairs each plan with its human-readable age."""
    if not pending and completed_count == 0:
        console.print("\n[dim]No plans found. Use `plan-gate plan <query>` to create one.[/dim]")
        return

    if pending:
        console.print("\n[cyan]Pending Plans:[/cyan]")
        for i, (plan, age) in enumerate(pending, start=1):
            console.print(f"  [white]{i}. {escape(plan.summary)}[/white]")
            console.print(f"     [dim]{plan.id} • created {age} • {len(plan.steps)} steps[/dim]")
        console.print("\n  [dim]Run `plan-gate execute <num>` to execute.[/dim]")

    if completed_count:
        console.print(
            f"\n[dim]{completed_count} completed plan(s) — "
            "run `plan-gate delete all-completed` to clean up[/dim]"
        )


def plan_execution_start(plan: Plan) -> None:
    console.print()
    console.print(Rule(f"[cyan]EXECUTING PLAN — {plan.summary}[/cyan]", style="cyan"))


def plan_step_status(name: str, status: PlanStepStatus) -> None:
    style = _STEP_STATUS_STYLE.get(status, "white")
    console.print(f"  [{style}]• {name}: {status.value}[/{style}]")


def plan_finished(plan: Plan) -> None:
    if plan.status.value == "completed":
        console.print("\n[bold green]✓ Plan completed successfully![/bold green]")
        console.print("[dim]Run `plan-gate delete all-completed` to clean up.[/dim]")
        return
    halt(f"Plan {plan.id} {plan.status.value}.")
    if plan.rollback_strategy:
        console.print("[white]Rollback Strategy:[/white]")
        for line in plan.rollback_strategy:
            console.print(f"  [dim]- {escape(line)}[/dim]")


def plans_deleted(count: int, what: str = "plan(s)") -> None:
    console.print(f"\n[green]✓ Deleted {count} {what}.[/green]")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def audit_table(records: list[dict]) -> None:
    if not records:
        console.print("[dim]Audit log is empty.[/dim]")
        return
    table = Table(box=box.SIMPLE, show_header=True, header_style="bold dim", padding=(0, 1))
    table.add_column("Time", style="dim")
    table.add_column("Event")
    table.add_column("Resource", style="white")
    table.add_column("Result", justify="center")
    table.add_column("Source", style="dim")

    for rec in records:
        if rec.get("event") == "step-failure":
            table.add_row(
                rec.get("timestamp", ""),
                f"step {rec.get('step', '')}",
                _mono(rec.get("message", ""), 50),
                "[red]failed[/red]",
                rec.get("on_error", ""),
            )
            continue
        result = "[green]allow[/green]" if rec.get("allowed") else "[red]deny[/red]"
        table.add_row(
            rec.get("timestamp", ""),
            action_name(rec.get("action", "")),
            _mono(rec.get("resource", ""), 50),
            result,
            rec.get("source", ""),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: Any) -> None:
    if result is None:
        return
    console.print()
    console.print(
        Panel(
            f"[white]{escape(str(result))}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()
