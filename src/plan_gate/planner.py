# planner.py
# Plan Lifecycle Manager.
#
# Plans live as Markdown documents under <base>/.plans/, one file per plan:
#
#   ---
#   id: plan-20260101-120000-1a2b3c
#   created: 2026-01-01T12:00:00+00:00
#   status: pending
#   query: "rename the settings module"
#   ---
#
#   ## Summary / ## Analysis / ## Steps / ## Rollback Strategy
#
# Every read goes back to disk, so status survives process restarts and
# ordinals ("plan #2") are always computed from a fresh listing.

import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from plan_gate.errors import InvalidTransition, PlanNotFoundError, PlanParseError
from plan_gate.models import Plan, PlanStatus, PlanStep, PlanStepStatus

logger = logging.getLogger(__name__)

PLAN_SUFFIX = ".plan.md"

PLANNING_PROMPT = """\
You are in PLANNING MODE. Analyze this request and create a structured plan.

REQUEST: {query}

Create a plan with the following format:
1. A brief summary (1 sentence)
2. Your analysis of what needs to be done
3. Step-by-step actions with risk assessment
4. Rollback strategy if something goes wrong

Output your plan in this exact format:

SUMMARY: [one sentence describing what will be accomplished]

ANALYSIS:
[what you discovered and your approach]

STEPS:
1. [Step Name] | Action: [read/write/edit/command/query] | Target: [file or command] | Purpose: [why] | Risk: [low/medium/high]
2. [Next step...]

ROLLBACK:
- [How to undo if needed]
- [Additional recovery steps]\
"""

_SECTION_RE = re.compile(r"^## (Summary|Analysis|Steps|Rollback Strategy)[ \t]*$", re.MULTILINE)
_STEP_HEAD_RE = re.compile(r"^\d+\.\s+\*\*(.+)\*\*\s*$")
_STEP_FIELD_RE = re.compile(r"^\s+-\s+(Id|Action|Target|Purpose|Risk|Status):[ \t]*(.*)$")
_RESPONSE_STEP_RE = re.compile(
    r"\d+\.\s*(.+?)\s*\|\s*Action:\s*(\w+)\s*\|\s*Target:\s*(.+?)\s*\|"
    r"\s*Purpose:\s*(.+?)\s*\|\s*Risk:\s*(\w+)",
    re.IGNORECASE,
)

# completed and failed share the last rank: both are terminal.
_PLAN_RANK = {
    PlanStatus.PENDING: 0,
    PlanStatus.APPROVED: 1,
    PlanStatus.EXECUTING: 2,
    PlanStatus.COMPLETED: 3,
    PlanStatus.FAILED: 3,
}
_TERMINAL = {PlanStatus.COMPLETED, PlanStatus.FAILED}


@dataclass
class PlanEntry:
    path: Path
    plan: Plan


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def generate_plan_id(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"plan-{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", text.lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    return slug[:30].rstrip("-") or "plan"


def format_age(created: datetime, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    minutes = int((now - created).total_seconds() // 60)
    hours, days = minutes // 60, minutes // 1440
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    return f"{days} day{'s' if days > 1 else ''} ago"


def check_plan_transition(current: PlanStatus, new: PlanStatus) -> None:
    if current == new:
        return
    if current in _TERMINAL or _PLAN_RANK[new] < _PLAN_RANK[current]:
        raise InvalidTransition(f"Plan status cannot move from {current.value} to {new.value}")


def check_step_transition(current: PlanStepStatus, new: PlanStepStatus) -> None:
    if current == new:
        return
    if current is not PlanStepStatus.PENDING:
        raise InvalidTransition(f"Step status is final ({current.value}); cannot set {new.value}")


def parse_plan_response(text: str, query: str) -> Plan:
    """
    Build a pending Plan from the agent's planning-mode answer.

    Lines under STEPS: that do not match the pipe-delimited format are ignored.
    """
    summary = re.search(r"SUMMARY:\s*(.+?)(?=\n|ANALYSIS:)", text, re.DOTALL)
    analysis = re.search(r"ANALYSIS:\s*([\s\S]+?)(?=STEPS:|$)", text)
    steps_block = re.search(r"STEPS:\s*([\s\S]+?)(?=ROLLBACK:|$)", text)
    rollback_block = re.search(r"ROLLBACK:\s*([\s\S]+?)$", text)

    steps: list[PlanStep] = []
    if steps_block:
        for line in steps_block.group(1).strip().splitlines():
            match = _RESPONSE_STEP_RE.search(line)
            if not match:
                continue
            name, action, target, purpose, risk = (g.strip() for g in match.groups())
            try:
                steps.append(
                    PlanStep(
                        id=f"step-{len(steps) + 1}",
                        name=name,
                        action=action.lower(),
                        target=target,
                        purpose=purpose,
                        risk=risk.lower(),
                    )
                )
            except ValueError as exc:
                logger.warning("Ignoring plan step %r: %s", line.strip(), exc)

    rollback: list[str] = []
    if rollback_block:
        for line in rollback_block.group(1).strip().splitlines():
            clean = re.sub(r"^-\s*", "", line).strip()
            if clean:
                rollback.append(clean)

    return Plan(
        id=generate_plan_id(),
        created=datetime.now(timezone.utc),
        status=PlanStatus.PENDING,
        query=query,
        summary=summary.group(1).strip() if summary else f"Plan for: {query[:50]}",
        analysis=analysis.group(1).strip() if analysis else "",
        steps=steps,
        rollback_strategy=rollback,
    )


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
#
# Values are written as plain Markdown when they read back unchanged. Anything
# else (empty or padded values, line breaks, a leading quote, a line that looks
# like a section heading) is written as a JSON string instead.


def _encode(value: str, block: bool = False) -> str:
    plain = value == value.strip() and not value.startswith('"')
    if block:
        plain = plain and not _SECTION_RE.search(value)
    else:
        plain = plain and bool(value) and "\n" not in value
    return value if plain else json.dumps(value, ensure_ascii=False)


def _decode(text: str) -> str:
    return json.loads(text) if text.startswith('"') else text


def serialize_plan(plan: Plan) -> str:
    lines = [
        "---",
        f"id: {_encode(plan.id)}",
        f"created: {plan.created.isoformat()}",
        f"status: {plan.status.value}",
        f"query: {json.dumps(plan.query, ensure_ascii=False)}",
        "---",
        "",
        "## Summary",
        _encode(plan.summary, block=True),
        "",
        "## Analysis",
        _encode(plan.analysis, block=True),
        "",
        "## Steps",
    ]
    for i, step in enumerate(plan.steps, start=1):
        lines.append(f"{i}. **{_encode(step.name)}**")
        lines.append(f"   - Id: {_encode(step.id)}")
        lines.append(f"   - Action: {step.action.value}")
        if step.target is not None:
            lines.append(f"   - Target: {_encode(step.target)}")
        lines.append(f"   - Purpose: {_encode(step.purpose)}")
        lines.append(f"   - Risk: {step.risk.value}")
        lines.append(f"   - Status: {step.status.value}")
        lines.append("")
    lines.append("## Rollback Strategy")
    lines.extend(f"- {_encode(line)}" for line in plan.rollback_strategy)
    return "\n".join(lines) + "\n"


def _parse_preamble(content: str) -> tuple[dict[str, str], str]:
    lines = content.split("\n")
    if not lines or lines[0].strip() != "---":
        raise PlanParseError("Plan document does not start with a '---' preamble")
    try:
        end = next(i for i in range(1, len(lines)) if lines[i].strip() == "---")
    except StopIteration:
        raise PlanParseError("Plan preamble is not terminated") from None

    fields: dict[str, str] = {}
    for line in lines[1:end]:
        match = re.match(r"^(\w+):\s*(.*)$", line)
        if match:
            fields[match.group(1)] = match.group(2)
    return fields, "\n".join(lines[end + 1:])


def _parse_steps(block: str) -> list[PlanStep]:
    raw_steps: list[dict] = []
    for line in block.split("\n"):
        head = _STEP_HEAD_RE.match(line)
        if head:
            raw_steps.append({"name": _decode(head.group(1).strip())})
            continue
        field = _STEP_FIELD_RE.match(line)
        if field and raw_steps:
            raw_steps[-1][field.group(1).lower()] = _decode(field.group(2).strip())

    steps = []
    for i, raw in enumerate(raw_steps, start=1):
        raw.setdefault("id", f"step-{i}")
        steps.append(PlanStep.model_validate(raw))
    return steps


def parse_plan(content: str) -> Plan:
    fields, body = _parse_preamble(content)
    if not fields.get("id"):
        raise PlanParseError("Plan preamble has no id")

    sections: dict[str, str] = {}
    matches = list(_SECTION_RE.finditer(body))
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(body)
        sections[match.group(1)] = body[match.end():end].strip("\n").rstrip()

    try:
        rollback = [
            _decode(re.sub(r"^-\s*", "", line).strip())
            for line in sections.get("Rollback Strategy", "").split("\n")
            if line.strip()
        ]
        return Plan(
            id=_decode(fields["id"]),
            created=datetime.fromisoformat(fields["created"]) if fields.get("created") else datetime.now(timezone.utc),
            status=fields.get("status") or PlanStatus.PENDING,
            query=_decode(fields.get("query", "")),
            summary=_decode(sections.get("Summary", "")),
            analysis=_decode(sections.get("Analysis", "")),
            steps=_parse_steps(sections.get("Steps", "")),
            rollback_strategy=rollback,
        )
    except ValueError as exc:
        raise PlanParseError(f"Plan {fields['id']} is malformed: {exc}") from exc


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class PlanManager:
    """Creates, persists and tracks plans under `<base_dir>/.plans`."""

    def __init__(self, base_dir: str | Path = ".") -> None:
        self.plans_dir = Path(base_dir).expanduser() / ".plans"

    def _ensure_dir(self) -> None:
        self.plans_dir.mkdir(parents=True, exist_ok=True)

    def create(
        self,
        query: str,
        summary: str,
        analysis: str = "",
        steps: list[PlanStep] | None = None,
        rollback_strategy: list[str] | None = None,
    ) -> Plan:
        return Plan(
            id=generate_plan_id(),
            created=datetime.now(timezone.utc),
            status=PlanStatus.PENDING,
            query=query,
            summary=summary,
            analysis=analysis,
            steps=steps or [],
            rollback_strategy=rollback_strategy or [],
        )

    def path_for(self, plan: Plan) -> Path:
        return self.plans_dir / f"{plan.id}-{slugify(plan.summary)}{PLAN_SUFFIX}"

    def save(self, plan: Plan) -> Path:
        self._ensure_dir()
        path = self.path_for(plan)
        path.write_text(serialize_plan(plan), encoding="utf-8")
        logger.debug("Saved plan %s to %s", plan.id, path)
        return path

    def load(self, path: str | Path) -> Plan:
        return parse_plan(Path(path).read_text(encoding="utf-8"))

    def list_plans(self) -> list[PlanEntry]:
        """All readable plans, newest first. Unparseable files are skipped."""
        if not self.plans_dir.is_dir():
            return []
        entries: list[PlanEntry] = []
        for path in self.plans_dir.glob(f"*{PLAN_SUFFIX}"):
            try:
                entries.append(PlanEntry(path=path, plan=self.load(path)))
            except (OSError, PlanParseError) as exc:
                logger.warning("Skipping unreadable plan %s: %s", path.name, exc)
        entries.sort(key=lambda e: e.plan.created, reverse=True)
        return entries

    def pending(self) -> list[PlanEntry]:
        return [e for e in self.list_plans() if e.plan.status is PlanStatus.PENDING]

    def find(self, plan_id: str) -> PlanEntry:
        for entry in self.list_plans():
            if entry.plan.id == plan_id:
                return entry
        raise PlanNotFoundError(f"No plan with id {plan_id!r}")

    def resolve(self, ref: str) -> PlanEntry:
        """
        Resolve a user reference: an ordinal into the current pending list,
        a plan id, or a path to a plan document.
        """
        ref = ref.strip()
        if ref.isdigit():
            pending = self.pending()
            number = int(ref)
            if not 1 <= number <= len(pending):
                raise PlanNotFoundError(
                    f"Invalid plan number {number}. You have {len(pending)} pending plan(s)."
                )
            return pending[number - 1]
        try:
            return self.find(ref)
        except PlanNotFoundError:
            path = Path(ref).expanduser()
            if path.is_file():
                return PlanEntry(path=path, plan=self.load(path))
            raise

    def update_status(self, plan_id: str, status: PlanStatus) -> Plan:
        entry = self.find(plan_id)
        status = PlanStatus(status)
        check_plan_transition(entry.plan.status, status)
        entry.plan.status = status
        entry.path.write_text(serialize_plan(entry.plan), encoding="utf-8")
        return entry.plan

    def update_step_status(self, plan_id: str, step_id: str, status: PlanStepStatus) -> Plan:
        entry = self.find(plan_id)
        status = PlanStepStatus(status)
        for step in entry.plan.steps:
            if step.id == step_id:
                check_step_transition(step.status, status)
                step.status = status
                break
        else:
            raise PlanNotFoundError(f"Plan {plan_id} has no step {step_id!r}")
        entry.path.write_text(serialize_plan(entry.plan), encoding="utf-8")
        return entry.plan

    def delete(self, plan_id: str) -> bool:
        try:
            entry = self.find(plan_id)
        except PlanNotFoundError:
            return False
        entry.path.unlink()
        return True

    def delete_completed(self) -> int:
        completed = [e for e in self.list_plans() if e.plan.status is PlanStatus.COMPLETED]
        for entry in completed:
            entry.path.unlink()
        return len(completed)

    def delete_all(self) -> int:
        entries = self.list_plans()
        for entry in entries:
            entry.path.unlink()
        return len(entries)
