# policy.py
# Policy Decision Engine.
#
# Resolution order for one request:
#   static tier policy → per-resource cache → per-action cache → provider
#
# Static results never touch the caches. Only "forever" answers from a
# provider are remembered, and only for the lifetime of this engine.
# Every path is written to the audit log before the Decision is returned.

import asyncio
import logging
from typing import Protocol

from rich.prompt import Prompt

from plan_gate import display
from plan_gate.audit import AuditLog
from plan_gate.errors import ProviderExhausted
from plan_gate.models import (
    Action,
    AuditEntry,
    Choice,
    Decision,
    DecisionSource,
    PermissionRequest,
    PolicyTier,
)

logger = logging.getLogger(__name__)

HIGH_RISK = frozenset({Action.EXECUTE_COMMAND, Action.DELETE})
MEDIUM_RISK = frozenset({Action.WRITE, Action.MODIFY, Action.NETWORK})

ALLOW, DENY, ASK = "allow", "deny", "ask"


def risk_class(action: Action) -> str:
    if action in HIGH_RISK:
        return "high"
    if action in MEDIUM_RISK:
        return "medium"
    return "low"


def static_policy(action: Action, tier: PolicyTier) -> str:
    """Return 'allow', 'deny' or 'ask' for an action under a tier."""
    risk = risk_class(action)
    if tier is PolicyTier.PERMISSIVE:
        return ALLOW
    if tier is PolicyTier.RESTRICTIVE:
        return {"high": DENY, "medium": ASK, "low": ALLOW}[risk]
    return ALLOW if risk == "low" else ASK


# ---------------------------------------------------------------------------
# Decision providers
# ---------------------------------------------------------------------------


class DecisionProvider(Protocol):
    async def choose(self, request: PermissionRequest) -> Choice: ...


class InteractiveProvider:
    """
    Asks the operator on the terminal.

    The prompt is read synchronously on purpose: the whole run is suspended
    until the operator answers, and there is no timeout.
    """

    def __init__(self, console=None) -> None:
        self._console = console or display.console

    async def choose(self, request: PermissionRequest) -> Choice:
        display.permission_required(request)
        display.permission_menu(request.action.value)
        options = display.permission_choices(request.action.value)
        answer = Prompt.ask(
            "Do you want to allow this action?",
            choices=[str(i) for i in range(1, len(options) + 1)],
            default="1",
            console=self._console,
        )
        return Choice(options[int(answer) - 1][0])


class AlwaysDenyProvider:
    """Headless provider: every question is answered with deny-once."""

    async def choose(self, request: PermissionRequest) -> Choice:
        logger.info("Headless denial for %s on %s", request.action.value, request.resource)
        return Choice.DENY_ONCE


class ScriptedProvider:
    """Deterministic provider replaying predetermined answers in order."""

    def __init__(self, answers: list[Choice | str]) -> None:
        self._answers = [Choice(a) for a in answers]
        self.requests: list[PermissionRequest] = []

    async def choose(self, request: PermissionRequest) -> Choice:
        self.requests.append(request)
        if not self._answers:
            raise ProviderExhausted(
                f"No scripted answer left for {request.action.value} on {request.resource!r}"
            )
        return self._answers.pop(0)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PolicyEngine:
    """
    Decides whether a requested action may proceed.

    One engine per session; its caches are never shared with another
    engine, so independent sessions can coexist in one process.
    """

    def __init__(
        self,
        tier: PolicyTier,
        provider: DecisionProvider,
        audit_log: AuditLog,
    ) -> None:
        self._tier = PolicyTier(tier)
        self._provider = provider
        self._audit = audit_log
        self._resource_cache: dict[tuple[Action, str], bool] = {}
        self._action_cache: dict[Action, bool] = {}
        self._lock = asyncio.Lock()

    @property
    def tier(self) -> PolicyTier:
        return self._tier

    def cached(self, request: PermissionRequest) -> bool | None:
        """Remembered value for this exact (action, resource), if any."""
        return self._resource_cache.get((request.action, request.resource))

    async def decide(self, request: PermissionRequest, tier: PolicyTier | None = None) -> Decision:
        tier = PolicyTier(tier) if tier is not None else self._tier

        verdict = static_policy(request.action, tier)
        if verdict != ASK:
            decision = Decision(allowed=verdict == ALLOW, remember=True)
            return self._record(request, decision, tier, DecisionSource.POLICY)

        # Lookup and prompt under one lock: a concurrent request for the same
        # key must see the answer the first one remembered.
        async with self._lock:
            key = (request.action, request.resource)
            if key in self._resource_cache:
                decision = Decision(allowed=self._resource_cache[key], remember=True)
                return self._record(request, decision, tier, DecisionSource.CACHED)

            if request.action in self._action_cache:
                decision = Decision(allowed=self._action_cache[request.action], remember=True)
                return self._record(request, decision, tier, DecisionSource.ALWAYS)

            choice = await self._provider.choose(request)
            decision = self._apply_choice(request, choice)
            return self._record(request, decision, tier, DecisionSource.PROMPT)

    def _apply_choice(self, request: PermissionRequest, choice: Choice) -> Decision:
        key = (request.action, request.resource)
        if choice is Choice.ALLOW_ONCE:
            return Decision(allowed=True, remember=False)
        if choice is Choice.DENY_ONCE:
            return Decision(allowed=False, remember=False)
        if choice is Choice.ALLOW_RESOURCE:
            self._resource_cache[key] = True
            return Decision(allowed=True, remember=True)
        if choice is Choice.DENY_RESOURCE:
            self._resource_cache[key] = False
            return Decision(allowed=False, remember=True)
        if choice is Choice.ALLOW_ACTION:
            self._action_cache[request.action] = True
            return Decision(allowed=True, remember=True)
        if choice is Choice.DENY_ACTION:
            self._action_cache[request.action] = False
            return Decision(allowed=False, remember=True)
        return Decision(allowed=False, remember=False)

    def _record(
        self,
        request: PermissionRequest,
        decision: Decision,
        tier: PolicyTier,
        source: DecisionSource,
    ) -> Decision:
        self._audit.append(
            AuditEntry(
                timestamp=self._audit.now(),
                action=request.action,
                resource=request.resource,
                details=request.details,
                allowed=decision.allowed,
                remember=decision.remember,
                tier=tier,
                source=source,
            )
        )
        logger.debug(
            "%s %s on %s (%s)",
            "allow" if decision.allowed else "deny",
            request.action.value,
            request.resource,
            source.value,
        )
        display.decision_made(request, decision, source)
        return decision
