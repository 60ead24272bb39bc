import json

import pytest

from plan_gate.audit import AuditLog
from plan_gate.models import FinalResult, PolicyTier, TextDelta
from plan_gate.policy import PolicyEngine, ScriptedProvider
from plan_gate.tools import Toolbox


class FakeAgent:
    """Replays canned replies as a delta stream. An Exception reply is raised instead."""

    def __init__(self, replies=None, default="ok"):
        self.replies = list(replies or [])
        self.default = default
        self.prompts: list[str] = []
        self.histories: list[list[dict]] = []

    async def query(self, prompt, history=None):
        self.prompts.append(prompt)
        self.histories.append(list(history or []))
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        for word in reply.split(" "):
            yield TextDelta(text=word + " ")
        yield FinalResult(text=reply)


class Sleeps:
    """Records requested backoff delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def audit_log(tmp_path):
    return AuditLog(tmp_path / "audit" / "audit.log")


@pytest.fixture
def read_audit(audit_log):
    def _read():
        if not audit_log.path.exists():
            return []
        return [json.loads(line) for line in audit_log.path.read_text().splitlines()]

    return _read


@pytest.fixture
def make_engine(audit_log):
    def _make(tier=PolicyTier.BALANCED, answers=()):
        provider = ScriptedProvider(list(answers))
        return PolicyEngine(tier, provider, audit_log), provider

    return _make


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def toolbox(workspace):
    return Toolbox(workspace, command_timeout=5.0)


@pytest.fixture
def sleeps():
    return Sleeps()
