# config.py
# Session settings. Environment (and .env) first, CLI options override.

import os
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

from plan_gate.agent import DEFAULT_MODEL
from plan_gate.audit import DEFAULT_AUDIT_PATH
from plan_gate.models import OnError, PolicyTier
from plan_gate.tools import DEFAULT_COMMAND_TIMEOUT


class Settings(BaseModel):
    tier: PolicyTier = PolicyTier.BALANCED
    audit_path: Path = DEFAULT_AUDIT_PATH
    plans_dir: Path = Path(".")
    workspace: Path = Path(".")
    commands_dir: Path = Path(".commands")
    command_timeout: float = Field(default=DEFAULT_COMMAND_TIMEOUT, gt=0)
    model: str = DEFAULT_MODEL
    plan_on_error: OnError = OnError.STOP

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Build settings from PLAN_GATE_* variables; non-None overrides win."""
        load_dotenv(find_dotenv(usecwd=True))
        env = {
            "tier": os.getenv("PLAN_GATE_TIER"),
            "audit_path": os.getenv("PLAN_GATE_AUDIT_PATH"),
            "plans_dir": os.getenv("PLAN_GATE_PLANS_DIR"),
            "workspace": os.getenv("PLAN_GATE_WORKSPACE"),
            "commands_dir": os.getenv("PLAN_GATE_COMMANDS_DIR"),
            "command_timeout": os.getenv("PLAN_GATE_COMMAND_TIMEOUT"),
            "model": os.getenv("PLAN_GATE_MODEL"),
        }
        env.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate({k: v for k, v in env.items() if v is not None})
