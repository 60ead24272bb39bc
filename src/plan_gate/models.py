# models.py
# Data contracts for the permission-gated execution control plane.
# No business logic lives here — pure schema and validation.

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Action(str, Enum):
    """Closed set of side-effecting operations a request can ask for."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    MODIFY = "modify"
    EXECUTE_COMMAND = "execute-command"
    NETWORK = "network"


class PolicyTier(str, Enum):
    RESTRICTIVE = "restrictive"
    BALANCED = "balanced"
    PERMISSIVE = "permissive"


class DecisionSource(str, Enum):
    POLICY = "policy"
    CACHED = "cached"
    ALWAYS = "always"
    PROMPT = "prompt"


class Choice(str, Enum):
    """The six answers a decision provider may give."""

    ALLOW_ONCE = "allow-once"
    ALLOW_RESOURCE = "allow-resource"
    ALLOW_ACTION = "allow-action"
    DENY_ONCE = "deny-once"
    DENY_RESOURCE = "deny-resource"
    DENY_ACTION = "deny-action"


class PermissionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Action
    resource: str = Field(..., description="Path, URL or command the action targets.")
    details: str | None = None


class Decision(BaseModel):
    allowed: bool
    remember: bool = False


class AuditEntry(BaseModel):
    """One permission decision, exactly as it was resolved."""

    timestamp: datetime
    action: Action
    resource: str
    details: str | None = None
    allowed: bool
    remember: bool
    tier: PolicyTier
    source: DecisionSource


class StepFailureEntry(BaseModel):
    """A workflow step that failed after its retries were exhausted."""

    timestamp: datetime
    event: Literal["step-failure"] = "step-failure"
    step: str
    error_kind: str
    message: str
    attempts: int
    on_error: str


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


class Backoff(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class OnError(str, Enum):
    STOP = "stop"
    CONTINUE = "continue"
    SKIP = "skip"


class RetryPolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int = Field(default=1, ge=1, alias="maxAttempts")
    backoff: Backoff = Backoff.LINEAR
    retry_on: list[str] | None = Field(default=None, alias="retryOn")
    base_delay: float = Field(default=1.0, ge=0, description="Seconds.")
    max_delay: float = Field(default=30.0, ge=0, description="Exponential cap, seconds.")


class WorkflowStep(BaseModel):
    """A single declared step: either a tool call or a prompt to the agent."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    tool: str | None = None
    prompt: str | None = None
    input: Any = None
    for_each: str | None = Field(default=None, alias="forEach")
    output: str | None = None
    retry: RetryPolicy | None = None
    on_error: OnError = Field(default=OnError.STOP, alias="onError")
    action: Action | None = Field(
        default=None,
        description="Permission required before a prompt step runs.",
    )


class WorkflowArgument(BaseModel):
    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""


class WorkflowBody(BaseModel):
    steps: list[WorkflowStep] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    arguments: list[WorkflowArgument] = Field(default_factory=list)
    workflow: WorkflowBody = Field(default_factory=WorkflowBody)
    permissions: list[str] = Field(default_factory=list)
    requires_approval: bool = Field(default=False, alias="requiresApproval")


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepResult(BaseModel):
    name: str
    status: StepStatus
    result: Any = None
    error: str | None = None
    attempts: int = 1


class CommandResult(BaseModel):
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration: float = 0.0


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanStepStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanAction(str, Enum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    COMMAND = "command"
    QUERY = "query"


class Risk(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PlanStep(BaseModel):
    id: str
    name: str
    action: PlanAction = PlanAction.QUERY
    target: str | None = None
    purpose: str = ""
    risk: Risk = Risk.LOW
    status: PlanStepStatus = PlanStepStatus.PENDING


class Plan(BaseModel):
    """A persisted, multi-step course of action."""

    id: str
    created: datetime
    status: PlanStatus = PlanStatus.PENDING
    query: str = ""
    summary: str = ""
    analysis: str = ""
    steps: list[PlanStep] = Field(default_factory=list)
    rollback_strategy: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Agent stream events
# ---------------------------------------------------------------------------


class TextDelta(BaseModel):
    type: Literal["text-delta"] = "text-delta"
    text: str


class ToolStart(BaseModel):
    type: Literal["tool-start"] = "tool-start"
    name: str


class FinalResult(BaseModel):
    type: Literal["final-result"] = "final-result"
    text: str


AgentEvent = Union[TextDelta, ToolStart, FinalResult]
