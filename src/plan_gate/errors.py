# errors.py
# Exception taxonomy shared by every component.
#
# A deny Decision is not an exception. PermissionDenied only exists once a
# denial reaches the step executor and turns into a step failure.


class PlanGateError(Exception):
    """Base class for all plan-gate errors."""


# ---------------------------------------------------------------------------
# Step-level failures
# ---------------------------------------------------------------------------


class PermissionDenied(PlanGateError):
    """Raised when a step's permission request resolves to deny."""

    def __init__(self, action: str, resource: str) -> None:
        super().__init__(f"Permission denied: {action} on {resource!r}")
        self.action = action
        self.resource = resource


class AccessDenied(PlanGateError):
    """Raised when a path resolves outside the allowed workspace root."""


class CommandTimeout(PlanGateError):
    """Raised when a command exceeds its wall-clock timeout. The process is killed."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Command timed out after {timeout:g}s: {command}")
        self.command = command
        self.timeout = timeout


class CommandExecutionFailure(PlanGateError):
    """Raised on a nonzero exit status or when the process cannot be spawned."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"Command failed with exit code {exit_code}{detail}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ToolNotFoundError(PlanGateError):
    """Raised when a step names a tool absent from the registry."""


class WorkflowStepFailure(PlanGateError):
    """Wraps the last error of a step whose retries are exhausted."""

    def __init__(self, step: str, cause: BaseException, attempts: int) -> None:
        super().__init__(f"Step '{step}' failed after {attempts} attempt(s): {cause}")
        self.step = step
        self.cause = cause
        self.attempts = attempts


class WorkflowArgumentError(PlanGateError):
    """Raised when a workflow is started without a required argument."""


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanParseError(PlanGateError):
    """Raised when a plan document cannot be parsed."""


class PlanNotFoundError(PlanGateError):
    """Raised when a plan reference matches no stored plan."""


class InvalidTransition(PlanGateError):
    """Raised when a status update would move a plan or step backwards."""


# ---------------------------------------------------------------------------
# Decision providers
# ---------------------------------------------------------------------------


class ProviderExhausted(PlanGateError):
    """Raised when a scripted decision provider runs out of answers."""
