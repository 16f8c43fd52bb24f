"""Exception types raised by the workflow engine and the worker client."""

from enum import Enum
from typing import Any


class WorkflowError(Exception):
    """Base class for every error raised by this package."""


class ParseError(WorkflowError):
    """Worker output could not be turned into a valid command."""

    def __init__(self, message: str, raw_text_preview: str | None = None):
        super().__init__(message)
        self.raw_text_preview = raw_text_preview


class DependencyError(WorkflowError):
    """A step was reached before all of its dependencies completed."""

    def __init__(self, step: int, missing: list[int]):
        super().__init__(
            f"Step {step} depends on steps [{', '.join(str(m) for m in missing)}] which haven't completed"
        )
        self.step = step
        self.missing = missing


class WorkerErrorKind(str, Enum):
    SPAWN_FAILED = "spawn_failed"
    TIMEOUT = "timeout"
    PROCESS_ERROR = "process_error"
    WORKER_ERROR = "worker_error"


class WorkerInvocationError(WorkflowError):
    """A worker process invocation failed.

    Attributes:
        kind: Which part of the invocation failed
        payload: The worker's own error payload, when it reported one
    """

    def __init__(self, kind: WorkerErrorKind, message: str, payload: Any = None):
        super().__init__(message)
        self.kind = kind
        self.payload = payload

    @property
    def retryable(self) -> bool:
        return self.kind == WorkerErrorKind.TIMEOUT


# Step-level name used by the engine for spawn/exit failures.
ProcessError = WorkerInvocationError


class WorkerTimeoutError(WorkerInvocationError):
    """No protocol event arrived within the inactivity window."""

    def __init__(self, message: str, timeout: float):
        super().__init__(WorkerErrorKind.TIMEOUT, message)
        self.timeout = timeout


class TemplateResolutionError(WorkflowError):
    """A step parameter still contains unresolved ``{{...}}`` references."""

    def __init__(self, message: str, placeholders: list[str]):
        super().__init__(message)
        self.placeholders = placeholders


class ActionError(WorkflowError):
    """A deterministic action failed."""


class UnknownActionError(ActionError):
    def __init__(self, action: str, supported: list[str]):
        super().__init__(
            f'Unknown action "{action}". Only {", ".join(repr(s) for s in supported)} supported. '
            "For creative work (images, audio), create specialized agents instead."
        )
        self.action = action


class ActionDisabledError(ActionError):
    """The action exists in the catalog but is intentionally unavailable."""


class AgentNotFoundError(WorkflowError):
    def __init__(self, agent: str):
        super().__init__(f"Agent '{agent}' not found. It may need to be created in an earlier step.")
        self.agent = agent


class StepFailedError(WorkflowError):
    """Wraps the cause of a failed step with the step number and agent."""

    def __init__(self, step: int, agent: str | None, cause: BaseException):
        super().__init__(f"Step {step} ({agent}) failed: {cause}")
        self.step = step
        self.agent = agent
        self.cause = cause


class InvalidTransitionError(WorkflowError):
    """Attempt to move a workflow out of a terminal status."""


class WorkflowNotFoundError(WorkflowError):
    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowBusyError(WorkflowError):
    """An execution pass is already running for this workflow."""


class StoreError(WorkflowError):
    """The durable workflow store rejected a read or write."""
