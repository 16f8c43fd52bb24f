"""
Agent Workflow Engine

Plans a user goal with a planning worker, then executes the approved plan step
by step: creating agents, delegating tasks to worker processes and running
deterministic actions, with each step able to use earlier results.
"""

from .actions import ActionDispatcher
from .client import PermissionDecision, WorkerClient, WorkerResponse
from .config import EngineSettings, configure_logging, load_settings
from .engine import WorkflowEngine
from .errors import (
    ParseError,
    StepFailedError,
    WorkerInvocationError,
    WorkerTimeoutError,
    WorkflowError,
    WorkflowNotFoundError,
)
from .media import MediaRequest
from .models import AgentHandle, Plan, Step, StepType, Workflow, WorkflowStatus
from .parser import parse_orchestrator_output
from .recovery import RequestTracker
from .registry import AgentRegistry, InMemoryAgentRegistry
from .store import InMemoryWorkflowStore, SqliteWorkflowStore, WorkflowStore
from .tooling import ToolProfile

__all__ = [
    "ActionDispatcher",
    "AgentHandle",
    "AgentRegistry",
    "EngineSettings",
    "InMemoryAgentRegistry",
    "InMemoryWorkflowStore",
    "MediaRequest",
    "ParseError",
    "PermissionDecision",
    "Plan",
    "RequestTracker",
    "SqliteWorkflowStore",
    "Step",
    "StepFailedError",
    "StepType",
    "ToolProfile",
    "WorkerClient",
    "WorkerInvocationError",
    "WorkerResponse",
    "WorkerTimeoutError",
    "Workflow",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowNotFoundError",
    "WorkflowStatus",
    "WorkflowStore",
    "configure_logging",
    "load_settings",
    "parse_orchestrator_output",
]

__version__ = "0.1.0"
