"""
Workflow data models.

Defines workflows, plans, steps, step results and the commands a planning
worker can send back, using Pydantic models for validation and for
round-tripping through the workflow store.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    STARTING = "starting"
    PLANNING = "planning"
    PLANNED = "planned"
    DISCOVERY = "discovery"
    WAITING_FOR_INPUT = "waiting_for_input"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})
AWAITING_INPUT_STATUSES = frozenset({WorkflowStatus.DISCOVERY, WorkflowStatus.WAITING_FOR_INPUT})


class StepType(str, Enum):
    CREATE = "create"
    DELEGATE = "delegate"
    ACTION = "action"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentConfig(BaseModel):
    """
    Definition of a worker agent to be created by a ``create`` step.

    Attributes:
        name: Human-readable agent name
        description: What the agent is for
        system_prompt: Instructions the agent runs with
        agent_type: Registry category for the agent
        capabilities: Capability tags such as "text" or "image"
    """

    model_config = ConfigDict(extra="allow")

    name: str = Field(description="Human-readable agent name")
    description: str = Field(default="", description="What the agent is for")
    system_prompt: str = Field(description="Instructions the agent runs with")
    agent_type: str | None = Field(default=None, description="Registry category for the agent")
    capabilities: list[str] | None = Field(
        default=None, description="Capability tags such as 'text' or 'image'"
    )


class Step(BaseModel):
    """
    One unit of work in a plan.

    Only the fields belonging to ``step_type`` are meaningful: ``create`` uses
    ``agent`` and ``agent_config``, ``delegate`` uses ``agent`` and ``task``,
    ``action`` uses ``action`` and ``params``.
    """

    model_config = ConfigDict(extra="allow")

    step: int = Field(description="1-based sequence number, unique within a plan")
    step_type: StepType = Field(default=StepType.DELEGATE, description="create, delegate or action")
    depends_on: list[int] = Field(
        default_factory=list, description="Steps that must complete before this one runs"
    )
    agent: str | None = Field(default=None, description="Agent slug (hint for create steps)")
    task: str | None = Field(default=None, description="Free-text task")
    agent_config: AgentConfig | None = Field(default=None, description="Agent definition")
    action: str | None = Field(default=None, description="Deterministic action name")
    params: dict[str, Any] = Field(default_factory=dict, description="Action parameters")


class Plan(BaseModel):
    goal: str = Field(description="Goal the plan was made for")
    steps: list[Step] = Field(description="Steps in execution order")
    message: str = Field(default="", description="Human-readable summary from the planner")


class JudgeVerdict(BaseModel):
    """Structured verdict emitted by a judge/evaluator step after ``RESULT:``."""

    model_config = ConfigDict(extra="allow")

    winner: Any = None
    winner_asset_url: str | None = None
    ranking: list[Any] | None = None
    reasoning_summary: str | None = None

    def lookup(self, field: str) -> Any:
        """Return a verdict field (including extra keys) or None when absent."""
        if field in type(self).model_fields:
            return getattr(self, field)
        return (self.model_extra or {}).get(field)


class StepResult(BaseModel):
    """Outcome of one step, held in memory for one execution pass."""

    success: bool
    type: StepType
    output: str = ""
    data: dict[str, Any] | None = None
    judge_result: JudgeVerdict | None = None
    agent: str | None = None
    action: str | None = None
    session_id: str | None = None


class CreatedAgent(BaseModel):
    step: int
    slug: str
    instance_slug: str
    name: str
    agent_id: str | None = None
    is_judge: bool = False


class StepOverride(BaseModel):
    """User-supplied per-step configuration, merged over action params."""

    step_number: int
    config: dict[str, Any] = Field(default_factory=dict)


class StepRecord(BaseModel):
    """Durable record of one step, keyed by (workflow_id, step_num)."""

    workflow_id: str
    step_num: int
    agent_slug: str | None = None
    task: str | None = None
    status: StepStatus
    input: Any = None
    output: str | None = None
    agent_session_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class Workflow(BaseModel):
    """
    One user goal and everything the engine knows about it.

    The engine is the only writer. Status changes go through ``transition``
    so a workflow can never leave ``completed`` or ``failed``.
    """

    id: str
    user_id: str
    goal: str
    status: WorkflowStatus = WorkflowStatus.STARTING
    plan: Plan | None = None
    current_step: int = 0
    orchestrator_session_id: str | None = None
    discovery_answers: Any = None
    pending_questions: Any = None
    created_agents: list[CreatedAgent] = Field(default_factory=list)
    step_configs: dict[int, dict[str, Any]] = Field(default_factory=dict)
    worker_sessions: dict[int, str] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: WorkflowStatus, error: str | None = None) -> None:
        """
        Move the workflow to ``status``.

        Raises:
            InvalidTransitionError: If the workflow is already terminal
        """
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Workflow {self.id} is {self.status.value}; cannot move to {status.value}"
            )
        self.status = status
        if error is not None:
            self.error = error
        if status in TERMINAL_STATUSES:
            self.completed_at = utcnow()


class AgentHandle(BaseModel):
    """What the agent registry knows about one agent."""

    id: str
    slug: str
    name: str
    description: str = ""
    system_prompt: str = ""
    agent_type: str = "utility"
    capabilities: list[str] = Field(default_factory=lambda: ["text"])
    tags: list[str] = Field(default_factory=list)
    user_id: str | None = None


# Commands returned by the planning worker. Extra keys are kept so that
# display code can show anything the planner added.


class _CommandBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: str


class PlanCommand(_CommandBase):
    type: Literal["plan"] = "plan"
    goal: str
    steps: list[Step]

    def to_plan(self) -> Plan:
        return Plan(goal=self.goal, steps=self.steps, message=self.message)


class DelegateCommand(_CommandBase):
    type: Literal["delegate"] = "delegate"
    step: int
    agent: str
    input: Any
    depends_on: list[int] = Field(default_factory=list)

    @property
    def task(self) -> str:
        if isinstance(self.input, dict):
            return str(self.input.get("task") or "Execute task")
        return str(self.input)


class CompleteCommand(_CommandBase):
    type: Literal["complete"] = "complete"
    summary: str
    result: Any = None


class ClarifyCommand(_CommandBase):
    type: Literal["clarify"] = "clarify"
    question: str


class ContinueCommand(_CommandBase):
    type: Literal["continue"] = "continue"


class DiscoveryCommand(_CommandBase):
    type: Literal["discovery"] = "discovery"
    questions: Any


class CreateAgentCommand(_CommandBase):
    type: Literal["create_agent"] = "create_agent"
    system_prompt: str
    agent_slug: str | None = None
    agent_name: str | None = None
    name: str | None = None
    description: str | None = None
    agent_type: str = "utility"
    capabilities: list[str] = Field(default_factory=lambda: ["text"])

    @property
    def display_name(self) -> str:
        return self.agent_name or self.name or "Workflow Agent"

    def to_agent_config(self) -> AgentConfig:
        return AgentConfig(
            name=self.display_name,
            description=self.description or "",
            system_prompt=self.system_prompt,
            agent_type=self.agent_type,
            capabilities=self.capabilities,
        )


Command = Annotated[
    Union[
        PlanCommand,
        DelegateCommand,
        CompleteCommand,
        ClarifyCommand,
        ContinueCommand,
        DiscoveryCommand,
        CreateAgentCommand,
    ],
    Field(discriminator="type"),
]

command_adapter: TypeAdapter[Command] = TypeAdapter(Command)
