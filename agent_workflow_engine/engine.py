"""
WorkflowEngine - plans and executes multi-step agent workflows.

A goal goes to a planning worker, whose reply is parsed into a command. The
command either suspends the workflow for user input, completes it, or yields
a plan. Approved plans are executed deterministically: steps run strictly in
plan order, each one dispatched by ``step_type`` to agent creation, worker
delegation or a fixed action, with earlier results folded into later steps.
"""

import inspect
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from .actions import ActionDispatcher, asset_url
from .client import WorkerClient, WorkerResponse
from .config import EngineSettings
from .errors import (
    AgentNotFoundError,
    DependencyError,
    ParseError,
    StepFailedError,
    StoreError,
    WorkerTimeoutError,
    WorkflowBusyError,
    WorkflowError,
    WorkflowNotFoundError,
)
from .judge import TASK_RESULT_REQUIREMENT, is_judge_or_evaluator, parse_judge_result, with_result_requirement
from .models import (
    AWAITING_INPUT_STATUSES,
    ClarifyCommand,
    Command,
    CompleteCommand,
    CreateAgentCommand,
    CreatedAgent,
    DelegateCommand,
    DiscoveryCommand,
    Plan,
    PlanCommand,
    Step,
    StepOverride,
    StepRecord,
    StepResult,
    StepStatus,
    StepType,
    Workflow,
    WorkflowStatus,
    utcnow,
)
from .parser import parse_orchestrator_output
from .prompts import load_planner_prompt, render_planner_prompt
from .registry import AgentRegistry
from .store import WorkflowStore
from .templates import TemplateResolver, resolve_params
from .tooling import ToolProfile

logger = logging.getLogger(__name__)

ProgressListener = Callable[[str, dict[str, Any]], Awaitable[None] | None]

CANCELLED_MESSAGE = "Workflow cancelled by user"
INTERRUPTED_MESSAGE = "Workflow interrupted by server restart. Manual restart required."
TIMEOUT_USER_MESSAGE = "This is taking too long. Please try again in a moment."
JSON_REMINDER = "\n\nREMINDER: You MUST respond with valid JSON only. No plain text."

PARSE_RETRY_MESSAGE = """Your previous response could not be used. The error was:

"{error}"

Please output the COMPLETE valid JSON response again. Remember:
- Must be valid JSON with proper escaping
- Do not truncate or abbreviate
- Ensure all strings are properly closed
- Use the exact same command structure you intended"""


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "agent"


def build_task_message(
    goal: str, task: str, context: str = "", role: str | None = None, judge: bool = False
) -> str:
    """
    Message sent to a worker for a delegate step.

    Workers always see the original goal and the output of the steps they
    depend on, not just their own instruction.
    """
    message = ""
    if role:
        message += f"=== YOUR ROLE ===\n{role}\n\n"
    message += f"=== ORIGINAL USER REQUEST ===\n{goal}\n\n"
    if context:
        message += f"=== CONTEXT FROM PREVIOUS STEPS ===\n{context}\n\n"
    message += f"=== YOUR SPECIFIC TASK ===\n{task}"
    if judge:
        message += TASK_RESULT_REQUIREMENT
    return message


def format_discovery_answers(answers: Mapping[str, Any]) -> str:
    lines = "".join(f"{key}: {value}\n" for key, value in answers.items())
    return f"USER ANSWERS:\n\n{lines}\nPlease create a plan based on these requirements."


class WorkflowEngine:
    """
    Drives workflows from goal to result.

    The engine holds workflows it is working on in memory and writes every
    state change through the store, which is the source of truth for
    workflows it does not hold.

    Usage:
        engine = WorkflowEngine(settings, client, store, registry)
        started = await engine.start_workflow("user-1", "Translate 'hello' like a pirate")
        if started["status"] == "planned":
            result = await engine.execute_workflow(started["workflow_id"])

    Args:
        settings: Engine settings
        client: Worker client used for planning and delegate steps
        store: Workflow and step persistence
        registry: Agent registry
        actions: Action dispatcher (built from settings when omitted)
        on_progress: Observer called with ``(event, data)`` for progress events
        clock: Epoch clock used for ids and slugs
    """

    def __init__(
        self,
        settings: EngineSettings,
        client: WorkerClient,
        store: WorkflowStore,
        registry: AgentRegistry,
        actions: ActionDispatcher | None = None,
        on_progress: ProgressListener | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.client = client
        self.store = store
        self.registry = registry
        self.actions = actions or ActionDispatcher(settings.blob)
        self.on_progress = on_progress
        self.clock = clock
        self.planner_prompt = load_planner_prompt(settings.engine.planner_prompt_path)

        self._workflows: dict[str, Workflow] = {}
        self._running: set[str] = set()

    # Progress and persistence

    async def _emit(self, event: str, workflow: Workflow, **data: Any) -> None:
        if self.on_progress is None:
            return
        try:
            outcome = self.on_progress(event, {"workflow_id": workflow.id, **data})
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Progress listener failed on {event}: {e}")

    async def _persist(self, workflow: Workflow) -> None:
        await self.store.save_workflow(workflow)

    async def _set_status(
        self, workflow: Workflow, status: WorkflowStatus, error: str | None = None
    ) -> None:
        workflow.transition(status, error)
        await self._persist(workflow)
        await self._emit("workflow_status", workflow, status=status.value)

    async def _fail(self, workflow: Workflow, error: BaseException) -> None:
        if workflow.is_terminal:
            return
        message = str(error)
        workflow.transition(WorkflowStatus.FAILED, message)
        try:
            await self._persist(workflow)
        except StoreError as e:
            logger.error(f"Could not persist failure of workflow {workflow.id}: {e}")
        logger.error(f"Workflow {workflow.id} failed: {message}")
        await self._emit("workflow_error", workflow, error=message)

    async def _save_step(
        self,
        workflow: Workflow,
        step: Step,
        status: StepStatus,
        started_at: datetime,
        output: str | None = None,
        error: str | None = None,
        session_id: str | None = None,
    ) -> None:
        record = StepRecord(
            workflow_id=workflow.id,
            step_num=step.step,
            agent_slug=self._step_actor(step),
            task=step.task or step.action,
            status=status,
            input=self._step_input(step),
            output=output,
            agent_session_id=session_id,
            started_at=started_at,
            completed_at=None if status == StepStatus.RUNNING else utcnow(),
            error=error,
        )
        await self.store.save_step(record)

    @staticmethod
    def _step_actor(step: Step) -> str | None:
        if step.step_type == StepType.ACTION:
            return f"action:{step.action}"
        if step.step_type == StepType.CREATE and not step.agent and step.agent_config:
            return slugify(step.agent_config.name)
        return step.agent

    @staticmethod
    def _step_input(step: Step) -> Any:
        if step.step_type == StepType.ACTION:
            return step.params
        if step.step_type == StepType.CREATE:
            return {"agent_config": step.agent_config.model_dump() if step.agent_config else None}
        return {"task": step.task, "depends_on": step.depends_on}

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """
        Return a workflow, rehydrating it from the store when not in memory.

        Raises:
            WorkflowNotFoundError: If neither memory nor the store knows it
        """
        workflow = self._workflows.get(workflow_id)
        if workflow is not None:
            return workflow
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        logger.info(f"Loaded workflow from store: {workflow_id}")
        self._workflows[workflow_id] = workflow
        return workflow

    # Worker calls

    async def _invoke_with_retry(
        self, call: Callable[[], Awaitable[WorkerResponse]], label: str
    ) -> WorkerResponse:
        """Run a worker call, retrying inactivity timeouts up to ``timeout_retries`` times."""
        attempts = self.settings.engine.timeout_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except WorkerTimeoutError as e:
                if attempt >= attempts:
                    raise
                logger.warning(f"{label} timed out (attempt {attempt}/{attempts}): {e}; retrying")
        raise AssertionError("unreachable")

    async def send_to_planner(
        self, workflow: Workflow, message: str, system_prompt: str | None = None
    ) -> WorkerResponse:
        """
        Send a message to the workflow's planning session.

        The first message of a session carries the system prompt; follow-ups
        carry a reminder that only JSON is accepted.
        """
        session_id = workflow.orchestrator_session_id
        if session_id:
            full_message = f"{message}{JSON_REMINDER}"
        elif system_prompt:
            full_message = f"{system_prompt}\n\n---\n\nUser goal: {message}"
        else:
            full_message = message

        response = await self._invoke_with_retry(
            lambda: self.client.invoke(
                full_message,
                session_id,
                timeout=self.settings.worker.planner_timeout,
                user_id=workflow.user_id,
                workflow_id=workflow.id,
                track_key=f"{workflow.id}:planner",
                track_callback={"workflow_id": workflow.id, "user_id": workflow.user_id},
            ),
            label="Planner",
        )
        if response.session_id and response.session_id != workflow.orchestrator_session_id:
            workflow.orchestrator_session_id = response.session_id
            await self._persist(workflow)
        return response

    async def parse_with_retry(self, workflow: Workflow, response: WorkerResponse) -> Command:
        """
        Parse a planner reply, sending the parse error back for correction.

        Raises:
            ParseError: If the reply is still invalid after ``parse_retries`` corrections
        """
        max_retries = self.settings.engine.parse_retries
        current = response
        for attempt in range(max_retries + 1):
            parsed = parse_orchestrator_output(current.text)
            if parsed.success:
                if attempt:
                    logger.info(f"Planner reply parsed on retry {attempt}")
                return parsed.command

            if attempt < max_retries:
                logger.warning(
                    f"Planner reply invalid (attempt {attempt + 1}/{max_retries + 1}): {parsed.error}"
                )
                current = await self.send_to_planner(
                    workflow, PARSE_RETRY_MESSAGE.format(error=parsed.error)
                )

        raise ParseError(
            f"Planner returned an invalid command after {max_retries + 1} attempts: {parsed.error}",
            parsed.raw_text_preview,
        )

    async def _planner_prompt_for(self, user_id: str) -> str:
        agents = await self.registry.list_agents(user_id)
        return render_planner_prompt(self.planner_prompt, agents)

    # Workflow lifecycle

    async def start_workflow(self, user_id: str, goal: str) -> dict[str, Any]:
        """
        Plan a new goal.

        Returns:
            Dictionary with ``workflow_id`` and ``status``:
                - "needs_discovery" with ``questions``
                - "needs_clarification" with ``question``
                - "planned" with ``plan`` awaiting approval
                - "completed" with ``result`` (trivial goals and bare commands)
        """
        workflow = Workflow(
            id=f"workflow-{user_id}-{int(self.clock() * 1000)}",
            user_id=user_id,
            goal=goal,
        )
        self._workflows[workflow.id] = workflow
        await self._persist(workflow)
        logger.info(f"Starting workflow {workflow.id}: {goal[:80]}")

        try:
            system_prompt = await self._planner_prompt_for(user_id)
            await self._set_status(workflow, WorkflowStatus.PLANNING)
            await self._emit("status", workflow, phase="planning", message="Creating workflow plan...")

            response = await self.send_to_planner(workflow, goal, system_prompt=system_prompt)
            command = await self.parse_with_retry(workflow, response)
            return await self._handle_command(workflow, command)
        except Exception as e:
            await self._fail(workflow, e)
            raise

    async def _handle_command(self, workflow: Workflow, command: Command) -> dict[str, Any]:
        await self._emit("command", workflow, type=command.type, message=command.message)

        if isinstance(command, DiscoveryCommand):
            workflow.pending_questions = command.questions
            await self._set_status(workflow, WorkflowStatus.DISCOVERY)
            return {
                "workflow_id": workflow.id,
                "status": "needs_discovery",
                "questions": command.questions,
                "message": command.message,
            }

        if isinstance(command, ClarifyCommand):
            workflow.pending_questions = command.question
            await self._set_status(workflow, WorkflowStatus.WAITING_FOR_INPUT)
            return {
                "workflow_id": workflow.id,
                "status": "needs_clarification",
                "question": command.question,
                "message": command.message,
            }

        if isinstance(command, CompleteCommand):
            workflow.result = {
                "summary": command.summary,
                "message": command.message,
                "result": command.result,
            }
            await self._set_status(workflow, WorkflowStatus.COMPLETED)
            await self._emit("workflow_complete", workflow, result=workflow.result)
            return {
                "workflow_id": workflow.id,
                "status": "completed",
                "result": command.result or command.summary,
                "message": command.message,
            }

        if isinstance(command, CreateAgentCommand):
            config = command.to_agent_config()
            step = Step(
                step=1,
                step_type=StepType.CREATE,
                agent=command.agent_slug or slugify(config.name),
                task=command.message or "Create dynamic agent",
                agent_config=config,
            )
            workflow.plan = Plan(
                goal=workflow.goal, steps=[step], message="Auto-executing agent creation workflow"
            )
            return await self._execute(workflow)

        if isinstance(command, DelegateCommand):
            step = Step(
                step=1,
                step_type=StepType.DELEGATE,
                agent=command.agent,
                task=command.task,
            )
            workflow.plan = Plan(
                goal=workflow.goal, steps=[step], message="Auto-executing single-step workflow"
            )
            return await self._execute(workflow)

        if isinstance(command, PlanCommand):
            workflow.plan = command.to_plan()
            await self._set_status(workflow, WorkflowStatus.PLANNED)
            await self._emit(
                "plan",
                workflow,
                goal=command.goal,
                steps=[s.model_dump(mode="json") for s in command.steps],
                message=command.message,
            )
            return {
                "workflow_id": workflow.id,
                "status": "planned",
                "plan": workflow.plan,
                "message": command.message,
                "session_id": workflow.orchestrator_session_id,
            }

        raise WorkflowError(f"Expected a plan from the planner, got '{command.type}'")

    async def execute_workflow(
        self,
        workflow_id: str,
        step_configs: list[StepOverride | dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        """
        Execute an approved plan.

        Args:
            workflow_id: Workflow to execute
            step_configs: Per-step overrides; for action steps their keys are
                merged over the resolved params

        Returns:
            Dictionary with status, summary, outputs keyed ``step_N`` and the
            last step's output as ``message``

        Raises:
            WorkflowNotFoundError: If the workflow is unknown
            WorkflowBusyError: If an execution pass is already running for it
            StepFailedError: If a step fails (the workflow is then failed)
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.plan is None:
            raise WorkflowError("Workflow has no plan to execute")

        for item in step_configs or []:
            override = item if isinstance(item, StepOverride) else StepOverride.model_validate(item)
            workflow.step_configs[override.step_number] = override.config
        if step_configs:
            logger.info(f"Received overrides for {len(step_configs)} step(s)")

        return await self._execute(workflow)

    async def _execute(self, workflow: Workflow) -> dict[str, Any]:
        if workflow.id in self._running:
            raise WorkflowBusyError(f"Workflow {workflow.id} is already executing")

        self._running.add(workflow.id)
        try:
            await self._set_status(workflow, WorkflowStatus.EXECUTING)
            return await self.execute_plan_deterministically(workflow)
        except Exception as e:
            await self._fail(workflow, e)
            raise
        finally:
            self._running.discard(workflow.id)

    async def execute_plan_deterministically(self, workflow: Workflow) -> dict[str, Any]:
        """
        Run every step of the plan in array order.

        A step whose ``depends_on`` entries have not all completed is a hard
        failure, not a reorder. Step failures abort the workflow.
        """
        plan = workflow.plan
        if plan is None or not plan.steps:
            raise WorkflowError("Plan has no steps to execute")

        total = len(plan.steps)
        await self._emit(
            "execution_start", workflow, goal=plan.goal, total_steps=total,
            message=f"Executing {total} step(s)...",
        )

        results: dict[int, StepResult] = {}

        for step in plan.steps:
            if workflow.is_terminal:
                logger.info(f"Workflow {workflow.id} was cancelled before step {step.step}")
                return self._terminal_outcome(workflow)

            missing = [dep for dep in step.depends_on if dep not in results]
            if missing:
                raise DependencyError(step.step, missing)

            workflow.current_step = max(workflow.current_step, step.step)
            await self._persist(workflow)

            started_at = utcnow()
            await self._emit(
                "step_start",
                workflow,
                step=step.step,
                step_type=step.step_type.value,
                agent=step.agent or step.action,
                task=step.task or step.action,
                message=self._progress_message(step),
            )
            await self._save_step(workflow, step, StepStatus.RUNNING, started_at)

            if workflow.is_terminal:
                await self._save_step(
                    workflow, step, StepStatus.FAILED, started_at, error=workflow.error
                )
                return self._terminal_outcome(workflow)

            try:
                result = await self._run_step(workflow, step, results)
            except Exception as e:
                await self._save_step(workflow, step, StepStatus.FAILED, started_at, error=str(e))
                raise StepFailedError(step.step, step.agent or step.action, e) from e

            if workflow.is_terminal:
                logger.info(
                    f"Workflow {workflow.id} was cancelled; discarding result of step {step.step}"
                )
                await self._save_step(
                    workflow, step, StepStatus.FAILED, started_at, error=workflow.error
                )
                return self._terminal_outcome(workflow)

            results[step.step] = result
            await self._save_step(
                workflow,
                step,
                StepStatus.COMPLETED,
                started_at,
                output=result.output,
                session_id=result.session_id,
            )
            await self._emit(
                "step_complete",
                workflow,
                step=step.step,
                step_type=step.step_type.value,
                agent=step.agent or step.action,
                success=result.success,
                output_preview=result.output[:200],
            )

        if workflow.is_terminal:
            logger.info(f"Workflow {workflow.id} was cancelled after its last step")
            return self._terminal_outcome(workflow)

        outputs = {f"step_{num}": result.output for num, result in results.items()}
        last = results[plan.steps[-1].step]
        outcome = {
            "summary": f"Completed {total} step(s) for: {plan.goal}",
            "outputs": outputs,
            "message": last.output or "Workflow completed successfully.",
        }
        workflow.result = outcome
        await self._set_status(workflow, WorkflowStatus.COMPLETED)
        await self._emit("workflow_complete", workflow, result=outcome)
        logger.info(f"Workflow {workflow.id} completed ({total} steps)")
        return {"workflow_id": workflow.id, "status": "completed", **outcome}

    @staticmethod
    def _progress_message(step: Step) -> str:
        if step.step_type == StepType.ACTION:
            return f"Executing action: {step.action}..."
        if step.step_type == StepType.CREATE:
            return f'Creating agent "{step.agent}"...'
        return f"Delegating to {step.agent}..."

    @staticmethod
    def _terminal_outcome(workflow: Workflow) -> dict[str, Any]:
        return {
            "workflow_id": workflow.id,
            "status": workflow.status.value,
            "error": workflow.error,
        }

    async def _run_step(
        self, workflow: Workflow, step: Step, results: dict[int, StepResult]
    ) -> StepResult:
        if step.step_type == StepType.CREATE:
            return await self._execute_create_step(workflow, step)
        if step.step_type == StepType.ACTION:
            return await self._execute_action_step(workflow, step, results)
        return await self._execute_delegate_step(workflow, step, results)

    async def _execute_create_step(self, workflow: Workflow, step: Step) -> StepResult:
        config = step.agent_config
        if config is None:
            raise WorkflowError(f'Step {step.step} is a "create" step but missing agent_config')

        slug = step.agent or slugify(config.name)
        instance_slug = f"{slug}-{int(self.clock() * 1000)}"

        is_judge = is_judge_or_evaluator(config.name, config.description, config.system_prompt)
        system_prompt = config.system_prompt
        if is_judge:
            logger.info(f'Detected judge agent "{config.name}"')
            system_prompt = with_result_requirement(system_prompt)

        handle = await self.registry.create(
            slug=slug,
            name=config.name,
            description=config.description or f"Dynamic agent: {config.name}",
            system_prompt=system_prompt,
            agent_type=config.agent_type or "utility",
            capabilities=config.capabilities or ["text"],
            user_id=workflow.user_id,
        )
        workflow.created_agents.append(
            CreatedAgent(
                step=step.step,
                slug=slug,
                instance_slug=instance_slug,
                name=config.name,
                agent_id=handle.id,
                is_judge=is_judge,
            )
        )
        await self._persist(workflow)
        await self._emit(
            "agent_created",
            workflow,
            slug=slug,
            instance_slug=instance_slug,
            name=config.name,
            id=handle.id,
        )
        return StepResult(
            success=True,
            type=StepType.CREATE,
            output=f'Agent "{config.name}" ({slug}) created and ready for use.',
            agent=slug,
        )

    async def _execute_delegate_step(
        self, workflow: Workflow, step: Step, results: dict[int, StepResult]
    ) -> StepResult:
        agent = step.agent or ""
        handle = await self.registry.get(agent, workflow.user_id)
        if handle is None:
            raise AgentNotFoundError(agent)

        resolver = TemplateResolver(results)
        task = resolver.resolve_text(step.task or "")
        if resolver.unresolved:
            await self._report_unresolved(workflow, step, resolver.unresolved)

        context = "".join(
            f"\n--- Result from Step {dep} ---\n{results[dep].output}\n"
            for dep in step.depends_on
            if results[dep].output
        )
        judge = is_judge_or_evaluator(task)
        if judge:
            logger.info(f"Step {step.step} is a judge task")
        message = build_task_message(workflow.goal, task, context, handle.system_prompt, judge)
        content = await self._asset_content(message, step, results)

        response = await self._invoke_with_retry(
            lambda: self.client.invoke(
                message,
                content=content,
                profile=ToolProfile.WITH_MEDIA,
                user_id=workflow.user_id,
                workflow_id=workflow.id,
                track_key=f"{workflow.id}:step-{step.step}",
                track_callback={
                    "workflow_id": workflow.id,
                    "user_id": workflow.user_id,
                    "step": step.step,
                },
            ),
            label=f"Step {step.step} ({agent})",
        )

        if response.session_id:
            workflow.worker_sessions[step.step] = response.session_id
        await self._emit(
            "worker_complete", workflow, step=step.step, agent=agent,
            result_preview=response.text[:200],
        )
        return StepResult(
            success=True,
            type=StepType.DELEGATE,
            output=response.text,
            judge_result=parse_judge_result(response.text),
            agent=agent,
            session_id=response.session_id,
        )

    async def _asset_content(
        self, message: str, step: Step, results: dict[int, StepResult]
    ) -> list[dict[str, Any]] | None:
        """Structured content with assets from dependency action steps, or None."""
        assets = []
        for dep in step.depends_on:
            result = results.get(dep)
            if result is None or result.type != StepType.ACTION:
                continue
            url = asset_url(result.data)
            if url:
                assets.append(await self.actions.prepare_asset(result.action, url, dep, result.data))

        if not assets:
            return None

        images = sum(1 for a in assets if a.kind == "image")
        logger.info(
            f"Passing {len(assets)} asset(s) to {step.agent} ({images} images, {len(assets) - images} other)"
        )
        content: list[dict[str, Any]] = [{"type": "text", "text": message}]
        for asset in assets:
            content.extend(asset.blocks)
        return content

    async def _execute_action_step(
        self, workflow: Workflow, step: Step, results: dict[int, StepResult]
    ) -> StepResult:
        if not step.action:
            raise WorkflowError(f'Step {step.step} is type "action" but missing "action" field')

        await self._emit(
            "action_start", workflow, step=step.step, action=step.action,
            message=f"Executing {step.action}...",
        )

        params, unresolved = resolve_params(step.params, results)
        if unresolved:
            await self._report_unresolved(workflow, step, unresolved)

        override = workflow.step_configs.get(step.step)
        if override:
            logger.info(f"Using override for step {step.step}: {override}")
            params = {**params, **override}

        data = await self.actions.dispatch(step.action, params, workflow)
        output = json.dumps(data, indent=2)
        await self._emit(
            "action_complete", workflow, step=step.step, action=step.action,
            success=bool(data.get("success", True)), result=data,
        )
        return StepResult(
            success=True,
            type=StepType.ACTION,
            output=output,
            data=data,
            judge_result=parse_judge_result(output),
            action=step.action,
        )

    async def _report_unresolved(self, workflow: Workflow, step: Step, placeholders: list[str]) -> None:
        logger.warning(f"Step {step.step} has unresolved references: {', '.join(placeholders)}")
        await self._emit("template_unresolved", workflow, step=step.step, placeholders=placeholders)

    async def resume_workflow(self, workflow_id: str, answers: str | Mapping[str, Any]) -> dict[str, Any]:
        """
        Continue a workflow that is waiting for user input.

        ``answers`` is the reply to a clarify question, or a mapping of
        discovery question ids to answers.
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.status not in AWAITING_INPUT_STATUSES:
            raise WorkflowError(f"Workflow is not waiting for input (status: {workflow.status.value})")

        if isinstance(answers, Mapping):
            workflow.discovery_answers = dict(answers)
            message = format_discovery_answers(answers)
        else:
            workflow.discovery_answers = answers
            message = str(answers)
        workflow.pending_questions = None

        try:
            system_prompt = None
            if not workflow.orchestrator_session_id:
                system_prompt = await self._planner_prompt_for(workflow.user_id)
                message = f"{workflow.goal}\n\n{message}"
            await self._set_status(workflow, WorkflowStatus.PLANNING)
            response = await self.send_to_planner(workflow, message, system_prompt=system_prompt)
            command = await self.parse_with_retry(workflow, response)
            return await self._handle_command(workflow, command)
        except Exception as e:
            await self._fail(workflow, e)
            raise

    async def cancel_workflow(self, workflow_id: str) -> bool:
        """
        Cancel a workflow.

        An in-flight worker call is not killed; its result is discarded when
        it returns. Returns False when the workflow had already finished.
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow.is_terminal:
            return False
        workflow.transition(WorkflowStatus.FAILED, CANCELLED_MESSAGE)
        await self._persist(workflow)
        await self._emit("workflow_cancelled", workflow)
        logger.info(f"Workflow {workflow_id} cancelled")
        return True

    async def get_workflow_status(self, workflow_id: str) -> dict[str, Any] | None:
        try:
            workflow = await self.get_workflow(workflow_id)
        except WorkflowNotFoundError:
            return None
        return {
            "id": workflow.id,
            "user_id": workflow.user_id,
            "goal": workflow.goal,
            "status": workflow.status.value,
            "plan": workflow.plan,
            "current_step": workflow.current_step,
            "pending_questions": workflow.pending_questions,
            "error": workflow.error,
            "created_at": workflow.created_at,
            "completed_at": workflow.completed_at,
        }

    async def recover_interrupted_workflows(self) -> list[str]:
        """
        Fail every workflow left in ``executing`` by a previous run.

        In-flight worker sessions are not reconstructed. Errors are logged,
        never raised.
        """
        try:
            interrupted = await self.store.list_workflows(WorkflowStatus.EXECUTING)
        except StoreError as e:
            logger.error(f"Could not list interrupted workflows: {e}")
            return []

        recovered = []
        for workflow in interrupted:
            if workflow.id in self._running:
                continue
            workflow.transition(WorkflowStatus.FAILED, INTERRUPTED_MESSAGE)
            try:
                await self._persist(workflow)
            except StoreError as e:
                logger.error(f"Could not mark workflow {workflow.id} as failed: {e}")
                continue
            self._workflows[workflow.id] = workflow
            recovered.append(workflow.id)

        if recovered:
            logger.info(f"Marked {len(recovered)} interrupted workflow(s) as failed")
        return recovered

    @staticmethod
    def user_message_for(error: BaseException) -> str:
        """Text to show a user for a failed request."""
        cause = error.cause if isinstance(error, StepFailedError) else error
        if isinstance(cause, WorkerTimeoutError):
            return TIMEOUT_USER_MESSAGE
        if isinstance(error, WorkflowError):
            return str(error)
        return f"Something went wrong: {error}"
