"""Tests for workflow persistence."""

from pathlib import Path

import pytest

from agent_workflow_engine.models import (
    Plan,
    Step,
    StepRecord,
    StepStatus,
    StepType,
    Workflow,
    WorkflowStatus,
    utcnow,
)
from agent_workflow_engine.store import InMemoryWorkflowStore, SqliteWorkflowStore, WorkflowStore


@pytest.fixture(params=["memory", "sqlite"])
def workflow_store(request, tmp_path: Path) -> WorkflowStore:
    """Create each store implementation in turn."""
    if request.param == "memory":
        return InMemoryWorkflowStore()
    return SqliteWorkflowStore(tmp_path / "db" / "workflows.db")


def make_workflow(workflow_id: str = "wf-1", status: WorkflowStatus = WorkflowStatus.PLANNED) -> Workflow:
    plan = Plan(
        goal="Write a poem",
        steps=[Step(step=1, step_type=StepType.DELEGATE, agent="poet", task="Write")],
        message="Plan",
    )
    return Workflow(
        id=workflow_id,
        user_id="user-1",
        goal="Write a poem",
        status=status,
        plan=plan,
        step_configs={1: {"filename": "x.png"}},
        worker_sessions={1: "sess-1"},
        discovery_answers={"topic": "cats"},
    )


class TestWorkflows:
    @pytest.mark.asyncio
    async def test_round_trip(self, workflow_store: WorkflowStore):
        workflow = make_workflow()

        await workflow_store.save_workflow(workflow)
        loaded = await workflow_store.get_workflow("wf-1")

        assert loaded == workflow
        assert loaded is not workflow
        assert loaded.step_configs == {1: {"filename": "x.png"}}

    @pytest.mark.asyncio
    async def test_upsert(self, workflow_store: WorkflowStore):
        workflow = make_workflow()
        await workflow_store.save_workflow(workflow)

        workflow.transition(WorkflowStatus.FAILED, "boom")
        await workflow_store.save_workflow(workflow)

        loaded = await workflow_store.get_workflow("wf-1")
        assert loaded.status == WorkflowStatus.FAILED
        assert loaded.error == "boom"
        assert len(await workflow_store.list_workflows()) == 1

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, workflow_store: WorkflowStore):
        assert await workflow_store.get_workflow("missing") is None

    @pytest.mark.asyncio
    async def test_list_by_status(self, workflow_store: WorkflowStore):
        await workflow_store.save_workflow(make_workflow("wf-1", WorkflowStatus.EXECUTING))
        await workflow_store.save_workflow(make_workflow("wf-2", WorkflowStatus.PLANNED))

        executing = await workflow_store.list_workflows(WorkflowStatus.EXECUTING)

        assert [w.id for w in executing] == ["wf-1"]


class TestSteps:
    @pytest.mark.asyncio
    async def test_step_records(self, workflow_store: WorkflowStore):
        started = utcnow()
        running = StepRecord(
            workflow_id="wf-1",
            step_num=2,
            agent_slug="poet",
            task="Write",
            status=StepStatus.RUNNING,
            input={"task": "Write", "depends_on": [1]},
            started_at=started,
        )
        await workflow_store.save_step(running)
        await workflow_store.save_step(
            StepRecord(workflow_id="wf-1", step_num=1, status=StepStatus.COMPLETED, output="done")
        )
        await workflow_store.save_step(
            running.model_copy(update={"status": StepStatus.COMPLETED, "output": "A poem"})
        )

        records = await workflow_store.list_steps("wf-1")

        assert [r.step_num for r in records] == [1, 2]
        assert records[1].status == StepStatus.COMPLETED
        assert records[1].output == "A poem"
        assert records[1].input == {"task": "Write", "depends_on": [1]}
        assert records[1].started_at == started
        assert await workflow_store.list_steps("other") == []
