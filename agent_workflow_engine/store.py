"""
Workflow and step persistence.

The engine writes through a ``WorkflowStore`` after every state change and
reads from it to rehydrate workflows it does not hold in memory. Two
implementations are provided: a dict-backed store for tests and embedding,
and a SQLite store for durable single-host deployments.
"""

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path

from .errors import StoreError
from .models import StepRecord, Workflow, WorkflowStatus

logger = logging.getLogger(__name__)


class WorkflowStore(ABC):
    """Upsert/read access to workflow and step records."""

    @abstractmethod
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace the workflow record."""

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Load a workflow; None when unknown."""

    @abstractmethod
    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        """All workflows, optionally only those in ``status``."""

    @abstractmethod
    async def save_step(self, record: StepRecord) -> None:
        """Insert or replace the step record keyed by (workflow_id, step_num)."""

    @abstractmethod
    async def list_steps(self, workflow_id: str) -> list[StepRecord]:
        """Step records of one workflow ordered by step number."""


class InMemoryWorkflowStore(WorkflowStore):
    """Store kept in dicts. Records are copied on the way in and out."""

    def __init__(self):
        self.workflows: dict[str, Workflow] = {}
        self.steps: dict[tuple[str, int], StepRecord] = {}

    async def save_workflow(self, workflow: Workflow) -> None:
        self.workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        stored = self.workflows.get(workflow_id)
        return stored.model_copy(deep=True) if stored else None

    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        return [
            w.model_copy(deep=True)
            for w in self.workflows.values()
            if status is None or w.status == status
        ]

    async def save_step(self, record: StepRecord) -> None:
        self.steps[(record.workflow_id, record.step_num)] = record.model_copy(deep=True)

    async def list_steps(self, workflow_id: str) -> list[StepRecord]:
        records = [r for (wid, _), r in self.steps.items() if wid == workflow_id]
        return sorted((r.model_copy(deep=True) for r in records), key=lambda r: r.step_num)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    goal TEXT NOT NULL,
    status TEXT NOT NULL,
    plan TEXT,
    current_step INTEGER NOT NULL DEFAULT 0,
    orchestrator_session_id TEXT,
    discovery_answers TEXT,
    error TEXT,
    created_at TEXT,
    completed_at TEXT,
    state TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows(status);
CREATE TABLE IF NOT EXISTS workflow_steps (
    workflow_id TEXT NOT NULL,
    step_num INTEGER NOT NULL,
    agent_slug TEXT,
    task TEXT,
    status TEXT NOT NULL,
    input TEXT,
    output TEXT,
    agent_session_id TEXT,
    started_at TEXT,
    completed_at TEXT,
    error TEXT,
    PRIMARY KEY (workflow_id, step_num)
);
"""

_UPSERT_WORKFLOW = """
INSERT INTO workflows (
    id, user_id, goal, status, plan, current_step, orchestrator_session_id,
    discovery_answers, error, created_at, completed_at, state
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    status = excluded.status,
    plan = excluded.plan,
    current_step = excluded.current_step,
    orchestrator_session_id = excluded.orchestrator_session_id,
    discovery_answers = excluded.discovery_answers,
    error = excluded.error,
    completed_at = excluded.completed_at,
    state = excluded.state
"""

_UPSERT_STEP = """
INSERT INTO workflow_steps (
    workflow_id, step_num, agent_slug, task, status, input, output,
    agent_session_id, started_at, completed_at, error
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(workflow_id, step_num) DO UPDATE SET
    agent_slug = excluded.agent_slug,
    task = excluded.task,
    status = excluded.status,
    input = excluded.input,
    output = excluded.output,
    agent_session_id = excluded.agent_session_id,
    started_at = COALESCE(excluded.started_at, workflow_steps.started_at),
    completed_at = excluded.completed_at,
    error = excluded.error
"""


def _isoformat(value) -> str | None:
    return value.isoformat() if value else None


class SqliteWorkflowStore(WorkflowStore):
    """
    SQLite-backed store.

    Each call opens its own connection in a worker thread, so one store can
    be shared by concurrently running workflows.

    Args:
        db_path: Database file (created with its tables on first use)
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._initialized = False

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5)
        conn.execute("PRAGMA busy_timeout=3000")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        if self._initialized:
            return
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._conn()) as conn, conn:
            conn.executescript(_SCHEMA)
        self._initialized = True

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.error(f"Workflow store error: {e}", exc_info=True)
            raise StoreError(str(e)) from e

    def _save_workflow(self, workflow: Workflow) -> None:
        self._init_db()
        values = (
            workflow.id,
            workflow.user_id,
            workflow.goal,
            workflow.status.value,
            workflow.plan.model_dump_json() if workflow.plan else None,
            workflow.current_step,
            workflow.orchestrator_session_id,
            json.dumps(workflow.discovery_answers) if workflow.discovery_answers is not None else None,
            workflow.error,
            _isoformat(workflow.created_at),
            _isoformat(workflow.completed_at),
            workflow.model_dump_json(),
        )
        with closing(self._conn()) as conn, conn:
            conn.execute(_UPSERT_WORKFLOW, values)

    def _get_workflow(self, workflow_id: str) -> Workflow | None:
        self._init_db()
        with closing(self._conn()) as conn:
            row = conn.execute("SELECT state FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
        return Workflow.model_validate_json(row["state"]) if row else None

    def _list_workflows(self, status: WorkflowStatus | None) -> list[Workflow]:
        self._init_db()
        with closing(self._conn()) as conn:
            if status is None:
                rows = conn.execute("SELECT state FROM workflows ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT state FROM workflows WHERE status = ? ORDER BY created_at",
                    (status.value,),
                ).fetchall()
        return [Workflow.model_validate_json(row["state"]) for row in rows]

    def _save_step(self, record: StepRecord) -> None:
        self._init_db()
        values = (
            record.workflow_id,
            record.step_num,
            record.agent_slug,
            record.task,
            record.status.value,
            json.dumps(record.input, default=str) if record.input is not None else None,
            record.output,
            record.agent_session_id,
            _isoformat(record.started_at),
            _isoformat(record.completed_at),
            record.error,
        )
        with closing(self._conn()) as conn, conn:
            conn.execute(_UPSERT_STEP, values)

    def _list_steps(self, workflow_id: str) -> list[StepRecord]:
        self._init_db()
        with closing(self._conn()) as conn:
            rows = conn.execute(
                "SELECT * FROM workflow_steps WHERE workflow_id = ? ORDER BY step_num",
                (workflow_id,),
            ).fetchall()
        records = []
        for row in rows:
            data = dict(row)
            if data["input"] is not None:
                data["input"] = json.loads(data["input"])
            records.append(StepRecord.model_validate(data))
        return records

    async def save_workflow(self, workflow: Workflow) -> None:
        await self._run(self._save_workflow, workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._run(self._get_workflow, workflow_id)

    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        return await self._run(self._list_workflows, status)

    async def save_step(self, record: StepRecord) -> None:
        await self._run(self._save_step, record)

    async def list_steps(self, workflow_id: str) -> list[StepRecord]:
        return await self._run(self._list_steps, workflow_id)
