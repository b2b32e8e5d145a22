"""SQLite implementation of the task repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence

from ..constants import SORT_KEY_INCREMENT, TERMINAL_TASK_STATUSES, EntityType, StepStatus, TaskStatus
from .models import STEP_MUTABLE_FIELDS, TaskRecord, TransitionRecord, WorkflowStep, utcnow
from .repository import TaskRepository

_JSON_STEP_FIELDS = {"inputs", "results"}
_TIME_STEP_FIELDS = {"processed_at", "last_attempted_at", "backoff_until"}


def _dump_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _load_json(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteTaskRepository(TaskRepository):
    """Persist orchestration state using SQLite.

    All statements run on one connection guarded by a lock; each repository
    call is a single transaction executed in a worker thread.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                namespace TEXT NOT NULL,
                version TEXT NOT NULL,
                context TEXT NOT NULL,
                status TEXT NOT NULL,
                identity_hash TEXT NOT NULL,
                bypass_steps TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS tasks_identity_hash_idx ON tasks (identity_hash)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                step_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks (task_id),
                name TEXT NOT NULL,
                position INTEGER NOT NULL,
                dependencies TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                retry_limit INTEGER NOT NULL,
                retryable INTEGER NOT NULL,
                skippable INTEGER NOT NULL,
                inputs TEXT,
                results TEXT,
                processed INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT,
                last_attempted_at TEXT,
                backoff_until TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS workflow_steps_task_idx ON workflow_steps (task_id, position)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transitions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                from_state TEXT,
                to_state TEXT NOT NULL,
                metadata TEXT NOT NULL,
                sort_key INTEGER NOT NULL,
                most_recent INTEGER NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS transitions_most_recent_idx
            ON transitions (entity_type, entity_id) WHERE most_recent = 1
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, fn, *args: Any) -> Any:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                result = fn(cur, *args)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")
            return result

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _append_transition(
        cur: sqlite3.Cursor,
        entity_type: EntityType,
        entity_id: str,
        task_id: str,
        from_state: Optional[str],
        to_state: str,
        metadata: dict[str, Any] | None,
    ) -> None:
        cur.execute(
            "SELECT MAX(sort_key) FROM transitions WHERE entity_type = ? AND entity_id = ?",
            (entity_type.value, entity_id),
        )
        current = cur.fetchone()[0]
        sort_key = 0 if current is None else current + SORT_KEY_INCREMENT
        cur.execute(
            "UPDATE transitions SET most_recent = 0 WHERE entity_type = ? AND entity_id = ? AND most_recent = 1",
            (entity_type.value, entity_id),
        )
        cur.execute(
            """
            INSERT INTO transitions
                (entity_type, entity_id, task_id, from_state, to_state, metadata, sort_key, most_recent, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (
                entity_type.value,
                entity_id,
                task_id,
                from_state,
                to_state,
                json.dumps(metadata or {}, default=str),
                sort_key,
                utcnow().isoformat(),
            ),
        )

    @staticmethod
    def _task_from_row(row: sqlite3.Row) -> TaskRecord:
        return TaskRecord(
            task_id=row["task_id"],
            name=row["name"],
            namespace=row["namespace"],
            version=row["version"],
            context=json.loads(row["context"]),
            status=TaskStatus(row["status"]),
            identity_hash=row["identity_hash"],
            bypass_steps=json.loads(row["bypass_steps"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> WorkflowStep:
        return WorkflowStep(
            step_id=row["step_id"],
            task_id=row["task_id"],
            name=row["name"],
            position=row["position"],
            dependencies=json.loads(row["dependencies"]),
            status=StepStatus(row["status"]),
            attempts=row["attempts"],
            retry_limit=row["retry_limit"],
            retryable=bool(row["retryable"]),
            skippable=bool(row["skippable"]),
            inputs=_load_json(row["inputs"]),
            results=_load_json(row["results"]),
            processed=bool(row["processed"]),
            processed_at=_load_time(row["processed_at"]),
            last_attempted_at=_load_time(row["last_attempted_at"]),
            backoff_until=_load_time(row["backoff_until"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _transition_from_row(row: sqlite3.Row) -> TransitionRecord:
        return TransitionRecord(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            task_id=row["task_id"],
            from_state=row["from_state"],
            to_state=row["to_state"],
            metadata=json.loads(row["metadata"]),
            sort_key=row["sort_key"],
            most_recent=bool(row["most_recent"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Transactional bodies
    def _create_task(
        self, cur: sqlite3.Cursor, task: TaskRecord, steps: Sequence[WorkflowStep]
    ) -> tuple[TaskRecord, bool]:
        terminal = [s.value for s in TERMINAL_TASK_STATUSES]
        cur.execute(
            f"SELECT * FROM tasks WHERE identity_hash = ? AND status NOT IN ({', '.join('?' * len(terminal))})",
            (task.identity_hash, *terminal),
        )
        existing = cur.fetchone()
        if existing is not None:
            return self._task_from_row(existing), False

        cur.execute(
            """
            INSERT INTO tasks
                (task_id, name, namespace, version, context, status, identity_hash, bypass_steps, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.task_id,
                task.name,
                task.namespace,
                task.version,
                json.dumps(task.context, default=str),
                task.status.value,
                task.identity_hash,
                json.dumps(task.bypass_steps),
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
            ),
        )
        self._append_transition(
            cur, EntityType.TASK, task.task_id, task.task_id, None, task.status.value,
            {"initialized_by": "submission"},
        )
        for step in steps:
            cur.execute(
                """
                INSERT INTO workflow_steps
                    (step_id, task_id, name, position, dependencies, status, attempts, retry_limit,
                     retryable, skippable, inputs, results, processed, processed_at,
                     last_attempted_at, backoff_until, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step.step_id,
                    step.task_id,
                    step.name,
                    step.position,
                    json.dumps(step.dependencies),
                    step.status.value,
                    step.attempts,
                    step.retry_limit,
                    int(step.retryable),
                    int(step.skippable),
                    json.dumps(step.inputs, default=str) if step.inputs is not None else None,
                    json.dumps(step.results, default=str) if step.results is not None else None,
                    int(step.processed),
                    _dump_time(step.processed_at),
                    _dump_time(step.last_attempted_at),
                    _dump_time(step.backoff_until),
                    step.created_at.isoformat(),
                    step.updated_at.isoformat(),
                ),
            )
            self._append_transition(
                cur, EntityType.STEP, step.step_id, task.task_id, None, step.status.value,
                {"initialized_by": "submission"},
            )
        return task, True

    def _transition_task(
        self,
        cur: sqlite3.Cursor,
        task_id: str,
        from_state: TaskStatus,
        to_state: TaskStatus,
        metadata: dict[str, Any] | None,
    ) -> TaskRecord | None:
        cur.execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE task_id = ? AND status = ?",
            (to_state.value, utcnow().isoformat(), task_id, from_state.value),
        )
        if cur.rowcount != 1:
            return None
        self._append_transition(
            cur, EntityType.TASK, task_id, task_id, from_state.value, to_state.value, metadata
        )
        cur.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
        return self._task_from_row(cur.fetchone())

    def _transition_step(
        self,
        cur: sqlite3.Cursor,
        step_id: str,
        from_state: StepStatus,
        to_state: StepStatus,
        metadata: dict[str, Any] | None,
        changes: dict[str, Any],
    ) -> WorkflowStep | None:
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [to_state.value, utcnow().isoformat()]
        for key, value in changes.items():
            assignments.append(f"{key} = ?")
            if key in _JSON_STEP_FIELDS:
                params.append(json.dumps(value, default=str) if value is not None else None)
            elif key in _TIME_STEP_FIELDS:
                params.append(_dump_time(value))
            elif isinstance(value, bool):
                params.append(int(value))
            else:
                params.append(value)
        cur.execute(
            f"UPDATE workflow_steps SET {', '.join(assignments)} WHERE step_id = ? AND status = ?",
            (*params, step_id, from_state.value),
        )
        if cur.rowcount != 1:
            return None
        cur.execute("SELECT * FROM workflow_steps WHERE step_id = ?", (step_id,))
        step = self._step_from_row(cur.fetchone())
        self._append_transition(
            cur, EntityType.STEP, step_id, step.task_id, from_state.value, to_state.value, metadata
        )
        return step

    # ------------------------------------------------------------------
    # Repository API
    async def create_task(
        self, task: TaskRecord, steps: Sequence[WorkflowStep]
    ) -> tuple[TaskRecord, bool]:
        return await asyncio.to_thread(self._transaction, self._create_task, task, steps)

    async def get_task(self, task_id: str) -> TaskRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM tasks WHERE task_id = ?", task_id
        )
        return self._task_from_row(row) if row else None

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> list[TaskRecord]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM tasks ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM tasks WHERE status = ? ORDER BY created_at",
                TaskStatus(status).value,
            )
        return [self._task_from_row(r) for r in rows]

    async def get_steps(self, task_id: str) -> list[WorkflowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_steps WHERE task_id = ? ORDER BY position",
            task_id,
        )
        return [self._step_from_row(r) for r in rows]

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_steps WHERE step_id = ?", step_id
        )
        return self._step_from_row(row) if row else None

    async def transition_task(
        self,
        task_id: str,
        from_state: TaskStatus,
        to_state: TaskStatus,
        metadata: dict[str, Any] | None = None,
    ) -> TaskRecord | None:
        return await asyncio.to_thread(
            self._transaction, self._transition_task, task_id, from_state, to_state, metadata
        )

    async def transition_step(
        self,
        step_id: str,
        from_state: StepStatus,
        to_state: StepStatus,
        metadata: dict[str, Any] | None = None,
        changes: dict[str, Any] | None = None,
    ) -> WorkflowStep | None:
        changes = changes or {}
        unknown = set(changes) - STEP_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update step fields: {sorted(unknown)}")
        return await asyncio.to_thread(
            self._transaction,
            self._transition_step,
            step_id,
            from_state,
            to_state,
            metadata,
            changes,
        )

    async def get_transitions(
        self, entity_type: EntityType, entity_id: str
    ) -> list[TransitionRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM transitions WHERE entity_type = ? AND entity_id = ? ORDER BY sort_key",
            EntityType(entity_type).value,
            entity_id,
        )
        return [self._transition_from_row(r) for r in rows]

    async def get_current_transition(
        self, entity_type: EntityType, entity_id: str
    ) -> TransitionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM transitions WHERE entity_type = ? AND entity_id = ? AND most_recent = 1",
            EntityType(entity_type).value,
            entity_id,
        )
        return self._transition_from_row(row) if row else None

    def close(self) -> None:
        self._conn.close()
