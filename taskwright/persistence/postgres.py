"""PostgreSQL implementation of the task repository."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Sequence

import asyncpg

from ..constants import SORT_KEY_INCREMENT, TERMINAL_TASK_STATUSES, EntityType, StepStatus, TaskStatus
from .models import STEP_MUTABLE_FIELDS, TaskRecord, TransitionRecord, WorkflowStep, utcnow
from .repository import TaskRepository

_JSON_STEP_FIELDS = {"inputs", "results"}


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresTaskRepository(TaskRepository):
    """Persist orchestration state using PostgreSQL.

    Connections come from a bounded pool created on first use; each
    repository call borrows one connection for a single transaction.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            async with self._pool_lock:
                if self._pool is None:
                    pool = await asyncpg.create_pool(
                        self._dsn, min_size=self._min_size, max_size=self._max_size
                    )
                    async with pool.acquire() as conn:
                        await self._ensure_schema(conn)
                    self._pool = pool
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                namespace TEXT NOT NULL,
                version TEXT NOT NULL,
                context JSONB NOT NULL,
                status TEXT NOT NULL,
                identity_hash TEXT NOT NULL,
                bypass_steps JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS tasks_identity_hash_idx ON tasks (identity_hash)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                step_id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks (task_id),
                name TEXT NOT NULL,
                position INTEGER NOT NULL,
                dependencies JSONB NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                retry_limit INTEGER NOT NULL,
                retryable BOOLEAN NOT NULL,
                skippable BOOLEAN NOT NULL,
                inputs JSONB,
                results JSONB,
                processed BOOLEAN NOT NULL DEFAULT FALSE,
                processed_at TIMESTAMPTZ,
                last_attempted_at TIMESTAMPTZ,
                backoff_until TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS workflow_steps_task_idx ON workflow_steps (task_id, position)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS transitions (
                id BIGSERIAL PRIMARY KEY,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                from_state TEXT,
                to_state TEXT NOT NULL,
                metadata JSONB NOT NULL,
                sort_key INTEGER NOT NULL,
                most_recent BOOLEAN NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS transitions_most_recent_idx
            ON transitions (entity_type, entity_id) WHERE most_recent
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    async def _append_transition(
        conn: asyncpg.Connection,
        entity_type: EntityType,
        entity_id: str,
        task_id: str,
        from_state: Optional[str],
        to_state: str,
        metadata: dict[str, Any] | None,
    ) -> None:
        current = await conn.fetchval(
            "SELECT MAX(sort_key) FROM transitions WHERE entity_type = $1 AND entity_id = $2",
            entity_type.value,
            entity_id,
        )
        sort_key = 0 if current is None else current + SORT_KEY_INCREMENT
        await conn.execute(
            "UPDATE transitions SET most_recent = FALSE WHERE entity_type = $1 AND entity_id = $2 AND most_recent",
            entity_type.value,
            entity_id,
        )
        await conn.execute(
            """
            INSERT INTO transitions
                (entity_type, entity_id, task_id, from_state, to_state, metadata, sort_key, most_recent, created_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, TRUE, $8)
            """,
            entity_type.value,
            entity_id,
            task_id,
            from_state,
            to_state,
            json.dumps(metadata or {}, default=str),
            sort_key,
            utcnow(),
        )

    @staticmethod
    def _task_from_row(row: asyncpg.Record) -> TaskRecord:
        return TaskRecord(
            task_id=row["task_id"],
            name=row["name"],
            namespace=row["namespace"],
            version=row["version"],
            context=_load_json(row["context"]) or {},
            status=TaskStatus(row["status"]),
            identity_hash=row["identity_hash"],
            bypass_steps=_load_json(row["bypass_steps"]) or [],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> WorkflowStep:
        return WorkflowStep(
            step_id=row["step_id"],
            task_id=row["task_id"],
            name=row["name"],
            position=row["position"],
            dependencies=_load_json(row["dependencies"]) or [],
            status=StepStatus(row["status"]),
            attempts=row["attempts"],
            retry_limit=row["retry_limit"],
            retryable=row["retryable"],
            skippable=row["skippable"],
            inputs=_load_json(row["inputs"]),
            results=_load_json(row["results"]),
            processed=row["processed"],
            processed_at=row["processed_at"],
            last_attempted_at=row["last_attempted_at"],
            backoff_until=row["backoff_until"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _transition_from_row(row: asyncpg.Record) -> TransitionRecord:
        return TransitionRecord(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            task_id=row["task_id"],
            from_state=row["from_state"],
            to_state=row["to_state"],
            metadata=_load_json(row["metadata"]) or {},
            sort_key=row["sort_key"],
            most_recent=row["most_recent"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    async def create_task(
        self, task: TaskRecord, steps: Sequence[WorkflowStep]
    ) -> tuple[TaskRecord, bool]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Serializes concurrent submissions of the same identity.
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", task.identity_hash
                )
                existing = await conn.fetchrow(
                    "SELECT * FROM tasks WHERE identity_hash = $1 AND NOT (status = ANY($2::text[]))",
                    task.identity_hash,
                    [s.value for s in TERMINAL_TASK_STATUSES],
                )
                if existing is not None:
                    return self._task_from_row(existing), False

                await conn.execute(
                    """
                    INSERT INTO tasks
                        (task_id, name, namespace, version, context, status, identity_hash,
                         bypass_steps, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8::jsonb, $9, $10)
                    """,
                    task.task_id,
                    task.name,
                    task.namespace,
                    task.version,
                    json.dumps(task.context, default=str),
                    task.status.value,
                    task.identity_hash,
                    json.dumps(task.bypass_steps),
                    task.created_at,
                    task.updated_at,
                )
                await self._append_transition(
                    conn, EntityType.TASK, task.task_id, task.task_id, None, task.status.value,
                    {"initialized_by": "submission"},
                )
                for step in steps:
                    await conn.execute(
                        """
                        INSERT INTO workflow_steps
                            (step_id, task_id, name, position, dependencies, status, attempts,
                             retry_limit, retryable, skippable, processed, created_at, updated_at)
                        VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12, $13)
                        """,
                        step.step_id,
                        step.task_id,
                        step.name,
                        step.position,
                        json.dumps(step.dependencies),
                        step.status.value,
                        step.attempts,
                        step.retry_limit,
                        step.retryable,
                        step.skippable,
                        step.processed,
                        step.created_at,
                        step.updated_at,
                    )
                    await self._append_transition(
                        conn, EntityType.STEP, step.step_id, task.task_id, None, step.status.value,
                        {"initialized_by": "submission"},
                    )
        return task, True

    async def get_task(self, task_id: str) -> TaskRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM tasks WHERE task_id = $1", task_id)
        return self._task_from_row(row) if row else None

    async def list_tasks(self, status: Optional[TaskStatus] = None) -> list[TaskRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            if status is None:
                rows = await conn.fetch("SELECT * FROM tasks ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM tasks WHERE status = $1 ORDER BY created_at",
                    TaskStatus(status).value,
                )
        return [self._task_from_row(r) for r in rows]

    async def get_steps(self, task_id: str) -> list[WorkflowStep]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE task_id = $1 ORDER BY position", task_id
            )
        return [self._step_from_row(r) for r in rows]

    async def get_step(self, step_id: str) -> WorkflowStep | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM workflow_steps WHERE step_id = $1", step_id)
        return self._step_from_row(row) if row else None

    async def transition_task(
        self,
        task_id: str,
        from_state: TaskStatus,
        to_state: TaskStatus,
        metadata: dict[str, Any] | None = None,
    ) -> TaskRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE tasks SET status = $1, updated_at = $2
                    WHERE task_id = $3 AND status = $4
                    RETURNING *
                    """,
                    to_state.value,
                    utcnow(),
                    task_id,
                    from_state.value,
                )
                if row is None:
                    return None
                await self._append_transition(
                    conn, EntityType.TASK, task_id, task_id, from_state.value, to_state.value, metadata
                )
        return self._task_from_row(row)

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

        assignments = ["status = $1", "updated_at = $2"]
        params: list[Any] = [to_state.value, utcnow()]
        for key, value in changes.items():
            params.append(
                json.dumps(value, default=str)
                if key in _JSON_STEP_FIELDS and value is not None
                else value
            )
            cast = "::jsonb" if key in _JSON_STEP_FIELDS else ""
            assignments.append(f"{key} = ${len(params)}{cast}")
        params.extend([step_id, from_state.value])
        query = (
            f"UPDATE workflow_steps SET {', '.join(assignments)} "
            f"WHERE step_id = ${len(params) - 1} AND status = ${len(params)} RETURNING *"
        )

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(query, *params)
                if row is None:
                    return None
                await self._append_transition(
                    conn,
                    EntityType.STEP,
                    step_id,
                    row["task_id"],
                    from_state.value,
                    to_state.value,
                    metadata,
                )
        return self._step_from_row(row)

    async def get_transitions(
        self, entity_type: EntityType, entity_id: str
    ) -> list[TransitionRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM transitions WHERE entity_type = $1 AND entity_id = $2 ORDER BY sort_key",
                EntityType(entity_type).value,
                entity_id,
            )
        return [self._transition_from_row(r) for r in rows]

    async def get_current_transition(
        self, entity_type: EntityType, entity_id: str
    ) -> TransitionRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM transitions WHERE entity_type = $1 AND entity_id = $2 AND most_recent",
                EntityType(entity_type).value,
                entity_id,
            )
        return self._transition_from_row(row) if row else None
