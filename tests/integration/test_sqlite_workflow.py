"""A full workflow persisted to SQLite and read back from a fresh connection."""

import pytest

from fixtures.handlers import FlakyHandler
from taskwright.constants import EntityType, StepStatus, TaskStatus
from taskwright.contracts import StepTemplate, TaskTemplate
from taskwright.coordinator import Coordinator
from taskwright.dispatch import TaskDispatcher
from taskwright.persistence import SQLiteTaskRepository


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "workflow.db"


def _template(flaky):
    return TaskTemplate(
        name="pricing",
        namespace="billing",
        version="1.0.0",
        step_templates=[
            StepTemplate(name="double", handler="fixtures.handlers:double_value"),
            StepTemplate(name="increment", depends_on_steps=["double"], handler="fixtures.handlers:add_one"),
            StepTemplate(name="publish", depends_on_steps=["increment"], handler=flaky),
        ],
    )


@pytest.mark.asyncio
async def test_workflow_state_survives_reopen(db_path, registry, sink, fast_config):
    flaky = FlakyHandler(failures=1)
    registry.register(_template(flaky))

    repository = SQLiteTaskRepository(db_path)
    try:
        task = await TaskDispatcher(repository, registry, sink).submit(
            "pricing", namespace="billing", context={"value": 5}
        )
        coordinator = Coordinator(
            repository=repository, registry=registry, sink=sink, config=fast_config
        )
        final = await coordinator.run(task.task_id)
        assert final.status == TaskStatus.COMPLETE
    finally:
        repository.close()

    reopened = SQLiteTaskRepository(db_path)
    try:
        stored = await reopened.get_task(task.task_id)
        assert stored.status == TaskStatus.COMPLETE
        assert stored.context == {"value": 5}
        assert stored.version == "1.0.0"

        steps = {s.name: s for s in await reopened.get_steps(task.task_id)}
        assert steps["double"].results == {"value": 10}
        assert steps["increment"].inputs == {"double": {"value": 10}}
        assert steps["increment"].results == {"value": 11}
        assert steps["publish"].status == StepStatus.COMPLETE
        assert steps["publish"].attempts == 2
        assert steps["publish"].processed_at is not None
        assert steps["publish"].processed_at.tzinfo is not None

        history = await reopened.get_transitions(EntityType.STEP, steps["publish"].step_id)
        assert [t.sort_key for t in history] == sorted(t.sort_key for t in history)
        assert [t.most_recent for t in history] == [False] * (len(history) - 1) + [True]
        assert [(t.from_state, t.to_state) for t in history] == [
            (None, "pending"),
            ("pending", "in_progress"),
            ("in_progress", "error"),
            ("error", "pending"),
            ("pending", "in_progress"),
            ("in_progress", "complete"),
        ]
        current = await reopened.get_current_transition(EntityType.STEP, steps["publish"].step_id)
        assert current.to_state == "complete"

        listed = await reopened.list_tasks(TaskStatus.COMPLETE)
        assert [t.task_id for t in listed] == [task.task_id]
    finally:
        reopened.close()
