import pytest

import taskwright.persistence as persistence
from taskwright.config import BackoffConfig, ExecutionConfig, TaskwrightConfig
from taskwright.events import InMemoryEventSink
from taskwright.persistence import InMemoryTaskRepository, SQLiteTaskRepository
from taskwright.registry import REGISTRY, TemplateRegistry

_ENV_VARS = (
    "TASKWRIGHT_CONFIG",
    "TASKWRIGHT_DATABASE_URL",
    "DATABASE_URL",
    "TASKWRIGHT_EVENTS",
    "TASKWRIGHT_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep configuration, cached repositories and the global registry per test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TASKWRIGHT_CONFIG", str(tmp_path / "missing.yaml"))
    persistence.reset_repository()
    REGISTRY.clear()
    yield
    persistence.reset_repository()
    REGISTRY.clear()


@pytest.fixture
def sink():
    return InMemoryEventSink()


@pytest.fixture
def registry():
    return TemplateRegistry()


@pytest.fixture
def fast_config():
    return TaskwrightConfig(
        backoff=BackoffConfig(
            base_delay_seconds=0.001, max_delay_seconds=0.01, jitter_ratio=0.0
        ),
        execution=ExecutionConfig(max_concurrent_steps=3, poll_interval_seconds=0.01),
    )


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryTaskRepository()
    else:
        repo = SQLiteTaskRepository(tmp_path / "taskwright.db")
        yield repo
        repo.close()
