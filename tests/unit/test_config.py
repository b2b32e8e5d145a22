"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from taskwright.config import BackoffConfig, ExecutionConfig, load_config
from taskwright.events import get_event_sink
from taskwright.events.redis import RedisEventSink
from taskwright.persistence import InMemoryTaskRepository, SQLiteTaskRepository, get_repository


def test_defaults_without_config_file():
    config = load_config()
    assert config.database_url is None
    assert config.execution.max_concurrent_steps == 3
    assert config.backoff.base_delay_seconds == 1.0
    assert config.backoff.max_delay_seconds == 300.0
    assert config.identity_strategy == "hash"


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
log_level: debug
events:
  backend: redis
  redis:
    host: testhost
    port: 1234
execution:
  max_concurrent_steps: 5
  poll_interval_seconds: 0.5
backoff:
  base_delay_seconds: 2
  max_delay_seconds: 60
"""
    )
    monkeypatch.setenv("TASKWRIGHT_CONFIG", str(config_path))

    config = load_config()
    assert config.events.backend == "redis"
    assert config.events.redis.host == "testhost"
    assert config.events.redis.port == 1234
    assert config.execution.max_concurrent_steps == 5
    assert config.backoff.max_delay_seconds == 60


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("TASKWRIGHT_DATABASE_URL", f"sqlite://{tmp_path / 'tw.db'}")
    monkeypatch.setenv("TASKWRIGHT_EVENTS", "REDIS")
    monkeypatch.setenv("TASKWRIGHT_LOG_LEVEL", "warning")

    config = load_config()
    assert config.database_url.endswith("tw.db")
    assert config.events.backend == "redis"
    assert config.log_level == "WARNING"


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        ExecutionConfig(max_concurrent_steps=0)
    with pytest.raises(ValidationError):
        ExecutionConfig(poll_interval_seconds=0)
    with pytest.raises(ValidationError):
        BackoffConfig(base_delay_seconds=10, max_delay_seconds=5)
    with pytest.raises(ValidationError):
        BackoffConfig(jitter_ratio=1.5)


def test_get_event_sink_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
events:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("TASKWRIGHT_CONFIG", str(config_path))

    sink = get_event_sink()
    assert isinstance(sink, RedisEventSink)
    assert sink.host == "confighost"
    assert sink.port == 6380


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryTaskRepository)
    # cached until a URL or config is given
    assert get_repository() is get_repository()

    repo = get_repository(f"sqlite://{tmp_path / 'tw.db'}")
    assert isinstance(repo, SQLiteTaskRepository)
    repo.close()

    with pytest.raises(ValueError):
        get_repository("mysql://nope")
