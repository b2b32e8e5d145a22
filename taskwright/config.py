from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import DEFAULT_MAX_CONCURRENT_STEPS


class RedisConfig(BaseModel):
    """Configuration for the Redis event sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    channel_prefix: str = "taskwright"


class EventsConfig(BaseModel):
    """Lifecycle notification sink settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class BackoffConfig(BaseModel):
    """Exponential backoff applied to retryable step failures."""

    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=300.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter_ratio: float = Field(default=0.1, ge=0, le=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "BackoffConfig":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError(
                f"max_delay_seconds ({self.max_delay_seconds}) cannot be lower than "
                f"base_delay_seconds ({self.base_delay_seconds})"
            )
        return self


class ExecutionConfig(BaseModel):
    """Bounds for step dispatch and coordinator polling."""

    max_concurrent_steps: int = DEFAULT_MAX_CONCURRENT_STEPS
    poll_interval_seconds: float = 1.0
    stale_step_timeout_seconds: Optional[float] = 300.0

    @field_validator("max_concurrent_steps")
    @classmethod
    def _positive_concurrency(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"max_concurrent_steps must be positive (got: {v})")
        return v

    @field_validator("poll_interval_seconds")
    @classmethod
    def _positive_poll(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"poll_interval_seconds must be positive (got: {v})")
        return v


class TaskwrightConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    identity_strategy: str = "hash"
    events: EventsConfig = EventsConfig()
    backoff: BackoffConfig = BackoffConfig()
    execution: ExecutionConfig = ExecutionConfig()


def load_config(path: Optional[str] = None) -> TaskwrightConfig:
    """Build the runtime settings for dispatchers and coordinators.

    Settings are read from ``path``, else ``TASKWRIGHT_CONFIG``, else
    ``taskwright.yaml`` in the working directory; a missing file means all
    defaults. ``TASKWRIGHT_DATABASE_URL`` (or ``DATABASE_URL``),
    ``TASKWRIGHT_EVENTS`` and ``TASKWRIGHT_LOG_LEVEL`` then override the
    matching settings from the file.
    """

    config_path = path or os.getenv("TASKWRIGHT_CONFIG", "taskwright.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = TaskwrightConfig(**data)
    else:
        config = TaskwrightConfig()

    env_db_url = os.getenv("TASKWRIGHT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_events = os.getenv("TASKWRIGHT_EVENTS")
    if env_events:
        config.events = config.events.model_copy(update={"backend": env_events.lower()})
    env_level = os.getenv("TASKWRIGHT_LOG_LEVEL")
    if env_level:
        config.log_level = env_level.upper()
    return config
