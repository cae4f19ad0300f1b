from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_ACTION_TIMEOUT_SECONDS,
    DEFAULT_AI_TIMEOUT_SECONDS,
    DEFAULT_LEASE_TTL_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_LOOP_ITERATIONS,
    DEFAULT_MAX_STEPS_PER_TURN,
    DEFAULT_MAX_SUB_WORKFLOW_DEPTH,
    DEFAULT_SWEEP_BATCH_SIZE,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    MAX_AI_TIMEOUT_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Event feed transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    topic: str = "autoflow-events"


class SchedulerConfig(BaseModel):
    sweep_interval_seconds: float = Field(default=DEFAULT_SWEEP_INTERVAL_SECONDS, gt=0)
    batch_size: int = Field(default=DEFAULT_SWEEP_BATCH_SIZE, ge=1)
    concurrency: int = Field(default=10, ge=1)
    lease_ttl_seconds: float = Field(default=DEFAULT_LEASE_TTL_SECONDS, gt=0)


class RetryConfig(BaseModel):
    """Backoff policy for transient step failures.

    The n-th retry waits ``initial_delay_seconds * backoff_base ** (n - 1)``
    seconds, capped at ``max_delay_seconds``, plus up to ``jitter`` seconds.
    """

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_base: float = Field(default=5.0, ge=1.0)
    initial_delay_seconds: float = Field(default=60.0, ge=0)
    max_delay_seconds: float = Field(default=3600.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)


class ExecutionConfig(BaseModel):
    action_timeout_seconds: float = Field(default=DEFAULT_ACTION_TIMEOUT_SECONDS, gt=0)
    ai_timeout_seconds: float = Field(
        default=DEFAULT_AI_TIMEOUT_SECONDS, gt=0, le=MAX_AI_TIMEOUT_SECONDS
    )
    max_loop_iterations: int = Field(default=DEFAULT_MAX_LOOP_ITERATIONS, ge=1)
    max_sub_workflow_depth: int = Field(default=DEFAULT_MAX_SUB_WORKFLOW_DEPTH, ge=0)
    max_steps_per_turn: int = Field(default=DEFAULT_MAX_STEPS_PER_TURN, ge=1)


class ReasoningConfig(BaseModel):
    """Model used by ``ai_agent`` steps (any pydantic-ai model string)."""

    model: str = "openai:gpt-4o-mini"
    system_prompt: str = (
        "You are an automation assistant working on CRM records. "
        "Answer concisely."
    )


class LoggingConfig(BaseModel):
    level: str = "INFO"


class EngineConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    retry: RetryConfig = RetryConfig()
    execution: ExecutionConfig = ExecutionConfig()
    reasoning: ReasoningConfig = ReasoningConfig()
    logging: LoggingConfig = LoggingConfig()
    database_url: Optional[str] = None
    records_file: Optional[str] = None


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AUTOFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AUTOFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = EngineConfig(**data)
    else:
        config = EngineConfig()

    env_db_url = os.getenv("AUTOFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
