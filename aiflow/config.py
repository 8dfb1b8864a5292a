from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF,
    DEFAULT_CONTINUE_DELAY,
    DEFAULT_FINALIZE_DELAY,
    DEFAULT_FLOW_MAX_RETRIES,
    DEFAULT_JOB_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_VISIBILITY_TIMEOUT,
    FLOW_QUEUE,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    poll_interval: float = 0.2
    visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    queue: str = FLOW_QUEUE
    redis: RedisConfig = RedisConfig()


class JobConfig(BaseModel):
    """Retry, timeout and scheduling policy of the flow driver job."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout: float = DEFAULT_JOB_TIMEOUT
    backoff: float = DEFAULT_BACKOFF
    backoff_jitter: float = 0.0
    exponential_backoff: bool = False
    continue_delay: float = DEFAULT_CONTINUE_DELAY
    finalize_delay: float = DEFAULT_FINALIZE_DELAY


class FlowConfig(BaseModel):
    """Defaults applied to newly created flows."""

    max_retries: int = DEFAULT_FLOW_MAX_RETRIES


class AiflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    job: JobConfig = JobConfig()
    flow: FlowConfig = FlowConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> AiflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AIFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AIFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AiflowConfig(**data)
    else:
        config = AiflowConfig()

    env_db_url = os.getenv("AIFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
