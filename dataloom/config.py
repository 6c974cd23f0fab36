from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_TURN_LIMIT,
    JOB_RETENTION_DAYS,
    MAINTENANCE_WINDOW_HOURS,
    STUCK_JOB_TIMEOUT_HOURS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis scheduler backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class SchedulerConfig(BaseModel):
    """Scheduler backend and maintenance settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    poll_interval: float = 30.0
    stuck_job_timeout_hours: int = STUCK_JOB_TIMEOUT_HOURS
    job_retention_days: int = JOB_RETENTION_DAYS
    maintenance_window_hours: int = MAINTENANCE_WINDOW_HOURS


class AIConfig(BaseModel):
    """Defaults for AI steps."""

    model: Optional[str] = None
    turn_limit: int = Field(default=DEFAULT_TURN_LIMIT, ge=1)
    tool_max_retries: int = Field(default=2, ge=0)
    tool_retry_base_delay: float = 1.0
    global_system_prompt: str = ""
    site_context: str = ""


class DataloomConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    ai: AIConfig = AIConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    handler_defaults: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    tool_settings: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    disabled_tools: List[str] = Field(default_factory=list)
    release_items_on_failure: bool = True


def load_config(path: Optional[str] = None) -> DataloomConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DATALOOM_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DATALOOM_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DataloomConfig(**data)
    else:
        config = DataloomConfig()

    env_db_url = os.getenv("DATALOOM_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
