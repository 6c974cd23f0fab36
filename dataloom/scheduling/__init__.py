"""Scheduler backend factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DataloomConfig, load_config
from .base import ScheduleRegistration, SchedulerBackend, ScheduleTarget
from .inmemory import InMemorySchedulerBackend
from .scheduler import MaintenanceReport, Scheduler


def get_scheduler_backend(
    backend: Optional[str] = None, config: Optional[DataloomConfig] = None
) -> SchedulerBackend:
    """Factory function to get the configured scheduler backend."""

    config = config or load_config()
    backend = (
        backend or os.getenv("DATALOOM_SCHEDULER") or config.scheduler.backend
    ).lower()

    if backend == "inmemory":
        return InMemorySchedulerBackend()
    elif backend == "redis":
        from .redis import RedisSchedulerBackend

        redis_conf = config.scheduler.redis
        return RedisSchedulerBackend(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported scheduler backend: {backend}")


__all__ = [
    "InMemorySchedulerBackend",
    "MaintenanceReport",
    "ScheduleRegistration",
    "ScheduleTarget",
    "Scheduler",
    "SchedulerBackend",
    "get_scheduler_backend",
]
