"""Base scheduler backend interface and registration record."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class ScheduleTarget(str, Enum):
    FLOW = "flow"
    PIPELINE = "pipeline"


def registration_key(target: ScheduleTarget, target_id: int) -> str:
    return f"{ScheduleTarget(target).value}:{target_id}"


class ScheduleRegistration(BaseModel):
    """A trigger registered for a flow or pipeline.

    Recurring registrations carry ``interval_seconds``; one-off
    registrations fire once at ``next_run_at`` and are then removed.
    """

    target: ScheduleTarget
    target_id: int
    next_run_at: datetime
    interval: Optional[str] = None
    interval_seconds: Optional[int] = None

    @property
    def key(self) -> str:
        return registration_key(self.target, self.target_id)

    @property
    def recurring(self) -> bool:
        return bool(self.interval_seconds)

    def is_due(self, now: datetime) -> bool:
        return self.next_run_at <= now

    def advanced(self, now: datetime) -> "ScheduleRegistration":
        """Return the registration moved to its first fire time after ``now``."""
        if not self.recurring:
            raise ValueError("One-off registrations cannot be advanced")
        step = timedelta(seconds=self.interval_seconds)
        next_run_at = self.next_run_at
        while next_run_at <= now:
            next_run_at += step
        return self.model_copy(update={"next_run_at": next_run_at})


class SchedulerBackend(metaclass=abc.ABCMeta):
    """Abstract storage for schedule registrations."""

    async def connect(self) -> None:
        """Open connection to the backing store (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing store (no-op by default)."""
        pass

    @abc.abstractmethod
    async def register(self, registration: ScheduleRegistration) -> None:
        """Store a registration, replacing any with the same key."""
        raise NotImplementedError

    @abc.abstractmethod
    async def clear(self, key: str) -> bool:
        """Remove a registration. Return ``True`` when one existed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[ScheduleRegistration]:
        raise NotImplementedError

    @abc.abstractmethod
    async def list(self) -> List[ScheduleRegistration]:
        raise NotImplementedError

    @abc.abstractmethod
    async def pop_due(self, now: datetime) -> List[ScheduleRegistration]:
        """Claim every registration due at ``now``.

        One-off registrations are removed and recurring ones are moved to
        their next fire time. Each due registration is returned once even
        when several schedulers share the backend.
        """
        raise NotImplementedError
