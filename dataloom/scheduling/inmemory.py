"""In-memory scheduler backend for tests and single-process use."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from .base import ScheduleRegistration, SchedulerBackend


class InMemorySchedulerBackend(SchedulerBackend):
    """Keep registrations in a dict guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._registrations: Dict[str, ScheduleRegistration] = {}
        self._lock = asyncio.Lock()

    async def register(self, registration: ScheduleRegistration) -> None:
        async with self._lock:
            self._registrations[registration.key] = registration

    async def clear(self, key: str) -> bool:
        async with self._lock:
            return self._registrations.pop(key, None) is not None

    async def get(self, key: str) -> Optional[ScheduleRegistration]:
        return self._registrations.get(key)

    async def list(self) -> List[ScheduleRegistration]:
        return sorted(self._registrations.values(), key=lambda r: r.next_run_at)

    async def pop_due(self, now: datetime) -> List[ScheduleRegistration]:
        due = []
        async with self._lock:
            for key, registration in list(self._registrations.items()):
                if not registration.is_due(now):
                    continue
                due.append(registration)
                if registration.recurring:
                    self._registrations[key] = registration.advanced(now)
                else:
                    del self._registrations[key]
        return sorted(due, key=lambda r: r.next_run_at)
