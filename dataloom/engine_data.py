"""Job-scoped engine data side-channel."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping

from .persistence import Repository

logger = logging.getLogger(__name__)

SOURCE_URL = "source_url"
IMAGE_URL = "image_url"


class EngineDataStore:
    """Read and write the engine data of running jobs.

    Writes are only performed by fetch steps. Everything else receives a
    snapshot through :meth:`snapshot`.
    """

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def snapshot(self, job_id: int) -> Dict[str, Any]:
        """Return a copy of the job's engine data."""
        return await self._repository.get_engine_data(job_id)

    async def store(self, job_id: int, values: Mapping[str, Any]) -> None:
        """Merge ``values`` into the job's engine data, ignoring ``None`` values."""
        clean = {k: v for k, v in values.items() if v is not None}
        if not clean:
            return
        await self._repository.merge_engine_data(job_id, clean)
        logger.debug(f"Stored engine data keys {sorted(clean)} for job {job_id}")

    async def discard(self, job_id: int) -> None:
        await self._repository.delete_engine_data(job_id)
