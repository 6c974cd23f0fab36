"""Tracks which source items each flow step has already processed."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from .persistence import Repository

logger = logging.getLogger(__name__)


class ClearScope(str, Enum):
    PIPELINE = "pipeline"
    FLOW = "flow"


class DeduplicationTracker:
    """Records processed source items per flow step.

    Marking is idempotent and relies on the repository's atomic insert, so
    two jobs racing on the same item leave a single record.
    """

    def __init__(self, repository: Repository) -> None:
        self._repository = repository

    async def has_processed(self, flow_step_id: str, item_identifier: str) -> bool:
        return await self._repository.has_processed_item(
            flow_step_id, str(item_identifier)
        )

    async def mark_processed(
        self,
        flow_step_id: str,
        source_type: str,
        item_identifier: str,
        job_id: Optional[int],
    ) -> bool:
        """Record an item as processed.

        Returns:
            ``True`` when a new record was written, ``False`` when the item
            was already recorded.
        """
        created = await self._repository.add_processed_item(
            flow_step_id, source_type, str(item_identifier), job_id
        )
        if not created:
            logger.debug(
                f"Item {item_identifier} already recorded for flow step {flow_step_id}"
            )
        return created

    async def identifiers_for_job(self, flow_step_id: str, job_id: int) -> set[str]:
        """Identifiers a job has already marked for a flow step."""
        items = await self._repository.list_processed_items(
            flow_step_id=flow_step_id, job_id=job_id
        )
        return {item.item_identifier for item in items}

    async def clear(self, scope: ClearScope | str, target_id: int) -> int:
        """Forget processed items for every step of a flow or pipeline.

        Jobs and data packets already produced are left untouched.
        """
        scope = ClearScope(scope)
        if scope is ClearScope.FLOW:
            deleted = await self._repository.delete_processed_items(flow_id=target_id)
        else:
            deleted = 0
            for flow in await self._repository.list_flows(pipeline_id=target_id):
                deleted += await self._repository.delete_processed_items(
                    flow_id=flow.flow_id
                )
        logger.info(f"Cleared {deleted} processed items for {scope.value} {target_id}")
        return deleted

    async def delete(self, record_id: int) -> bool:
        return await self._repository.delete_processed_item(record_id)

    async def release_job(self, job_id: int) -> int:
        """Delete the records written by a job so its items can be fetched again."""
        released = await self._repository.delete_processed_items(job_id=job_id)
        if released:
            logger.info(f"Released {released} processed items of failed job {job_id}")
        return released
