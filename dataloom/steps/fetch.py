"""Fetch step: pulls new source items through a fetch handler."""

from __future__ import annotations

import logging
from typing import Any, List

from pydantic import ValidationError

from ..config import DataloomConfig
from ..contracts import DataPacket, FlowStepConfig, StepPayload
from ..dedup import DeduplicationTracker
from ..engine_data import IMAGE_URL, SOURCE_URL, EngineDataStore
from ..errors import ConfigurationError, DataloomError, HandlerExecutionError
from ..handlers.base import FetchContext, FetchedItem, resolve_settings
from ..registry import HandlerRegistry
from .base import Step, StepOutcome, StepResult

logger = logging.getLogger(__name__)


def _coerce_item(item: Any, slug: str) -> FetchedItem:
    if isinstance(item, FetchedItem):
        return item
    try:
        return FetchedItem.model_validate(item)
    except ValidationError as e:
        raise HandlerExecutionError(
            f"Fetch handler '{slug}' returned an invalid item: {e}"
        ) from e


class FetchStep(Step):
    """Calls the configured fetch handler and emits one packet per new item."""

    def __init__(
        self,
        registry: HandlerRegistry,
        tracker: DeduplicationTracker,
        engine_data: EngineDataStore,
        config: DataloomConfig,
    ) -> None:
        self._registry = registry
        self._tracker = tracker
        self._engine_data = engine_data
        self._config = config

    async def execute(
        self, payload: StepPayload, flow_steps: List[FlowStepConfig]
    ) -> StepResult:
        flow_step = payload.flow_step_config
        if flow_step.handler is None:
            raise ConfigurationError(
                f"Fetch step {flow_step.flow_step_id} has no handler configured"
            )
        slug = flow_step.handler.slug
        handler = self._registry.fetch_handler(slug)
        settings = resolve_settings(
            handler.settings_model,
            flow_step.handler.settings,
            self._config.handler_defaults.get(slug),
        )
        context = FetchContext(
            job_id=payload.job_id,
            pipeline_id=payload.pipeline_id,
            flow_id=payload.flow_id,
            flow_step_id=payload.flow_step_id,
            source_type=handler.source_type,
            tracker=self._tracker,
            engine_data=self._engine_data,
        )

        try:
            raw_items = await handler.get_fetch_data(context, settings)
        except DataloomError:
            raise
        except Exception as e:
            raise HandlerExecutionError(f"Fetch handler '{slug}' failed: {e}") from e
        if not isinstance(raw_items, list):
            raise HandlerExecutionError(
                f"Fetch handler '{slug}' must return a list, got {type(raw_items).__name__}"
            )

        accepted = await self._accept_new(
            [_coerce_item(item, slug) for item in raw_items],
            payload,
            handler.source_type,
        )
        if not accepted:
            logger.info(
                f"Fetch handler '{slug}' found no new items for flow step "
                f"{payload.flow_step_id} (job {payload.job_id})"
            )
            return StepResult(outcome=StepOutcome.NO_ITEMS)

        await self._store_engine_data(payload.job_id, accepted[0])
        packets = [self._to_packet(item, slug, handler.source_type) for item in accepted]
        logger.info(
            f"Fetch handler '{slug}' returned {len(packets)} new items for job {payload.job_id}"
        )
        return StepResult(packets=packets, items_processed=len(packets))

    async def _accept_new(
        self, items: List[FetchedItem], payload: StepPayload, source_type: str
    ) -> List[FetchedItem]:
        """Drop items processed by other jobs and mark the rest for this job."""
        own = await self._tracker.identifiers_for_job(
            payload.flow_step_id, payload.job_id
        )
        accepted = []
        seen = set()
        for item in items:
            identifier = item.item_identifier
            if identifier in seen:
                continue
            seen.add(identifier)
            if identifier not in own:
                created = await self._tracker.mark_processed(
                    payload.flow_step_id, source_type, identifier, payload.job_id
                )
                if not created:
                    continue
            accepted.append(item)
        return accepted

    async def _store_engine_data(self, job_id: int, item: FetchedItem) -> None:
        current = await self._engine_data.snapshot(job_id)
        values = {}
        if SOURCE_URL not in current and item.source_url:
            values[SOURCE_URL] = item.source_url
        if IMAGE_URL not in current and item.image_url:
            values[IMAGE_URL] = item.image_url
        await self._engine_data.store(job_id, values)

    @staticmethod
    def _to_packet(item: FetchedItem, slug: str, source_type: str) -> DataPacket:
        metadata = {
            "source_type": source_type,
            "item_identifier": item.item_identifier,
            "source_url": item.source_url,
            "image_url": item.image_url,
            **item.metadata,
        }
        if item.published_at is not None:
            metadata["published_at"] = item.published_at.isoformat()
        return DataPacket(
            type="fetch",
            handler=slug,
            content={"title": item.title, "body": item.body},
            metadata=metadata,
        )
