from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..ai.directives import DirectiveSet
from ..ai.provider import AIProvider
from ..config import DataloomConfig
from ..contracts import FlowStepConfig, StepPayload, StepType
from ..dedup import DeduplicationTracker
from ..engine_data import EngineDataStore
from ..errors import ConfigurationError
from ..registry import HandlerRegistry
from ..tools.executor import ToolExecutor
from .ai import AIStep
from .base import Step, StepResult
from .fetch import FetchStep
from .publish import OutputStep

logger = logging.getLogger(__name__)


class StepRunner:
    """Executes single steps and keeps the packet list append-only."""

    def __init__(self, steps: Dict[StepType, Step]) -> None:
        self._steps = dict(steps)

    @classmethod
    def create(
        cls,
        registry: HandlerRegistry,
        tracker: DeduplicationTracker,
        engine_data: EngineDataStore,
        executor: ToolExecutor,
        provider: AIProvider,
        config: DataloomConfig,
        directives: Optional[DirectiveSet] = None,
    ) -> "StepRunner":
        return cls(
            {
                StepType.FETCH: FetchStep(registry, tracker, engine_data, config),
                StepType.AI: AIStep(provider, executor, config, directives),
                StepType.PUBLISH: OutputStep(StepType.PUBLISH, registry, executor),
                StepType.UPDATE: OutputStep(StepType.UPDATE, registry, executor),
            }
        )

    async def execute(
        self,
        step_type: StepType,
        payload: StepPayload,
        flow_steps: Optional[List[FlowStepConfig]] = None,
    ) -> StepResult:
        """Run one step and return its result with the updated packet list.

        The step's new packets are appended to ``payload.data``; earlier
        packets are never replaced or reordered.
        """
        step = self._steps.get(StepType(step_type))
        if step is None:
            raise ConfigurationError(f"No step registered for type '{step_type}'")

        logger.debug(
            f"Running {step_type} step {payload.flow_step_id} for job {payload.job_id}"
        )
        result = await step.execute(payload, flow_steps or [payload.flow_step_config])
        return result.model_copy(update={"data": [*payload.data, *result.packets]})
