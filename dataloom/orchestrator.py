"""Job orchestration: walks a flow's steps for one job."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .config import DataloomConfig
from .contracts import (
    DataPacket,
    Flow,
    FlowStepConfig,
    Job,
    JobStatus,
    StepPayload,
    StepType,
    TriggerContext,
    utcnow,
)
from .dedup import DeduplicationTracker
from .engine_data import EngineDataStore
from .errors import ConfigurationError, DataloomError, FlowNotFoundError
from .handlers.base import resolve_settings
from .persistence import Repository
from .registry import HandlerRegistry
from .steps.base import StepOutcome
from .steps.runner import StepRunner

logger = logging.getLogger(__name__)


class JobRun(BaseModel):
    """A finished job together with the packets it produced."""

    job: Job
    data: List[DataPacket] = Field(default_factory=list)


class JobOrchestrator:
    """Runs flows as jobs and records their terminal status.

    Only the orchestrator writes a job's status. Step failures are caught
    here, logged with job and step identifiers, and turn the job into
    ``failed``; nothing is retried.
    """

    def __init__(
        self,
        repository: Repository,
        registry: HandlerRegistry,
        runner: StepRunner,
        tracker: DeduplicationTracker,
        engine_data: EngineDataStore,
        config: DataloomConfig,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._runner = runner
        self._tracker = tracker
        self._engine_data = engine_data
        self._config = config

    def validate(self, flow: Flow) -> List[FlowStepConfig]:
        """Check a flow can run and return its steps in execution order.

        Raises:
            ConfigurationError: The flow has no steps, an ai step has no
                model, a handler step has no handler, a handler slug is not
                registered, or handler settings do not validate.
        """
        steps = flow.ordered_steps()
        if not steps:
            raise ConfigurationError(f"Flow {flow.flow_id} has no steps")
        for step in steps:
            if step.step_type is StepType.AI:
                if not (step.step_config.get("model") or self._config.ai.model):
                    raise ConfigurationError(
                        f"AI step {step.flow_step_id} has no model configured"
                    )
                continue
            if step.handler is None:
                raise ConfigurationError(
                    f"Flow {flow.flow_id} step {step.flow_step_id} "
                    f"({step.step_type.value}) has no handler configured"
                )
            handler = self._registry.handler_for(step.step_type, step.handler.slug)
            resolve_settings(
                handler.settings_model,
                step.handler.settings,
                self._config.handler_defaults.get(step.handler.slug),
            )
        return steps

    async def run_flow(
        self, flow_id: int, trigger_context: Optional[TriggerContext] = None
    ) -> Job:
        """Load a flow by id and run it."""
        flow = await self._repository.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return await self.run(flow, trigger_context)

    async def run(
        self, flow: Flow, trigger_context: Optional[TriggerContext] = None
    ) -> Job:
        return (await self.execute(flow, trigger_context)).job

    async def execute(
        self, flow: Flow, trigger_context: Optional[TriggerContext] = None
    ) -> JobRun:
        """Run ``flow`` as a new job and return the job and its packets."""
        trigger_context = trigger_context or TriggerContext()
        steps = self.validate(flow)

        job = await self._repository.create_job(
            flow.flow_id, flow.pipeline_id, trigger_context.source
        )
        job_id = job.job_id
        await self._repository.start_job(job_id)
        context = {"job_id": job_id, "flow_id": flow.flow_id, "pipeline_id": flow.pipeline_id}
        logger.info(
            f"Job {job_id} started for flow {flow.flow_id} ({trigger_context.source})",
            extra={"context": context},
        )

        data: List[DataPacket] = []
        status: Optional[JobStatus] = None
        skip_reason: Optional[str] = None
        processed = 0
        current: Optional[FlowStepConfig] = None
        try:
            for current in steps:
                payload = StepPayload(
                    job_id=job_id,
                    flow_id=flow.flow_id,
                    pipeline_id=flow.pipeline_id,
                    flow_step_id=current.flow_step_id,
                    data=data,
                    flow_step_config=current,
                    engine_data=await self._engine_data.snapshot(job_id),
                )
                result = await self._runner.execute(current.step_type, payload, steps)
                data = result.data
                if result.outcome is StepOutcome.NO_ITEMS:
                    status = JobStatus.COMPLETED_NO_ITEMS
                    break
                if result.outcome is StepOutcome.SKIPPED:
                    status = JobStatus.AGENT_SKIPPED
                    skip_reason = result.skip_reason
                    break
                processed += result.items_processed
        except Exception as e:
            await self._fail(job_id, flow, current, e)
            await self._engine_data.discard(job_id)
            return JobRun(job=await self._repository.get_job(job_id), data=data)

        if status is None:
            status = JobStatus.COMPLETED if processed else JobStatus.COMPLETED_NO_ITEMS
        await self._repository.complete_job(job_id, status, skip_reason=skip_reason)
        if processed and status.is_success:
            await self._mark_last_run(flow)
        await self._engine_data.discard(job_id)

        logger.info(
            f"Job {job_id} for flow {flow.flow_id} finished: {status.value}"
            + (f" ({skip_reason})" if skip_reason else ""),
            extra={"context": {**context, "status": status.value}},
        )
        return JobRun(job=await self._repository.get_job(job_id), data=data)

    async def _fail(
        self,
        job_id: int,
        flow: Flow,
        step: Optional[FlowStepConfig],
        error: Exception,
    ) -> None:
        message = error.message if isinstance(error, DataloomError) else str(error)
        message = message or type(error).__name__
        step_id = step.flow_step_id if step else None
        logger.error(
            f"Job {job_id} failed at step {step_id} of flow {flow.flow_id}: {message}",
            exc_info=not isinstance(error, DataloomError),
            extra={
                "context": {
                    "job_id": job_id,
                    "flow_id": flow.flow_id,
                    "pipeline_id": flow.pipeline_id,
                    "flow_step_id": step_id,
                    "error_kind": getattr(error, "kind", None),
                }
            },
        )
        await self._repository.complete_job(job_id, JobStatus.FAILED, error_message=message)
        if self._config.release_items_on_failure:
            await self._tracker.release_job(job_id)

    async def _mark_last_run(self, flow: Flow) -> None:
        now = utcnow()
        stored = await self._repository.get_flow(flow.flow_id)
        if stored is not None:
            stored.last_run_at = now
            await self._repository.save_flow(stored)
        pipeline = await self._repository.get_pipeline(flow.pipeline_id)
        if pipeline is not None:
            pipeline.last_run_at = now
            await self._repository.save_pipeline(pipeline)
