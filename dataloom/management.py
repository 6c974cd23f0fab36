"""Pipeline and flow management operations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .config import DataloomConfig
from .contracts import (
    Flow,
    FlowStepConfig,
    HandlerSelection,
    Pipeline,
    PipelineStep,
    SchedulingConfig,
    StepType,
    make_flow_step_id,
)
from .errors import ConfigurationError, FlowNotFoundError
from .handlers.base import resolve_settings
from .persistence import Repository
from .registry import HandlerRegistry

if TYPE_CHECKING:
    from .scheduling import Scheduler

logger = logging.getLogger(__name__)


def sync_flow(flow: Flow, pipeline: Pipeline) -> Flow:
    """Align a flow's step configuration with its pipeline's steps.

    Missing steps are added, steps removed from the pipeline are dropped and
    order, type and step config are refreshed. Handler choices and user
    messages of surviving steps are kept.
    """
    synced: Dict[str, FlowStepConfig] = {}
    for step in pipeline.ordered_steps():
        flow_step_id = make_flow_step_id(step.pipeline_step_id, flow.flow_id)
        existing = flow.flow_config.get(flow_step_id)
        if existing is not None and existing.step_type is step.step_type:
            synced[flow_step_id] = existing.model_copy(
                update={
                    "execution_order": step.execution_order,
                    "step_config": dict(step.step_config),
                }
            )
        else:
            synced[flow_step_id] = FlowStepConfig(
                flow_step_id=flow_step_id,
                pipeline_step_id=step.pipeline_step_id,
                pipeline_id=pipeline.pipeline_id,
                flow_id=flow.flow_id,
                step_type=step.step_type,
                execution_order=step.execution_order,
                step_config=dict(step.step_config),
            )
    return flow.model_copy(update={"flow_config": synced})


def _renumber(steps: List[PipelineStep]) -> List[PipelineStep]:
    return [
        step.model_copy(update={"execution_order": index})
        for index, step in enumerate(steps)
    ]


class WorkflowManager:
    """Creates and edits pipelines and flows, keeping them in sync."""

    def __init__(
        self,
        repository: Repository,
        registry: HandlerRegistry,
        config: DataloomConfig,
        scheduler: Optional["Scheduler"] = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._config = config
        self._scheduler = scheduler

    # ------------------------------------------------------------------
    # Pipelines
    async def create_pipeline(
        self, name: str, steps: Optional[List[PipelineStep]] = None
    ) -> Pipeline:
        if not name.strip():
            raise ConfigurationError("Pipeline name is required")
        pipeline = await self._repository.create_pipeline(
            name, _renumber(list(steps or []))
        )
        logger.info(f"Created pipeline {pipeline.pipeline_id} '{name}'")
        return pipeline

    async def _require_pipeline(self, pipeline_id: int) -> Pipeline:
        pipeline = await self._repository.get_pipeline(pipeline_id)
        if pipeline is None:
            raise ConfigurationError(f"Pipeline {pipeline_id} not found")
        return pipeline

    async def _save_steps(self, pipeline: Pipeline, steps: List[PipelineStep]) -> Pipeline:
        pipeline.steps = _renumber(steps)
        await self._repository.save_pipeline(pipeline)
        for flow in await self._repository.list_flows(pipeline.pipeline_id):
            await self._save_synced(flow, pipeline)
        return pipeline

    async def _save_synced(self, flow: Flow, pipeline: Pipeline) -> Flow:
        synced = sync_flow(flow, pipeline)
        for flow_step_id in set(flow.flow_config) - set(synced.flow_config):
            await self._repository.delete_processed_items(flow_step_id=flow_step_id)
        await self._repository.save_flow(synced)
        return synced

    async def add_step(
        self,
        pipeline_id: int,
        step_type: StepType | str,
        step_config: Optional[Dict[str, Any]] = None,
        position: Optional[int] = None,
        label: Optional[str] = None,
    ) -> PipelineStep:
        pipeline = await self._require_pipeline(pipeline_id)
        step = PipelineStep(
            step_type=StepType(step_type),
            step_config=dict(step_config or {}),
            label=label,
        )
        steps = pipeline.ordered_steps()
        steps.insert(len(steps) if position is None else position, step)
        pipeline = await self._save_steps(pipeline, steps)
        return pipeline.get_step(step.pipeline_step_id)

    async def remove_step(self, pipeline_id: int, pipeline_step_id: str) -> bool:
        pipeline = await self._require_pipeline(pipeline_id)
        steps = [
            s for s in pipeline.ordered_steps() if s.pipeline_step_id != pipeline_step_id
        ]
        if len(steps) == len(pipeline.steps):
            return False
        await self._save_steps(pipeline, steps)
        return True

    async def move_step(
        self, pipeline_id: int, pipeline_step_id: str, new_position: int
    ) -> Pipeline:
        pipeline = await self._require_pipeline(pipeline_id)
        steps = pipeline.ordered_steps()
        step = pipeline.get_step(pipeline_step_id)
        if step is None:
            raise ConfigurationError(
                f"Step {pipeline_step_id} not found in pipeline {pipeline_id}"
            )
        steps = [s for s in steps if s.pipeline_step_id != pipeline_step_id]
        new_position = max(0, min(new_position, len(steps)))
        steps.insert(new_position, step)
        return await self._save_steps(pipeline, steps)

    async def update_step_config(
        self, pipeline_id: int, pipeline_step_id: str, step_config: Dict[str, Any]
    ) -> Pipeline:
        pipeline = await self._require_pipeline(pipeline_id)
        steps = []
        for step in pipeline.ordered_steps():
            if step.pipeline_step_id == pipeline_step_id:
                step = step.model_copy(
                    update={"step_config": {**step.step_config, **step_config}}
                )
            steps.append(step)
        return await self._save_steps(pipeline, steps)

    async def delete_pipeline(self, pipeline_id: int) -> bool:
        if self._scheduler is not None:
            await self._scheduler.unschedule_pipeline(pipeline_id)
            for flow in await self._repository.list_flows(pipeline_id):
                await self._scheduler.unschedule(flow.flow_id)
        deleted = await self._repository.delete_pipeline(pipeline_id)
        if deleted:
            logger.info(f"Deleted pipeline {pipeline_id} with its flows and jobs")
        return deleted

    # ------------------------------------------------------------------
    # Flows
    async def create_flow(
        self,
        pipeline_id: int,
        name: str,
        scheduling_config: Optional[SchedulingConfig] = None,
    ) -> Flow:
        pipeline = await self._require_pipeline(pipeline_id)
        flow = await self._repository.create_flow(pipeline_id, name, scheduling_config)
        flow = await self._save_synced(flow, pipeline)
        logger.info(f"Created flow {flow.flow_id} '{name}' for pipeline {pipeline_id}")
        return flow

    async def _require_flow(self, flow_id: int) -> Flow:
        flow = await self._repository.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    async def _require_step(self, flow: Flow, pipeline_step_id: str) -> FlowStepConfig:
        step = flow.step_for(pipeline_step_id)
        if step is None:
            raise ConfigurationError(
                f"Step {pipeline_step_id} is not part of flow {flow.flow_id}"
            )
        return step

    async def set_handler(
        self,
        flow_id: int,
        pipeline_step_id: str,
        handler_slug: str,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Flow:
        """Select and configure the handler of a flow step.

        Settings are validated against the handler's settings model with
        site defaults applied, but only the explicit values are stored.
        """
        flow = await self._require_flow(flow_id)
        step = await self._require_step(flow, pipeline_step_id)
        if step.step_type is StepType.AI:
            raise ConfigurationError("AI steps do not take a handler")
        handler = self._registry.handler_for(step.step_type, handler_slug)
        resolve_settings(
            handler.settings_model,
            settings,
            self._config.handler_defaults.get(handler_slug),
        )
        selection = HandlerSelection(slug=handler_slug, settings=dict(settings or {}))
        flow.flow_config[step.flow_step_id] = step.model_copy(
            update={"handler": selection}
        )
        await self._repository.save_flow(flow)
        return flow

    async def set_user_message(
        self, flow_id: int, pipeline_step_id: str, message: str
    ) -> Flow:
        flow = await self._require_flow(flow_id)
        step = await self._require_step(flow, pipeline_step_id)
        if step.step_type is not StepType.AI:
            raise ConfigurationError("User messages only apply to AI steps")
        flow.flow_config[step.flow_step_id] = step.model_copy(
            update={"user_message": message}
        )
        await self._repository.save_flow(flow)
        return flow

    async def sync_flow(self, flow_id: int) -> Flow:
        flow = await self._require_flow(flow_id)
        pipeline = await self._require_pipeline(flow.pipeline_id)
        return await self._save_synced(flow, pipeline)

    async def delete_flow(self, flow_id: int) -> bool:
        if self._scheduler is not None:
            await self._scheduler.unschedule(flow_id)
        deleted = await self._repository.delete_flow(flow_id)
        if deleted:
            logger.info(f"Deleted flow {flow_id} with its jobs and processed items")
        return deleted
