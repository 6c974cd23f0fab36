"""In-memory implementation of the engine repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Tuple

from ..contracts import (
    ACTIVE_STATUSES,
    Flow,
    Job,
    JobStatus,
    Pipeline,
    PipelineStep,
    ProcessedItem,
    SchedulingConfig,
    utcnow,
)
from .repository import Repository


def _belongs_to_flow(flow_step_id: str, flow_id: int) -> bool:
    return flow_step_id.endswith(f"_{flow_id}")


class InMemoryRepository(Repository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._pipelines: Dict[int, Pipeline] = {}
        self._flows: Dict[int, Flow] = {}
        self._jobs: Dict[int, Job] = {}
        self._engine_data: Dict[int, Dict[str, Any]] = {}
        self._processed: Dict[Tuple[str, str], ProcessedItem] = {}
        self._ids: Dict[str, int] = {}

    def _next_id(self, kind: str) -> int:
        self._ids[kind] = self._ids.get(kind, 0) + 1
        return self._ids[kind]

    # ------------------------------------------------------------------
    # Pipelines
    async def create_pipeline(
        self, name: str, steps: list[PipelineStep] | None = None
    ) -> Pipeline:
        pipeline = Pipeline(
            pipeline_id=self._next_id("pipeline"), name=name, steps=list(steps or [])
        )
        self._pipelines[pipeline.pipeline_id] = pipeline
        return pipeline.model_copy(deep=True)

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        pipeline = self._pipelines.get(pipeline_id)
        return pipeline.model_copy(deep=True) if pipeline else None

    async def list_pipelines(self) -> list[Pipeline]:
        return [p.model_copy(deep=True) for p in self._pipelines.values()]

    async def save_pipeline(self, pipeline: Pipeline) -> None:
        if pipeline.pipeline_id in self._pipelines:
            self._pipelines[pipeline.pipeline_id] = pipeline.model_copy(deep=True)

    async def delete_pipeline(self, pipeline_id: int) -> bool:
        if self._pipelines.pop(pipeline_id, None) is None:
            return False
        for flow in [f for f in self._flows.values() if f.pipeline_id == pipeline_id]:
            await self.delete_flow(flow.flow_id)
        return True

    # ------------------------------------------------------------------
    # Flows
    async def create_flow(
        self,
        pipeline_id: int,
        name: str,
        scheduling_config: SchedulingConfig | None = None,
    ) -> Flow:
        flow = Flow(
            flow_id=self._next_id("flow"),
            pipeline_id=pipeline_id,
            name=name,
            scheduling_config=scheduling_config or SchedulingConfig(),
        )
        self._flows[flow.flow_id] = flow
        return flow.model_copy(deep=True)

    async def get_flow(self, flow_id: int) -> Flow | None:
        flow = self._flows.get(flow_id)
        return flow.model_copy(deep=True) if flow else None

    async def list_flows(self, pipeline_id: int | None = None) -> list[Flow]:
        return [
            f.model_copy(deep=True)
            for f in self._flows.values()
            if pipeline_id is None or f.pipeline_id == pipeline_id
        ]

    async def save_flow(self, flow: Flow) -> None:
        if flow.flow_id in self._flows:
            self._flows[flow.flow_id] = flow.model_copy(deep=True)

    async def delete_flow(self, flow_id: int) -> bool:
        if self._flows.pop(flow_id, None) is None:
            return False
        for job_id in [j.job_id for j in self._jobs.values() if j.flow_id == flow_id]:
            self._jobs.pop(job_id)
            self._engine_data.pop(job_id, None)
        await self.delete_processed_items(flow_id=flow_id)
        return True

    # ------------------------------------------------------------------
    # Jobs
    async def create_job(self, flow_id: int, pipeline_id: int, trigger: str) -> Job:
        job = Job(
            job_id=self._next_id("job"),
            flow_id=flow_id,
            pipeline_id=pipeline_id,
            trigger=trigger,
        )
        self._jobs[job.job_id] = job
        return job.model_copy()

    async def get_job(self, job_id: int) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def list_jobs(
        self, flow_id: int | None = None, status: JobStatus | None = None
    ) -> list[Job]:
        jobs = [
            j.model_copy()
            for j in self._jobs.values()
            if (flow_id is None or j.flow_id == flow_id)
            and (status is None or j.status == status)
        ]
        return sorted(jobs, key=lambda j: j.job_id, reverse=True)

    async def start_job(self, job_id: int) -> None:
        job = self._jobs.get(job_id)
        if job:
            job.status = JobStatus.PROCESSING
            job.started_at = utcnow()

    async def complete_job(
        self,
        job_id: int,
        status: JobStatus,
        error_message: str | None = None,
        skip_reason: str | None = None,
    ) -> None:
        job = self._jobs.get(job_id)
        if job:
            job.status = status
            job.completed_at = utcnow()
            job.error_message = error_message
            job.skip_reason = skip_reason

    async def fail_stuck_jobs(
        self, older_than: datetime, pipeline_id: int | None = None
    ) -> int:
        count = 0
        for job in self._jobs.values():
            if (
                job.status in ACTIVE_STATUSES
                and job.created_at < older_than
                and (pipeline_id is None or job.pipeline_id == pipeline_id)
            ):
                job.status = JobStatus.FAILED
                job.completed_at = utcnow()
                job.error_message = "Job timed out"
                count += 1
        return count

    async def delete_jobs_before(
        self,
        older_than: datetime,
        statuses: Iterable[JobStatus],
        pipeline_id: int | None = None,
    ) -> int:
        statuses = set(statuses)
        doomed = [
            j.job_id
            for j in self._jobs.values()
            if j.status in statuses
            and j.created_at < older_than
            and (pipeline_id is None or j.pipeline_id == pipeline_id)
        ]
        for job_id in doomed:
            self._jobs.pop(job_id)
            self._engine_data.pop(job_id, None)
        return len(doomed)

    # ------------------------------------------------------------------
    # Engine data
    async def get_engine_data(self, job_id: int) -> dict[str, Any]:
        return dict(self._engine_data.get(job_id, {}))

    async def merge_engine_data(self, job_id: int, values: dict[str, Any]) -> None:
        self._engine_data.setdefault(job_id, {}).update(values)

    async def delete_engine_data(self, job_id: int) -> None:
        self._engine_data.pop(job_id, None)

    # ------------------------------------------------------------------
    # Processed items
    async def add_processed_item(
        self,
        flow_step_id: str,
        source_type: str,
        item_identifier: str,
        job_id: int | None,
    ) -> bool:
        key = (flow_step_id, item_identifier)
        if key in self._processed:
            return False
        self._processed[key] = ProcessedItem(
            record_id=self._next_id("processed"),
            flow_step_id=flow_step_id,
            source_type=source_type,
            item_identifier=item_identifier,
            job_id=job_id,
        )
        return True

    async def has_processed_item(self, flow_step_id: str, item_identifier: str) -> bool:
        return (flow_step_id, item_identifier) in self._processed

    async def list_processed_items(
        self, flow_step_id: str | None = None, job_id: int | None = None
    ) -> list[ProcessedItem]:
        return [
            item.model_copy()
            for item in self._processed.values()
            if (flow_step_id is None or item.flow_step_id == flow_step_id)
            and (job_id is None or item.job_id == job_id)
        ]

    async def delete_processed_items(
        self,
        flow_id: int | None = None,
        flow_step_id: str | None = None,
        job_id: int | None = None,
    ) -> int:
        if flow_id is None and flow_step_id is None and job_id is None:
            raise ValueError("At least one deletion criterion is required")
        doomed = [
            key
            for key, item in self._processed.items()
            if (flow_id is None or _belongs_to_flow(item.flow_step_id, flow_id))
            and (flow_step_id is None or item.flow_step_id == flow_step_id)
            and (job_id is None or item.job_id == job_id)
        ]
        for key in doomed:
            del self._processed[key]
        return len(doomed)

    async def delete_processed_item(self, record_id: int) -> bool:
        for key, item in self._processed.items():
            if item.record_id == record_id:
                del self._processed[key]
                return True
        return False
