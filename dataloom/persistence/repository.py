"""Repository abstraction for engine state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from ..contracts import (
    Flow,
    Job,
    JobStatus,
    Pipeline,
    PipelineStep,
    ProcessedItem,
    SchedulingConfig,
)


class Repository(Protocol):
    """Protocol for engine persistence backends."""

    # Pipelines
    async def create_pipeline(
        self, name: str, steps: list[PipelineStep] | None = None
    ) -> Pipeline:
        """Persist a new pipeline and assign its id."""

    async def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        """Retrieve a pipeline by id."""

    async def list_pipelines(self) -> list[Pipeline]:
        """Return all pipelines."""

    async def save_pipeline(self, pipeline: Pipeline) -> None:
        """Persist changes to an existing pipeline."""

    async def delete_pipeline(self, pipeline_id: int) -> bool:
        """Delete a pipeline with its flows, jobs and processed items."""

    # Flows
    async def create_flow(
        self,
        pipeline_id: int,
        name: str,
        scheduling_config: SchedulingConfig | None = None,
    ) -> Flow:
        """Persist a new, empty flow and assign its id."""

    async def get_flow(self, flow_id: int) -> Flow | None:
        """Retrieve a flow by id."""

    async def list_flows(self, pipeline_id: int | None = None) -> list[Flow]:
        """Return flows, optionally only those of one pipeline."""

    async def save_flow(self, flow: Flow) -> None:
        """Persist changes to an existing flow."""

    async def delete_flow(self, flow_id: int) -> bool:
        """Delete a flow with its jobs and processed items."""

    # Jobs
    async def create_job(self, flow_id: int, pipeline_id: int, trigger: str) -> Job:
        """Persist a new job in ``pending``."""

    async def get_job(self, job_id: int) -> Job | None:
        """Retrieve a job by id."""

    async def list_jobs(
        self, flow_id: int | None = None, status: JobStatus | None = None
    ) -> list[Job]:
        """Return jobs, newest first."""

    async def start_job(self, job_id: int) -> None:
        """Transition a job to ``processing``."""

    async def complete_job(
        self,
        job_id: int,
        status: JobStatus,
        error_message: str | None = None,
        skip_reason: str | None = None,
    ) -> None:
        """Record a terminal status."""

    async def fail_stuck_jobs(
        self, older_than: datetime, pipeline_id: int | None = None
    ) -> int:
        """Mark pending/processing jobs created before ``older_than`` as failed."""

    async def delete_jobs_before(
        self,
        older_than: datetime,
        statuses: Iterable[JobStatus],
        pipeline_id: int | None = None,
    ) -> int:
        """Delete jobs in ``statuses`` created before ``older_than``."""

    # Engine data
    async def get_engine_data(self, job_id: int) -> dict[str, Any]:
        """Return the job's engine data, empty when nothing was written."""

    async def merge_engine_data(self, job_id: int, values: dict[str, Any]) -> None:
        """Merge values into the job's engine data."""

    async def delete_engine_data(self, job_id: int) -> None:
        """Discard the job's engine data."""

    # Processed items
    async def add_processed_item(
        self,
        flow_step_id: str,
        source_type: str,
        item_identifier: str,
        job_id: int | None,
    ) -> bool:
        """Record an item atomically. Return ``False`` when it already existed."""

    async def has_processed_item(self, flow_step_id: str, item_identifier: str) -> bool:
        """Return ``True`` when the item is recorded for the flow step."""

    async def list_processed_items(
        self, flow_step_id: str | None = None, job_id: int | None = None
    ) -> list[ProcessedItem]:
        """Return processed item records."""

    async def delete_processed_items(
        self,
        flow_id: int | None = None,
        flow_step_id: str | None = None,
        job_id: int | None = None,
    ) -> int:
        """Delete records matching every given criterion and return the count."""

    async def delete_processed_item(self, record_id: int) -> bool:
        """Delete one record by id."""
