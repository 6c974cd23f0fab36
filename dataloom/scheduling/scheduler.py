"""Turns schedules into job runs and performs periodic maintenance."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, List, Optional

from pydantic import BaseModel

from ..config import SchedulerConfig
from ..constants import (
    INHERIT_INTERVAL,
    MANUAL_INTERVAL,
    PIPELINE_SCHEDULE_INTERVALS,
    SCHEDULE_INTERVALS,
)
from ..contracts import (
    TERMINAL_STATUSES,
    Job,
    SchedulingConfig,
    TriggerContext,
    utcnow,
)
from ..errors import ConfigurationError, FlowNotFoundError
from ..persistence import Repository
from .base import (
    ScheduleRegistration,
    SchedulerBackend,
    ScheduleTarget,
    registration_key,
)

if TYPE_CHECKING:
    from ..orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class MaintenanceReport(BaseModel):
    pipeline_id: int
    stuck_jobs_failed: int = 0
    old_jobs_deleted: int = 0


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Scheduler:
    """Registers flow and pipeline schedules and fires them when due.

    The backend only stores registrations; something must call :meth:`tick`
    periodically, either :meth:`run` or an external timer.
    """

    def __init__(
        self,
        repository: Repository,
        orchestrator: "JobOrchestrator",
        backend: SchedulerBackend,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._backend = backend
        self._config = config or SchedulerConfig()

    @property
    def backend(self) -> SchedulerBackend:
        return self._backend

    # ------------------------------------------------------------------
    # Registration
    @staticmethod
    def _build_registration(
        target: ScheduleTarget,
        target_id: int,
        interval: Optional[str],
        timestamp: Optional[datetime],
        allowed: dict,
        now: datetime,
    ) -> Optional[ScheduleRegistration]:
        """Validate a schedule request and build its registration.

        Returns ``None`` for schedules that need no trigger of their own.
        """
        if timestamp is not None:
            timestamp = _aware(timestamp)
            if timestamp <= now:
                raise ConfigurationError("Scheduled timestamp must be in the future")
            return ScheduleRegistration(
                target=target, target_id=target_id, next_run_at=timestamp
            )
        if interval in (None, MANUAL_INTERVAL):
            return None
        if target is ScheduleTarget.FLOW and interval == INHERIT_INTERVAL:
            return None
        if interval not in allowed:
            raise ConfigurationError(f"Invalid schedule interval: {interval}")
        seconds = allowed[interval]
        return ScheduleRegistration(
            target=target,
            target_id=target_id,
            next_run_at=now + timedelta(seconds=seconds),
            interval=interval,
            interval_seconds=seconds,
        )

    async def schedule(
        self,
        flow_id: int,
        interval: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        status: str = "active",
    ) -> Optional[ScheduleRegistration]:
        """Replace the schedule of a flow.

        Args:
            flow_id: Flow to schedule.
            interval: ``manual``, ``pipeline`` (inherit), or a recurring
                interval name such as ``hourly``.
            timestamp: Future time for a one-off run; takes precedence over
                ``interval``.
            status: ``active`` or ``paused``. Paused schedules are stored on
                the flow but register no trigger.

        Returns:
            The registration written to the backend, if any.
        """
        flow = await self._repository.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        if status not in ("active", "paused"):
            raise ConfigurationError(f"Invalid schedule status: {status}")

        now = utcnow()
        registration = self._build_registration(
            ScheduleTarget.FLOW, flow_id, interval, timestamp, SCHEDULE_INTERVALS, now
        )
        await self._backend.clear(registration_key(ScheduleTarget.FLOW, flow_id))

        flow.scheduling_config = SchedulingConfig(
            interval=interval or MANUAL_INTERVAL,
            status=status,
            timestamp=_aware(timestamp) if timestamp else None,
        )
        await self._repository.save_flow(flow)

        if status != "active" or registration is None:
            logger.info(
                f"Flow {flow_id} schedule set to {flow.scheduling_config.interval} "
                f"({status}); no trigger registered"
            )
            return None

        await self._backend.register(registration)
        logger.info(
            f"Scheduled flow {flow_id} ({registration.interval or 'one-off'}) "
            f"next run at {registration.next_run_at.isoformat()}"
        )
        return registration

    async def unschedule(self, flow_id: int) -> bool:
        """Remove any trigger for a flow; safe when none exists."""
        removed = await self._backend.clear(
            registration_key(ScheduleTarget.FLOW, flow_id)
        )
        flow = await self._repository.get_flow(flow_id)
        if flow is not None and flow.scheduling_config.interval != MANUAL_INTERVAL:
            flow.scheduling_config = SchedulingConfig()
            await self._repository.save_flow(flow)
        if removed:
            logger.info(f"Unscheduled flow {flow_id}")
        return removed

    async def schedule_pipeline(
        self, pipeline_id: int, interval: Optional[str], status: str = "active"
    ) -> Optional[ScheduleRegistration]:
        """Replace the schedule shared by a pipeline's inheriting flows."""
        pipeline = await self._repository.get_pipeline(pipeline_id)
        if pipeline is None:
            raise ConfigurationError(f"Pipeline {pipeline_id} not found")
        if status not in ("active", "paused"):
            raise ConfigurationError(f"Invalid schedule status: {status}")

        registration = self._build_registration(
            ScheduleTarget.PIPELINE,
            pipeline_id,
            interval,
            None,
            PIPELINE_SCHEDULE_INTERVALS,
            utcnow(),
        )
        await self._backend.clear(
            registration_key(ScheduleTarget.PIPELINE, pipeline_id)
        )
        pipeline.scheduling_config = SchedulingConfig(
            interval=interval or MANUAL_INTERVAL, status=status
        )
        await self._repository.save_pipeline(pipeline)

        if status != "active" or registration is None:
            return None
        await self._backend.register(registration)
        logger.info(
            f"Scheduled pipeline {pipeline_id} ({registration.interval}) "
            f"next run at {registration.next_run_at.isoformat()}"
        )
        return registration

    async def unschedule_pipeline(self, pipeline_id: int) -> bool:
        """Remove any trigger for a pipeline and reset its stored schedule."""
        removed = await self._backend.clear(
            registration_key(ScheduleTarget.PIPELINE, pipeline_id)
        )
        pipeline = await self._repository.get_pipeline(pipeline_id)
        if (
            pipeline is not None
            and pipeline.scheduling_config.interval != MANUAL_INTERVAL
        ):
            pipeline.scheduling_config = SchedulingConfig()
            await self._repository.save_pipeline(pipeline)
        if removed:
            logger.info(f"Unscheduled pipeline {pipeline_id}")
        return removed

    async def registrations(self) -> List[ScheduleRegistration]:
        return await self._backend.list()

    async def restore(self) -> int:
        """Register active stored schedules missing from the backend.

        Used when a scheduler process starts against a backend that does not
        outlive it. One-off schedules whose time has passed are skipped.
        """
        now = utcnow()
        restored = 0
        targets = [
            (
                ScheduleTarget.PIPELINE,
                p.pipeline_id,
                p.scheduling_config,
                PIPELINE_SCHEDULE_INTERVALS,
            )
            for p in await self._repository.list_pipelines()
        ] + [
            (ScheduleTarget.FLOW, f.flow_id, f.scheduling_config, SCHEDULE_INTERVALS)
            for f in await self._repository.list_flows()
        ]
        for target, target_id, config, allowed in targets:
            if not config.is_active:
                continue
            if await self._backend.get(registration_key(target, target_id)):
                continue
            if config.timestamp is not None and _aware(config.timestamp) <= now:
                continue
            try:
                registration = self._build_registration(
                    target, target_id, config.interval, config.timestamp, allowed, now
                )
            except ConfigurationError as e:
                logger.warning(
                    f"Not restoring schedule for {target.value} {target_id}: {e}"
                )
                continue
            if registration is not None:
                await self._backend.register(registration)
                restored += 1
        if restored:
            logger.info(f"Restored {restored} schedule registrations")
        return restored

    # ------------------------------------------------------------------
    # Triggering
    async def tick(self, now: Optional[datetime] = None) -> List[Job]:
        """Fire every registration due at ``now`` and return the jobs run.

        A trigger that raises is logged and does not stop the others.
        """
        now = _aware(now) if now else utcnow()
        jobs: List[Job] = []
        for registration in await self._backend.pop_due(now):
            try:
                jobs.extend(await self.trigger(registration, now))
            except Exception:
                logger.exception(f"Scheduled trigger {registration.key} failed")
        return jobs

    async def trigger(
        self, registration: ScheduleRegistration, now: Optional[datetime] = None
    ) -> List[Job]:
        """Run the targets of one registration."""
        if registration.target is ScheduleTarget.FLOW:
            return await self._trigger_flow(registration, now)
        return await self._trigger_pipeline(registration, now)

    async def _trigger_flow(
        self, registration: ScheduleRegistration, now: Optional[datetime]
    ) -> List[Job]:
        flow = await self._repository.get_flow(registration.target_id)
        if flow is None:
            logger.info(
                f"Flow {registration.target_id} no longer exists; removing its schedule"
            )
            await self._backend.clear(registration.key)
            return []
        await self.run_maintenance(flow.pipeline_id, now)
        job = await self._run(flow.flow_id)
        return [job] if job else []

    async def _trigger_pipeline(
        self, registration: ScheduleRegistration, now: Optional[datetime]
    ) -> List[Job]:
        pipeline = await self._repository.get_pipeline(registration.target_id)
        if pipeline is None:
            logger.info(
                f"Pipeline {registration.target_id} no longer exists; removing its schedule"
            )
            await self._backend.clear(registration.key)
            return []
        await self.run_maintenance(pipeline.pipeline_id, now)

        jobs = []
        for flow in await self._repository.list_flows(pipeline.pipeline_id):
            config = flow.scheduling_config
            if config.interval != INHERIT_INTERVAL or not config.is_active:
                continue
            job = await self._run(flow.flow_id)
            if job:
                jobs.append(job)
        return jobs

    async def _run(self, flow_id: int) -> Optional[Job]:
        try:
            return await self._orchestrator.run_flow(
                flow_id, TriggerContext(source="schedule")
            )
        except ConfigurationError as e:
            logger.error(f"Scheduled run of flow {flow_id} rejected: {e}")
            return None
        except Exception:
            logger.exception(f"Scheduled run of flow {flow_id} failed")
            return None

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll for due registrations until ``lifespan`` seconds have passed.

        Args:
            lifespan: Maximum time in seconds to keep polling. If None, runs indefinitely.
        """
        await self._backend.connect()
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            while True:
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Scheduler tick failed")
                if lifespan is not None and loop.time() - start_time >= lifespan:
                    break
                await asyncio.sleep(self._config.poll_interval)
        finally:
            await self._backend.disconnect()

    # ------------------------------------------------------------------
    # Maintenance
    async def run_maintenance(
        self,
        pipeline_id: int,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> Optional[MaintenanceReport]:
        """Fail stuck jobs and delete old finished jobs of one pipeline.

        Runs at most once per maintenance window per pipeline unless
        ``force`` is set. Returns ``None`` when skipped.
        """
        now = _aware(now) if now else utcnow()
        pipeline = await self._repository.get_pipeline(pipeline_id)
        if pipeline is None:
            return None
        window = timedelta(hours=self._config.maintenance_window_hours)
        last = pipeline.last_maintenance_at
        if not force and last is not None and now - _aware(last) < window:
            return None

        stuck = await self._repository.fail_stuck_jobs(
            now - timedelta(hours=self._config.stuck_job_timeout_hours), pipeline_id
        )
        deleted = await self._repository.delete_jobs_before(
            now - timedelta(days=self._config.job_retention_days),
            TERMINAL_STATUSES,
            pipeline_id,
        )
        pipeline.last_maintenance_at = now
        await self._repository.save_pipeline(pipeline)

        if stuck or deleted:
            logger.info(
                f"Maintenance for pipeline {pipeline_id}: failed {stuck} stuck jobs, "
                f"deleted {deleted} old jobs"
            )
        return MaintenanceReport(
            pipeline_id=pipeline_id, stuck_jobs_failed=stuck, old_jobs_deleted=deleted
        )
