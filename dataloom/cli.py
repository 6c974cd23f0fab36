"""Command line interface for dataloom pipelines, flows and schedules."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import List, Optional

import typer

from dataloom import (
    ClearScope,
    DataloomConfig,
    DataloomError,
    Engine,
    HandlerRegistry,
    JobStatus,
    TriggerContext,
    get_repository,
    load_config,
)
from dataloom.registry import load_handler_module

app = typer.Typer(help="CLI for dataloom content workflows")

# Command groups
pipeline_app = typer.Typer(help="Commands for managing pipelines")
flow_app = typer.Typer(help="Commands for managing and running flows")
job_app = typer.Typer(help="Commands for inspecting jobs")
processed_app = typer.Typer(help="Commands for managing processed items")
schedule_app = typer.Typer(help="Commands for managing flow schedules")
scheduler_app = typer.Typer(help="Commands for running the scheduler")

app.add_typer(pipeline_app, name="pipeline")
app.add_typer(flow_app, name="flow")
app.add_typer(job_app, name="job")
app.add_typer(processed_app, name="processed")
app.add_typer(schedule_app, name="schedule")
app.add_typer(scheduler_app, name="scheduler")

_state = {"config_path": None}

HANDLERS_OPTION = typer.Option(
    None,
    "--handlers",
    "-H",
    help="Module exposing register(registry); may be repeated",
)


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to a YAML config file"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """dataloom CLI entry point."""
    _state["config_path"] = config
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _config() -> DataloomConfig:
    return load_config(_state["config_path"])


def _repository():
    if _state["config_path"]:
        return get_repository(config=_config())
    return get_repository()


def _engine(handlers: Optional[List[str]] = None) -> Engine:
    registry = HandlerRegistry()
    for module_path in handlers or []:
        load_handler_module(module_path, registry)
    return Engine.from_config(
        _config(), registry=registry, repository=_repository()
    )


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _parse_settings(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        settings = json.loads(raw)
    except json.JSONDecodeError as exc:
        _fail(f"Settings must be a JSON object: {exc}")
    if not isinstance(settings, dict):
        _fail("Settings must be a JSON object")
    return settings


@pipeline_app.command("create")
def pipeline_create(name: str) -> None:
    """Create an empty pipeline."""
    engine = _engine()
    pipeline = asyncio.run(engine.manager.create_pipeline(name))
    typer.echo(f"Created pipeline {pipeline.pipeline_id}: {pipeline.name}")


@pipeline_app.command("add-step")
def pipeline_add_step(
    pipeline_id: int,
    step_type: str,
    label: Optional[str] = typer.Option(None, help="Display label"),
    config: Optional[str] = typer.Option(None, help="Step config as JSON"),
    position: Optional[int] = typer.Option(None, help="Insert position"),
) -> None:
    """
    Append a step to a pipeline and sync its flows.

    Example:
        dataloom pipeline add-step 1 fetch
        dataloom pipeline add-step 1 ai --config '{"system_prompt": "Summarize"}'
    """
    engine = _engine()
    try:
        step = asyncio.run(
            engine.manager.add_step(
                pipeline_id,
                step_type,
                _parse_settings(config),
                position=position,
                label=label,
            )
        )
    except (DataloomError, ValueError) as exc:
        _fail(str(exc))
    typer.echo(
        f"Added {step.step_type.value} step {step.pipeline_step_id} "
        f"at position {step.execution_order}"
    )


@pipeline_app.command("list")
def pipeline_list() -> None:
    """List pipelines with their steps in execution order."""
    pipelines = asyncio.run(_repository().list_pipelines())
    if not pipelines:
        typer.echo("No pipelines found")
        return
    for pipeline in pipelines:
        steps = " -> ".join(s.step_type.value for s in pipeline.ordered_steps())
        typer.echo(f"{pipeline.pipeline_id}\t{pipeline.name}\t{steps or '(no steps)'}")


@flow_app.command("create")
def flow_create(pipeline_id: int, name: str) -> None:
    """Create a flow bound to a pipeline."""
    engine = _engine()
    try:
        flow = asyncio.run(engine.manager.create_flow(pipeline_id, name))
    except DataloomError as exc:
        _fail(exc.message)
    typer.echo(f"Created flow {flow.flow_id}: {flow.name}")


@flow_app.command("set-handler")
def flow_set_handler(
    flow_id: int,
    pipeline_step_id: str,
    handler_slug: str,
    settings: Optional[str] = typer.Option(None, help="Handler settings as JSON"),
    handlers: Optional[List[str]] = HANDLERS_OPTION,
) -> None:
    """Choose and configure the handler of a flow step."""
    engine = _engine(handlers)
    try:
        asyncio.run(
            engine.manager.set_handler(
                flow_id, pipeline_step_id, handler_slug, _parse_settings(settings)
            )
        )
    except DataloomError as exc:
        _fail(exc.message)
    typer.echo(f"Flow {flow_id} step {pipeline_step_id} uses {handler_slug}")


@flow_app.command("set-message")
def flow_set_message(flow_id: int, pipeline_step_id: str, message: str) -> None:
    """Set the user message of a flow's AI step."""
    engine = _engine()
    try:
        asyncio.run(engine.manager.set_user_message(flow_id, pipeline_step_id, message))
    except DataloomError as exc:
        _fail(exc.message)
    typer.echo(f"Flow {flow_id} step {pipeline_step_id} message updated")


@flow_app.command("list")
def flow_list(
    pipeline_id: Optional[int] = typer.Option(None, "--pipeline", help="Pipeline id"),
) -> None:
    """List flows with their schedules."""
    flows = asyncio.run(_repository().list_flows(pipeline_id))
    if not flows:
        typer.echo("No flows found")
        return
    for flow in flows:
        schedule = flow.scheduling_config
        typer.echo(
            f"{flow.flow_id}\t{flow.name}\tpipeline {flow.pipeline_id}\t"
            f"{schedule.interval} ({schedule.status})"
        )


@flow_app.command("run")
def flow_run(
    flow_id: int,
    handlers: Optional[List[str]] = HANDLERS_OPTION,
) -> None:
    """
    Run a flow once and report the job outcome.

    Handlers are registered by importing the given modules, each of which
    must define ``register(registry)``.

    Example:
        dataloom flow run 3 --handlers myproject.handlers
        # Output: Job 12: completed
    """
    engine = _engine(handlers)
    try:
        job = asyncio.run(engine.run_flow(flow_id, TriggerContext(source="manual")))
    except DataloomError as exc:
        _fail(exc.message)
    typer.echo(f"Job {job.job_id}: {job.status_label}")
    if job.error_message:
        typer.echo(f"Error: {job.error_message}")
    if job.status is JobStatus.FAILED:
        raise typer.Exit(code=1)


@job_app.command("list")
def job_list(
    flow_id: Optional[int] = typer.Option(None, "--flow", help="Flow id"),
    status: Optional[JobStatus] = typer.Option(None, "--status", help="Job status"),
) -> None:
    """List jobs, newest first."""
    jobs = asyncio.run(_repository().list_jobs(flow_id=flow_id, status=status))
    if not jobs:
        typer.echo("No jobs found")
        return
    for job in jobs:
        typer.echo(f"{job.job_id}\tflow {job.flow_id}\t{job.status_label}")


@job_app.command("show")
def job_show(job_id: int) -> None:
    """Show a job's status, trigger and timings."""
    job = asyncio.run(_repository().get_job(job_id))
    if job is None:
        typer.echo("Job not found")
        raise typer.Exit(code=1)
    typer.echo(f"Job {job.job_id}: {job.status_label}")
    typer.echo(f"Flow {job.flow_id}, pipeline {job.pipeline_id}, trigger {job.trigger}")
    if job.started_at or job.completed_at:
        typer.echo(f"Ran {job.started_at} -> {job.completed_at}")
    if job.error_message:
        typer.echo(f"Error: {job.error_message}")


@processed_app.command("clear")
def processed_clear(
    flow_id: Optional[int] = typer.Option(None, "--flow", help="Flow id"),
    pipeline_id: Optional[int] = typer.Option(None, "--pipeline", help="Pipeline id"),
) -> None:
    """Forget processed items so they can be fetched again."""
    if (flow_id is None) == (pipeline_id is None):
        _fail("Pass exactly one of --flow or --pipeline")
    engine = _engine()
    if flow_id is not None:
        count = asyncio.run(engine.tracker.clear(ClearScope.FLOW, flow_id))
    else:
        count = asyncio.run(engine.tracker.clear(ClearScope.PIPELINE, pipeline_id))
    typer.echo(f"Cleared {count} processed items")


@processed_app.command("delete")
def processed_delete(record_id: int) -> None:
    """Delete one processed item record."""
    engine = _engine()
    if not asyncio.run(engine.tracker.delete(record_id)):
        typer.echo("Processed item not found")
        raise typer.Exit(code=1)
    typer.echo(f"Deleted processed item {record_id}")


@schedule_app.command("set")
def schedule_set(
    flow_id: int,
    interval: str,
    at: Optional[datetime] = typer.Option(None, "--at", help="One-off run time"),
    paused: bool = typer.Option(False, "--paused", help="Store the schedule paused"),
) -> None:
    """
    Schedule a flow.

    Example:
        dataloom schedule set 3 hourly
        dataloom schedule set 3 manual --at 2030-01-01T09:00:00
    """
    engine = _engine()
    try:
        registration = asyncio.run(
            engine.scheduler.schedule(
                flow_id, interval, at, status="paused" if paused else "active"
            )
        )
    except DataloomError as exc:
        _fail(exc.message)
    if registration is None:
        typer.echo(f"Flow {flow_id} schedule saved; no trigger registered")
    else:
        typer.echo(
            f"Flow {flow_id} next run at {registration.next_run_at.isoformat()}"
        )


@schedule_app.command("clear")
def schedule_clear(flow_id: int) -> None:
    """Remove a flow's schedule."""
    engine = _engine()
    asyncio.run(engine.scheduler.unschedule(flow_id))
    typer.echo(f"Flow {flow_id} unscheduled")


@schedule_app.command("list")
def schedule_list() -> None:
    """List registered schedules."""
    engine = _engine()
    registrations = asyncio.run(engine.scheduler.registrations())
    if not registrations:
        typer.echo("No schedules registered")
        return
    for registration in registrations:
        typer.echo(
            f"{registration.key}\t{registration.interval or 'one-off'}\t"
            f"{registration.next_run_at.isoformat()}"
        )


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Seconds to run before exiting (default: run indefinitely)"
    ),
    handlers: Optional[List[str]] = HANDLERS_OPTION,
) -> None:
    """
    Run the scheduler loop, firing due flows and pipelines.

    Example:
        dataloom scheduler run --handlers myproject.handlers --lifespan 300
    """
    engine = _engine(handlers)

    async def _run() -> None:
        await engine.scheduler.restore()
        await engine.scheduler.run(lifespan=lifespan)

    typer.echo("Starting scheduler")
    asyncio.run(_run())


if __name__ == "__main__":
    app()
