from datetime import timedelta

import pytest

from dataloom import (
    FlowStepConfig,
    InMemoryRepository,
    JobStatus,
    PipelineStep,
    SchedulingConfig,
    SQLiteRepository,
    StepType,
)
from dataloom.contracts import TERMINAL_STATUSES, HandlerSelection, utcnow


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryRepository()
    else:
        repository = SQLiteRepository(tmp_path / "engine.db")
        yield repository
        repository.close()


@pytest.mark.asyncio
async def test_pipeline_and_flow_crud(repo):
    steps = [
        PipelineStep(pipeline_step_id="f1", step_type=StepType.FETCH),
        PipelineStep(pipeline_step_id="a1", step_type=StepType.AI, execution_order=1),
    ]
    pipeline = await repo.create_pipeline("News", steps)
    flow = await repo.create_flow(
        pipeline.pipeline_id, "Daily", SchedulingConfig(interval="daily", status="active")
    )
    flow.flow_config[f"f1_{flow.flow_id}"] = FlowStepConfig(
        flow_step_id=f"f1_{flow.flow_id}",
        pipeline_step_id="f1",
        pipeline_id=pipeline.pipeline_id,
        flow_id=flow.flow_id,
        step_type=StepType.FETCH,
        handler=HandlerSelection(slug="rss", settings={"search": "python"}),
    )
    await repo.save_flow(flow)

    stored_pipeline = await repo.get_pipeline(pipeline.pipeline_id)
    stored_flow = await repo.get_flow(flow.flow_id)

    assert [s.pipeline_step_id for s in stored_pipeline.ordered_steps()] == ["f1", "a1"]
    assert stored_flow.scheduling_config.interval == "daily"
    assert stored_flow.scheduling_config.is_active
    step = stored_flow.step_for("f1")
    assert step.handler.slug == "rss"
    assert step.handler.settings == {"search": "python"}
    assert [f.flow_id for f in await repo.list_flows(pipeline.pipeline_id)] == [
        flow.flow_id
    ]
    assert await repo.get_flow(12345) is None


@pytest.mark.asyncio
async def test_job_lifecycle(repo):
    pipeline = await repo.create_pipeline("p")
    flow = await repo.create_flow(pipeline.pipeline_id, "f")

    job = await repo.create_job(flow.flow_id, pipeline.pipeline_id, "schedule")
    assert job.status is JobStatus.PENDING
    await repo.start_job(job.job_id)
    assert (await repo.get_job(job.job_id)).status is JobStatus.PROCESSING
    await repo.complete_job(
        job.job_id, JobStatus.AGENT_SKIPPED, skip_reason="not relevant"
    )

    stored = await repo.get_job(job.job_id)
    assert stored.status is JobStatus.AGENT_SKIPPED
    assert stored.skip_reason == "not relevant"
    assert stored.trigger == "schedule"
    assert stored.completed_at is not None
    assert [j.job_id for j in await repo.list_jobs(status=JobStatus.AGENT_SKIPPED)] == [
        job.job_id
    ]
    assert await repo.list_jobs(flow_id=flow.flow_id, status=JobStatus.FAILED) == []


@pytest.mark.asyncio
async def test_list_jobs_newest_first(repo):
    pipeline = await repo.create_pipeline("p")
    flow = await repo.create_flow(pipeline.pipeline_id, "f")
    first = await repo.create_job(flow.flow_id, pipeline.pipeline_id, "manual")
    second = await repo.create_job(flow.flow_id, pipeline.pipeline_id, "manual")

    jobs = await repo.list_jobs(flow_id=flow.flow_id)

    assert [j.job_id for j in jobs] == [second.job_id, first.job_id]


@pytest.mark.asyncio
async def test_stuck_and_old_jobs(repo):
    pipeline = await repo.create_pipeline("p")
    flow = await repo.create_flow(pipeline.pipeline_id, "f")
    stuck = await repo.create_job(flow.flow_id, pipeline.pipeline_id, "manual")
    await repo.start_job(stuck.job_id)
    done = await repo.create_job(flow.flow_id, pipeline.pipeline_id, "manual")
    await repo.complete_job(done.job_id, JobStatus.COMPLETED)

    later = utcnow() + timedelta(hours=1)
    assert await repo.fail_stuck_jobs(later, pipeline.pipeline_id + 1) == 0
    assert await repo.fail_stuck_jobs(later, pipeline.pipeline_id) == 1
    failed = await repo.get_job(stuck.job_id)
    assert failed.status is JobStatus.FAILED
    assert failed.error_message == "Job timed out"

    assert await repo.delete_jobs_before(later, TERMINAL_STATUSES) == 2
    assert await repo.list_jobs() == []


@pytest.mark.asyncio
async def test_engine_data_merge_and_delete(repo):
    await repo.merge_engine_data(1, {"source_url": "https://a.test"})
    await repo.merge_engine_data(1, {"image_url": "https://i.test"})

    assert await repo.get_engine_data(1) == {
        "source_url": "https://a.test",
        "image_url": "https://i.test",
    }
    await repo.delete_engine_data(1)
    assert await repo.get_engine_data(1) == {}


@pytest.mark.asyncio
async def test_processed_items(repo):
    assert await repo.add_processed_item("s1_1", "rss", "a", 1) is True
    assert await repo.add_processed_item("s1_1", "rss", "a", 2) is False
    assert await repo.add_processed_item("s2_1", "rss", "a", 1) is True
    assert await repo.add_processed_item("s1_21", "rss", "a", 3) is True

    assert await repo.has_processed_item("s1_1", "a")
    assert len(await repo.list_processed_items(flow_step_id="s1_1")) == 1
    assert len(await repo.list_processed_items(job_id=1)) == 2

    assert await repo.delete_processed_items(flow_id=1) == 2
    assert await repo.has_processed_item("s1_21", "a")
    with pytest.raises(ValueError):
        await repo.delete_processed_items()

    record = (await repo.list_processed_items())[0]
    assert await repo.delete_processed_item(record.record_id) is True
    assert await repo.delete_processed_item(record.record_id) is False


@pytest.mark.asyncio
async def test_delete_flow_cascades(repo):
    pipeline = await repo.create_pipeline("p")
    flow = await repo.create_flow(pipeline.pipeline_id, "f")
    job = await repo.create_job(flow.flow_id, pipeline.pipeline_id, "manual")
    await repo.add_processed_item(f"s1_{flow.flow_id}", "rss", "a", job.job_id)

    assert await repo.delete_pipeline(pipeline.pipeline_id) is True
    assert await repo.delete_pipeline(pipeline.pipeline_id) is False
    assert await repo.get_flow(flow.flow_id) is None
    assert await repo.get_job(job.job_id) is None
    assert await repo.list_processed_items() == []


@pytest.mark.asyncio
async def test_sqlite_persists_across_instances(tmp_path):
    path = tmp_path / "engine.db"
    repo = SQLiteRepository(path)
    pipeline = await repo.create_pipeline("Persistent")
    await repo.add_processed_item("s1_1", "rss", "a", None)
    repo.close()

    reopened = SQLiteRepository(path)
    try:
        assert (await reopened.get_pipeline(pipeline.pipeline_id)).name == "Persistent"
        assert await reopened.has_processed_item("s1_1", "a")
    finally:
        reopened.close()
