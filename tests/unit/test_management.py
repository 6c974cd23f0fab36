"""Pipeline and flow management tests."""

import pytest

from dataloom import ConfigurationError, FlowNotFoundError, StepType
from dataloom.contracts import make_flow_step_id, split_flow_step_id


@pytest.mark.asyncio
async def test_adding_steps_syncs_existing_flows(engine):
    manager = engine.manager
    pipeline = await manager.create_pipeline("News")
    fetch = await manager.add_step(pipeline.pipeline_id, "fetch")
    flow = await manager.create_flow(pipeline.pipeline_id, "Morning")

    ai = await manager.add_step(pipeline.pipeline_id, StepType.AI, {"model": "x:y"})

    stored = await engine.repository.get_flow(flow.flow_id)
    steps = stored.ordered_steps()
    assert [s.flow_step_id for s in steps] == [
        make_flow_step_id(fetch.pipeline_step_id, flow.flow_id),
        make_flow_step_id(ai.pipeline_step_id, flow.flow_id),
    ]
    assert steps[1].step_config == {"model": "x:y"}
    assert split_flow_step_id(steps[1].flow_step_id) == (
        ai.pipeline_step_id,
        flow.flow_id,
    )


@pytest.mark.asyncio
async def test_step_insert_move_and_remove(engine):
    manager = engine.manager
    pipeline = await manager.create_pipeline("News")
    fetch = await manager.add_step(pipeline.pipeline_id, "fetch")
    publish = await manager.add_step(pipeline.pipeline_id, "publish")
    ai = await manager.add_step(pipeline.pipeline_id, "ai", position=1)

    order = (await engine.repository.get_pipeline(pipeline.pipeline_id)).ordered_steps()
    assert [s.pipeline_step_id for s in order] == [
        fetch.pipeline_step_id,
        ai.pipeline_step_id,
        publish.pipeline_step_id,
    ]
    assert [s.execution_order for s in order] == [0, 1, 2]

    moved = await manager.move_step(pipeline.pipeline_id, publish.pipeline_step_id, 0)
    assert moved.ordered_steps()[0].pipeline_step_id == publish.pipeline_step_id

    assert await manager.remove_step(pipeline.pipeline_id, ai.pipeline_step_id) is True
    assert await manager.remove_step(pipeline.pipeline_id, ai.pipeline_step_id) is False
    with pytest.raises(ConfigurationError):
        await manager.move_step(pipeline.pipeline_id, "missing", 0)


@pytest.mark.asyncio
async def test_removing_step_drops_its_processed_items(engine, make_flow):
    flow = await make_flow({"type": "fetch", "handler": "stub_feed"}, {"type": "ai"})
    fetch_step = flow.ordered_steps()[0]
    await engine.run_flow(flow.flow_id)
    assert await engine.repository.list_processed_items(
        flow_step_id=fetch_step.flow_step_id
    )

    await engine.manager.remove_step(flow.pipeline_id, fetch_step.pipeline_step_id)

    assert await engine.repository.list_processed_items() == []
    stored = await engine.repository.get_flow(flow.flow_id)
    assert [s.step_type for s in stored.ordered_steps()] == [StepType.AI]


@pytest.mark.asyncio
async def test_handler_selection_survives_resync(engine, make_flow):
    flow = await make_flow(
        {"type": "fetch", "handler": "stub_feed", "settings": {"search": "python"}}
    )

    await engine.manager.update_step_config(
        flow.pipeline_id, flow.ordered_steps()[0].pipeline_step_id, {"label": "x"}
    )

    step = (await engine.repository.get_flow(flow.flow_id)).ordered_steps()[0]
    assert step.handler.slug == "stub_feed"
    assert step.handler.settings == {"search": "python"}
    assert step.step_config == {"label": "x"}


@pytest.mark.asyncio
async def test_set_handler_validates(engine, make_flow):
    flow = await make_flow({"type": "fetch"}, {"type": "ai"})
    fetch_id, ai_id = [s.pipeline_step_id for s in flow.ordered_steps()]

    with pytest.raises(ConfigurationError):
        await engine.manager.set_handler(flow.flow_id, fetch_id, "unknown_feed")
    with pytest.raises(ConfigurationError):
        await engine.manager.set_handler(
            flow.flow_id, fetch_id, "stub_feed", {"not_a_setting": 1}
        )
    with pytest.raises(ConfigurationError):
        await engine.manager.set_handler(flow.flow_id, ai_id, "stub_feed")
    with pytest.raises(ConfigurationError):
        await engine.manager.set_user_message(flow.flow_id, fetch_id, "hello")
    with pytest.raises(FlowNotFoundError):
        await engine.manager.set_handler(999, fetch_id, "stub_feed")


@pytest.mark.asyncio
async def test_delete_pipeline_unschedules_and_cascades(engine, make_flow):
    flow = await make_flow({"type": "fetch", "handler": "stub_feed"})
    await engine.scheduler.schedule(flow.flow_id, "hourly")
    await engine.run_flow(flow.flow_id)

    assert await engine.manager.delete_pipeline(flow.pipeline_id) is True

    assert await engine.scheduler.registrations() == []
    assert await engine.repository.get_flow(flow.flow_id) is None
    assert await engine.repository.list_jobs() == []
    assert await engine.repository.list_processed_items() == []


@pytest.mark.asyncio
async def test_delete_flow_unschedules(engine, make_flow):
    flow = await make_flow({"type": "fetch", "handler": "stub_feed"})
    await engine.scheduler.schedule(flow.flow_id, "daily")

    assert await engine.manager.delete_flow(flow.flow_id) is True
    assert await engine.manager.delete_flow(flow.flow_id) is False
    assert await engine.scheduler.registrations() == []


@pytest.mark.asyncio
async def test_pipeline_name_required(engine):
    with pytest.raises(ConfigurationError):
        await engine.manager.create_pipeline("  ")
