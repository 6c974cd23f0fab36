"""Step runner, fetch step and directive tests."""

from datetime import datetime, timezone

import pytest

from conftest import make_items

from dataloom import (
    DataPacket,
    FlowStepConfig,
    StepPayload,
    StepRunner,
    StepType,
)
from dataloom.ai.directives import (
    CORE_IDENTITY,
    Directive,
    DirectiveContext,
    DirectiveSet,
    default_directives,
)
from dataloom.config import AIConfig
from dataloom.contracts import HandlerSelection, ToolDefinition
from dataloom.steps.base import Step, StepOutcome, StepResult, adjacent_steps


def _step(step_type, pid, order, handler=None):
    return FlowStepConfig(
        flow_step_id=f"{pid}_1",
        pipeline_step_id=pid,
        pipeline_id=1,
        flow_id=1,
        step_type=step_type,
        execution_order=order,
        handler=HandlerSelection(slug=handler) if handler else None,
    )


def _payload(step, data=None, job_id=1):
    return StepPayload(
        job_id=job_id,
        flow_id=1,
        pipeline_id=1,
        flow_step_id=step.flow_step_id,
        data=data or [],
        flow_step_config=step,
    )


class EchoStep(Step):
    async def execute(self, payload, flow_steps):
        return StepResult(packets=[DataPacket(type="echo", content={"body": "new"})])


@pytest.mark.asyncio
async def test_runner_appends_packets():
    runner = StepRunner({StepType.AI: EchoStep()})
    existing = DataPacket(type="fetch", content={"body": "old"})
    step = _step(StepType.AI, "a1", 0)

    result = await runner.execute(StepType.AI, _payload(step, [existing]))

    assert [p.type for p in result.data] == ["fetch", "echo"]
    assert result.data[0] == existing
    assert [p.type for p in result.packets] == ["echo"]


@pytest.mark.asyncio
async def test_fetch_step_marks_items_and_stores_engine_data(engine):
    step = _step(StepType.FETCH, "f1", 0, handler="stub_feed")

    result = await engine.runner.execute(StepType.FETCH, _payload(step))

    assert result.outcome is StepOutcome.OK
    assert result.items_processed == 3
    packet = result.packets[0]
    assert packet.type == "fetch"
    assert packet.handler == "stub_feed"
    assert packet.content == {"title": "Story 1", "body": "Body of story 1"}
    assert packet.metadata["item_identifier"] == "item-1"
    assert await engine.engine_data.snapshot(1) == {"source_url": "https://source.test/1"}
    assert await engine.tracker.has_processed("f1_1", "item-2")


@pytest.mark.asyncio
async def test_fetch_step_skips_items_already_processed(engine, fetch_handler):
    step = _step(StepType.FETCH, "f1", 0, handler="stub_feed")
    await engine.tracker.mark_processed("f1_1", "stub_feed", "item-1", job_id=99)

    async def ignore_dedup(context, settings):
        return make_items(3) + make_items(1)

    fetch_handler.get_fetch_data = ignore_dedup

    result = await engine.runner.execute(StepType.FETCH, _payload(step))

    assert [p.metadata["item_identifier"] for p in result.packets] == [
        "item-2",
        "item-3",
    ]


@pytest.mark.asyncio
async def test_fetch_step_accepts_items_marked_by_handler_in_same_job(
    engine, fetch_handler
):
    step = _step(StepType.FETCH, "f1", 0, handler="stub_feed")

    async def marks_itself(context, settings):
        items = make_items(2)
        for item in items:
            await context.mark_processed(item.item_identifier)
        await context.store_engine_data(image_url="https://img.test/1.png")
        return items

    fetch_handler.get_fetch_data = marks_itself

    result = await engine.runner.execute(StepType.FETCH, _payload(step, job_id=5))

    assert result.items_processed == 2
    assert await engine.engine_data.snapshot(5) == {
        "image_url": "https://img.test/1.png",
        "source_url": "https://source.test/1",
    }


@pytest.mark.asyncio
async def test_fetch_step_without_new_items(engine, fetch_handler):
    fetch_handler.items = []
    step = _step(StepType.FETCH, "f1", 0, handler="stub_feed")

    result = await engine.runner.execute(StepType.FETCH, _payload(step))

    assert result.outcome is StepOutcome.NO_ITEMS
    assert result.packets == []


def test_adjacent_steps():
    fetch = _step(StepType.FETCH, "f1", 0)
    ai = _step(StepType.AI, "a1", 1)
    publish = _step(StepType.PUBLISH, "p1", 2)

    assert adjacent_steps([publish, ai, fetch], ai) == [fetch, publish]
    assert adjacent_steps([fetch, ai, publish], fetch) == [ai]


def test_directives_render_in_priority_order():
    fetch = _step(StepType.FETCH, "f1", 0, handler="rss")
    ai = _step(StepType.AI, "a1", 1)
    ai.step_config["system_prompt"] = "Write in a friendly tone."
    publish = _step(StepType.PUBLISH, "p1", 2, handler="wordpress")
    context = DirectiveContext(
        flow_step=ai,
        flow_steps=[fetch, ai, publish],
        tools=[
            ToolDefinition(name="wordpress", description="Publish", handler="wordpress"),
            ToolDefinition(name="skip_item", description="Skip"),
        ],
        ai_config=AIConfig(global_system_prompt="Be accurate.", site_context="Site: Example"),
        now=datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )

    messages = default_directives().build_messages(context)

    assert [m.role for m in messages] == ["system"] * 5
    assert messages[1].content == "Be accurate."
    assert "WORKFLOW: FETCH (rss) -> AI [YOU] -> PUBLISH (wordpress)" in messages[2].content
    assert messages[3].content.startswith("AVAILABLE TOOLS:\n- wordpress: Publish")
    assert "Calling wordpress completes this step" in messages[3].content
    assert messages[4].content == (
        "Current date and time (UTC): 2025-01-02T03:04:05+00:00\nSite: Example"
    )


def test_empty_directives_are_skipped_and_custom_ones_ordered():
    ai = _step(StepType.AI, "a1", 0)
    directives = default_directives()
    directives.add(Directive("first", CORE_IDENTITY - 5, lambda context: "FIRST"))
    context = DirectiveContext(flow_step=ai, flow_steps=[], tools=[], ai_config=AIConfig())

    messages = directives.build_messages(context)

    assert messages[0].content == "FIRST"
    assert len(messages) == 3
    assert DirectiveSet().build_messages(context) == []
