"""Tool executor and parameter building tests."""

import pytest

from dataloom import (
    DataPacket,
    ErrorKind,
    FlowStepConfig,
    HandlerExecutionError,
    StepPayload,
    StepType,
    ToolExecutor,
    ToolResult,
)
from dataloom.contracts import HandlerSelection
from dataloom.tools.executor import build_parameters, normalize_result


def _step(step_type=StepType.AI, handler=None, step_config=None, pid="s1"):
    return FlowStepConfig(
        flow_step_id=f"{pid}_1",
        pipeline_step_id=pid,
        pipeline_id=1,
        flow_id=1,
        step_type=step_type,
        handler=HandlerSelection(slug=handler) if handler else None,
        step_config=step_config or {},
    )


def _payload(engine_data=None, step=None):
    step = step or _step()
    return StepPayload(
        job_id=7,
        flow_id=1,
        pipeline_id=1,
        flow_step_id=step.flow_step_id,
        data=[DataPacket(type="fetch", content={"title": "t", "body": "b"})],
        flow_step_config=step,
        engine_data=engine_data or {},
    )


def test_ai_arguments_win_over_payload_and_engine_data():
    payload = _payload({"source_url": "https://a.test", "image_url": "https://i.test"})

    params = build_parameters(payload, {"source_url": "https://b.test", "job_id": 99})

    assert params["source_url"] == "https://b.test"
    assert params["image_url"] == "https://i.test"
    assert params["job_id"] == 99
    assert params["flow_step_id"] == "s1_1"
    assert params["data"][0]["content"] == {"title": "t", "body": "b"}


def test_payload_keys_win_over_engine_data():
    payload = _payload({"job_id": 1234})

    params = build_parameters(payload, {})

    assert params["job_id"] == 7
    assert params["engine_data"] == {"job_id": 1234}


def test_tool_cannot_mutate_engine_data():
    payload = _payload({"tags": ["a"]})

    params = build_parameters(payload, {})
    params["engine_data"]["tags"].append("b")
    params["tags"].append("c")

    assert payload.engine_data == {"tags": ["a"]}


def test_normalize_result_shapes():
    assert normalize_result({"success": True, "data": 1}, "t").to_dict() == {
        "success": True,
        "data": 1,
    }
    failed = normalize_result({"success": False, "error": "nope"}, "t")
    assert failed.to_dict() == {"success": False, "error": "nope"}
    invalid = normalize_result("whatever", "t")
    assert invalid.success is False
    assert invalid.error == "Tool 't' returned an invalid result"
    assert normalize_result(ToolResult.ok(5), "t").tool_name == "t"


def test_resolve_tools_includes_adjacent_handlers(registry, config):
    executor = ToolExecutor(registry, config)
    publish = _step(StepType.PUBLISH, handler="stub_publish", pid="p1")
    fetch = _step(StepType.FETCH, handler="stub_feed", pid="f1")

    tools = executor.resolve_tools(_step(), [fetch, publish])

    assert set(tools.names()) == {"skip_item", "lookup", "stub_publish"}
    definition = tools.get("stub_publish").definition
    assert definition.is_handler_tool
    assert definition.ends_conversation


def test_enabled_and_disabled_tools(registry, config):
    config.disabled_tools = ["skip_item"]
    executor = ToolExecutor(registry, config)

    tools = executor.resolve_tools(_step(step_config={"enabled_tools": ["lookup"]}))
    assert tools.names() == ["lookup"]

    tools = executor.resolve_tools(_step())
    assert "skip_item" not in tools


def test_tool_requiring_config_is_hidden_until_configured(registry, config, lookup_tool):
    type(lookup_tool).requires_config = True
    try:
        executor = ToolExecutor(registry, config)
        assert "lookup" not in executor.resolve_tools(_step())
        config.tool_settings = {"lookup": {"api_key": "k"}}
        assert "lookup" in executor.resolve_tools(_step())
    finally:
        type(lookup_tool).requires_config = False


@pytest.mark.asyncio
async def test_execute_unknown_and_disabled_tools(registry, config):
    config.disabled_tools = ["lookup"]
    executor = ToolExecutor(registry, config)
    payload = _payload()

    missing = await executor.execute("nope", {}, payload)
    disabled = await executor.execute("lookup", {"query": "x"}, payload)

    assert missing.error == "Tool 'nope' not found"
    assert missing.error_kind is ErrorKind.TOOL_NOT_FOUND
    assert disabled.error == "Tool 'lookup' is not enabled"
    assert disabled.error_kind is ErrorKind.TOOL_DISABLED


@pytest.mark.asyncio
async def test_execute_passes_merged_parameters(registry, config, lookup_tool):
    executor = ToolExecutor(registry, config)

    result = await executor.execute(
        "lookup", {"query": "python"}, _payload({"source_url": "https://a.test"})
    )

    assert result.success
    assert result.data == {"answer": "facts about python"}
    assert lookup_tool.calls[0]["source_url"] == "https://a.test"
    assert lookup_tool.calls[0]["job_id"] == 7


@pytest.mark.asyncio
async def test_missing_engine_data_for_update_tool(registry, config, update_handler):
    executor = ToolExecutor(registry, config)
    update = _step(StepType.UPDATE, handler="stub_update", pid="u1")
    tools = executor.resolve_tools(_step(), [update])

    result = await executor.execute("stub_update", {"content": "x"}, _payload(), tools)

    assert result.to_dict() == {"success": False, "error": "missing source_url"}
    assert result.error_kind is ErrorKind.MISSING_ENGINE_DATA
    assert update_handler.calls == []


@pytest.mark.asyncio
async def test_tool_exception_becomes_failed_result(registry, config, lookup_tool):
    async def boom(parameters, tool_def):
        raise ValueError("boom")

    lookup_tool.handle_tool_call = boom
    executor = ToolExecutor(registry, config)

    result = await executor.execute("lookup", {"query": "x"}, _payload())

    assert result.success is False
    assert result.error == "Tool execution exception: boom"
    assert result.error_kind is ErrorKind.TOOL_EXECUTION


@pytest.mark.asyncio
async def test_engine_errors_keep_their_kind(registry, config, lookup_tool):
    async def rejected(parameters, tool_def):
        raise HandlerExecutionError("quota exceeded")

    lookup_tool.handle_tool_call = rejected
    executor = ToolExecutor(registry, config)

    result = await executor.execute("lookup", {"query": "x"}, _payload())

    assert result.error == "quota exceeded"
    assert result.error_kind is ErrorKind.HANDLER_EXECUTION


@pytest.mark.asyncio
async def test_transient_failures_are_retried(registry, config, lookup_tool):
    attempts = []

    async def flaky(parameters, tool_def):
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("connection reset")
        return {"success": True, "data": "ok"}

    lookup_tool.handle_tool_call = flaky
    executor = ToolExecutor(registry, config)

    result = await executor.execute("lookup", {"query": "x"}, _payload())

    assert result.success
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded(registry, config, lookup_tool):
    attempts = []

    async def down(parameters, tool_def):
        attempts.append(1)
        raise TimeoutError("timed out")

    lookup_tool.handle_tool_call = down
    config.ai.tool_max_retries = 1
    executor = ToolExecutor(registry, config)

    result = await executor.execute("lookup", {"query": "x"}, _payload())

    assert result.success is False
    assert len(attempts) == 2
