"""Shared fixtures: stub handlers, a scripted AI provider and a wired engine."""

from typing import Any, Dict, List, Optional

import pytest

from dataloom import (
    AIRequest,
    AIResponse,
    DataloomConfig,
    Engine,
    FetchedItem,
    FetchHandler,
    HandlerRegistry,
    InMemoryRepository,
    PublishHandler,
    Tool,
    ToolCall,
    ToolResult,
    UpdateHandler,
)
from dataloom.config import AIConfig


class StubFetchHandler(FetchHandler):
    slug = "stub_feed"
    label = "Stub feed"

    def __init__(self, items: Optional[List[FetchedItem]] = None) -> None:
        self.items = list(items or [])
        self.calls = 0

    async def get_fetch_data(self, context, settings):
        self.calls += 1
        fresh = []
        for item in self.filter_items(self.items, settings):
            if await context.is_processed(item.item_identifier):
                continue
            fresh.append(item)
        return fresh


class StubPublishHandler(PublishHandler):
    slug = "stub_publish"
    label = "Stub publisher"
    description = "Publish the final post"

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def handle_tool_call(self, parameters, tool_def):
        self.calls.append(parameters)
        post_id = len(self.calls)
        return ToolResult.ok({"post_id": post_id, "url": f"https://example.test/{post_id}"})


class StubUpdateHandler(UpdateHandler):
    slug = "stub_update"
    label = "Stub updater"

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def handle_tool_call(self, parameters, tool_def):
        self.calls.append(parameters)
        return {"success": True, "data": {"updated": parameters["source_url"]}}


class LookupTool(Tool):
    name = "lookup"
    description = "Look up background facts"
    parameters = {
        "type": "object",
        "properties": {"query": {"type": "string"}},
        "required": ["query"],
    }

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def handle_tool_call(self, parameters, tool_def):
        self.calls.append(parameters)
        return ToolResult.ok({"answer": f"facts about {parameters.get('query')}"})


class ScriptedProvider:
    """Returns queued responses in order, then a plain text reply."""

    def __init__(self, responses: Optional[List[AIResponse]] = None) -> None:
        self.responses = list(responses or [])
        self.requests: List[AIRequest] = []

    def queue(self, *responses: AIResponse) -> None:
        self.responses.extend(responses)

    async def request(self, request: AIRequest) -> AIResponse:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return AIResponse(content="Done")


def tool_call(name: str, call_id: str = "call_1", **arguments) -> AIResponse:
    return AIResponse(tool_calls=[ToolCall(name=name, arguments=arguments, call_id=call_id)])


def make_items(count: int, with_urls: bool = True) -> List[FetchedItem]:
    return [
        FetchedItem(
            item_identifier=f"item-{i}",
            title=f"Story {i}",
            body=f"Body of story {i}",
            source_url=f"https://source.test/{i}" if with_urls else None,
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def fetch_handler():
    return StubFetchHandler(make_items(3))


@pytest.fixture
def publish_handler():
    return StubPublishHandler()


@pytest.fixture
def update_handler():
    return StubUpdateHandler()


@pytest.fixture
def lookup_tool():
    return LookupTool()


@pytest.fixture
def registry(fetch_handler, publish_handler, update_handler, lookup_tool):
    registry = HandlerRegistry()
    registry.register_fetch(fetch_handler)
    registry.register_publish(publish_handler)
    registry.register_update(update_handler)
    registry.register_tool(lookup_tool)
    return registry


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def config():
    return DataloomConfig(ai=AIConfig(model="test:model", tool_retry_base_delay=0))


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def engine(repository, registry, provider, config):
    return Engine(repository, registry, provider, config)


@pytest.fixture
def make_flow(engine):
    """Create a pipeline and a flow from step descriptions.

    Each step is given as a dict with ``type`` and optional ``handler``, ``settings``,
    ``config`` and ``message`` keys.
    """

    async def _make(*steps: Dict[str, Any], name: str = "Test flow"):
        pipeline = await engine.manager.create_pipeline("Test pipeline")
        step_ids = []
        for entry in steps:
            step = await engine.manager.add_step(
                pipeline.pipeline_id, entry["type"], entry.get("config")
            )
            step_ids.append(step.pipeline_step_id)
        flow = await engine.manager.create_flow(pipeline.pipeline_id, name)
        for entry, step_id in zip(steps, step_ids):
            if entry.get("handler"):
                await engine.manager.set_handler(
                    flow.flow_id, step_id, entry["handler"], entry.get("settings")
                )
            if entry.get("message"):
                await engine.manager.set_user_message(
                    flow.flow_id, step_id, entry["message"]
                )
        return await engine.repository.get_flow(flow.flow_id)

    return _make
