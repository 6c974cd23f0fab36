"""Handler base classes and registry tests."""

import sys
import types
from datetime import timedelta

import pytest

from conftest import LookupTool, StubFetchHandler, StubPublishHandler, StubUpdateHandler

from dataloom import (
    ConfigurationError,
    FetchedItem,
    FetchSettings,
    HandlerRegistry,
    StepType,
)
from dataloom.contracts import utcnow
from dataloom.handlers.base import resolve_settings
from dataloom.registry import load_handler_module


def test_settings_precedence():
    settings = resolve_settings(
        FetchSettings,
        {"search": "rust"},
        {"search": "python", "timeframe_limit": "7_days"},
    )

    assert settings.search == "rust"
    assert settings.timeframe_limit == "7_days"
    assert settings.exclude_keywords == ""


def test_unknown_settings_are_rejected():
    with pytest.raises(ConfigurationError):
        resolve_settings(FetchSettings, {"serach": "typo"})


def test_filter_items():
    handler = StubFetchHandler()
    items = [
        FetchedItem(item_identifier="1", title="Python 3.13 released"),
        FetchedItem(item_identifier="2", title="Python sponsored post"),
        FetchedItem(item_identifier="3", title="Rust news"),
        FetchedItem(
            item_identifier="4",
            title="Old python story",
            published_at=utcnow() - timedelta(days=3),
        ),
    ]
    settings = FetchSettings(
        search="python", exclude_keywords="sponsored", timeframe_limit="24_hours"
    )

    kept = handler.filter_items(items, settings)

    assert [item.item_identifier for item in kept] == ["1"]


def test_unknown_timeframe_is_a_configuration_error():
    handler = StubFetchHandler()
    with pytest.raises(ConfigurationError):
        handler.within_timeframe(utcnow(), "forever")


def test_publish_handler_tool_definition():
    definition = StubPublishHandler().tool_definition(
        StubPublishHandler.settings_model()
    )

    assert definition.name == "stub_publish"
    assert definition.handler == "stub_publish"
    assert definition.ends_conversation
    assert definition.parameters["required"] == ["content"]
    update = StubUpdateHandler().tool_definition(StubUpdateHandler.settings_model())
    assert update.requires_engine_data == ("source_url",)


def test_registry_lookup_and_duplicates():
    registry = HandlerRegistry()
    registry.register_fetch(StubFetchHandler())
    registry.register_publish(StubPublishHandler())
    registry.register_update(StubUpdateHandler())
    registry.register_tool(LookupTool())

    assert registry.slugs(StepType.FETCH) == ["stub_feed"]
    assert registry.handler_for(StepType.UPDATE, "stub_update").slug == "stub_update"
    assert {tool.name for tool in registry.tools()} == {"skip_item", "lookup"}
    with pytest.raises(ConfigurationError):
        registry.register_fetch(StubFetchHandler())
    with pytest.raises(ConfigurationError):
        registry.register_publish(StubUpdateHandler())
    with pytest.raises(ConfigurationError):
        registry.output_handler(StepType.PUBLISH, "stub_update")
    with pytest.raises(ConfigurationError):
        registry.handler_for(StepType.AI, "anything")


def test_registry_without_builtin_tools():
    assert HandlerRegistry(include_builtin_tools=False).tools() == []


def test_load_handler_module(monkeypatch):
    module = types.ModuleType("site_handlers")
    module.register = lambda registry: registry.register_fetch(StubFetchHandler())
    monkeypatch.setitem(sys.modules, "site_handlers", module)
    empty = types.ModuleType("empty_handlers")
    monkeypatch.setitem(sys.modules, "empty_handlers", empty)
    registry = HandlerRegistry()

    load_handler_module("site_handlers", registry)

    assert registry.fetch_handler("stub_feed").slug == "stub_feed"
    with pytest.raises(ConfigurationError):
        load_handler_module("empty_handlers", registry)


def test_fetched_item_accepts_numeric_identifier():
    item = FetchedItem.model_validate({"item_identifier": 42, "title": "Post 42"})

    assert item.item_identifier == "42"
