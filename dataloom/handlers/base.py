"""Capability contracts implemented by fetch, publish and update handlers."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Iterable, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..contracts import StepType, ToolDefinition, ToolResult, utcnow
from ..errors import ConfigurationError

if TYPE_CHECKING:
    from ..dedup import DeduplicationTracker
    from ..engine_data import EngineDataStore


TIMEFRAMES = {
    "24_hours": timedelta(hours=24),
    "72_hours": timedelta(hours=72),
    "7_days": timedelta(days=7),
    "30_days": timedelta(days=30),
}


class HandlerSettings(BaseModel):
    """Base class for typed handler settings."""

    model_config = ConfigDict(extra="forbid")


class FetchSettings(HandlerSettings):
    """Filters shared by most fetch handlers."""

    search: str = ""
    exclude_keywords: str = ""
    timeframe_limit: str = "all_time"


def resolve_settings(
    settings_model: Type[HandlerSettings],
    explicit: Optional[Dict[str, Any]] = None,
    site_defaults: Optional[Dict[str, Any]] = None,
) -> HandlerSettings:
    """Build effective settings: explicit values over site defaults over field defaults."""
    merged = {**(site_defaults or {}), **(explicit or {})}
    try:
        return settings_model.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid settings for {settings_model.__name__}: {e}"
        ) from e


class FetchedItem(BaseModel):
    """A source item returned by a fetch handler.

    Numeric identifiers such as post ids are stored as strings.
    """

    model_config = ConfigDict(coerce_numbers_to_str=True)

    item_identifier: str
    title: str = ""
    body: str = ""
    source_url: Optional[str] = None
    image_url: Optional[str] = None
    published_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class FetchContext:
    """Job context handed to fetch handlers.

    Gives handlers access to the deduplication tracker and the job's engine
    data without exposing the rest of the engine.
    """

    def __init__(
        self,
        job_id: int,
        pipeline_id: int,
        flow_id: int,
        flow_step_id: str,
        source_type: str,
        tracker: "DeduplicationTracker",
        engine_data: "EngineDataStore",
    ) -> None:
        self.job_id = job_id
        self.pipeline_id = pipeline_id
        self.flow_id = flow_id
        self.flow_step_id = flow_step_id
        self.source_type = source_type
        self._tracker = tracker
        self._engine_data = engine_data

    async def is_processed(self, item_identifier: str) -> bool:
        return await self._tracker.has_processed(self.flow_step_id, item_identifier)

    async def mark_processed(self, item_identifier: str) -> bool:
        return await self._tracker.mark_processed(
            self.flow_step_id, self.source_type, item_identifier, self.job_id
        )

    async def store_engine_data(self, **values: Any) -> None:
        await self._engine_data.store(self.job_id, values)


class FetchHandler(metaclass=abc.ABCMeta):
    """Base class for handlers that pull items from a source."""

    slug: ClassVar[str]
    label: ClassVar[str] = ""
    settings_model: ClassVar[Type[HandlerSettings]] = FetchSettings

    @property
    def source_type(self) -> str:
        return self.slug

    @abc.abstractmethod
    async def get_fetch_data(
        self, context: FetchContext, settings: HandlerSettings
    ) -> List[FetchedItem]:
        """Return new items; implementations should skip processed identifiers."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Filtering helpers
    @staticmethod
    def _keywords(value: str) -> List[str]:
        return [k.strip().lower() for k in value.split(",") if k.strip()]

    def matches_search(self, text: str, search: str) -> bool:
        """Return ``True`` when any comma separated search term appears in ``text``."""
        terms = self._keywords(search)
        if not terms:
            return True
        lowered = text.lower()
        return any(term in lowered for term in terms)

    def is_excluded(self, text: str, exclude_keywords: str) -> bool:
        lowered = text.lower()
        return any(term in lowered for term in self._keywords(exclude_keywords))

    def within_timeframe(
        self, published_at: Optional[datetime], timeframe_limit: str
    ) -> bool:
        if timeframe_limit == "all_time" or published_at is None:
            return True
        window = TIMEFRAMES.get(timeframe_limit)
        if window is None:
            raise ConfigurationError(f"Unknown timeframe limit: {timeframe_limit}")
        return published_at >= utcnow() - window

    def filter_items(
        self, items: Iterable[FetchedItem], settings: FetchSettings
    ) -> List[FetchedItem]:
        """Apply search, exclusion and timeframe settings to ``items``."""
        kept = []
        for item in items:
            text = f"{item.title} {item.body}"
            if not self.matches_search(text, settings.search):
                continue
            if self.is_excluded(text, settings.exclude_keywords):
                continue
            if not self.within_timeframe(item.published_at, settings.timeframe_limit):
                continue
            kept.append(item)
        return kept


class PublishHandler(metaclass=abc.ABCMeta):
    """Base class for handlers that push content to a destination.

    Publish handlers are exposed to the AI as tools named after their slug and
    can also be called directly by publish steps.
    """

    slug: ClassVar[str]
    label: ClassVar[str] = ""
    description: ClassVar[str] = ""
    settings_model: ClassVar[Type[HandlerSettings]] = HandlerSettings
    step_type: ClassVar[StepType] = StepType.PUBLISH
    required_engine_data: ClassVar[tuple[str, ...]] = ()

    def parameters_schema(self, settings: HandlerSettings) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Title of the content"},
                "content": {"type": "string", "description": "Content to publish"},
            },
            "required": ["content"],
        }

    def tool_definition(self, settings: HandlerSettings) -> ToolDefinition:
        return ToolDefinition(
            name=self.slug,
            description=self.description or f"{self.step_type.value} via {self.slug}",
            parameters=self.parameters_schema(settings),
            handler=self.slug,
            handler_config=settings.model_dump(),
            requires_engine_data=self.required_engine_data,
            ends_conversation=True,
        )

    @abc.abstractmethod
    async def handle_tool_call(
        self, parameters: Dict[str, Any], tool_def: ToolDefinition
    ) -> ToolResult | Dict[str, Any]:
        """Perform the action described by ``parameters``."""
        raise NotImplementedError


class UpdateHandler(PublishHandler):
    """Publish handler that modifies the item identified by ``source_url``."""

    step_type: ClassVar[StepType] = StepType.UPDATE
    required_engine_data: ClassVar[tuple[str, ...]] = ("source_url",)


class Tool(metaclass=abc.ABCMeta):
    """A global tool that any ai step may enable."""

    name: ClassVar[str]
    description: ClassVar[str] = ""
    parameters: ClassVar[Dict[str, Any]] = {"type": "object", "properties": {}}
    requires_config: ClassVar[bool] = False
    ends_conversation: ClassVar[bool] = False

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
            requires_config=self.requires_config,
            ends_conversation=self.ends_conversation,
        )

    def is_configured(self, settings: Optional[Dict[str, Any]]) -> bool:
        return not self.requires_config or bool(settings)

    @abc.abstractmethod
    async def handle_tool_call(
        self, parameters: Dict[str, Any], tool_def: ToolDefinition
    ) -> ToolResult | Dict[str, Any]:
        raise NotImplementedError
