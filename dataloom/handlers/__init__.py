from .base import (
    FetchContext,
    FetchedItem,
    FetchHandler,
    FetchSettings,
    HandlerSettings,
    PublishHandler,
    Tool,
    UpdateHandler,
    resolve_settings,
)

__all__ = [
    "FetchContext",
    "FetchedItem",
    "FetchHandler",
    "FetchSettings",
    "HandlerSettings",
    "PublishHandler",
    "Tool",
    "UpdateHandler",
    "resolve_settings",
]
