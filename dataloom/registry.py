"""Explicit registry of handlers and tools available to the engine."""

from __future__ import annotations

import importlib
import logging
from typing import Dict, List, Optional, Union

from .contracts import StepType
from .errors import ConfigurationError
from .handlers.base import FetchHandler, PublishHandler, Tool, UpdateHandler
from .tools.builtin import BUILTIN_TOOLS

logger = logging.getLogger(__name__)

OutputHandler = Union[PublishHandler, UpdateHandler]


class HandlerRegistry:
    """Maps handler slugs and tool names to their implementations.

    Populated once at startup and passed to the components that need it.
    """

    def __init__(self, include_builtin_tools: bool = True) -> None:
        self._fetch: Dict[str, FetchHandler] = {}
        self._publish: Dict[str, PublishHandler] = {}
        self._update: Dict[str, UpdateHandler] = {}
        self._tools: Dict[str, Tool] = {}
        if include_builtin_tools:
            for tool_cls in BUILTIN_TOOLS:
                self.register_tool(tool_cls())

    # ------------------------------------------------------------------
    # Registration
    def register_fetch(self, handler: FetchHandler) -> None:
        self._add(self._fetch, handler.slug, handler, "fetch handler")

    def register_publish(self, handler: PublishHandler) -> None:
        if isinstance(handler, UpdateHandler):
            raise ConfigurationError(
                f"Handler '{handler.slug}' is an update handler; use register_update"
            )
        self._add(self._publish, handler.slug, handler, "publish handler")

    def register_update(self, handler: UpdateHandler) -> None:
        self._add(self._update, handler.slug, handler, "update handler")

    def register_tool(self, tool: Tool) -> None:
        self._add(self._tools, tool.name, tool, "tool")

    @staticmethod
    def _add(target: dict, key: str, value: object, kind: str) -> None:
        if key in target:
            raise ConfigurationError(f"Duplicate {kind} '{key}'")
        target[key] = value
        logger.debug(f"Registered {kind} '{key}'")

    # ------------------------------------------------------------------
    # Lookup
    def fetch_handler(self, slug: str) -> FetchHandler:
        try:
            return self._fetch[slug]
        except KeyError:
            raise ConfigurationError(f"Unknown fetch handler '{slug}'") from None

    def output_handler(self, step_type: StepType, slug: str) -> OutputHandler:
        """Return the publish or update handler registered for ``slug``."""
        handlers = self._update if step_type is StepType.UPDATE else self._publish
        try:
            return handlers[slug]
        except KeyError:
            raise ConfigurationError(
                f"Unknown {step_type.value} handler '{slug}'"
            ) from None

    def handler_for(self, step_type: StepType, slug: str) -> FetchHandler | OutputHandler:
        if step_type is StepType.FETCH:
            return self.fetch_handler(slug)
        if step_type is StepType.AI:
            raise ConfigurationError("AI steps do not use handlers")
        return self.output_handler(step_type, slug)

    def tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def tools(self) -> List[Tool]:
        return list(self._tools.values())

    def slugs(self, step_type: StepType) -> List[str]:
        return {
            StepType.FETCH: list(self._fetch),
            StepType.PUBLISH: list(self._publish),
            StepType.UPDATE: list(self._update),
        }.get(step_type, [])


def load_handler_module(module_path: str, registry: HandlerRegistry) -> None:
    """Import ``module_path`` and let it populate ``registry``.

    The module must expose a ``register(registry)`` function.
    """
    module = importlib.import_module(module_path)
    register = getattr(module, "register", None)
    if not callable(register):
        raise ConfigurationError(
            f"Handler module '{module_path}' does not define register(registry)"
        )
    register(registry)
    logger.info(f"Loaded handlers from {module_path}")
