"""Tool resolution, parameter building and execution."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, NamedTuple, Optional, Union

from ..config import DataloomConfig
from ..contracts import (
    FlowStepConfig,
    StepPayload,
    StepType,
    ToolDefinition,
    ToolResult,
)
from ..errors import DataloomError, ErrorKind
from ..handlers.base import PublishHandler, Tool, resolve_settings
from ..utils.retry import is_retryable, schedule_retry

if TYPE_CHECKING:
    from ..registry import HandlerRegistry

logger = logging.getLogger(__name__)

ToolImplementation = Union[Tool, PublishHandler]


class ResolvedTool(NamedTuple):
    definition: ToolDefinition
    implementation: ToolImplementation


class ToolSet:
    """Tools made available to one ai step, keyed by name."""

    def __init__(self, tools: Iterable[ResolvedTool] = ()) -> None:
        self._tools: Dict[str, ResolvedTool] = {}
        for tool in tools:
            self.add(tool)

    def add(self, tool: ResolvedTool) -> None:
        self._tools[tool.definition.name] = tool

    def get(self, name: str) -> Optional[ResolvedTool]:
        return self._tools.get(name)

    def definitions(self) -> List[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def build_parameters(payload: StepPayload, ai_arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Merge job context, engine data and AI arguments into one flat mapping.

    Payload keys come first, engine data keys are added where they do not
    clash with payload keys, and AI arguments override everything.
    """
    parameters = payload.to_parameters()
    parameters["engine_data"] = copy.deepcopy(parameters["engine_data"])
    for key, value in parameters["engine_data"].items():
        parameters.setdefault(key, value)
    parameters.update(ai_arguments or {})
    return parameters


def normalize_result(raw: Any, tool_name: str) -> ToolResult:
    """Coerce whatever a tool returned into a :class:`ToolResult`."""
    if isinstance(raw, ToolResult):
        return raw.model_copy(update={"tool_name": raw.tool_name or tool_name})
    if isinstance(raw, dict) and "success" in raw:
        if raw["success"]:
            return ToolResult.ok(raw.get("data"), tool_name=tool_name)
        return ToolResult.fail(
            str(raw.get("error") or "Tool reported failure"), tool_name=tool_name
        )
    return ToolResult.fail(
        f"Tool '{tool_name}' returned an invalid result", tool_name=tool_name
    )


class ToolExecutor:
    """Resolves tools for ai steps and runs AI-issued tool calls."""

    def __init__(self, registry: "HandlerRegistry", config: DataloomConfig) -> None:
        self._registry = registry
        self._config = config

    # ------------------------------------------------------------------
    # Resolution
    def global_tools(self, flow_step: FlowStepConfig) -> List[ResolvedTool]:
        """Global tools enabled and configured for ``flow_step``."""
        enabled = flow_step.step_config.get("enabled_tools") or []
        resolved = []
        for tool in self._registry.tools():
            if tool.name in self._config.disabled_tools:
                continue
            if enabled and tool.name not in enabled:
                continue
            if not tool.is_configured(self._config.tool_settings.get(tool.name)):
                logger.debug(f"Tool '{tool.name}' requires configuration; skipping")
                continue
            resolved.append(ResolvedTool(tool.definition, tool))
        return resolved

    def handler_tool(self, flow_step: FlowStepConfig) -> Optional[ResolvedTool]:
        """Tool exposing the publish or update handler configured on ``flow_step``."""
        if flow_step.step_type not in (StepType.PUBLISH, StepType.UPDATE):
            return None
        if flow_step.handler is None:
            return None
        handler = self._registry.output_handler(flow_step.step_type, flow_step.handler.slug)
        settings = resolve_settings(
            handler.settings_model,
            flow_step.handler.settings,
            self._config.handler_defaults.get(handler.slug),
        )
        return ResolvedTool(handler.tool_definition(settings), handler)

    def resolve_tools(
        self, flow_step: FlowStepConfig, adjacent: Iterable[FlowStepConfig] = ()
    ) -> ToolSet:
        """Build the tool set for an ai step.

        Args:
            flow_step: The ai step being executed.
            adjacent: The steps immediately before and after it; their
                publish/update handlers become callable tools.
        """
        tools = ToolSet(self.global_tools(flow_step))
        for step in adjacent:
            handler_tool = self.handler_tool(step)
            if handler_tool is not None:
                tools.add(handler_tool)
        return tools

    # ------------------------------------------------------------------
    # Execution
    async def execute(
        self,
        tool_name: str,
        ai_arguments: Dict[str, Any],
        payload: StepPayload,
        available: Optional[ToolSet] = None,
    ) -> ToolResult:
        """Run one tool call and return a normalized result.

        Unknown or disabled tools and tool failures come back as failed
        results; nothing raised by a tool escapes this method.
        """
        if available is None:
            available = self.resolve_tools(payload.flow_step_config)

        resolved = available.get(tool_name)
        if resolved is None:
            if self._registry.tool(tool_name) is not None:
                logger.warning(
                    f"Tool '{tool_name}' is not enabled for flow step {payload.flow_step_id}"
                )
                return ToolResult.fail(
                    f"Tool '{tool_name}' is not enabled",
                    ErrorKind.TOOL_DISABLED,
                    tool_name=tool_name,
                )
            logger.warning(
                f"Tool '{tool_name}' not found for flow step {payload.flow_step_id}"
            )
            return ToolResult.fail(
                f"Tool '{tool_name}' not found",
                ErrorKind.TOOL_NOT_FOUND,
                tool_name=tool_name,
            )

        definition = resolved.definition
        for key in definition.requires_engine_data:
            if not payload.engine_data.get(key):
                logger.error(
                    f"Tool '{tool_name}' needs engine data '{key}' which job "
                    f"{payload.job_id} does not have"
                )
                return ToolResult.fail(
                    f"missing {key}", ErrorKind.MISSING_ENGINE_DATA, tool_name=tool_name
                )

        parameters = build_parameters(payload, ai_arguments)
        return await self._invoke(resolved, parameters, payload)

    async def _invoke(
        self,
        resolved: ResolvedTool,
        parameters: Dict[str, Any],
        payload: StepPayload,
    ) -> ToolResult:
        name = resolved.definition.name
        max_retries = self._config.ai.tool_max_retries
        attempt = 0
        while True:
            try:
                raw = await resolved.implementation.handle_tool_call(
                    parameters, resolved.definition
                )
                return normalize_result(raw, name)
            except DataloomError as e:
                logger.error(f"Tool '{name}' failed for job {payload.job_id}: {e}")
                return ToolResult.fail(e.message, e.kind, tool_name=name)
            except Exception as e:
                if attempt < max_retries and is_retryable(e):
                    logger.warning(
                        f"Tool '{name}' attempt {attempt + 1} failed for job "
                        f"{payload.job_id}, retrying: {e}"
                    )
                    await schedule_retry(attempt, self._config.ai.tool_retry_base_delay)
                    attempt += 1
                    continue
                logger.error(
                    f"Tool '{name}' raised for job {payload.job_id} "
                    f"(flow step {payload.flow_step_id}): {e}",
                    exc_info=True,
                )
                return ToolResult.fail(
                    f"Tool execution exception: {e}",
                    ErrorKind.TOOL_EXECUTION,
                    tool_name=name,
                )
