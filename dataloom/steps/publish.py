"""Publish and update steps."""

from __future__ import annotations

import logging
from typing import List, Optional

from ..contracts import DataPacket, FlowStepConfig, StepPayload, StepType
from ..errors import (
    ConfigurationError,
    ErrorKind,
    HandlerExecutionError,
    MissingEngineDataError,
)
from ..registry import HandlerRegistry
from ..tools.executor import ToolExecutor, ToolSet
from .base import Step, StepResult

logger = logging.getLogger(__name__)


def find_tool_result(data: List[DataPacket], handler_slug: str) -> Optional[DataPacket]:
    """Latest successful ``tool_result`` packet produced by ``handler_slug``."""
    for packet in reversed(data):
        if (
            packet.type == "tool_result"
            and packet.metadata.get("handler") == handler_slug
            and packet.metadata.get("success")
        ):
            return packet
    return None


def latest_content(data: List[DataPacket]) -> Optional[DataPacket]:
    for packet in reversed(data):
        if packet.body:
            return packet
    return None


class OutputStep(Step):
    """Records or performs a publish/update action.

    When an earlier ai step already invoked this step's handler as a tool,
    the recorded result is reused. Otherwise the handler is called directly
    with the latest content packet.
    """

    def __init__(
        self,
        step_type: StepType,
        registry: HandlerRegistry,
        executor: ToolExecutor,
    ) -> None:
        if step_type not in (StepType.PUBLISH, StepType.UPDATE):
            raise ValueError(f"Unsupported output step type: {step_type}")
        self.step_type = step_type
        self._registry = registry
        self._executor = executor

    async def execute(
        self, payload: StepPayload, flow_steps: List[FlowStepConfig]
    ) -> StepResult:
        flow_step = payload.flow_step_config
        if flow_step.handler is None:
            raise ConfigurationError(
                f"{self.step_type.value.title()} step {flow_step.flow_step_id} "
                "has no handler configured"
            )
        slug = flow_step.handler.slug
        handler = self._registry.output_handler(self.step_type, slug)

        prior = find_tool_result(payload.data, slug)
        if prior is not None:
            logger.info(
                f"{self.step_type.value} handler '{slug}' already ran as an AI tool "
                f"in job {payload.job_id}"
            )
            return StepResult(
                packets=[
                    self._packet(
                        slug,
                        prior.metadata.get("result"),
                        executed_via="ai_tool_call",
                        title=prior.metadata.get("tool_parameters", {}).get("title", ""),
                    )
                ],
                items_processed=1,
            )

        for key in handler.required_engine_data:
            if not payload.engine_data.get(key):
                raise MissingEngineDataError(key)

        resolved = self._executor.handler_tool(flow_step)
        source = latest_content(payload.data)
        arguments = {}
        if source is not None:
            arguments = {"title": source.title, "content": source.body}
        result = await self._executor.execute(
            resolved.definition.name, arguments, payload, ToolSet([resolved])
        )
        if not result.success:
            raise HandlerExecutionError(
                result.error or f"{self.step_type.value} handler '{slug}' failed",
                kind=result.error_kind or ErrorKind.HANDLER_EXECUTION,
            )
        return StepResult(
            packets=[
                self._packet(
                    slug,
                    result.data,
                    executed_via="direct",
                    title=arguments.get("title", ""),
                )
            ],
            items_processed=1,
        )

    def _packet(
        self, slug: str, result_data: object, executed_via: str, title: str
    ) -> DataPacket:
        return DataPacket(
            type=self.step_type.value,
            handler=slug,
            content={"title": title, "body": ""},
            metadata={
                "handler": slug,
                "executed_via": executed_via,
                "success": True,
                "result": result_data,
            },
        )
