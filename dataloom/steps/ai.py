"""AI step: runs a tool-calling conversation over the packets so far."""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from ..ai.conversation import (
    ConversationLoop,
    ConversationResult,
    ToolExchange,
    raise_for_state,
)
from ..ai.directives import DirectiveContext, DirectiveSet, default_directives
from ..ai.provider import AIProvider, Message
from ..config import DataloomConfig
from ..constants import AI_RESPONSE_TITLE_MAX_LENGTH
from ..contracts import DataPacket, FlowStepConfig, StepPayload
from ..errors import ConfigurationError, ErrorKind, HandlerExecutionError
from ..tools.builtin import SKIP_ITEM_TOOL
from ..tools.executor import ToolExecutor
from .base import Step, StepOutcome, StepResult, adjacent_steps

logger = logging.getLogger(__name__)


def response_title(content: str) -> str:
    first_line = content.strip().splitlines()[0].strip() if content.strip() else ""
    if first_line and len(first_line) <= AI_RESPONSE_TITLE_MAX_LENGTH:
        return first_line
    return "AI Response"


def tool_result_packet(exchange: ToolExchange) -> DataPacket:
    result = exchange.result
    title = exchange.call.name.replace("_", " ").title() + " Result"
    return DataPacket(
        type="tool_result",
        handler=exchange.handler,
        content={
            "title": title,
            "body": json.dumps(result.to_dict(), default=str),
        },
        metadata={
            "tool_name": exchange.call.name,
            "handler": exchange.handler,
            "tool_parameters": exchange.call.arguments,
            "success": result.success,
            "error": result.error,
            "result": result.data,
        },
    )


class AIStep(Step):
    """Lets the configured model read the packets and call tools."""

    def __init__(
        self,
        provider: AIProvider,
        executor: ToolExecutor,
        config: DataloomConfig,
        directives: Optional[DirectiveSet] = None,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._config = config
        self._directives = directives or default_directives()

    @property
    def turn_limit(self) -> int:
        return self._config.ai.turn_limit

    def _model_for(self, flow_step: FlowStepConfig) -> str:
        model = flow_step.step_config.get("model") or self._config.ai.model
        if not model:
            raise ConfigurationError(
                f"AI step {flow_step.flow_step_id} has no model configured"
            )
        return str(model)

    @staticmethod
    def _user_messages(payload: StepPayload) -> List[Message]:
        messages = []
        if payload.flow_step_config.user_message.strip():
            messages.append(
                Message(
                    role="user",
                    content="ORIGINAL REQUEST:\n"
                    + payload.flow_step_config.user_message.strip(),
                )
            )
        packets = [packet.model_dump(mode="json") for packet in payload.data]
        messages.append(
            Message(
                role="user",
                content="DATA PACKETS:\n" + json.dumps(packets, indent=2, default=str),
            )
        )
        return messages

    async def execute(
        self, payload: StepPayload, flow_steps: List[FlowStepConfig]
    ) -> StepResult:
        flow_step = payload.flow_step_config
        model = self._model_for(flow_step)
        tools = self._executor.resolve_tools(
            flow_step, adjacent_steps(flow_steps, flow_step)
        )
        context = DirectiveContext(
            flow_step=flow_step,
            flow_steps=flow_steps,
            tools=tools.definitions(),
            ai_config=self._config.ai,
        )
        messages = self._directives.build_messages(context) + self._user_messages(
            payload
        )

        loop = ConversationLoop(self._provider, self._executor, self.turn_limit)
        result = await loop.run(model, messages, tools, payload)
        raise_for_state(result, self.turn_limit)
        logger.info(
            f"AI step {payload.flow_step_id} finished in {result.turns} turns "
            f"with {len(result.executed())} tool calls (job {payload.job_id})"
        )
        return self._to_step_result(result, payload)

    def _to_step_result(
        self, result: ConversationResult, payload: StepPayload
    ) -> StepResult:
        handler_packets = []
        failures = []
        handled = False
        skip_reason = None
        for exchange in result.executed():
            if exchange.call.name == SKIP_ITEM_TOOL and exchange.result.success:
                skip_reason = str((exchange.result.data or {}).get("reason") or "")
            if not exchange.is_handler_tool:
                continue
            handler_packets.append(tool_result_packet(exchange))
            if exchange.result.success:
                handled = True
            else:
                failures.append(exchange.result)

        if failures and not handled:
            failure = failures[-1]
            raise HandlerExecutionError(
                failure.error or "Handler tool failed",
                kind=failure.error_kind or ErrorKind.HANDLER_EXECUTION,
            )

        packets = []
        if result.content or not handler_packets:
            packets.append(
                DataPacket(
                    type="ai_response",
                    handler=None,
                    content={
                        "title": response_title(result.content),
                        "body": result.content,
                    },
                    metadata={
                        "source_type": "ai",
                        "flow_step_id": payload.flow_step_id,
                        "turns": result.turns,
                    },
                )
            )
        packets.extend(handler_packets)

        if skip_reason is not None:
            return StepResult(
                outcome=StepOutcome.SKIPPED,
                packets=packets,
                skip_reason=skip_reason or "unspecified",
            )
        return StepResult(packets=packets, items_processed=len(packets))
