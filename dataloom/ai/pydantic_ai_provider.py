"""AI provider backed by pydantic-ai's direct model requests."""

from __future__ import annotations

import logging
from typing import List, Optional, Union

from pydantic_ai.direct import model_request
from pydantic_ai.messages import (
    ModelMessage,
    ModelRequest,
    ModelRequestPart,
    ModelResponse,
    ModelResponsePart,
    SystemPromptPart,
    TextPart,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models import Model, ModelRequestParameters
from pydantic_ai.tools import ToolDefinition as PydanticToolDefinition

from ..contracts import ToolCall, ToolDefinition
from ..errors import ProviderError
from .provider import AIRequest, AIResponse, Message

logger = logging.getLogger(__name__)


def to_model_messages(messages: List[Message]) -> List[ModelMessage]:
    """Convert conversation messages into pydantic-ai request/response messages.

    Consecutive system, user and tool messages are grouped into one
    ``ModelRequest``; every assistant message becomes a ``ModelResponse``.
    """
    converted: List[ModelMessage] = []
    pending: List[ModelRequestPart] = []

    for message in messages:
        if message.role == "assistant":
            if pending:
                converted.append(ModelRequest(parts=pending))
                pending = []
            parts: List[ModelResponsePart] = []
            if message.content:
                parts.append(TextPart(content=message.content))
            for call in message.tool_calls:
                parts.append(
                    ToolCallPart(
                        tool_name=call.name,
                        args=call.arguments,
                        tool_call_id=call.call_id or f"call_{call.name}",
                    )
                )
            converted.append(ModelResponse(parts=parts or [TextPart(content="")]))
        elif message.role == "system":
            pending.append(SystemPromptPart(content=message.content))
        elif message.role == "tool":
            pending.append(
                ToolReturnPart(
                    tool_name=message.tool_name or "",
                    content=message.content,
                    tool_call_id=message.tool_call_id or f"call_{message.tool_name}",
                )
            )
        else:
            pending.append(UserPromptPart(content=message.content))

    if pending:
        converted.append(ModelRequest(parts=pending))
    return converted


def to_tool_definitions(tools: List[ToolDefinition]) -> List[PydanticToolDefinition]:
    return [
        PydanticToolDefinition(
            name=tool.name,
            description=tool.description,
            parameters_json_schema=tool.parameters,
        )
        for tool in tools
    ]


def from_model_response(response: ModelResponse) -> AIResponse:
    texts: List[str] = []
    calls: List[ToolCall] = []
    for part in response.parts:
        if isinstance(part, TextPart):
            texts.append(part.content)
        elif isinstance(part, ToolCallPart):
            calls.append(
                ToolCall(
                    name=part.tool_name,
                    arguments=part.args_as_dict(),
                    call_id=part.tool_call_id,
                )
            )
    return AIResponse(
        content="\n".join(t for t in texts if t),
        tool_calls=calls,
        model=response.model_name,
    )


class PydanticAIProvider:
    """Send conversation turns through any model pydantic-ai supports.

    Args:
        model: Optional model instance or name used for every request. When
            omitted, the ``model`` of each request is used, for example
            ``"anthropic:claude-sonnet-4-0"``.
    """

    def __init__(self, model: Optional[Union[Model, str]] = None) -> None:
        self._model = model

    async def request(self, request: AIRequest) -> AIResponse:
        model = self._model or request.model
        parameters = ModelRequestParameters(
            function_tools=to_tool_definitions(request.tools)
        )
        try:
            response = await model_request(
                model,
                to_model_messages(request.messages),
                model_request_parameters=parameters,
            )
        except Exception as e:
            raise ProviderError(f"AI provider request failed: {e}") from e
        logger.debug(
            f"Model {response.model_name} returned {len(response.parts)} parts"
        )
        return from_model_response(response)
