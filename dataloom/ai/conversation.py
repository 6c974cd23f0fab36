"""Multi-turn AI conversation with tool calling."""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..constants import DEFAULT_TURN_LIMIT
from ..contracts import StepPayload, ToolCall, ToolResult
from ..errors import ProviderError, TurnLimitExceeded
from ..tools.executor import ToolExecutor, ToolSet
from .provider import AIProvider, AIRequest, AIResponse, Message

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    AWAITING_REQUEST = "awaiting_request"
    AWAITING_TOOL_RESULTS = "awaiting_tool_results"
    DONE = "done"
    ABORTED = "aborted"


class ToolExchange(BaseModel):
    """A tool call issued by the AI together with the result it received."""

    call: ToolCall
    result: ToolResult
    turn: int
    duplicate: bool = False
    is_handler_tool: bool = False
    handler: Optional[str] = None


class ConversationResult(BaseModel):
    state: ConversationState
    content: str = ""
    turns: int = 0
    messages: List[Message] = Field(default_factory=list)
    exchanges: List[ToolExchange] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is ConversationState.DONE

    def executed(self) -> List[ToolExchange]:
        """Exchanges that actually invoked a tool, duplicates excluded."""
        return [e for e in self.exchanges if not e.duplicate]


def format_tool_result(call: ToolCall, result: ToolResult, duplicate: bool = False) -> str:
    """Render a tool result as the text the AI sees."""
    header = f"{call.name.replace('_', ' ').upper()} RESULT"
    if result.success:
        text = (
            f"{header}: Tool executed with {len(call.arguments)} parameter(s)\n\n"
            f"Result data:\n{json.dumps(result.data, indent=2, default=str)}"
        )
    else:
        text = f"{header}: ERROR: {result.error}"
    if duplicate:
        text = (
            "This tool was already called with identical parameters in this "
            "conversation; the earlier result is repeated below instead of "
            "calling it again.\n\n" + text
        )
    return text


class ConversationLoop:
    """Drives request/response turns until the AI stops calling tools.

    A call whose ``(tool_name, arguments)`` pair was already executed is not
    run again; its earlier result is sent back. A successful call to a tool
    marked ``ends_conversation`` finishes the conversation after the current
    turn. When the turn budget is spent while the AI still asks for tools,
    the conversation is aborted.
    """

    def __init__(
        self,
        provider: AIProvider,
        executor: ToolExecutor,
        turn_limit: int = DEFAULT_TURN_LIMIT,
    ) -> None:
        if turn_limit < 1:
            raise ValueError("turn_limit must be at least 1")
        self._provider = provider
        self._executor = executor
        self.turn_limit = turn_limit

    async def run(
        self,
        model: str,
        messages: List[Message],
        tools: ToolSet,
        payload: StepPayload,
    ) -> ConversationResult:
        messages = list(messages)
        exchanges: List[ToolExchange] = []
        seen: Dict[Tuple[str, str], ToolResult] = {}
        pending: List[ToolCall] = []
        state = ConversationState.AWAITING_REQUEST
        content = ""
        turns = 0

        while state not in (ConversationState.DONE, ConversationState.ABORTED):
            if state is ConversationState.AWAITING_REQUEST:
                turns += 1
                response = await self._request(model, messages, tools)
                messages.append(
                    Message(
                        role="assistant",
                        content=response.content,
                        tool_calls=response.tool_calls,
                    )
                )
                if response.content:
                    content = response.content
                if not response.has_tool_calls:
                    state = ConversationState.DONE
                elif turns >= self.turn_limit:
                    logger.warning(
                        f"Conversation for job {payload.job_id} reached the turn "
                        f"limit of {self.turn_limit} with tool calls pending"
                    )
                    state = ConversationState.ABORTED
                else:
                    pending = response.tool_calls
                    state = ConversationState.AWAITING_TOOL_RESULTS
                continue

            finished = False
            for call in pending:
                signature = call.signature()
                duplicate = signature in seen
                if duplicate:
                    logger.warning(
                        f"Duplicate call to tool '{call.name}' in job {payload.job_id}; "
                        "reusing earlier result"
                    )
                    result = seen[signature]
                else:
                    result = await self._executor.execute(
                        call.name, call.arguments, payload, tools
                    )
                    seen[signature] = result

                resolved = tools.get(call.name)
                definition = resolved.definition if resolved else None
                exchanges.append(
                    ToolExchange(
                        call=call,
                        result=result,
                        turn=turns,
                        duplicate=duplicate,
                        is_handler_tool=bool(definition and definition.is_handler_tool),
                        handler=definition.handler if definition else None,
                    )
                )
                messages.append(
                    Message(
                        role="tool",
                        content=format_tool_result(call, result, duplicate),
                        tool_call_id=call.call_id,
                        tool_name=call.name,
                    )
                )
                if (
                    result.success
                    and not duplicate
                    and definition is not None
                    and definition.ends_conversation
                ):
                    finished = True

            pending = []
            state = (
                ConversationState.DONE
                if finished
                else ConversationState.AWAITING_REQUEST
            )

        return ConversationResult(
            state=state,
            content=content,
            turns=turns,
            messages=messages,
            exchanges=exchanges,
        )

    async def _request(
        self, model: str, messages: List[Message], tools: ToolSet
    ) -> AIResponse:
        request = AIRequest(model=model, messages=messages, tools=tools.definitions())
        try:
            return await self._provider.request(request)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"AI provider request failed: {e}") from e


def raise_for_state(result: ConversationResult, turn_limit: int) -> None:
    """Raise :class:`TurnLimitExceeded` when ``result`` was aborted."""
    if result.state is ConversationState.ABORTED:
        raise TurnLimitExceeded(turn_limit)
