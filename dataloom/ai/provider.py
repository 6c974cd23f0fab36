"""Provider-agnostic request/response contract for AI models."""

from __future__ import annotations

from typing import List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from ..contracts import ToolCall, ToolDefinition


class Message(BaseModel):
    """One conversation message."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None


class AIRequest(BaseModel):
    model: str
    messages: List[Message]
    tools: List[ToolDefinition] = Field(default_factory=list)


class AIResponse(BaseModel):
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    model: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class AIProvider(Protocol):
    """Sends one request to a model.

    Implementations raise :class:`~dataloom.errors.ProviderError` when the
    model cannot be reached or rejects the request.
    """

    async def request(self, request: AIRequest) -> AIResponse:
        ...
