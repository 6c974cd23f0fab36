from .conversation import (
    ConversationLoop,
    ConversationResult,
    ConversationState,
    ToolExchange,
    format_tool_result,
)
from .directives import Directive, DirectiveContext, DirectiveSet, default_directives
from .provider import AIProvider, AIRequest, AIResponse, Message

__all__ = [
    "AIProvider",
    "AIRequest",
    "AIResponse",
    "ConversationLoop",
    "ConversationResult",
    "ConversationState",
    "Directive",
    "DirectiveContext",
    "DirectiveSet",
    "Message",
    "ToolExchange",
    "default_directives",
    "format_tool_result",
]
