"""Priority ordered system instructions injected into AI requests."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from ..config import AIConfig
from ..contracts import FlowStepConfig, ToolDefinition, utcnow
from ..tools.builtin import SKIP_ITEM_TOOL
from .provider import Message

CORE_IDENTITY = 10
GLOBAL_POLICY = 20
AGENT_POLICY = 30
TOOL_CONTEXT = 40
ENVIRONMENT_CONTEXT = 50


class DirectiveContext:
    """Inputs available to directives when rendering."""

    def __init__(
        self,
        flow_step: FlowStepConfig,
        flow_steps: List[FlowStepConfig],
        tools: List[ToolDefinition],
        ai_config: AIConfig,
        now: Optional[datetime] = None,
    ) -> None:
        self.flow_step = flow_step
        self.flow_steps = flow_steps
        self.tools = tools
        self.ai_config = ai_config
        self.now = now or utcnow()


class Directive:
    """A named instruction fragment with a priority tier."""

    def __init__(
        self,
        name: str,
        priority: int,
        render: Callable[[DirectiveContext], Optional[str]],
    ) -> None:
        self.name = name
        self.priority = priority
        self.render = render

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"Directive({self.name!r}, priority={self.priority})"


def _core_identity(context: DirectiveContext) -> str:
    return (
        "You are an AI agent inside an automated content workflow. "
        "You receive data packets produced by earlier steps and produce "
        "content for the steps that follow. Call a tool when an action is "
        "required. Reply with plain text once your work is complete."
    )


def _global_prompt(context: DirectiveContext) -> Optional[str]:
    return context.ai_config.global_system_prompt.strip() or None


def _workflow_outline(steps: List[FlowStepConfig], current: FlowStepConfig) -> str:
    labels = []
    for step in steps:
        label = step.step_type.value.upper()
        if step.handler_slug:
            label += f" ({step.handler_slug})"
        if step.flow_step_id == current.flow_step_id:
            label += " [YOU]"
        labels.append(label)
    return " -> ".join(labels)


def _pipeline_prompt(context: DirectiveContext) -> Optional[str]:
    sections = []
    prompt = str(context.flow_step.step_config.get("system_prompt") or "").strip()
    if prompt:
        sections.append(prompt)
    if context.flow_steps:
        sections.append(
            "WORKFLOW: " + _workflow_outline(context.flow_steps, context.flow_step)
        )
    return "\n\n".join(sections) or None


def _tool_context(context: DirectiveContext) -> Optional[str]:
    if not context.tools:
        return None
    lines = ["AVAILABLE TOOLS:"]
    for tool in context.tools:
        if tool.description:
            lines.append(f"- {tool.name}: {tool.description}")
        else:
            lines.append(f"- {tool.name}")
    handler_tools = [t.name for t in context.tools if t.is_handler_tool]
    if handler_tools:
        lines.append(
            "Calling "
            + ", ".join(handler_tools)
            + " completes this step; call it once with the final content."
        )
    if any(t.name == SKIP_ITEM_TOOL for t in context.tools):
        lines.append(
            f"Call {SKIP_ITEM_TOOL} with a reason if the item should not be processed."
        )
    lines.append(
        "Data packets are listed oldest first; each has a type, content and metadata."
    )
    return "\n".join(lines)


def _environment(context: DirectiveContext) -> str:
    lines = [f"Current date and time (UTC): {context.now.isoformat(timespec='seconds')}"]
    if context.ai_config.site_context.strip():
        lines.append(context.ai_config.site_context.strip())
    return "\n".join(lines)


class DirectiveSet:
    """Ordered collection of directives rendered into system messages."""

    def __init__(self, directives: Optional[List[Directive]] = None) -> None:
        self._directives: List[Directive] = list(directives or [])

    def add(self, directive: Directive) -> None:
        self._directives.append(directive)

    def ordered(self) -> List[Directive]:
        return sorted(self._directives, key=lambda d: d.priority)

    def build_messages(self, context: DirectiveContext) -> List[Message]:
        messages = []
        for directive in self.ordered():
            text = directive.render(context)
            if text:
                messages.append(Message(role="system", content=text))
        return messages


def default_directives() -> DirectiveSet:
    return DirectiveSet(
        [
            Directive("core_identity", CORE_IDENTITY, _core_identity),
            Directive("global_system_prompt", GLOBAL_POLICY, _global_prompt),
            Directive("pipeline_system_prompt", AGENT_POLICY, _pipeline_prompt),
            Directive("tool_definitions", TOOL_CONTEXT, _tool_context),
            Directive("environment_context", ENVIRONMENT_CONTEXT, _environment),
        ]
    )


__all__ = [
    "Directive",
    "DirectiveContext",
    "DirectiveSet",
    "default_directives",
]
