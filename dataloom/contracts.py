"""Core records shared by the dataloom engine."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .constants import MANUAL_INTERVAL
from .errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_flow_step_id(pipeline_step_id: str, flow_id: int) -> str:
    """Compose the id of a step inside one flow."""
    return f"{pipeline_step_id}_{flow_id}"


def split_flow_step_id(flow_step_id: str) -> Tuple[str, int]:
    """Split a flow step id back into ``(pipeline_step_id, flow_id)``."""
    pipeline_step_id, _, flow_id = flow_step_id.rpartition("_")
    if not pipeline_step_id or not flow_id.isdigit():
        raise ValueError(f"Malformed flow step id: {flow_step_id}")
    return pipeline_step_id, int(flow_id)


class StepType(str, Enum):
    FETCH = "fetch"
    AI = "ai"
    PUBLISH = "publish"
    UPDATE = "update"

    @property
    def uses_handler(self) -> bool:
        return self is not StepType.AI


class PipelineStep(BaseModel):
    """One step of a pipeline template."""

    pipeline_step_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    step_type: StepType
    execution_order: int = 0
    label: Optional[str] = None
    step_config: Dict[str, Any] = Field(default_factory=dict)


class SchedulingConfig(BaseModel):
    """When a flow or pipeline should run.

    ``interval`` is ``manual``, one of the recurring interval names, or
    ``pipeline`` for flows inheriting their pipeline's schedule.
    """

    interval: str = MANUAL_INTERVAL
    status: Literal["active", "paused"] = "paused"
    timestamp: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class Pipeline(BaseModel):
    """Reusable ordered template of step definitions."""

    pipeline_id: int
    name: str
    steps: List[PipelineStep] = Field(default_factory=list)
    scheduling_config: SchedulingConfig = Field(default_factory=SchedulingConfig)
    created_at: datetime = Field(default_factory=utcnow)
    last_run_at: Optional[datetime] = None
    last_maintenance_at: Optional[datetime] = None

    def ordered_steps(self) -> List[PipelineStep]:
        return sorted(self.steps, key=lambda step: step.execution_order)

    def get_step(self, pipeline_step_id: str) -> Optional[PipelineStep]:
        for step in self.steps:
            if step.pipeline_step_id == pipeline_step_id:
                return step
        return None


class HandlerSelection(BaseModel):
    """Handler chosen for a flow step along with its explicit settings."""

    slug: str
    settings: Dict[str, Any] = Field(default_factory=dict)


class FlowStepConfig(BaseModel):
    """Configuration of one pipeline step inside one flow."""

    flow_step_id: str
    pipeline_step_id: str
    pipeline_id: int
    flow_id: int
    step_type: StepType
    execution_order: int = 0
    handler: Optional[HandlerSelection] = None
    user_message: str = ""
    step_config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def handler_slug(self) -> Optional[str]:
        return self.handler.slug if self.handler else None


class Flow(BaseModel):
    """Runnable instance of a pipeline."""

    flow_id: int
    pipeline_id: int
    name: str
    flow_config: Dict[str, FlowStepConfig] = Field(default_factory=dict)
    scheduling_config: SchedulingConfig = Field(default_factory=SchedulingConfig)
    created_at: datetime = Field(default_factory=utcnow)
    last_run_at: Optional[datetime] = None

    def ordered_steps(self) -> List[FlowStepConfig]:
        return sorted(self.flow_config.values(), key=lambda step: step.execution_order)

    def step_for(self, pipeline_step_id: str) -> Optional[FlowStepConfig]:
        return self.flow_config.get(make_flow_step_id(pipeline_step_id, self.flow_id))


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_NO_ITEMS = "completed_no_items"
    AGENT_SKIPPED = "agent_skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_success(self) -> bool:
        return self.is_terminal and self is not JobStatus.FAILED


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.COMPLETED_NO_ITEMS,
        JobStatus.AGENT_SKIPPED,
        JobStatus.FAILED,
    }
)
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class TriggerContext(BaseModel):
    """Describes what asked for a flow to run."""

    source: Literal["manual", "schedule", "api"] = "manual"
    details: Dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """One execution attempt of one flow."""

    job_id: int
    flow_id: int
    pipeline_id: int
    status: JobStatus = JobStatus.PENDING
    trigger: str = "manual"
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def status_label(self) -> str:
        if self.status is JobStatus.AGENT_SKIPPED and self.skip_reason:
            return f"{self.status.value} - {self.skip_reason}"
        return self.status.value


class DataPacket(BaseModel):
    """Unit of content appended to a job's packet list by a step."""

    model_config = ConfigDict(frozen=True)

    type: str
    handler: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def title(self) -> str:
        return str(self.content.get("title", ""))

    @property
    def body(self) -> str:
        return str(self.content.get("body", ""))


class ProcessedItem(BaseModel):
    """Proof that a source item was already accepted by a flow step."""

    record_id: int
    flow_step_id: str
    source_type: str
    item_identifier: str
    job_id: Optional[int] = None
    processed_at: datetime = Field(default_factory=utcnow)


class ToolDefinition(BaseModel):
    """Describes a callable tool exposed to the AI."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    handler: Optional[str] = None
    handler_config: Dict[str, Any] = Field(default_factory=dict)
    requires_config: bool = False
    requires_engine_data: Tuple[str, ...] = ()
    ends_conversation: bool = False

    @property
    def is_handler_tool(self) -> bool:
        return self.handler is not None


class ToolCall(BaseModel):
    """AI-issued request to invoke a tool."""

    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None

    def signature(self) -> Tuple[str, str]:
        """Return a hashable ``(name, arguments)`` key independent of key order."""
        return self.name, json.dumps(self.arguments, sort_keys=True, default=str)


class ToolResult(BaseModel):
    """Normalized outcome of a tool invocation."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    tool_name: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, tool_name: Optional[str] = None) -> "ToolResult":
        return cls(success=True, data=data, tool_name=tool_name)

    @classmethod
    def fail(
        cls,
        error: str,
        kind: ErrorKind = ErrorKind.TOOL_EXECUTION,
        tool_name: Optional[str] = None,
    ) -> "ToolResult":
        return cls(success=False, error=error, error_kind=kind, tool_name=tool_name)

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}


class StepPayload(BaseModel):
    """Everything a step or tool may read about the running job."""

    job_id: int
    flow_id: int
    pipeline_id: int
    flow_step_id: str
    data: List[DataPacket] = Field(default_factory=list)
    flow_step_config: FlowStepConfig
    engine_data: Dict[str, Any] = Field(default_factory=dict)

    def to_parameters(self) -> Dict[str, Any]:
        """Flatten the payload into the base parameter set handed to tools."""
        return {
            "job_id": self.job_id,
            "flow_id": self.flow_id,
            "pipeline_id": self.pipeline_id,
            "flow_step_id": self.flow_step_id,
            "data": [packet.model_dump(mode="json") for packet in self.data],
            "flow_step_config": self.flow_step_config.model_dump(mode="json"),
            "engine_data": dict(self.engine_data),
        }
