from __future__ import annotations

import abc
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..contracts import DataPacket, FlowStepConfig, StepPayload


class StepOutcome(str, Enum):
    OK = "ok"
    NO_ITEMS = "no_items"
    SKIPPED = "skipped"


class StepResult(BaseModel):
    """What a step produced.

    ``packets`` holds only the packets the step added; ``data`` is the full
    packet list after the step and is filled in by the step runner.
    """

    outcome: StepOutcome = StepOutcome.OK
    packets: List[DataPacket] = Field(default_factory=list)
    data: List[DataPacket] = Field(default_factory=list)
    items_processed: int = 0
    skip_reason: Optional[str] = None


class Step(metaclass=abc.ABCMeta):
    """One executable step type."""

    @abc.abstractmethod
    async def execute(
        self, payload: StepPayload, flow_steps: List[FlowStepConfig]
    ) -> StepResult:
        """Run the step for ``payload``.

        Args:
            payload: Job context, packets so far and engine data snapshot.
            flow_steps: All steps of the flow in execution order.
        """
        raise NotImplementedError


def adjacent_steps(
    flow_steps: List[FlowStepConfig], current: FlowStepConfig
) -> List[FlowStepConfig]:
    """Return the steps immediately before and after ``current``."""
    ordered = sorted(flow_steps, key=lambda s: s.execution_order)
    ids = [s.flow_step_id for s in ordered]
    if current.flow_step_id not in ids:
        return []
    index = ids.index(current.flow_step_id)
    neighbours = []
    if index > 0:
        neighbours.append(ordered[index - 1])
    if index + 1 < len(ordered):
        neighbours.append(ordered[index + 1])
    return neighbours
