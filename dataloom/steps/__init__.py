from .ai import AIStep
from .base import Step, StepOutcome, StepResult, adjacent_steps
from .fetch import FetchStep
from .publish import OutputStep
from .runner import StepRunner

__all__ = [
    "AIStep",
    "FetchStep",
    "OutputStep",
    "Step",
    "StepOutcome",
    "StepResult",
    "StepRunner",
    "adjacent_steps",
]
