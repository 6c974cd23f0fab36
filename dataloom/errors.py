"""Error kinds and exceptions raised by the engine."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification attached to every engine error and failed tool result."""

    CONFIGURATION = "configuration"
    HANDLER_EXECUTION = "handler_execution"
    PROVIDER = "provider"
    TURN_LIMIT = "turn_limit"
    MISSING_ENGINE_DATA = "missing_engine_data"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_DISABLED = "tool_disabled"
    TOOL_EXECUTION = "tool_execution"


class DataloomError(Exception):
    """Base class for errors that end a job or reject a request."""

    kind: ErrorKind = ErrorKind.HANDLER_EXECUTION

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class ConfigurationError(DataloomError):
    """Invalid or missing configuration, rejected before a job exists."""

    kind = ErrorKind.CONFIGURATION


class FlowNotFoundError(ConfigurationError):
    """Raised when a flow id does not resolve to a stored flow."""

    def __init__(self, flow_id: int) -> None:
        super().__init__(f"Flow {flow_id} not found")
        self.flow_id = flow_id


class HandlerExecutionError(DataloomError):
    """A fetch, publish, update or tool handler failed."""

    kind = ErrorKind.HANDLER_EXECUTION


class ProviderError(DataloomError):
    """The AI provider could not produce a response."""

    kind = ErrorKind.PROVIDER


class TurnLimitExceeded(DataloomError):
    """The conversation used its whole turn budget without finishing."""

    kind = ErrorKind.TURN_LIMIT

    def __init__(self, turn_limit: int) -> None:
        super().__init__(
            f"AI conversation did not complete within {turn_limit} turns"
        )
        self.turn_limit = turn_limit


class MissingEngineDataError(DataloomError):
    """Required engine data (for example ``source_url``) is not set for the job."""

    kind = ErrorKind.MISSING_ENGINE_DATA

    def __init__(self, key: str) -> None:
        super().__init__(f"missing {key}")
        self.key = key
