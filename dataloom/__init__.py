"""dataloom: content automation workflow engine."""

from .ai import AIProvider, AIRequest, AIResponse, ConversationLoop, Message
from .config import DataloomConfig, load_config
from .contracts import (
    DataPacket,
    Flow,
    FlowStepConfig,
    Job,
    JobStatus,
    Pipeline,
    PipelineStep,
    SchedulingConfig,
    StepPayload,
    StepType,
    ToolCall,
    ToolDefinition,
    ToolResult,
    TriggerContext,
)
from .dedup import ClearScope, DeduplicationTracker
from .engine import Engine
from .engine_data import EngineDataStore
from .errors import (
    ConfigurationError,
    DataloomError,
    ErrorKind,
    FlowNotFoundError,
    HandlerExecutionError,
    MissingEngineDataError,
    ProviderError,
    TurnLimitExceeded,
)
from .handlers import (
    FetchContext,
    FetchedItem,
    FetchHandler,
    FetchSettings,
    HandlerSettings,
    PublishHandler,
    Tool,
    UpdateHandler,
)
from .management import WorkflowManager
from .orchestrator import JobOrchestrator, JobRun
from .persistence import (
    InMemoryRepository,
    Repository,
    SQLiteRepository,
    get_repository,
)
from .registry import HandlerRegistry
from .scheduling import Scheduler, get_scheduler_backend
from .steps import StepRunner
from .tools import ToolExecutor

__all__ = [
    "AIProvider",
    "AIRequest",
    "AIResponse",
    "ClearScope",
    "ConfigurationError",
    "ConversationLoop",
    "DataPacket",
    "DataloomConfig",
    "DataloomError",
    "DeduplicationTracker",
    "Engine",
    "EngineDataStore",
    "ErrorKind",
    "FetchContext",
    "FetchHandler",
    "FetchSettings",
    "FetchedItem",
    "Flow",
    "FlowNotFoundError",
    "FlowStepConfig",
    "HandlerExecutionError",
    "HandlerRegistry",
    "HandlerSettings",
    "InMemoryRepository",
    "Job",
    "JobOrchestrator",
    "JobRun",
    "JobStatus",
    "Message",
    "MissingEngineDataError",
    "Pipeline",
    "PipelineStep",
    "ProviderError",
    "PublishHandler",
    "Repository",
    "SQLiteRepository",
    "Scheduler",
    "SchedulingConfig",
    "StepPayload",
    "StepRunner",
    "StepType",
    "Tool",
    "ToolCall",
    "ToolDefinition",
    "ToolExecutor",
    "ToolResult",
    "TriggerContext",
    "TurnLimitExceeded",
    "UpdateHandler",
    "WorkflowManager",
    "get_repository",
    "get_scheduler_backend",
    "load_config",
]
