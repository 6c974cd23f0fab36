"""Wires the engine's components together."""

from __future__ import annotations

from typing import Optional

from .ai.directives import DirectiveSet
from .ai.provider import AIProvider
from .config import DataloomConfig, load_config
from .contracts import Job, TriggerContext
from .dedup import DeduplicationTracker
from .engine_data import EngineDataStore
from .management import WorkflowManager
from .orchestrator import JobOrchestrator
from .persistence import Repository, get_repository
from .registry import HandlerRegistry
from .scheduling import Scheduler, SchedulerBackend, get_scheduler_backend
from .scheduling.inmemory import InMemorySchedulerBackend
from .steps.runner import StepRunner
from .tools.executor import ToolExecutor


class Engine:
    """All engine components built from explicit collaborators.

    Args:
        repository: Persistence backend.
        registry: Handlers and tools available to flows.
        provider: AI provider used by ai steps.
        config: Engine configuration; defaults when omitted.
        scheduler_backend: Where schedule registrations live; in-memory
            when omitted.
        directives: Directive set for ai steps; the default tiers when
            omitted.
    """

    def __init__(
        self,
        repository: Repository,
        registry: HandlerRegistry,
        provider: AIProvider,
        config: Optional[DataloomConfig] = None,
        scheduler_backend: Optional[SchedulerBackend] = None,
        directives: Optional[DirectiveSet] = None,
    ) -> None:
        self.config = config or DataloomConfig()
        self.repository = repository
        self.registry = registry
        self.provider = provider
        self.tracker = DeduplicationTracker(repository)
        self.engine_data = EngineDataStore(repository)
        self.executor = ToolExecutor(registry, self.config)
        self.runner = StepRunner.create(
            registry,
            self.tracker,
            self.engine_data,
            self.executor,
            provider,
            self.config,
            directives,
        )
        self.orchestrator = JobOrchestrator(
            repository,
            registry,
            self.runner,
            self.tracker,
            self.engine_data,
            self.config,
        )
        self.scheduler = Scheduler(
            repository,
            self.orchestrator,
            scheduler_backend or InMemorySchedulerBackend(),
            self.config.scheduler,
        )
        self.manager = WorkflowManager(
            repository, registry, self.config, scheduler=self.scheduler
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[DataloomConfig] = None,
        registry: Optional[HandlerRegistry] = None,
        provider: Optional[AIProvider] = None,
        repository: Optional[Repository] = None,
    ) -> "Engine":
        """Build an engine from configuration, using pydantic-ai for AI steps."""
        config = config or load_config()
        if provider is None:
            from .ai.pydantic_ai_provider import PydanticAIProvider

            provider = PydanticAIProvider()
        return cls(
            repository=repository or get_repository(config=config),
            registry=registry or HandlerRegistry(),
            provider=provider,
            config=config,
            scheduler_backend=get_scheduler_backend(config=config),
        )

    async def run_flow(
        self, flow_id: int, trigger_context: Optional[TriggerContext] = None
    ) -> Job:
        """Run a flow now. The single operational entry point of the engine."""
        return await self.orchestrator.run_flow(flow_id, trigger_context)
