"""Wiring of the orchestration components into one engine."""

from __future__ import annotations

import logging
from typing import Optional

from .audit import AuditLogger
from .completion import CompletionService, PydanticAICompletionService
from .config import OpsCrewConfig, load_config
from .contracts import (
    ExecuteAgentRequest,
    ExecuteAgentResponse,
    ExecuteWorkflowRequest,
    ExecuteWorkflowResponse,
)
from .definitions import WorkflowStore
from .dispatch import StepDispatcher
from .events import EventBus
from .execute import WorkflowExecutor
from .memory import ContextStore, InMemoryContextStore
from .persistence import StateRepository, get_repository
from .ratelimit import (
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
    apply_agent_constraints,
)
from .registry import AgentRegistry
from .scheduler import DependencyScheduler
from .scoring import ConfidenceScorer
from .transports import BaseTransport, get_transport
from .utils.retry import SleepFn

logger = logging.getLogger(__name__)


class OrchestrationEngine:
    """Holds every component of a running engine."""

    def __init__(
        self,
        config: OpsCrewConfig,
        repository: StateRepository,
        bus: EventBus,
        audit: AuditLogger,
        workflows: WorkflowStore,
        agents: AgentRegistry,
        scheduler: DependencyScheduler,
        dispatcher: StepDispatcher,
        executor: WorkflowExecutor,
        rate_limiter: RateLimiter,
        transport: Optional[BaseTransport] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.bus = bus
        self.audit = audit
        self.workflows = workflows
        self.agents = agents
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.transport = transport

    async def execute_agent(self, request: ExecuteAgentRequest) -> ExecuteAgentResponse:
        return await self.dispatcher.execute_agent(request)

    async def execute_workflow(self, request: ExecuteWorkflowRequest) -> ExecuteWorkflowResponse:
        return await self.executor.execute_workflow(request)

    async def load_agent_limits(self) -> None:
        """Push rate limits of already stored agents into the limiter."""
        for agent in await self.agents.list_agents():
            apply_agent_constraints(self.rate_limiter, agent)

    async def close(self) -> None:
        if self.transport is not None:
            await self.transport.disconnect()
        disconnect = getattr(self.rate_limiter, "disconnect", None)
        if disconnect is not None:
            await disconnect()


def _build_rate_limiter(config: OpsCrewConfig) -> RateLimiter:
    settings = config.rate_limiting
    if settings.backend == "redis":
        redis_conf = config.transport.redis
        return RedisRateLimiter(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            default_max_requests=settings.default_max_requests,
            default_window_ms=settings.default_window_ms,
        )
    return InMemoryRateLimiter(
        default_max_requests=settings.default_max_requests,
        default_window_ms=settings.default_window_ms,
    )


def create_engine(
    config: Optional[OpsCrewConfig] = None,
    *,
    repository: Optional[StateRepository] = None,
    completion_service: Optional[CompletionService] = None,
    context_store: Optional[ContextStore] = None,
    rate_limiter: Optional[RateLimiter] = None,
    transport: Optional[BaseTransport] = None,
    scorer: Optional[ConfidenceScorer] = None,
    sleep: Optional[SleepFn] = None,
) -> OrchestrationEngine:
    """Build an engine from ``config``; any collaborator can be injected."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    if transport is None:
        transport = get_transport(config=config)
    bus = EventBus(transport=transport, topic_prefix=config.transport.topic_prefix)
    rate_limiter = rate_limiter or _build_rate_limiter(config)
    completion_service = completion_service or PydanticAICompletionService(
        model=config.completion.model, provider=config.completion.provider
    )

    audit = AuditLogger(
        repository,
        bus,
        export_limit=config.audit.export_limit,
        retention_days=config.audit.retention_days,
    )
    workflows = WorkflowStore(repository)
    agents = AgentRegistry(repository, rate_limiter=rate_limiter, activity=audit)
    scheduler = DependencyScheduler(workflows)
    dispatcher = StepDispatcher(
        repository,
        completion_service,
        context_store or InMemoryContextStore(),
        rate_limiter,
        audit,
        bus,
        scorer=scorer,
        sleep=sleep,
        default_timeout_ms=config.completion.timeout_ms,
    )
    executor = WorkflowExecutor(
        repository,
        workflows,
        scheduler,
        dispatcher,
        audit,
        bus,
        approval_timeout_ms=config.approval.default_timeout_ms,
    )
    logger.debug(f"Engine created with {type(repository).__name__} repository")
    return OrchestrationEngine(
        config=config,
        repository=repository,
        bus=bus,
        audit=audit,
        workflows=workflows,
        agents=agents,
        scheduler=scheduler,
        dispatcher=dispatcher,
        executor=executor,
        rate_limiter=rate_limiter,
        transport=transport,
    )
