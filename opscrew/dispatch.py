"""Single-agent step dispatcher."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

from .audit import AgentExecutionAudit, AuditLogger
from .cancellation import CancellationToken, OperationCancelled, run_cancellable
from .completion import CompletionService
from .constants import DEFAULT_COMPLETION_TIMEOUT_MS, DEFAULT_MODEL, DEFAULT_ORGANIZATION_ID
from .contracts import (
    ChatMessage,
    CompletionRequest,
    CompletionResponse,
    ContextEntry,
    ExecuteAgentRequest,
    ExecuteAgentResponse,
)
from .errors import AgentError, ErrorCode
from .events import AgentEvent, EventBus, EventType
from .memory import ContextStore
from .models import (
    Agent,
    AgentPersona,
    AgentStatus,
    ConstraintType,
    ExecutionContext,
    RetentionPolicy,
    StepExecution,
    new_id,
)
from .persistence import AgentRepository
from .ratelimit import RateLimiter
from .scoring import ConfidenceScorer, HeuristicConfidenceScorer, confidence_level
from .utils.retry import SleepFn, retry_async

logger = logging.getLogger(__name__)

SINGLE_AGENT_STEP_ID = "single-agent"


def parse_agent_output(content: str) -> Dict[str, Any]:
    """Decode a JSON object reply, wrapping anything else as ``{"text": ...}``."""
    try:
        parsed = json.loads(content)
    except (TypeError, ValueError):
        return {"text": content}
    if isinstance(parsed, dict):
        return parsed
    return {"text": content}


def trim_context(
    entries: List[ContextEntry], persona: Optional[AgentPersona]
) -> List[ContextEntry]:
    """Apply the persona's context window to prior entries (oldest first)."""
    if persona is None:
        return entries
    window = persona.context_window
    limit = max(window.max_messages, 0)
    if len(entries) <= limit:
        return entries
    if window.retention_policy == RetentionPolicy.FIXED:
        return entries[:limit]
    return entries[len(entries) - limit :]


def build_messages(
    agent: Agent, payload: Dict[str, Any], context: List[ContextEntry]
) -> List[ChatMessage]:
    messages: List[ChatMessage] = []
    if agent.persona and agent.persona.system_prompt:
        messages.append(ChatMessage(role="system", content=agent.persona.system_prompt))
    if context:
        history = "\n\n".join(entry.content for entry in context)
        messages.append(ChatMessage(role="system", content=f"Previous context:\n{history}"))
    messages.append(ChatMessage(role="user", content=json.dumps(payload, default=str)))
    return messages


def _numeric_constraint(agent: Agent, constraint_type: ConstraintType) -> Optional[int]:
    constraint = agent.get_constraint(constraint_type)
    if constraint is None:
        return None
    try:
        return int(constraint.value)
    except (TypeError, ValueError):
        logger.warning(
            f"Ignoring non-numeric {constraint_type.value} constraint on agent {agent.id}"
        )
        return None


class StepDispatcher:
    """Run one agent against one input through the completion service."""

    def __init__(
        self,
        agents: AgentRepository,
        completion_service: CompletionService,
        context_store: ContextStore,
        rate_limiter: RateLimiter,
        audit: AuditLogger,
        bus: EventBus,
        scorer: Optional[ConfidenceScorer] = None,
        sleep: Optional[SleepFn] = None,
        default_timeout_ms: int = DEFAULT_COMPLETION_TIMEOUT_MS,
    ) -> None:
        self._agents = agents
        self._completion = completion_service
        self._context_store = context_store
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._bus = bus
        self._scorer = scorer or HeuristicConfidenceScorer()
        self._sleep = sleep
        self.default_timeout_ms = default_timeout_ms

    async def _resolve_agent(self, agent_id: str) -> Agent:
        agent = await self._agents.get_agent(agent_id)
        if agent is None or not agent.is_active:
            raise AgentError(
                f"Agent {agent_id} not found or inactive",
                ErrorCode.AGENT_NOT_FOUND,
                agent_id=agent_id,
            )
        return agent

    def _completion_request(
        self, agent: Agent, request: ExecuteAgentRequest, messages: List[ChatMessage]
    ) -> CompletionRequest:
        persona = agent.persona or AgentPersona()
        options = request.options
        max_tokens = options.max_tokens if options.max_tokens is not None else persona.max_tokens
        timeout_ms = options.timeout_ms if options.timeout_ms is not None else self.default_timeout_ms

        token_cap = _numeric_constraint(agent, ConstraintType.TOKEN_LIMIT)
        if token_cap is not None:
            max_tokens = min(max_tokens, token_cap)
        time_cap = _numeric_constraint(agent, ConstraintType.TIME_LIMIT)
        if time_cap is not None:
            timeout_ms = min(timeout_ms, time_cap)

        return CompletionRequest(
            model=persona.model or DEFAULT_MODEL,
            messages=messages,
            temperature=(
                options.temperature if options.temperature is not None else persona.temperature
            ),
            max_tokens=max_tokens,
            timeout_ms=timeout_ms,
        )

    async def _complete(
        self, completion_request: CompletionRequest, cancel_token: Optional[CancellationToken]
    ) -> CompletionResponse:
        call = self._completion.create_chat_completion(completion_request)
        return await run_cancellable(
            asyncio.wait_for(call, timeout=completion_request.timeout_ms / 1000),
            cancel_token,
        )

    async def execute_agent(
        self,
        request: ExecuteAgentRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecuteAgentResponse:
        """Execute one agent call and return the scored, parsed result.

        Raises:
            AgentError: ``AGENT_NOT_FOUND`` for unknown or inactive agents,
                ``EXECUTION_CANCELLED`` when ``cancel_token`` trips, and
                ``AGENT_EXECUTION_FAILED`` for every other failure.
        """
        started = time.monotonic()
        execution_id = request.execution_id or new_id("exec")
        step_id = request.step_id or SINGLE_AGENT_STEP_ID
        context = request.context or ExecutionContext()
        organization_id = context.organization_id or DEFAULT_ORGANIZATION_ID

        retry_count = 0

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            agent = await self._resolve_agent(request.agent_id)
            await self._rate_limiter.check_limit(agent.id, organization_id)

            step_execution = StepExecution(
                step_id=step_id, agent_id=agent.id, input=request.input
            )
            await self._audit.log_agent_execution(
                AgentExecutionAudit(
                    agent_id=agent.id,
                    execution_id=execution_id,
                    step_id=step_id,
                    organization_id=organization_id,
                    input=request.input,
                    status="started",
                )
            )
            await self._bus.publish(
                AgentEvent(
                    type=EventType.EXECUTION_STARTED,
                    agent_id=agent.id,
                    execution_id=execution_id,
                    step_id=step_id,
                    data={"input": request.input},
                )
            )

            prior = await self._context_store.get_context(agent.id, context)
            messages = build_messages(agent, request.input, trim_context(prior, agent.persona))
            completion_request = self._completion_request(agent, request, messages)

            completion, retry_count = await retry_async(
                lambda: self._complete(completion_request, cancel_token),
                request.options.retry_policy,
                sleep=self._sleep,
                description=f"Agent {agent.id} completion",
            )

            confidence = self._scorer.score(completion, agent.persona)
            level = confidence_level(confidence)
            step_execution.output = parse_agent_output(completion.content)
            step_execution.confidence = confidence
            step_execution.confidence_level = level
            step_execution.token_usage = completion.usage
            step_execution.retry_count = retry_count
            step_execution.execution_time_ms = elapsed_ms()
            step_execution.transition(AgentStatus.COMPLETED)

            await self._context_store.store_execution(step_execution, context)
            await self._audit.log_agent_execution(
                AgentExecutionAudit(
                    agent_id=agent.id,
                    execution_id=execution_id,
                    step_id=step_id,
                    organization_id=organization_id,
                    input=request.input,
                    output=step_execution.output,
                    confidence=confidence,
                    confidence_level=level,
                    token_usage=completion.usage,
                    execution_time_ms=step_execution.execution_time_ms,
                    status="completed",
                )
            )
        except OperationCancelled as e:
            await self._audit.log_agent_execution(
                AgentExecutionAudit(
                    agent_id=request.agent_id,
                    execution_id=execution_id,
                    step_id=step_id,
                    organization_id=organization_id,
                    input=request.input,
                    execution_time_ms=elapsed_ms(),
                    status="cancelled",
                )
            )
            logger.info(f"Agent {request.agent_id} call cancelled for execution {execution_id}")
            raise AgentError(
                f"Agent execution cancelled: {e}",
                ErrorCode.EXECUTION_CANCELLED,
                agent_id=request.agent_id,
                execution_id=execution_id,
                step_id=step_id,
            ) from e
        except Exception as e:
            await self._fail(
                request, execution_id, step_id, organization_id, e, elapsed_ms()
            )
            if isinstance(e, AgentError) and e.code == ErrorCode.AGENT_NOT_FOUND:
                raise
            cause_code = e.code.value if isinstance(e, AgentError) else type(e).__name__
            raise AgentError(
                f"Agent execution failed: {e}",
                ErrorCode.AGENT_EXECUTION_FAILED,
                agent_id=request.agent_id,
                execution_id=execution_id,
                step_id=step_id,
                retryable=e.retryable if isinstance(e, AgentError) else True,
                details={"cause_code": cause_code},
            ) from e

        await self._bus.publish(
            AgentEvent(
                type=EventType.EXECUTION_COMPLETED,
                agent_id=agent.id,
                execution_id=execution_id,
                step_id=step_id,
                data={"confidence": confidence, "token_usage": completion.usage.model_dump()},
            )
        )
        logger.info(
            f"Agent {agent.id} completed in {step_execution.execution_time_ms}ms "
            f"(confidence {confidence:.2f}, retries {retry_count})"
        )

        requires_approval = request.options.require_approval or (
            agent.get_constraint(ConstraintType.APPROVAL_REQUIRED) is not None
        )
        return ExecuteAgentResponse(
            execution_id=execution_id,
            step_id=step_execution.id,
            status=AgentStatus.COMPLETED,
            output=step_execution.output,
            confidence=confidence,
            confidence_level=level,
            token_usage=completion.usage,
            execution_time_ms=step_execution.execution_time_ms,
            retry_count=retry_count,
            requires_approval=requires_approval,
        )

    async def _fail(
        self,
        request: ExecuteAgentRequest,
        execution_id: str,
        step_id: str,
        organization_id: str,
        error: Exception,
        execution_time_ms: int,
    ) -> None:
        if isinstance(error, AgentError):
            execution_error = error.to_execution_error()
        else:
            execution_error = AgentError(
                str(error) or type(error).__name__,
                ErrorCode.AGENT_EXECUTION_FAILED,
                retryable=True,
            ).to_execution_error()
        logger.error(f"Agent {request.agent_id} execution failed: {execution_error.message}")
        await self._audit.log_agent_execution(
            AgentExecutionAudit(
                agent_id=request.agent_id,
                execution_id=execution_id,
                step_id=step_id,
                organization_id=organization_id,
                input=request.input,
                execution_time_ms=execution_time_ms,
                status="failed",
                error=execution_error,
            )
        )
        await self._bus.publish(
            AgentEvent(
                type=EventType.EXECUTION_FAILED,
                agent_id=request.agent_id,
                execution_id=execution_id,
                step_id=step_id,
                data={"error": execution_error.message},
            )
        )
