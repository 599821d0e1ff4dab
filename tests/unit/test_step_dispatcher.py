"""Tests for single-agent dispatch."""

import asyncio

import pytest

from fixtures.builders import build_engine, make_agent, make_response
from opscrew.cancellation import CancellationToken
from opscrew.contracts import ContextEntry, ExecuteAgentOptions, ExecuteAgentRequest, LogQuery
from opscrew.dispatch import SINGLE_AGENT_STEP_ID, parse_agent_output, trim_context
from opscrew.errors import AgentError, ErrorCode
from opscrew.events import EventType
from opscrew.memory import InMemoryContextStore
from opscrew.models import (
    AgentConstraint,
    AgentPersona,
    AgentStatus,
    ConstraintType,
    ContextWindowPolicy,
    LogCategory,
    RetentionPolicy,
    RetryPolicy,
)


def _request(agent_id="agent-a", **options):
    return ExecuteAgentRequest(
        agent_id=agent_id,
        input={"client": "Acme"},
        options=ExecuteAgentOptions(**options),
    )


def test_parse_agent_output():
    assert parse_agent_output('{"summary": "ok"}') == {"summary": "ok"}
    assert parse_agent_output("plain words") == {"text": "plain words"}
    assert parse_agent_output("[1, 2]") == {"text": "[1, 2]"}


def test_trim_context_policies():
    entries = [ContextEntry(content=str(n)) for n in range(5)]
    sliding = AgentPersona(context_window=ContextWindowPolicy(max_messages=2))
    fixed = AgentPersona(
        context_window=ContextWindowPolicy(max_messages=2, retention_policy=RetentionPolicy.FIXED)
    )
    assert [e.content for e in trim_context(entries, sliding)] == ["3", "4"]
    assert [e.content for e in trim_context(entries, fixed)] == ["0", "1"]
    assert trim_context(entries, None) == entries


@pytest.mark.asyncio
async def test_successful_execution(engine, completion):
    await engine.agents.create_agent(make_agent("agent-a"))
    completion.replies["agent-a"] = {"summary": "Acme onboarded"}
    events = []
    engine.bus.subscribe(events.append)

    response = await engine.execute_agent(_request())

    assert response.status == AgentStatus.COMPLETED
    assert response.output == {"summary": "Acme onboarded"}
    assert 0.0 <= response.confidence <= 1.0
    assert response.confidence_level is not None
    assert response.token_usage.total_tokens == 100
    assert response.retry_count == 0
    assert response.requires_approval is False
    assert response.step_id != SINGLE_AGENT_STEP_ID

    request = completion.calls[0]
    assert request.messages[0].content == "agent:agent-a"
    assert request.messages[-1].role == "user"
    assert "Acme" in request.messages[-1].content

    agent_events = [e.type for e in events if e.category == "agent"]
    assert agent_events == [EventType.EXECUTION_STARTED, EventType.EXECUTION_COMPLETED]

    logs = await engine.audit.get_logs(LogQuery(category=LogCategory.AGENT_EXECUTION))
    assert {e.data["status"] for e in logs} == {"started", "completed"}
    record = await engine.audit.get_agent_execution(response.execution_id, SINGLE_AGENT_STEP_ID)
    assert record.status == "completed"


@pytest.mark.asyncio
async def test_unknown_or_inactive_agent(engine):
    with pytest.raises(AgentError) as exc_info:
        await engine.execute_agent(_request("ghost"))
    assert exc_info.value.code == ErrorCode.AGENT_NOT_FOUND

    await engine.agents.create_agent(make_agent("agent-off", is_active=False))
    with pytest.raises(AgentError) as exc_info:
        await engine.execute_agent(_request("agent-off"))
    assert exc_info.value.code == ErrorCode.AGENT_NOT_FOUND


@pytest.mark.asyncio
async def test_unknown_agent_is_audited_as_failed(engine):
    events = []
    engine.bus.subscribe(events.append, types=[EventType.EXECUTION_FAILED])

    with pytest.raises(AgentError) as exc_info:
        await engine.execute_agent(_request("ghost"))

    assert exc_info.value.code == ErrorCode.AGENT_NOT_FOUND
    assert [e.agent_id for e in events] == ["ghost"]
    logs = await engine.audit.get_logs(LogQuery(agent_id="ghost"))
    assert [e.data["status"] for e in logs] == ["failed"]
    assert logs[0].data["error"]["code"] == ErrorCode.AGENT_NOT_FOUND.value


class _BrokenContextStore(InMemoryContextStore):
    async def store_execution(self, step_execution, context):
        raise RuntimeError("context store down")


@pytest.mark.asyncio
async def test_failure_after_completion_is_reported(completion):
    engine = build_engine(completion, context_store=_BrokenContextStore())
    await engine.agents.create_agent(make_agent("agent-a"))
    completion.replies["agent-a"] = {"summary": "ok"}
    events = []
    engine.bus.subscribe(events.append, types=[EventType.EXECUTION_FAILED])

    with pytest.raises(AgentError) as exc_info:
        await engine.execute_agent(_request())

    assert exc_info.value.code == ErrorCode.AGENT_EXECUTION_FAILED
    assert exc_info.value.details["cause_code"] == "RuntimeError"
    assert len(events) == 1
    activity = await engine.audit.get_agent_activity("agent-a")
    assert activity.current_executions == 0
    assert activity.total_executions == 1
    assert activity.error_rate == 1.0


@pytest.mark.asyncio
async def test_transient_failures_are_retried(engine, completion):
    await engine.agents.create_agent(make_agent("agent-a"))
    completion.replies["agent-a"] = [
        RuntimeError("upstream 502"),
        asyncio.TimeoutError(),
        {"done": True},
    ]

    response = await engine.execute_agent(
        _request(retry_policy=RetryPolicy(max_attempts=3, backoff_ms=10))
    )

    assert response.output == {"done": True}
    assert response.retry_count == 2
    assert len(completion.calls) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_call(engine, completion):
    await engine.agents.create_agent(make_agent("agent-a"))
    completion.replies["agent-a"] = RuntimeError("model unavailable")
    events = []
    engine.bus.subscribe(events.append, types=[EventType.EXECUTION_FAILED])

    with pytest.raises(AgentError) as exc_info:
        await engine.execute_agent(_request(retry_policy=RetryPolicy(max_attempts=2)))

    error = exc_info.value
    assert error.code == ErrorCode.AGENT_EXECUTION_FAILED
    assert error.details["cause_code"] == "RuntimeError"
    assert error.retryable is True
    assert len(completion.calls) == 2
    assert len(events) == 1

    failed = await engine.audit.get_logs(LogQuery(level="error"))
    assert failed[0].data["status"] == "failed"


@pytest.mark.asyncio
async def test_rate_limited_call_is_not_sent(engine, completion):
    await engine.agents.create_agent(
        make_agent(
            "agent-a",
            constraints=[
                AgentConstraint(type=ConstraintType.RATE_LIMIT, value=1, window_ms=60_000)
            ],
        )
    )
    await engine.execute_agent(_request())

    with pytest.raises(AgentError) as exc_info:
        await engine.execute_agent(_request(retry_policy=RetryPolicy(max_attempts=3)))

    assert exc_info.value.code == ErrorCode.AGENT_EXECUTION_FAILED
    assert exc_info.value.details["cause_code"] == "RATE_LIMIT_EXCEEDED"
    assert exc_info.value.retryable is False
    assert len(completion.calls) == 1


@pytest.mark.asyncio
async def test_constraints_cap_request(engine, completion):
    await engine.agents.create_agent(
        make_agent(
            "agent-a",
            constraints=[
                AgentConstraint(type=ConstraintType.TOKEN_LIMIT, value=128),
                AgentConstraint(type=ConstraintType.TIME_LIMIT, value=2000),
                AgentConstraint(type=ConstraintType.APPROVAL_REQUIRED, value="manager"),
            ],
        )
    )
    response = await engine.execute_agent(_request(max_tokens=4000, timeout_ms=10_000))

    request = completion.calls[0]
    assert request.max_tokens == 128
    assert request.timeout_ms == 2000
    assert response.requires_approval is True


@pytest.mark.asyncio
async def test_previous_executions_feed_context(engine, completion):
    await engine.agents.create_agent(make_agent("agent-a"))
    await engine.execute_agent(_request())
    await engine.execute_agent(_request())

    second = completion.calls[1]
    context_messages = [
        m.content for m in second.messages if m.content.startswith("Previous context:")
    ]
    assert len(context_messages) == 1
    assert "Acme" in context_messages[0]


@pytest.mark.asyncio
async def test_cancel_token_aborts_call(engine, completion):
    await engine.agents.create_agent(make_agent("agent-a"))
    started = asyncio.Event()

    async def slow(request):
        started.set()
        await asyncio.sleep(10)
        return make_response("too late")

    completion.replies["agent-a"] = slow
    token = CancellationToken()

    async def cancel_soon():
        await started.wait()
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(AgentError) as exc_info:
        await engine.dispatcher.execute_agent(_request(), cancel_token=token)
    await canceller

    assert exc_info.value.code == ErrorCode.EXECUTION_CANCELLED
    logs = await engine.audit.get_logs(LogQuery(category=LogCategory.AGENT_EXECUTION))
    assert "cancelled" in {e.data["status"] for e in logs}
