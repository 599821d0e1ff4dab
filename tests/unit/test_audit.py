"""Tests for the audit logger."""

import json
from datetime import timedelta

import pytest

from opscrew.audit import AgentExecutionAudit, ApprovalAudit, AuditLogger, WorkflowExecutionAudit
from opscrew.constants import CSV_EXPORT_COLUMNS
from opscrew.contracts import LogQuery
from opscrew.errors import AgentError, ErrorCode
from opscrew.events import EventBus, EventType
from opscrew.models import (
    AuditLogEntry,
    ConfidenceLevel,
    ExecutionError,
    LogCategory,
    LogLevel,
    TokenUsage,
    utcnow,
)
from opscrew.persistence import InMemoryRepository


def _execution(status, step_id="s1", **kwargs):
    return AgentExecutionAudit(
        agent_id=kwargs.pop("agent_id", "agent-a"),
        execution_id=kwargs.pop("execution_id", "exec-1"),
        step_id=step_id,
        status=status,
        **kwargs,
    )


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def audit(repo):
    return AuditLogger(repo)


@pytest.mark.asyncio
async def test_entries_are_published_and_queryable(repo):
    bus = EventBus()
    received = []
    bus.subscribe(received.append, types=[EventType.AUDIT_LOGGED])
    audit = AuditLogger(repo, bus)

    await audit.log_agent_execution(_execution("started"))
    await audit.log_workflow_execution(
        WorkflowExecutionAudit(workflow_id="wf", execution_id="exec-1", status="started")
    )
    await audit.log_system_event(LogLevel.WARN, "disk almost full", data={"free": "5%"})

    assert len(received) == 3
    assert received[0].entry.category == LogCategory.AGENT_EXECUTION

    logs = await audit.get_logs()
    assert {e.category for e in logs} == {
        LogCategory.SYSTEM,
        LogCategory.WORKFLOW_EXECUTION,
        LogCategory.AGENT_EXECUTION,
    }
    assert all(a.timestamp >= b.timestamp for a, b in zip(logs, logs[1:]))
    workflow_logs = await audit.get_logs(LogQuery(workflow_id="wf"))
    assert [e.message for e in workflow_logs] == ["Workflow wf execution started"]
    assert len(await audit.get_logs(LogQuery(limit=1, offset=1))) == 1


@pytest.mark.asyncio
async def test_structured_lookups(audit):
    await audit.log_agent_execution(_execution("started"))
    await audit.log_agent_execution(_execution("completed", confidence=0.9))
    await audit.log_approval(
        ApprovalAudit(
            approval_id="ap-1", execution_id="exec-1", step_id="s1", agent_id="agent-a",
            status="requested",
        )
    )

    latest = await audit.get_agent_execution("exec-1")
    assert latest.status == "completed"
    assert (await audit.get_agent_execution("exec-1", "s1")).confidence == 0.9
    assert await audit.get_agent_execution("nope") is None
    assert (await audit.get_approval("ap-1")).status == "requested"
    assert await audit.get_workflow_execution("exec-1") is None


@pytest.mark.asyncio
async def test_usage_metrics_count_terminal_records_only(audit):
    usage = TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15, cost=0.01)
    await audit.log_agent_execution(_execution("started"))
    await audit.log_agent_execution(
        _execution("completed", token_usage=usage, execution_time_ms=100, confidence=0.8)
    )
    await audit.log_agent_execution(
        _execution("failed", step_id="s2", execution_time_ms=300, confidence=0.4)
    )

    metrics = await audit.get_usage_metrics(agent_id="agent-a", period="day")
    assert len(metrics) == 1
    day = metrics[0]
    assert day.request_count == 2
    assert day.success_count == 1
    assert day.error_count == 1
    assert day.token_usage.total_tokens == 15
    assert day.average_response_time_ms == pytest.approx(200)
    assert day.average_confidence == pytest.approx(0.6)
    assert day.cost == pytest.approx(0.01)
    assert len(await audit.get_usage_metrics()) == 3


@pytest.mark.asyncio
async def test_confidence_and_error_stats(audit):
    await audit.log_agent_execution(
        _execution("completed", confidence=0.9, confidence_level=ConfidenceLevel.VERY_HIGH)
    )
    await audit.log_agent_execution(
        _execution(
            "completed", step_id="s2", confidence=0.3, confidence_level=ConfidenceLevel.LOW
        )
    )
    await audit.log_agent_execution(
        _execution(
            "failed",
            step_id="s3",
            error=ExecutionError(code="AGENT_EXECUTION_FAILED", message="boom"),
        )
    )

    confidence = await audit.get_confidence_stats(agent_id="agent-a")
    assert confidence.total_executions == 2
    assert confidence.average_confidence == pytest.approx(0.6)
    assert confidence.confidence_distribution["very_high"] == 1
    assert confidence.confidence_distribution["low"] == 1
    assert confidence.high_confidence_rate == pytest.approx(0.5)

    future = utcnow() + timedelta(days=1)
    assert (await audit.get_confidence_stats(start_time=future)).total_executions == 0

    errors = await audit.get_error_stats(agent_id="agent-a")
    assert errors.total_errors == 1
    assert errors.error_rate == pytest.approx(1 / 3)
    assert errors.error_types == {"AGENT_EXECUTION_FAILED": 1}


@pytest.mark.asyncio
async def test_log_error_captures_code_and_stack(audit):
    try:
        raise AgentError("no such agent", ErrorCode.AGENT_NOT_FOUND, agent_id="ghost")
    except AgentError as e:
        entry = await audit.log_error(e, agent_id="ghost")

    assert entry.category == LogCategory.ERROR
    assert entry.level == LogLevel.ERROR
    assert entry.data["code"] == "AGENT_NOT_FOUND"
    assert entry.data["name"] == "AgentError"
    assert "no such agent" in entry.data["stack"]
    assert entry.data["context"] == {"agent_id": "ghost"}


@pytest.mark.asyncio
async def test_agent_activity_counts_pending_approvals(audit):
    await audit.log_agent_execution(_execution("completed"))
    await audit.log_approval(
        ApprovalAudit(
            approval_id="ap-1", execution_id="exec-1", step_id="s1", agent_id="agent-a",
            status="requested",
        )
    )
    activity = await audit.get_agent_activity("agent-a")
    assert activity.queue_length == 1
    assert activity.total_executions == 1
    assert activity.last_activity is not None

    await audit.log_approval(
        ApprovalAudit(
            approval_id="ap-1", execution_id="exec-1", step_id="s1", agent_id="agent-a",
            status="approved",
        )
    )
    assert (await audit.get_agent_activity("agent-a")).queue_length == 0


@pytest.mark.asyncio
async def test_json_export_matches_logs(audit):
    await audit.log_agent_execution(_execution("started"))
    await audit.log_system_event(LogLevel.INFO, "ready")

    exported = json.loads(await audit.export_logs(format="json"))
    logs = await audit.get_logs()
    assert exported == [json.loads(e.model_dump_json()) for e in logs]


@pytest.mark.asyncio
async def test_export_honours_query_page(audit):
    for n in range(5):
        await audit.log_system_event(LogLevel.INFO, f"event {n}")

    page = LogQuery(limit=2, offset=1)
    exported = json.loads(await audit.export_logs(page, format="json"))
    logs = await audit.get_logs(page)
    assert len(exported) == 2
    assert exported == [json.loads(e.model_dump_json()) for e in logs]

    audit.export_limit = 3
    assert len(json.loads(await audit.export_logs(LogQuery(limit=50)))) == 3
    assert len(json.loads(await audit.export_logs())) == 3


@pytest.mark.asyncio
async def test_csv_export_quotes_messages(audit):
    await audit.log_system_event(LogLevel.INFO, 'said "hi", then left')

    document = await audit.export_logs(format="csv")
    lines = document.split("\n")
    assert lines[0] == ",".join(CSV_EXPORT_COLUMNS)
    assert lines[0].endswith("userId,message")
    assert lines[1].endswith('"said ""hi"", then left"')
    assert len(lines) == 2

    with pytest.raises(ValueError):
        await audit.export_logs(format="xml")


@pytest.mark.asyncio
async def test_cleanup_removes_old_entries(repo):
    audit = AuditLogger(repo, retention_days=30)
    old = AuditLogEntry(
        level=LogLevel.INFO,
        category=LogCategory.SYSTEM,
        message="ancient",
        timestamp=utcnow() - timedelta(days=45),
    )
    await repo.append_log(old)
    await audit.log_system_event(LogLevel.INFO, "recent")

    assert await audit.cleanup_logs() == 1
    assert [e.message for e in await audit.get_logs()] == ["recent"]
    assert await audit.cleanup_logs(retention_days=0) == 1


@pytest.mark.asyncio
async def test_cleanup_prunes_old_records(audit):
    long_ago = utcnow() - timedelta(days=45)
    await audit.log_agent_execution(
        _execution("completed", execution_id="exec-old", recorded_at=long_ago)
    )
    await audit.log_workflow_execution(
        WorkflowExecutionAudit(
            workflow_id="wf-1", execution_id="exec-old", status="completed", recorded_at=long_ago
        )
    )
    await audit.log_approval(
        ApprovalAudit(
            approval_id="ap-old", execution_id="exec-old", step_id="s1", agent_id="agent-a",
            status="approved", requested_at=long_ago, responded_at=long_ago,
        )
    )
    await audit.log_agent_execution(_execution("completed", execution_id="exec-new"))

    await audit.cleanup_logs(retention_days=30)

    assert await audit.get_agent_execution("exec-old", "s1") is None
    assert await audit.get_agent_execution("exec-old") is None
    assert await audit.get_workflow_execution("exec-old") is None
    assert await audit.get_approval("ap-old") is None
    assert (await audit.get_agent_execution("exec-new", "s1")).status == "completed"
    [daily] = await audit.get_usage_metrics(period="day")
    assert daily.request_count == 1
    assert (await audit.get_agent_activity("agent-a")).total_executions == 1
