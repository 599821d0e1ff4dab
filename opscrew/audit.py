"""Append-only audit trail and usage metrics."""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from .constants import (
    CSV_EXPORT_COLUMNS,
    DEFAULT_EXPORT_LIMIT,
    DEFAULT_ORGANIZATION_ID,
    DEFAULT_RETENTION_DAYS,
)
from .contracts import LogQuery
from .errors import AgentError
from .events import AuditEvent, EventBus
from .models import (
    AuditLogEntry,
    ConfidenceLevel,
    ExecutionError,
    LogCategory,
    LogLevel,
    TokenUsage,
    utcnow,
)
from .persistence import AuditLogRepository

logger = logging.getLogger(__name__)

AuditStatus = Literal["started", "completed", "failed", "cancelled"]
ApprovalAuditStatus = Literal["requested", "approved", "rejected", "expired"]
MetricsPeriod = Literal["hour", "day", "month"]

_TERMINAL = ("completed", "failed", "cancelled")


class AgentExecutionAudit(BaseModel):
    agent_id: str
    execution_id: str
    step_id: str
    organization_id: str = DEFAULT_ORGANIZATION_ID
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = None
    confidence_level: Optional[ConfidenceLevel] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    execution_time_ms: int = 0
    status: AuditStatus
    error: Optional[ExecutionError] = None
    metadata: Optional[Dict[str, Any]] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class WorkflowExecutionAudit(BaseModel):
    workflow_id: str
    execution_id: str
    status: AuditStatus
    step_count: int = 0
    total_execution_time_ms: int = 0
    total_token_usage: TokenUsage = Field(default_factory=TokenUsage)
    organization_id: str = DEFAULT_ORGANIZATION_ID
    user_id: str = "system"
    metadata: Optional[Dict[str, Any]] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class ApprovalAudit(BaseModel):
    approval_id: str
    execution_id: str
    step_id: str
    agent_id: str
    status: ApprovalAuditStatus
    approver_id: Optional[str] = None
    approver_name: Optional[str] = None
    comment: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class UsageMetrics(BaseModel):
    """Aggregated usage of one agent in one time bucket."""

    organization_id: str
    agent_id: str
    period: MetricsPeriod
    timestamp: datetime
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    average_response_time_ms: float = 0.0
    average_confidence: float = 0.0
    cost: float = 0.0


class ConfidenceStats(BaseModel):
    average_confidence: float = 0.0
    confidence_distribution: Dict[str, int] = Field(
        default_factory=lambda: {level.value: 0 for level in ConfidenceLevel}
    )
    total_executions: int = 0
    high_confidence_rate: float = 0.0


class ErrorStats(BaseModel):
    total_errors: int = 0
    error_rate: float = 0.0
    error_types: Dict[str, int] = Field(default_factory=dict)


class AgentActivity(BaseModel):
    """Runtime counters for one agent, derived from its audit trail."""

    current_executions: int = 0
    queue_length: int = 0
    total_executions: int = 0
    error_rate: float = 0.0
    last_activity: Optional[datetime] = None


def _bucket_start(moment: datetime, period: MetricsPeriod) -> datetime:
    if period == "hour":
        return moment.replace(minute=0, second=0, microsecond=0)
    if period == "day":
        return moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _running_average(previous: float, count: int, value: float) -> float:
    return (previous * (count - 1) + value) / count


class AuditLogger:
    """Record execution-relevant events and aggregate usage metrics.

    Entries go to the audit log repository and are fanned out as
    ``audit_logged`` events. Structured execution, workflow and approval
    records plus usage metrics are kept in memory until ``cleanup_logs``
    drops those older than the retention window.
    """

    def __init__(
        self,
        repository: AuditLogRepository,
        bus: Optional[EventBus] = None,
        export_limit: int = DEFAULT_EXPORT_LIMIT,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ) -> None:
        self._repository = repository
        self._bus = bus
        self.export_limit = export_limit
        self.retention_days = retention_days
        self._agent_executions: Dict[Tuple[str, str], AgentExecutionAudit] = {}
        self._agent_history: List[AgentExecutionAudit] = []
        self._workflow_executions: Dict[str, WorkflowExecutionAudit] = {}
        self._approvals: Dict[str, ApprovalAudit] = {}
        self._usage_metrics: Dict[Tuple[str, str, str, datetime], UsageMetrics] = {}

    async def _append(self, entry: AuditLogEntry) -> AuditLogEntry:
        await self._repository.append_log(entry)
        if self._bus is not None:
            await self._bus.publish(
                AuditEvent(
                    entry=entry,
                    execution_id=entry.execution_id,
                    step_id=entry.step_id,
                )
            )
        return entry

    # ------------------------------------------------------------------
    # Writers
    async def log_agent_execution(self, audit: AgentExecutionAudit) -> AuditLogEntry:
        entry = AuditLogEntry(
            level=LogLevel.ERROR if audit.status == "failed" else LogLevel.INFO,
            category=LogCategory.AGENT_EXECUTION,
            agent_id=audit.agent_id,
            execution_id=audit.execution_id,
            step_id=audit.step_id,
            organization_id=audit.organization_id,
            message=f"Agent {audit.agent_id} execution {audit.status}",
            data={
                "input": audit.input,
                "output": audit.output,
                "confidence": audit.confidence,
                "confidence_level": audit.confidence_level.value if audit.confidence_level else None,
                "token_usage": audit.token_usage.model_dump(),
                "execution_time_ms": audit.execution_time_ms,
                "status": audit.status,
                "error": audit.error.model_dump() if audit.error else None,
            },
            metadata=audit.metadata,
        )
        self._agent_executions[(audit.execution_id, audit.step_id)] = audit
        self._agent_history.append(audit)
        if audit.status in _TERMINAL:
            self._update_usage_metrics(audit)
        return await self._append(entry)

    async def log_workflow_execution(self, audit: WorkflowExecutionAudit) -> AuditLogEntry:
        entry = AuditLogEntry(
            level=LogLevel.ERROR if audit.status == "failed" else LogLevel.INFO,
            category=LogCategory.WORKFLOW_EXECUTION,
            workflow_id=audit.workflow_id,
            execution_id=audit.execution_id,
            organization_id=audit.organization_id,
            user_id=audit.user_id,
            message=f"Workflow {audit.workflow_id} execution {audit.status}",
            data={
                "status": audit.status,
                "step_count": audit.step_count,
                "total_execution_time_ms": audit.total_execution_time_ms,
                "total_token_usage": audit.total_token_usage.model_dump(),
            },
            metadata=audit.metadata,
        )
        self._workflow_executions[audit.execution_id] = audit
        return await self._append(entry)

    async def log_approval(self, audit: ApprovalAudit) -> AuditLogEntry:
        entry = AuditLogEntry(
            level=LogLevel.INFO,
            category=LogCategory.APPROVAL,
            agent_id=audit.agent_id,
            execution_id=audit.execution_id,
            step_id=audit.step_id,
            message=f"Approval {audit.approval_id} {audit.status}",
            data={
                "approval_id": audit.approval_id,
                "status": audit.status,
                "approver_id": audit.approver_id,
                "approver_name": audit.approver_name,
                "comment": audit.comment,
                "requested_at": audit.requested_at.isoformat(),
                "responded_at": audit.responded_at.isoformat() if audit.responded_at else None,
            },
            metadata=audit.metadata,
        )
        self._approvals[audit.approval_id] = audit
        return await self._append(entry)

    async def log_system_event(
        self,
        level: LogLevel,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            level=LogLevel(level),
            category=LogCategory.SYSTEM,
            message=message,
            data=data,
            metadata=metadata,
        )
        return await self._append(entry)

    async def log_error(
        self,
        error: BaseException,
        *,
        agent_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AuditLogEntry:
        context = {
            "agent_id": agent_id,
            "execution_id": execution_id,
            "step_id": step_id,
            "workflow_id": workflow_id,
            "organization_id": organization_id,
            "user_id": user_id,
        }
        data: Dict[str, Any] = {
            "name": type(error).__name__,
            "stack": "".join(traceback.format_exception(error)),
            "context": {k: v for k, v in context.items() if v is not None},
        }
        if isinstance(error, AgentError):
            data["code"] = error.code.value
        entry = AuditLogEntry(
            level=LogLevel.ERROR,
            category=LogCategory.ERROR,
            message=str(error),
            data=data,
            **context,
        )
        return await self._append(entry)

    # ------------------------------------------------------------------
    # Queries
    async def get_logs(self, query: Optional[LogQuery] = None) -> List[AuditLogEntry]:
        """Return entries matching ``query``, newest first."""
        query = query or LogQuery()
        entries = await self._repository.list_logs()

        def matches(entry: AuditLogEntry) -> bool:
            if query.agent_id and entry.agent_id != query.agent_id:
                return False
            if query.execution_id and entry.execution_id != query.execution_id:
                return False
            if query.workflow_id and entry.workflow_id != query.workflow_id:
                return False
            if query.organization_id and entry.organization_id != query.organization_id:
                return False
            if query.user_id and entry.user_id != query.user_id:
                return False
            if query.category and entry.category != query.category:
                return False
            if query.level and entry.level != query.level:
                return False
            if query.start_time and entry.timestamp < query.start_time:
                return False
            if query.end_time and entry.timestamp > query.end_time:
                return False
            return True

        filtered = sorted(
            (e for e in entries if matches(e)), key=lambda e: e.timestamp, reverse=True
        )
        return filtered[query.offset : query.offset + query.limit]

    async def get_agent_execution(
        self, execution_id: str, step_id: Optional[str] = None
    ) -> Optional[AgentExecutionAudit]:
        """Latest agent execution record for ``execution_id`` (and ``step_id``)."""
        if step_id is not None:
            return self._agent_executions.get((execution_id, step_id))
        matching = [a for a in self._agent_history if a.execution_id == execution_id]
        return matching[-1] if matching else None

    async def get_workflow_execution(self, execution_id: str) -> Optional[WorkflowExecutionAudit]:
        return self._workflow_executions.get(execution_id)

    async def get_approval(self, approval_id: str) -> Optional[ApprovalAudit]:
        return self._approvals.get(approval_id)

    # ------------------------------------------------------------------
    # Metrics
    def _update_usage_metrics(self, audit: AgentExecutionAudit) -> None:
        for period in ("hour", "day", "month"):
            bucket = _bucket_start(audit.recorded_at, period)
            key = (audit.organization_id, audit.agent_id, period, bucket)
            metric = self._usage_metrics.get(key)
            if metric is None:
                metric = UsageMetrics(
                    organization_id=audit.organization_id,
                    agent_id=audit.agent_id,
                    period=period,
                    timestamp=bucket,
                )
                self._usage_metrics[key] = metric

            metric.request_count += 1
            n = metric.request_count
            metric.success_count += 1 if audit.status == "completed" else 0
            metric.error_count += 1 if audit.status == "failed" else 0
            metric.token_usage.prompt_tokens += audit.token_usage.prompt_tokens
            metric.token_usage.completion_tokens += audit.token_usage.completion_tokens
            metric.token_usage.total_tokens += audit.token_usage.total_tokens
            metric.average_response_time_ms = _running_average(
                metric.average_response_time_ms, n, audit.execution_time_ms
            )
            metric.average_confidence = _running_average(
                metric.average_confidence, n, audit.confidence or 0.0
            )
            metric.cost += audit.token_usage.cost or 0.0

    async def get_usage_metrics(
        self,
        organization_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        period: Optional[MetricsPeriod] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[UsageMetrics]:
        metrics = [
            m
            for m in self._usage_metrics.values()
            if (organization_id is None or m.organization_id == organization_id)
            and (agent_id is None or m.agent_id == agent_id)
            and (period is None or m.period == period)
            and (start_time is None or m.timestamp >= start_time)
            and (end_time is None or m.timestamp <= end_time)
        ]
        return sorted(metrics, key=lambda m: m.timestamp, reverse=True)

    def _filter_executions(
        self,
        agent_id: Optional[str],
        organization_id: Optional[str],
        start_time: Optional[datetime],
        end_time: Optional[datetime],
    ) -> List[AgentExecutionAudit]:
        return [
            a
            for a in self._agent_executions.values()
            if a.status in _TERMINAL
            and (agent_id is None or a.agent_id == agent_id)
            and (organization_id is None or a.organization_id == organization_id)
            and (start_time is None or a.recorded_at >= start_time)
            and (end_time is None or a.recorded_at <= end_time)
        ]

    async def get_confidence_stats(
        self,
        agent_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> ConfidenceStats:
        executions = [
            a
            for a in self._filter_executions(agent_id, organization_id, start_time, end_time)
            if a.confidence is not None
        ]
        if not executions:
            return ConfidenceStats()

        stats = ConfidenceStats(total_executions=len(executions))
        stats.average_confidence = sum(a.confidence for a in executions) / len(executions)
        for audit in executions:
            level = (audit.confidence_level or ConfidenceLevel.LOW).value
            stats.confidence_distribution[level] += 1
        high = (
            stats.confidence_distribution[ConfidenceLevel.HIGH.value]
            + stats.confidence_distribution[ConfidenceLevel.VERY_HIGH.value]
        )
        stats.high_confidence_rate = high / len(executions)
        return stats

    async def get_error_stats(
        self,
        agent_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> ErrorStats:
        error_logs = await self.get_logs(
            LogQuery(
                agent_id=agent_id,
                organization_id=organization_id,
                start_time=start_time,
                end_time=end_time,
                level=LogLevel.ERROR,
                limit=self.export_limit,
            )
        )
        total = len(self._filter_executions(agent_id, organization_id, start_time, end_time))
        error_types: Dict[str, int] = {}
        for entry in error_logs:
            data = entry.data or {}
            error = data.get("error") or {}
            name = data.get("name") or error.get("code") or "Unknown"
            error_types[name] = error_types.get(name, 0) + 1
        return ErrorStats(
            total_errors=len(error_logs),
            error_rate=len(error_logs) / total if total else 0.0,
            error_types=error_types,
        )

    async def get_agent_activity(self, agent_id: str) -> AgentActivity:
        """Counters for ``agent_id`` used in agent health reports."""
        records = [a for a in self._agent_executions.values() if a.agent_id == agent_id]
        finished = [a for a in records if a.status in _TERMINAL]
        failed = [a for a in finished if a.status == "failed"]
        pending = [
            a
            for a in self._approvals.values()
            if a.agent_id == agent_id and a.status == "requested"
        ]
        history = [a for a in self._agent_history if a.agent_id == agent_id]
        return AgentActivity(
            current_executions=sum(1 for a in records if a.status == "started"),
            queue_length=len(pending),
            total_executions=len(finished),
            error_rate=len(failed) / len(finished) if finished else 0.0,
            last_activity=history[-1].recorded_at if history else None,
        )

    # ------------------------------------------------------------------
    # Export and retention
    async def export_logs(
        self, query: Optional[LogQuery] = None, format: Literal["json", "csv"] = "json"
    ) -> str:
        """Serialize matching entries as a JSON array or CSV document."""
        if query is None:
            query = LogQuery(limit=self.export_limit)
        else:
            query = query.model_copy(update={"limit": min(query.limit, self.export_limit)})
        entries = await self.get_logs(query)

        if format == "json":
            return json.dumps([e.model_dump(mode="json") for e in entries], indent=2)
        if format != "csv":
            raise ValueError(f"Unsupported export format: {format}")

        rows = [",".join(CSV_EXPORT_COLUMNS)]
        for e in entries:
            fields = [
                e.id,
                e.timestamp.isoformat(),
                e.level.value,
                e.category.value,
                e.agent_id or "",
                e.execution_id or "",
                e.step_id or "",
                e.workflow_id or "",
                e.organization_id or "",
                e.user_id or "",
                '"' + e.message.replace('"', '""') + '"',
            ]
            rows.append(",".join(fields))
        return "\n".join(rows)

    async def cleanup_logs(self, retention_days: Optional[int] = None) -> int:
        """Delete entries older than the retention window; returns the count."""
        days = self.retention_days if retention_days is None else retention_days
        cutoff = utcnow() - timedelta(days=days)
        deleted = await self._repository.delete_logs_before(cutoff)
        self._prune_records(cutoff)
        logger.info(f"Removed {deleted} audit entries older than {days} days")
        return deleted

    def _prune_records(self, cutoff: datetime) -> None:
        self._agent_history = [a for a in self._agent_history if a.recorded_at >= cutoff]
        self._agent_executions = {
            key: a for key, a in self._agent_executions.items() if a.recorded_at >= cutoff
        }
        self._workflow_executions = {
            key: w for key, w in self._workflow_executions.items() if w.recorded_at >= cutoff
        }
        self._approvals = {
            key: a
            for key, a in self._approvals.items()
            if (a.responded_at or a.requested_at) >= cutoff
        }
        # a bucket that straddles the cutoff still holds retained executions
        self._usage_metrics = {
            key: m
            for key, m in self._usage_metrics.items()
            if m.timestamp >= _bucket_start(cutoff, m.period)
        }
