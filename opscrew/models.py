"""Domain models for agents, workflows and their executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_MS,
    DEFAULT_COMPLETION_TIMEOUT_MS,
    DEFAULT_MODEL,
    DEFAULT_ORGANIZATION_ID,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Return a unique identifier such as ``exec_1f0c...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


# ── Enums ────────────────────────────────────────────────────────────────────


class AgentType(str, Enum):
    INTAKE = "intake"
    SPIN_UP = "spin-up"
    PM = "pm"
    COMMS = "comms"
    RESEARCH = "research"
    LAUNCH = "launch"
    HANDOVER = "handover"
    SUPPORT = "support"


class AgentStatus(str, Enum):
    """Lifecycle states of an agent and of a single step execution."""

    IDLE = "idle"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting_approval"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ConfidenceLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class RetentionPolicy(str, Enum):
    SLIDING = "sliding"
    FIXED = "fixed"
    SUMMARY = "summary"


class ConstraintType(str, Enum):
    RATE_LIMIT = "rate_limit"
    TOKEN_LIMIT = "token_limit"
    TIME_LIMIT = "time_limit"
    APPROVAL_REQUIRED = "approval_required"
    HUMAN_OVERRIDE = "human_override"


class TriggerType(str, Enum):
    WEBHOOK = "webhook"
    SCHEDULE = "schedule"
    EVENT = "event"
    MANUAL = "manual"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogCategory(str, Enum):
    AGENT_EXECUTION = "agent_execution"
    WORKFLOW_EXECUTION = "workflow_execution"
    APPROVAL = "approval"
    ERROR = "error"
    SYSTEM = "system"


# ── Agent definitions ────────────────────────────────────────────────────────


class RetryPolicy(BaseModel):
    """Bounded exponential backoff settings."""

    max_attempts: int = 1
    backoff_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_backoff_ms: int = 10_000


class ContextWindowPolicy(BaseModel):
    max_messages: int = 20
    max_tokens: int = 4000
    retention_policy: RetentionPolicy = RetentionPolicy.SLIDING


class Personality(BaseModel):
    tone: Literal["professional", "friendly", "technical", "casual"] = "professional"
    communication_style: Literal["concise", "detailed", "conversational"] = "concise"
    expertise: List[str] = Field(default_factory=list)


class AgentPersona(BaseModel):
    """Prompt, model and sampling configuration governing an agent."""

    id: str = Field(default_factory=lambda: new_id("persona"))
    name: str = ""
    description: str = ""
    model: str = DEFAULT_MODEL
    system_prompt: str = ""
    temperature: float = 0.7
    max_tokens: int = 2000
    allowed_actions: List[str] = Field(default_factory=list)
    personality: Personality = Field(default_factory=Personality)
    context_window: ContextWindowPolicy = Field(default_factory=ContextWindowPolicy)


class AgentCapability(BaseModel):
    """Named, schema-typed unit of work an agent can perform."""

    id: str = Field(default_factory=lambda: new_id("capability"))
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict)
    output_schema: Dict[str, Any] = Field(default_factory=dict)
    is_async: bool = False
    timeout_ms: int = DEFAULT_COMPLETION_TIMEOUT_MS
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)


class AgentConstraint(BaseModel):
    id: str = Field(default_factory=lambda: new_id("constraint"))
    type: Optional[ConstraintType] = None
    value: Any = None
    window_ms: Optional[int] = None
    description: str = ""


class Agent(BaseModel):
    """A configured persona plus capability set that can run one step."""

    id: str = Field(default_factory=lambda: new_id("agent"))
    type: Optional[AgentType] = None
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    is_active: bool = True
    persona: Optional[AgentPersona] = None
    capabilities: List[str] = Field(default_factory=list)
    constraints: List[AgentConstraint] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_constraint(self, constraint_type: ConstraintType) -> Optional[AgentConstraint]:
        """Return the first constraint of ``constraint_type`` if any."""
        return next((c for c in self.constraints if c.type == constraint_type), None)


# ── Workflow definitions ─────────────────────────────────────────────────────


class WorkflowCondition(BaseModel):
    id: str = Field(default_factory=lambda: new_id("condition"))
    field: str
    operator: ConditionOperator
    value: Any = None
    logical_operator: Optional[LogicalOperator] = None


class EscalationConfig(BaseModel):
    escalate_after_ms: int
    escalate_to: List[str] = Field(default_factory=list)


class ApprovalConfig(BaseModel):
    approvers: List[str] = Field(default_factory=list)
    min_approvals: int = 1
    timeout_ms: int = DEFAULT_APPROVAL_TIMEOUT_MS
    escalation: Optional[EscalationConfig] = None


class WorkflowStep(BaseModel):
    """One node of a workflow graph."""

    id: str
    name: str = ""
    agent_type: Optional[AgentType] = None
    agent_id: str = ""
    order: int
    is_parallel: bool = False
    dependencies: List[str] = Field(default_factory=list)
    # step input key -> workflow variable name
    input_mapping: Dict[str, str] = Field(default_factory=dict)
    # agent output key -> workflow variable name
    output_mapping: Dict[str, str] = Field(default_factory=dict)
    conditions: List[WorkflowCondition] = Field(default_factory=list)
    timeout_ms: int = DEFAULT_COMPLETION_TIMEOUT_MS
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    requires_approval: bool = False
    approval_config: Optional[ApprovalConfig] = None


class WorkflowTrigger(BaseModel):
    id: str = Field(default_factory=lambda: new_id("trigger"))
    type: Optional[TriggerType] = None
    config: Optional[Dict[str, Any]] = None
    is_active: bool = True


class Workflow(BaseModel):
    """Versioned directed graph of steps assigned to agents."""

    id: str = Field(default_factory=lambda: new_id("workflow"))
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    status: WorkflowStatus = WorkflowStatus.PENDING
    steps: List[WorkflowStep] = Field(default_factory=list)
    triggers: List[WorkflowTrigger] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def sorted_steps(self) -> List[WorkflowStep]:
        return sorted(self.steps, key=lambda s: s.order)

    def agent_ids(self) -> set[str]:
        return {s.agent_id for s in self.steps if s.agent_id}


# ── Execution state ──────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None


class ExecutionError(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    retryable: bool = False


class ExecutionContext(BaseModel):
    """Caller identity and environment a run executes under."""

    organization_id: str = DEFAULT_ORGANIZATION_ID
    user_id: str = "system"
    session_id: str = Field(default_factory=lambda: new_id("session"))
    project_id: Optional[str] = None
    environment: Literal["development", "staging", "production"] = "development"
    metadata: Dict[str, Any] = Field(default_factory=dict)


_STEP_TRANSITIONS: Dict[AgentStatus, set[AgentStatus]] = {
    AgentStatus.RUNNING: {
        AgentStatus.COMPLETED,
        AgentStatus.FAILED,
        AgentStatus.WAITING_APPROVAL,
    },
    AgentStatus.WAITING_APPROVAL: {AgentStatus.COMPLETED, AgentStatus.FAILED},
}


class StepExecution(BaseModel):
    """One attempt at one step."""

    id: str = Field(default_factory=lambda: new_id("step"))
    step_id: str
    agent_id: str
    status: AgentStatus = AgentStatus.RUNNING
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[ExecutionError] = None
    confidence: Optional[float] = None
    confidence_level: Optional[ConfidenceLevel] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    execution_time_ms: int = 0
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def transition(self, status: AgentStatus) -> None:
        """Move to ``status``; only forward transitions are allowed."""
        status = AgentStatus(status)
        allowed = _STEP_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise ValueError(
                f"Invalid step transition {self.status.value} -> {status.value}"
            )
        now = utcnow()
        self.status = status
        self.updated_at = now
        if status in (AgentStatus.COMPLETED, AgentStatus.FAILED):
            self.completed_at = now


class ExecutionLog(BaseModel):
    id: str = Field(default_factory=lambda: new_id("log"))
    level: LogLevel = LogLevel.INFO
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
    step_id: Optional[str] = None
    agent_id: Optional[str] = None


class ApprovalUser(BaseModel):
    user_id: str
    name: str = ""
    email: str = ""
    status: Literal["pending", "approved", "rejected"] = "pending"
    responded_at: Optional[datetime] = None
    comment: Optional[str] = None


class ApprovalComment(BaseModel):
    id: str = Field(default_factory=lambda: new_id("comment"))
    user_id: str
    user_name: str = ""
    comment: str
    created_at: datetime = Field(default_factory=utcnow)
    is_internal: bool = False


class Approval(BaseModel):
    """Human-in-the-loop gate blocking one step's completion."""

    id: str = Field(default_factory=lambda: new_id("approval"))
    execution_id: str
    step_id: str
    step_execution_id: str
    agent_id: str
    status: ApprovalStatus = ApprovalStatus.PENDING
    approvers: List[ApprovalUser] = Field(default_factory=list)
    comments: List[ApprovalComment] = Field(default_factory=list)
    min_approvals: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    escalate_at: Optional[datetime] = None
    escalate_to: List[str] = Field(default_factory=list)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None

    def get_approver(self, user_id: str) -> Optional[ApprovalUser]:
        return next((a for a in self.approvers if a.user_id == user_id), None)

    def count(self, status: str) -> int:
        return sum(1 for a in self.approvers if a.status == status)

    def record_response(
        self, user_id: str, approved: bool, comment: Optional[str] = None
    ) -> ApprovalStatus:
        """Record one approver's decision and return the resulting status.

        The gate is approved once ``min_approvals`` approvers agree and
        rejected as soon as the approvers still pending can no longer reach
        that number.
        """
        approver = self.get_approver(user_id)
        if approver is None:
            raise KeyError(user_id)
        now = utcnow()
        approver.status = "approved" if approved else "rejected"
        approver.responded_at = now
        approver.comment = comment
        if comment:
            self.comments.append(ApprovalComment(user_id=user_id, comment=comment))
        self.updated_at = now

        required = min(self.min_approvals, len(self.approvers))
        if self.count("approved") >= required:
            self.status = ApprovalStatus.APPROVED
            self.approved_at = now
        elif self.count("approved") + self.count("pending") < required:
            self.status = ApprovalStatus.REJECTED
            self.rejected_at = now
        return self.status

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.status == ApprovalStatus.PENDING
            and self.expires_at is not None
            and now >= self.expires_at
        )


class WorkflowExecution(BaseModel):
    """One run of a workflow."""

    id: str = Field(default_factory=lambda: new_id("exec"))
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.RUNNING
    current_step_id: Optional[str] = None
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_executions: List[StepExecution] = Field(default_factory=list)
    approvals: List[Approval] = Field(default_factory=list)
    logs: List[ExecutionLog] = Field(default_factory=list)
    # Definition as it was when the run started
    workflow: Optional[Workflow] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def step_ids_with_status(self, status: AgentStatus) -> set[str]:
        return {se.step_id for se in self.step_executions if se.status == status}

    def get_step_execution(self, step_execution_id: str) -> Optional[StepExecution]:
        return next(
            (se for se in self.step_executions if se.id == step_execution_id), None
        )

    def get_approval(self, approval_id: str) -> Optional[Approval]:
        return next((a for a in self.approvals if a.id == approval_id), None)

    def pending_approval_ids(self) -> List[str]:
        return [a.id for a in self.approvals if a.status == ApprovalStatus.PENDING]

    def add_log(
        self,
        level: LogLevel,
        message: str,
        *,
        step_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.logs.append(
            ExecutionLog(
                level=level, message=message, step_id=step_id, agent_id=agent_id, data=data
            )
        )
        self.updated_at = utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        )


class AuditLogEntry(BaseModel):
    """Immutable record of one execution-relevant event."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("log"))
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel
    category: LogCategory
    agent_id: Optional[str] = None
    execution_id: Optional[str] = None
    step_id: Optional[str] = None
    workflow_id: Optional[str] = None
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    message: str
    data: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
