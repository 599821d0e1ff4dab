"""Request/response contracts for the engine and its collaborators."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_LOG_PAGE_SIZE
from .models import (
    AgentStatus,
    ConfidenceLevel,
    ExecutionContext,
    ExecutionError,
    LogCategory,
    LogLevel,
    RetryPolicy,
    StepExecution,
    TokenUsage,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowStep,
)

FinishReason = Literal["stop", "length", "content_filter"]


# ── Completion service ───────────────────────────────────────────────────────


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class CompletionRequest(BaseModel):
    model: str
    messages: List[ChatMessage]
    temperature: float
    max_tokens: int
    timeout_ms: int


class CompletionChoice(BaseModel):
    message: ChatMessage
    finish_reason: Optional[FinishReason] = None
    index: int = 0


class CompletionResponse(BaseModel):
    id: Optional[str] = None
    model: Optional[str] = None
    choices: List[CompletionChoice]
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def content(self) -> str:
        """Text of the first choice."""
        return self.choices[0].message.content if self.choices else ""

    @property
    def finish_reason(self) -> Optional[str]:
        return self.choices[0].finish_reason if self.choices else None


class ContextEntry(BaseModel):
    """One prior context item returned by the context store."""

    content: str
    created_at: Optional[datetime] = None


# ── Agent execution ──────────────────────────────────────────────────────────


class ExecuteAgentOptions(BaseModel):
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout_ms: Optional[int] = None
    require_approval: bool = False
    retry_policy: Optional[RetryPolicy] = None


class ExecuteAgentRequest(BaseModel):
    agent_id: str
    input: Dict[str, Any] = Field(default_factory=dict)
    context: Optional[ExecutionContext] = None
    options: ExecuteAgentOptions = Field(default_factory=ExecuteAgentOptions)
    # Correlating ids when the call is part of a workflow run
    execution_id: Optional[str] = None
    step_id: Optional[str] = None


class ExecuteAgentResponse(BaseModel):
    execution_id: str
    step_id: str
    status: AgentStatus
    output: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = None
    confidence_level: Optional[ConfidenceLevel] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    execution_time_ms: int = 0
    retry_count: int = 0
    requires_approval: bool = False
    approval_id: Optional[str] = None
    error: Optional[ExecutionError] = None


# ── Workflow execution ───────────────────────────────────────────────────────


class ExecuteWorkflowRequest(BaseModel):
    workflow_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)
    context: ExecutionContext = Field(default_factory=ExecutionContext)


class ExecuteWorkflowResponse(BaseModel):
    execution_id: str
    status: WorkflowStatus
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    step_executions: List[StepExecution] = Field(default_factory=list)
    requires_approval: bool = False
    approval_ids: List[str] = Field(default_factory=list)
    error: Optional[ExecutionError] = None

    @classmethod
    def from_execution(cls, execution: WorkflowExecution) -> "ExecuteWorkflowResponse":
        approval_ids = execution.pending_approval_ids()
        error = next(
            (
                se.error
                for se in execution.step_executions
                if se.status == AgentStatus.FAILED and se.error is not None
            ),
            None,
        )
        return cls(
            execution_id=execution.id,
            status=execution.status,
            current_step_id=execution.current_step_id,
            variables=execution.variables,
            step_executions=execution.step_executions,
            requires_approval=bool(approval_ids),
            approval_ids=approval_ids,
            error=error,
        )


class WorkflowStatusReport(BaseModel):
    workflow: Workflow
    execution: Optional[WorkflowExecution] = None
    status: WorkflowStatus
    progress: int = 0
    current_step: Optional[WorkflowStep] = None
    next_steps: List[WorkflowStep] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[str]) -> "ValidationResult":
        return cls(is_valid=not errors, errors=errors)


# ── Audit queries ────────────────────────────────────────────────────────────


class LogQuery(BaseModel):
    """Filter and pagination criteria for audit log lookups."""

    agent_id: Optional[str] = None
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None
    organization_id: Optional[str] = None
    user_id: Optional[str] = None
    category: Optional[LogCategory] = None
    level: Optional[LogLevel] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = DEFAULT_LOG_PAGE_SIZE
    offset: int = 0
