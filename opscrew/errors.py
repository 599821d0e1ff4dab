"""Structured errors raised by the orchestration engine."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from .models import ExecutionError


class ErrorCode(str, Enum):
    """Known error codes carried by :class:`AgentError`."""

    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    AGENT_EXECUTION_FAILED = "AGENT_EXECUTION_FAILED"
    AGENT_IN_USE = "AGENT_IN_USE"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    WORKFLOW_EXECUTION_FAILED = "WORKFLOW_EXECUTION_FAILED"
    WORKFLOW_VALIDATION_FAILED = "WORKFLOW_VALIDATION_FAILED"
    STEP_EXECUTION_FAILED = "STEP_EXECUTION_FAILED"
    EXECUTION_NOT_FOUND = "EXECUTION_NOT_FOUND"
    EXECUTION_CANCELLED = "EXECUTION_CANCELLED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    APPROVAL_NOT_FOUND = "APPROVAL_NOT_FOUND"


class AgentError(Exception):
    """Error raised by agent and workflow operations.

    Carries correlating ids and a ``retryable`` flag so callers can decide
    whether an operation is worth repeating.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode | str,
        *,
        agent_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = ErrorCode(code)
        self.agent_id = agent_id
        self.execution_id = execution_id
        self.step_id = step_id
        self.retryable = retryable
        self.details = details or {}

    def to_execution_error(self) -> ExecutionError:
        """Return the serializable form stored on step executions."""
        return ExecutionError(
            code=self.code.value,
            message=self.message,
            details=self.details or None,
            retryable=self.retryable,
        )

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"AgentError(code={self.code.value!r}, message={self.message!r})"


class RateLimitExceeded(AgentError):
    """Raised by rate limiters when an agent's quota window is exhausted."""

    def __init__(self, agent_id: str, organization_id: str, retry_after_ms: int = 0):
        super().__init__(
            f"Rate limit exceeded for agent {agent_id} in organization {organization_id}",
            ErrorCode.RATE_LIMIT_EXCEEDED,
            agent_id=agent_id,
            retryable=False,
            details={
                "organization_id": organization_id,
                "retry_after_ms": retry_after_ms,
            },
        )


class WorkflowValidationError(ValueError):
    """Raised when a workflow definition fails validation."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class AgentValidationError(ValueError):
    """Raised when an agent definition fails validation."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)
