"""OpsCrew: multi-agent workflow orchestration engine."""

from .contracts import (
    ExecuteAgentRequest,
    ExecuteAgentResponse,
    ExecuteWorkflowRequest,
    ExecuteWorkflowResponse,
    LogQuery,
)
from .engine import OrchestrationEngine, create_engine
from .errors import AgentError, ErrorCode, WorkflowValidationError
from .events import EventBus, EventType
from .models import Agent, AgentPersona, Workflow, WorkflowExecution, WorkflowStep
from .persistence import get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "Agent",
    "AgentError",
    "AgentPersona",
    "ErrorCode",
    "EventBus",
    "EventType",
    "ExecuteAgentRequest",
    "ExecuteAgentResponse",
    "ExecuteWorkflowRequest",
    "ExecuteWorkflowResponse",
    "LogQuery",
    "OrchestrationEngine",
    "Workflow",
    "WorkflowExecution",
    "WorkflowStep",
    "WorkflowValidationError",
    "create_engine",
    "get_repository",
    "get_transport",
]
