"""Repository abstractions for engine state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..models import (
    Agent,
    AgentCapability,
    AgentPersona,
    AuditLogEntry,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow definition storage."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow definition by id."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Remove a workflow definition; ``False`` when it did not exist."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all stored workflow definitions."""


class AgentRepository(Protocol):
    """Protocol for agent, persona and capability storage."""

    async def save_agent(self, agent: Agent) -> None:
        """Insert or replace an agent."""

    async def get_agent(self, agent_id: str) -> Agent | None:
        """Retrieve an agent by id."""

    async def delete_agent(self, agent_id: str) -> bool:
        """Remove an agent; ``False`` when it did not exist."""

    async def list_agents(self) -> list[Agent]:
        """Return all agents."""

    async def save_persona(self, persona: AgentPersona) -> None:
        """Insert or replace a persona."""

    async def get_persona(self, persona_id: str) -> AgentPersona | None:
        """Retrieve a persona by id."""

    async def list_personas(self) -> list[AgentPersona]:
        """Return all personas."""

    async def save_capability(self, capability: AgentCapability) -> None:
        """Insert or replace a capability."""

    async def get_capability(self, capability_id: str) -> AgentCapability | None:
        """Retrieve a capability by id."""

    async def list_capabilities(self) -> list[AgentCapability]:
        """Return all capabilities."""


class ExecutionRepository(Protocol):
    """Protocol for checkpointing workflow executions."""

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Insert or replace the execution checkpoint."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None,
    ) -> list[WorkflowExecution]:
        """Return executions, optionally filtered by workflow and status."""


class AuditLogRepository(Protocol):
    """Protocol for the append-only audit log."""

    async def append_log(self, entry: AuditLogEntry) -> None:
        """Append one entry."""

    async def list_logs(self) -> list[AuditLogEntry]:
        """Return every entry in insertion order."""

    async def delete_logs_before(self, cutoff: datetime) -> int:
        """Delete entries older than ``cutoff`` and return how many went."""


class StateRepository(
    WorkflowRepository, AgentRepository, ExecutionRepository, AuditLogRepository, Protocol
):
    """A backend implementing every repository protocol."""
