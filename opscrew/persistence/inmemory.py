"""In-memory implementation of the state repositories."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, TypeVar

from pydantic import BaseModel

from ..models import (
    Agent,
    AgentCapability,
    AgentPersona,
    AuditLogEntry,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
)
from .repository import StateRepository

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(model: Optional[ModelT]) -> Optional[ModelT]:
    return model.model_copy(deep=True) if model is not None else None


class InMemoryRepository(StateRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Values are copied on the way in and
    out so callers cannot mutate stored state by accident.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._agents: Dict[str, Agent] = {}
        self._personas: Dict[str, AgentPersona] = {}
        self._capabilities: Dict[str, AgentCapability] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._logs: List[AuditLogEntry] = []

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = _copy(workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return _copy(self._workflows.get(workflow_id))

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    async def list_workflows(self) -> list[Workflow]:
        return [_copy(wf) for wf in self._workflows.values()]

    # ------------------------------------------------------------------
    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = _copy(agent)

    async def get_agent(self, agent_id: str) -> Agent | None:
        return _copy(self._agents.get(agent_id))

    async def delete_agent(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    async def list_agents(self) -> list[Agent]:
        return [_copy(a) for a in self._agents.values()]

    async def save_persona(self, persona: AgentPersona) -> None:
        self._personas[persona.id] = _copy(persona)

    async def get_persona(self, persona_id: str) -> AgentPersona | None:
        return _copy(self._personas.get(persona_id))

    async def list_personas(self) -> list[AgentPersona]:
        return [_copy(p) for p in self._personas.values()]

    async def save_capability(self, capability: AgentCapability) -> None:
        self._capabilities[capability.id] = _copy(capability)

    async def get_capability(self, capability_id: str) -> AgentCapability | None:
        return _copy(self._capabilities.get(capability_id))

    async def list_capabilities(self) -> list[AgentCapability]:
        return [_copy(c) for c in self._capabilities.values()]

    # ------------------------------------------------------------------
    async def save_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = _copy(execution)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return _copy(self._executions.get(execution_id))

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None,
    ) -> list[WorkflowExecution]:
        wanted = set(statuses) if statuses is not None else None
        return [
            _copy(ex)
            for ex in self._executions.values()
            if (workflow_id is None or ex.workflow_id == workflow_id)
            and (wanted is None or ex.status in wanted)
        ]

    # ------------------------------------------------------------------
    async def append_log(self, entry: AuditLogEntry) -> None:
        self._logs.append(entry)

    async def list_logs(self) -> list[AuditLogEntry]:
        return list(self._logs)

    async def delete_logs_before(self, cutoff: datetime) -> int:
        kept = [entry for entry in self._logs if entry.timestamp >= cutoff]
        deleted = len(self._logs) - len(kept)
        self._logs = kept
        return deleted
