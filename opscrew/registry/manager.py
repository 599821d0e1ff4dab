"""Agent, persona and capability management."""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol

from ..contracts import ValidationResult
from ..errors import AgentError, AgentValidationError, ErrorCode
from ..models import (
    Agent,
    AgentCapability,
    AgentConstraint,
    AgentPersona,
    AgentStatus,
    AgentType,
    ConstraintType,
    WorkflowStatus,
    utcnow,
)
from ..persistence import StateRepository
from ..ratelimit import RateLimiter, apply_agent_constraints
from .models import AgentStats, AgentStatusReport, SemanticVersion

logger = logging.getLogger(__name__)


class AgentActivityProvider(Protocol):
    async def get_agent_activity(self, agent_id: str) -> Any:
        """Return counters with ``current_executions``, ``queue_length``,
        ``error_rate`` and ``last_activity`` attributes."""


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def validate_persona(persona: AgentPersona) -> List[str]:
    errors: List[str] = []
    if not persona.name:
        errors.append("Persona name is required")
    if not persona.system_prompt:
        errors.append("Persona system prompt is required")
    if persona.temperature < 0 or persona.temperature > 2:
        errors.append("Persona temperature must be between 0 and 2")
    if persona.max_tokens <= 0:
        errors.append("Persona max tokens must be positive")
    if persona.context_window.max_messages <= 0:
        errors.append("Persona context window max messages must be positive")
    if persona.context_window.max_tokens <= 0:
        errors.append("Persona context window max tokens must be positive")
    return errors


def validate_constraint(constraint: AgentConstraint) -> List[str]:
    errors: List[str] = []
    if not constraint.type:
        errors.append("Constraint type is required")
    if constraint.value is None:
        errors.append("Constraint value is required")

    if constraint.type == ConstraintType.RATE_LIMIT:
        if not _is_positive_number(constraint.value):
            errors.append("Rate limit value must be a positive number")
        if not constraint.window_ms or constraint.window_ms <= 0:
            errors.append("Rate limit window must be a positive number")
    elif constraint.type == ConstraintType.TOKEN_LIMIT:
        if not _is_positive_number(constraint.value):
            errors.append("Token limit value must be a positive number")
    elif constraint.type == ConstraintType.TIME_LIMIT:
        if not _is_positive_number(constraint.value):
            errors.append("Time limit value must be a positive number")
    return errors


class AgentRegistry:
    """CRUD, validation and health reporting for agents."""

    def __init__(
        self,
        repository: StateRepository,
        rate_limiter: Optional[RateLimiter] = None,
        activity: Optional[AgentActivityProvider] = None,
    ) -> None:
        self._repository = repository
        self._rate_limiter = rate_limiter
        self._activity = activity

    # ------------------------------------------------------------------
    # Agents
    async def create_agent(self, agent: Agent, validate: bool = False) -> Agent:
        if validate:
            result = await self.validate_agent(agent)
            if not result.is_valid:
                raise AgentValidationError(result.errors)
        now = utcnow()
        agent = agent.model_copy(update={"created_at": now, "updated_at": now})
        await self._repository.save_agent(agent)
        if self._rate_limiter is not None:
            apply_agent_constraints(self._rate_limiter, agent)
        logger.info(f"Registered agent {agent.id} ({agent.name})")
        return agent

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self._repository.get_agent(agent_id)

    async def get_agents_by_type(self, agent_type: AgentType) -> List[Agent]:
        agent_type = AgentType(agent_type)
        return [a for a in await self._repository.list_agents() if a.type == agent_type]

    async def update_agent(self, agent_id: str, **updates) -> Optional[Agent]:
        agent = await self._repository.get_agent(agent_id)
        if agent is None:
            return None
        updates.pop("id", None)
        data = agent.model_dump()
        data.update(updates)
        data["updated_at"] = utcnow()
        updated = Agent.model_validate(data)
        await self._repository.save_agent(updated)
        if self._rate_limiter is not None:
            apply_agent_constraints(self._rate_limiter, updated)
        logger.info(f"Updated agent {agent_id}")
        return updated

    async def delete_agent(self, agent_id: str) -> bool:
        """Delete an agent unless a live execution still references it."""
        live = await self._repository.list_executions(
            statuses=[WorkflowStatus.RUNNING, WorkflowStatus.PAUSED]
        )
        users = [
            e.id
            for e in live
            if (e.workflow is not None and agent_id in e.workflow.agent_ids())
            or any(se.agent_id == agent_id for se in e.step_executions)
        ]
        if users:
            raise AgentError(
                f"Agent {agent_id} is used by active executions: {', '.join(users)}",
                ErrorCode.AGENT_IN_USE,
                agent_id=agent_id,
                details={"execution_ids": users},
            )
        deleted = await self._repository.delete_agent(agent_id)
        if deleted:
            logger.info(f"Deleted agent {agent_id}")
        return deleted

    async def list_agents(self) -> List[Agent]:
        return await self._repository.list_agents()

    async def get_active_agents(self) -> List[Agent]:
        return [a for a in await self._repository.list_agents() if a.is_active]

    # ------------------------------------------------------------------
    # Personas
    async def create_persona(self, persona: AgentPersona) -> AgentPersona:
        await self._repository.save_persona(persona)
        return persona

    async def get_persona(self, persona_id: str) -> Optional[AgentPersona]:
        return await self._repository.get_persona(persona_id)

    async def update_persona(self, persona_id: str, **updates) -> Optional[AgentPersona]:
        persona = await self._repository.get_persona(persona_id)
        if persona is None:
            return None
        updates.pop("id", None)
        data = persona.model_dump()
        data.update(updates)
        updated = AgentPersona.model_validate(data)
        await self._repository.save_persona(updated)
        return updated

    # ------------------------------------------------------------------
    # Capabilities
    async def create_capability(self, capability: AgentCapability) -> AgentCapability:
        await self._repository.save_capability(capability)
        return capability

    async def get_capability(self, capability_id: str) -> Optional[AgentCapability]:
        return await self._repository.get_capability(capability_id)

    async def get_capabilities_by_agent(self, agent_id: str) -> List[AgentCapability]:
        agent = await self._repository.get_agent(agent_id)
        if agent is None:
            return []
        capabilities = []
        for capability_id in agent.capabilities:
            capability = await self._repository.get_capability(capability_id)
            if capability is not None:
                capabilities.append(capability)
        return capabilities

    # ------------------------------------------------------------------
    # Validation and reporting
    async def validate_agent(self, agent: Agent) -> ValidationResult:
        errors: List[str] = []
        if not agent.name:
            errors.append("Agent name is required")
        if not agent.type:
            errors.append("Agent type is required")
        if not agent.persona:
            errors.append("Agent persona is required")
        try:
            SemanticVersion.parse(agent.version)
        except ValueError:
            errors.append(f"Agent version must be major.minor.patch: {agent.version}")

        if agent.persona:
            errors.extend(validate_persona(agent.persona))

        for capability_id in agent.capabilities:
            if await self._repository.get_capability(capability_id) is None:
                errors.append(f"Capability {capability_id} not found")

        for constraint in agent.constraints:
            errors.extend(validate_constraint(constraint))

        return ValidationResult.from_errors(errors)

    async def get_agent_status(self, agent_id: str) -> AgentStatusReport:
        agent = await self._repository.get_agent(agent_id)
        if agent is None:
            return AgentStatusReport()

        report = AgentStatusReport(
            agent=agent,
            status=AgentStatus.IDLE if agent.is_active else AgentStatus.PAUSED,
            is_healthy=agent.is_active,
            last_activity=agent.updated_at,
        )
        if self._activity is not None:
            activity = await self._activity.get_agent_activity(agent_id)
            report.current_executions = activity.current_executions
            report.queue_length = activity.queue_length
            report.error_rate = activity.error_rate
            if activity.last_activity is not None:
                report.last_activity = max(activity.last_activity, agent.updated_at)
            if agent.is_active and activity.current_executions > 0:
                report.status = AgentStatus.RUNNING
        return report

    async def get_agent_stats(self) -> AgentStats:
        agents = await self._repository.list_agents()
        by_type: dict[str, int] = {}
        for agent in agents:
            key = agent.type.value if agent.type else "unknown"
            by_type[key] = by_type.get(key, 0) + 1
        return AgentStats(
            total_agents=len(agents),
            active_agents=sum(1 for a in agents if a.is_active),
            agents_by_type=by_type,
            total_personas=len(await self._repository.list_personas()),
            total_capabilities=len(await self._repository.list_capabilities()),
        )
