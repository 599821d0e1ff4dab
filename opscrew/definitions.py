"""Workflow definition store and structural validation."""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Optional, Set

from pydantic import BaseModel

from .contracts import ValidationResult
from .errors import WorkflowValidationError
from .models import AgentType, Workflow, WorkflowStatus, utcnow
from .persistence import StateRepository

logger = logging.getLogger(__name__)


class WorkflowStats(BaseModel):
    total_workflows: int = 0
    active_workflows: int = 0
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0


def _ancestors(workflow: Workflow) -> Dict[str, Set[str]]:
    """Map each step id to every step id it transitively depends on."""
    direct = {s.id: set(s.dependencies) for s in workflow.steps}
    resolved: Dict[str, Set[str]] = {}

    def visit(step_id: str, trail: Set[str]) -> Set[str]:
        if step_id in resolved:
            return resolved[step_id]
        found: Set[str] = set()
        for dep in direct.get(step_id, ()):
            if dep in trail or dep not in direct:
                continue
            found.add(dep)
            found |= visit(dep, trail | {dep})
        resolved[step_id] = found
        return found

    for step_id in direct:
        visit(step_id, {step_id})
    return resolved


def find_cycle_steps(workflow: Workflow) -> List[str]:
    """Return ids of steps on or behind a dependency cycle (Kahn's algorithm)."""
    known = {s.id for s in workflow.steps}
    indegree = {step_id: 0 for step_id in known}
    dependents: Dict[str, List[str]] = {step_id: [] for step_id in known}
    for step in workflow.steps:
        for dep in set(step.dependencies):
            if dep in known:
                indegree[step.id] += 1
                dependents[dep].append(step.id)

    queue = deque(step_id for step_id, degree in indegree.items() if degree == 0)
    visited = 0
    while queue:
        current = queue.popleft()
        visited += 1
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if visited == len(known):
        return []
    return sorted(step_id for step_id, degree in indegree.items() if degree > 0)


def find_output_collisions(workflow: Workflow) -> List[str]:
    """Describe parallel step pairs that can run together and write one variable."""
    ancestors = _ancestors(workflow)
    parallel = [s for s in workflow.sorted_steps() if s.is_parallel]
    errors: List[str] = []
    for i, first in enumerate(parallel):
        for second in parallel[i + 1 :]:
            if first.id in ancestors.get(second.id, set()):
                continue
            if second.id in ancestors.get(first.id, set()):
                continue
            shared = set(first.output_mapping.values()) & set(second.output_mapping.values())
            for variable in sorted(shared):
                errors.append(
                    f"Parallel steps {first.id} and {second.id} both write variable: {variable}"
                )
    return errors


def validate_workflow(workflow: Workflow) -> ValidationResult:
    """Check ``workflow`` and collect every violation found."""
    errors: List[str] = []

    if not workflow.name:
        errors.append("Workflow name is required")
    if not workflow.steps:
        errors.append("Workflow must have at least one step")

    all_ids = {s.id for s in workflow.steps}
    seen_ids: Set[str] = set()
    seen_orders: Set[int] = set()
    for step in workflow.steps:
        if step.id in seen_ids:
            errors.append(f"Duplicate step ID: {step.id}")
        seen_ids.add(step.id)

        if step.order in seen_orders:
            errors.append(f"Duplicate step order: {step.order}")
        seen_orders.add(step.order)

        for dep_id in step.dependencies:
            if dep_id not in all_ids:
                errors.append(f"Step {step.id} depends on non-existent step: {dep_id}")

        if not step.agent_id:
            errors.append(f"Step {step.id} must have an agentId")
        if step.timeout_ms <= 0:
            errors.append(f"Step {step.id} must have a positive timeout")

    for trigger in workflow.triggers:
        if not trigger.type:
            errors.append("All triggers must have a type")
        if trigger.config is None:
            errors.append("All triggers must have configuration")

    cycle = find_cycle_steps(workflow)
    if cycle:
        errors.append(f"Dependency cycle detected between steps: {', '.join(cycle)}")

    errors.extend(find_output_collisions(workflow))
    return ValidationResult.from_errors(errors)


class WorkflowStore:
    """CRUD access to workflow definitions."""

    def __init__(self, repository: StateRepository) -> None:
        self._repository = repository

    async def create_workflow(self, workflow: Workflow, validate: bool = True) -> Workflow:
        if validate:
            result = validate_workflow(workflow)
            if not result.is_valid:
                raise WorkflowValidationError(result.errors)
        now = utcnow()
        workflow = workflow.model_copy(update={"created_at": now, "updated_at": now})
        await self._repository.save_workflow(workflow)
        logger.info(f"Created workflow {workflow.id} ({workflow.name})")
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return await self._repository.get_workflow(workflow_id)

    async def update_workflow(self, workflow_id: str, **updates) -> Optional[Workflow]:
        """Apply field ``updates``; returns ``None`` for an unknown id."""
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            return None
        updates.pop("id", None)
        data = workflow.model_dump()
        data.update(updates)
        data["updated_at"] = utcnow()
        updated = Workflow.model_validate(data)
        await self._repository.save_workflow(updated)
        logger.info(f"Updated workflow {workflow_id}")
        return updated

    async def delete_workflow(self, workflow_id: str) -> bool:
        deleted = await self._repository.delete_workflow(workflow_id)
        if deleted:
            logger.info(f"Deleted workflow {workflow_id}")
        return deleted

    async def list_workflows(self) -> List[Workflow]:
        return await self._repository.list_workflows()

    async def get_workflows_by_agent_type(self, agent_type: AgentType) -> List[Workflow]:
        agent_type = AgentType(agent_type)
        return [
            wf
            for wf in await self._repository.list_workflows()
            if any(step.agent_type == agent_type for step in wf.steps)
        ]

    def validate_workflow(self, workflow: Workflow) -> ValidationResult:
        return validate_workflow(workflow)

    async def get_workflow_stats(self) -> WorkflowStats:
        workflows = await self._repository.list_workflows()
        executions = await self._repository.list_executions()
        return WorkflowStats(
            total_workflows=len(workflows),
            active_workflows=sum(1 for w in workflows if w.status == WorkflowStatus.RUNNING),
            total_executions=len(executions),
            successful_executions=sum(
                1 for e in executions if e.status == WorkflowStatus.COMPLETED
            ),
            failed_executions=sum(1 for e in executions if e.status == WorkflowStatus.FAILED),
        )
