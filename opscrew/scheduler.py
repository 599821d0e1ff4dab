"""Dependency-aware step selection and execution status derivation."""

from __future__ import annotations

import logging
import math
from typing import List, Optional

from .conditions import evaluate_conditions
from .definitions import WorkflowStore
from .models import AgentStatus, Workflow, WorkflowExecution, WorkflowStatus, WorkflowStep

logger = logging.getLogger(__name__)


class DependencyScheduler:
    """Decides which steps of an execution may run next.

    The owning workflow is the snapshot carried by the execution; the store
    is consulted only for executions persisted without one.
    """

    def __init__(self, store: Optional[WorkflowStore] = None) -> None:
        self._store = store

    async def _workflow_for(self, execution: WorkflowExecution) -> Optional[Workflow]:
        if execution.workflow is not None:
            return execution.workflow
        if self._store is None:
            return None
        return await self._store.get_workflow(execution.workflow_id)

    @staticmethod
    def _eligible(
        workflow: Workflow, execution: WorkflowExecution, exclude: set[str]
    ) -> List[WorkflowStep]:
        completed = execution.step_ids_with_status(AgentStatus.COMPLETED)
        eligible = [
            step
            for step in workflow.steps
            if step.id not in exclude
            and all(dep in completed for dep in step.dependencies)
            and evaluate_conditions(step.conditions, execution.variables)
        ]
        return sorted(eligible, key=lambda s: s.order)

    async def get_next_steps(self, execution: WorkflowExecution) -> List[WorkflowStep]:
        """Steps not yet completed whose dependencies are done and conditions hold."""
        workflow = await self._workflow_for(execution)
        if workflow is None:
            return []
        completed = execution.step_ids_with_status(AgentStatus.COMPLETED)
        return self._eligible(workflow, execution, completed)

    async def get_ready_steps(self, execution: WorkflowExecution) -> List[WorkflowStep]:
        """Like :meth:`get_next_steps` but skips steps that were already attempted."""
        workflow = await self._workflow_for(execution)
        if workflow is None:
            return []
        attempted = {se.step_id for se in execution.step_executions}
        return self._eligible(workflow, execution, attempted)

    async def is_execution_complete(self, execution: WorkflowExecution) -> bool:
        workflow = await self._workflow_for(execution)
        if execution.step_ids_with_status(AgentStatus.FAILED):
            return True
        if workflow is None:
            return False
        completed = execution.step_ids_with_status(AgentStatus.COMPLETED)
        return len(completed) == len(workflow.steps)

    async def get_execution_status(self, execution: WorkflowExecution) -> WorkflowStatus:
        if execution.status in (
            WorkflowStatus.CANCELLED,
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
        ):
            return execution.status

        if await self.is_execution_complete(execution):
            if execution.step_ids_with_status(AgentStatus.FAILED):
                return WorkflowStatus.FAILED
            return WorkflowStatus.COMPLETED

        if execution.step_ids_with_status(AgentStatus.WAITING_APPROVAL):
            return WorkflowStatus.PAUSED
        return WorkflowStatus.RUNNING

    async def get_execution_progress(self, execution: WorkflowExecution) -> int:
        """Percentage of steps completed, rounded half up."""
        workflow = await self._workflow_for(execution)
        if workflow is None or not workflow.steps:
            return 0
        completed = execution.step_ids_with_status(AgentStatus.COMPLETED)
        return int(math.floor(100 * len(completed) / len(workflow.steps) + 0.5))
