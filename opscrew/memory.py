"""Per-agent context storage consulted before each completion."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Protocol

from .contracts import ContextEntry
from .models import ExecutionContext, StepExecution

logger = logging.getLogger(__name__)


class ContextStore(Protocol):
    async def get_context(
        self, agent_id: str, context: Optional[ExecutionContext]
    ) -> List[ContextEntry]:
        """Return prior context entries for ``agent_id``, oldest first."""

    async def store_execution(
        self, step_execution: StepExecution, context: Optional[ExecutionContext]
    ) -> None:
        """Remember a finished step so later calls can see it."""


class InMemoryContextStore:
    """Keep step snapshots per (organization, agent) in local memory."""

    def __init__(self, max_entries: int = 100) -> None:
        self.max_entries = max_entries
        self._entries: Dict[tuple[str, str], List[ContextEntry]] = defaultdict(list)

    @staticmethod
    def _key(agent_id: str, context: Optional[ExecutionContext]) -> tuple[str, str]:
        organization_id = context.organization_id if context else ""
        return organization_id, agent_id

    async def get_context(
        self, agent_id: str, context: Optional[ExecutionContext]
    ) -> List[ContextEntry]:
        return list(self._entries.get(self._key(agent_id, context), []))

    async def store_execution(
        self, step_execution: StepExecution, context: Optional[ExecutionContext]
    ) -> None:
        content = json.dumps(
            {"input": step_execution.input, "output": step_execution.output},
            default=str,
        )
        entries = self._entries[self._key(step_execution.agent_id, context)]
        entries.append(ContextEntry(content=content, created_at=step_execution.completed_at))
        if len(entries) > self.max_entries:
            del entries[: len(entries) - self.max_entries]
        logger.debug(f"Stored context entry for agent {step_execution.agent_id}")
