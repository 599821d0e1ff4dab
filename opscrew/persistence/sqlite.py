"""SQLite implementation of the state repositories."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Type, TypeVar

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

_DOCUMENT_TABLES = ("workflows", "agents", "personas", "capabilities")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SQLiteRepository(StateRepository):
    """Persist engine state using SQLite.

    Entities are stored as JSON documents; executions and audit entries keep
    the columns needed for filtering alongside the document.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for table in _DOCUMENT_TABLES:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
                """
            )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    async def _put(self, table: str, model: BaseModel) -> None:
        await asyncio.to_thread(
            self._execute,
            f"INSERT OR REPLACE INTO {table} (id, data) VALUES (?, ?)",
            model.id,
            model.model_dump_json(),
        )

    async def _get(self, table: str, item_id: str, cls: Type[ModelT]) -> ModelT | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT data FROM {table} WHERE id = ?", item_id
        )
        return cls.model_validate_json(row["data"]) if row else None

    async def _all(self, table: str, cls: Type[ModelT]) -> list[ModelT]:
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT data FROM {table} ORDER BY rowid"
        )
        return [cls.model_validate_json(r["data"]) for r in rows]

    async def _delete(self, table: str, item_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute, f"DELETE FROM {table} WHERE id = ?", item_id
        )
        return deleted > 0

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: Workflow) -> None:
        await self._put("workflows", workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        return await self._get("workflows", workflow_id, Workflow)

    async def delete_workflow(self, workflow_id: str) -> bool:
        return await self._delete("workflows", workflow_id)

    async def list_workflows(self) -> list[Workflow]:
        return await self._all("workflows", Workflow)

    async def save_agent(self, agent: Agent) -> None:
        await self._put("agents", agent)

    async def get_agent(self, agent_id: str) -> Agent | None:
        return await self._get("agents", agent_id, Agent)

    async def delete_agent(self, agent_id: str) -> bool:
        return await self._delete("agents", agent_id)

    async def list_agents(self) -> list[Agent]:
        return await self._all("agents", Agent)

    async def save_persona(self, persona: AgentPersona) -> None:
        await self._put("personas", persona)

    async def get_persona(self, persona_id: str) -> AgentPersona | None:
        return await self._get("personas", persona_id, AgentPersona)

    async def list_personas(self) -> list[AgentPersona]:
        return await self._all("personas", AgentPersona)

    async def save_capability(self, capability: AgentCapability) -> None:
        await self._put("capabilities", capability)

    async def get_capability(self, capability_id: str) -> AgentCapability | None:
        return await self._get("capabilities", capability_id, AgentCapability)

    async def list_capabilities(self) -> list[AgentCapability]:
        return await self._all("capabilities", AgentCapability)

    async def save_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO executions (id, workflow_id, status, data) VALUES (?, ?, ?, ?)",
            execution.id,
            execution.workflow_id,
            execution.status.value,
            execution.model_dump_json(),
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._get("executions", execution_id, WorkflowExecution)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None,
    ) -> list[WorkflowExecution]:
        query = "SELECT data FROM executions WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if statuses is not None:
            values = [WorkflowStatus(s).value for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY rowid", *params)
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]

    async def append_log(self, entry: AuditLogEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO audit_logs (id, timestamp, data) VALUES (?, ?, ?)",
            entry.id,
            _as_utc(entry.timestamp).isoformat(),
            entry.model_dump_json(),
        )

    async def list_logs(self) -> list[AuditLogEntry]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM audit_logs ORDER BY seq"
        )
        return [AuditLogEntry.model_validate_json(r["data"]) for r in rows]

    async def delete_logs_before(self, cutoff: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM audit_logs WHERE timestamp < ?",
            _as_utc(cutoff).isoformat(),
        )
