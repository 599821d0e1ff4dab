"""PostgreSQL implementation of the state repositories."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional, Type, TypeVar

import asyncpg
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


class PostgresRepository(StateRepository):
    """Persist engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for table in _DOCUMENT_TABLES:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL
                )
                """
            )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _rowcount(status: str) -> int:
        # asyncpg returns command tags such as "DELETE 3"
        try:
            return int(status.rsplit(" ", 1)[-1])
        except ValueError:
            return 0

    async def _put(self, table: str, model: BaseModel) -> None:
        await self._execute(
            f"""
            INSERT INTO {table} (id, data) VALUES ($1, $2::jsonb)
            ON CONFLICT (id) DO UPDATE SET data = EXCLUDED.data
            """,
            model.id,
            model.model_dump_json(),
        )

    async def _get(self, table: str, item_id: str, cls: Type[ModelT]) -> ModelT | None:
        rows = await self._fetch(f"SELECT data::text AS data FROM {table} WHERE id = $1", item_id)
        return cls.model_validate_json(rows[0]["data"]) if rows else None

    async def _all(self, table: str, cls: Type[ModelT]) -> list[ModelT]:
        rows = await self._fetch(f"SELECT data::text AS data FROM {table} ORDER BY id")
        return [cls.model_validate_json(r["data"]) for r in rows]

    async def _delete(self, table: str, item_id: str) -> bool:
        status = await self._execute(f"DELETE FROM {table} WHERE id = $1", item_id)
        return self._rowcount(status) > 0

    # ------------------------------------------------------------------
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
        await self._execute(
            """
            INSERT INTO executions (id, workflow_id, status, data)
            VALUES ($1, $2, $3, $4::jsonb)
            ON CONFLICT (id) DO UPDATE
            SET workflow_id = EXCLUDED.workflow_id,
                status = EXCLUDED.status,
                data = EXCLUDED.data
            """,
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
        status_values = (
            [WorkflowStatus(s).value for s in statuses] if statuses is not None else None
        )
        rows = await self._fetch(
            """
            SELECT data::text AS data FROM executions
            WHERE ($1::text IS NULL OR workflow_id = $1)
              AND ($2::text[] IS NULL OR status = ANY($2::text[]))
            ORDER BY id
            """,
            workflow_id,
            status_values,
        )
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]

    async def append_log(self, entry: AuditLogEntry) -> None:
        await self._execute(
            "INSERT INTO audit_logs (id, timestamp, data) VALUES ($1, $2, $3::jsonb)",
            entry.id,
            entry.timestamp,
            entry.model_dump_json(),
        )

    async def list_logs(self) -> list[AuditLogEntry]:
        rows = await self._fetch("SELECT data::text AS data FROM audit_logs ORDER BY seq")
        return [AuditLogEntry.model_validate_json(r["data"]) for r in rows]

    async def delete_logs_before(self, cutoff: datetime) -> int:
        status = await self._execute("DELETE FROM audit_logs WHERE timestamp < $1", cutoff)
        return self._rowcount(status)
