"""PostgreSQL implementation of the flow repository."""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping, Optional

import asyncpg

from .models import FlowLogEntry, FlowRecord, FlowStatus
from .repository import FlowRepository, matches_expectation, merge_changes


def _load(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresFlowRepository(FlowRepository):
    """Persist flow state using PostgreSQL."""

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
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS aiflow_flows (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                user_id TEXT,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS aiflow_flow_logs (
                id SERIAL PRIMARY KEY,
                flow_id TEXT NOT NULL,
                data JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def create_flow(self, record: FlowRecord) -> FlowRecord:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO aiflow_flows (id, status, version, user_id, data) "
                "VALUES ($1, $2, $3, $4, $5)",
                record.id,
                record.status.value,
                record.version,
                record.user_id,
                record.model_dump_json(),
            )
        finally:
            await conn.close()
        return record

    async def get_flow(self, flow_id: str) -> FlowRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM aiflow_flows WHERE id = $1", flow_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return FlowRecord.model_validate(_load(row["data"]))

    async def list_flows(
        self, status: Optional[Iterable[FlowStatus]] = None, user_id: Optional[str] = None
    ) -> list[FlowRecord]:
        statuses = [FlowStatus(s).value for s in status] if status is not None else None
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM aiflow_flows "
                "WHERE ($1::text[] IS NULL OR status = ANY($1::text[])) "
                "AND ($2::text IS NULL OR user_id = $2)",
                statuses,
                user_id,
            )
        finally:
            await conn.close()
        return [FlowRecord.model_validate(_load(r["data"])) for r in rows]

    async def update_flow(
        self,
        flow_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[Iterable[FlowStatus]] = None,
        expected_version: Optional[int] = None,
    ) -> FlowRecord | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT data FROM aiflow_flows WHERE id = $1 FOR UPDATE", flow_id
                )
                if not row:
                    return None
                current = FlowRecord.model_validate(_load(row["data"]))
                if not matches_expectation(current, expected_status, expected_version):
                    return None
                updated = merge_changes(current, changes)
                await conn.execute(
                    "UPDATE aiflow_flows SET status = $1, version = $2, user_id = $3, "
                    "data = $4 WHERE id = $5",
                    updated.status.value,
                    updated.version,
                    updated.user_id,
                    updated.model_dump_json(),
                    flow_id,
                )
        finally:
            await conn.close()
        return updated

    async def append_log(self, entry: FlowLogEntry) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO aiflow_flow_logs (flow_id, data) VALUES ($1, $2)",
                entry.flow_id,
                entry.model_dump_json(exclude={"id"}),
            )
        finally:
            await conn.close()

    async def list_logs(self, flow_id: str) -> list[FlowLogEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT id, data FROM aiflow_flow_logs WHERE flow_id = $1 ORDER BY id",
                flow_id,
            )
        finally:
            await conn.close()
        return [
            FlowLogEntry.model_validate({**_load(r["data"]), "id": r["id"]})
            for r in rows
        ]
