"""SQLite implementation of the flow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .models import FlowLogEntry, FlowRecord, FlowStatus
from .repository import FlowRepository, matches_expectation, merge_changes


class SQLiteFlowRepository(FlowRepository):
    """Persist flow state using SQLite.

    The flow record is stored as a JSON document next to the columns that
    updates are conditioned on. Compare-and-set updates run inside
    ``BEGIN IMMEDIATE`` so they hold the database write lock between the
    read and the write, which also serialises other processes.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS flows (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    user_id TEXT,
                    data TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS flow_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    flow_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            self._conn.execute(query, params)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def _compare_and_set(
        self,
        flow_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[list[FlowStatus]],
        expected_version: Optional[int],
    ) -> FlowRecord | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                row = cur.execute(
                    "SELECT data FROM flows WHERE id = ?", (flow_id,)
                ).fetchone()
                if row is None:
                    cur.execute("ROLLBACK")
                    return None
                current = FlowRecord.model_validate_json(row["data"])
                if not matches_expectation(current, expected_status, expected_version):
                    cur.execute("ROLLBACK")
                    return None
                updated = merge_changes(current, changes)
                cur.execute(
                    "UPDATE flows SET status = ?, version = ?, user_id = ?, data = ? "
                    "WHERE id = ? AND version = ?",
                    (
                        updated.status.value,
                        updated.version,
                        updated.user_id,
                        updated.model_dump_json(),
                        flow_id,
                        current.version,
                    ),
                )
                if cur.rowcount != 1:
                    cur.execute("ROLLBACK")
                    return None
                cur.execute("COMMIT")
                return updated
            except Exception:
                cur.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Repository API
    async def create_flow(self, record: FlowRecord) -> FlowRecord:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO flows (id, status, version, user_id, data) VALUES (?, ?, ?, ?, ?)",
            record.id,
            record.status.value,
            record.version,
            record.user_id,
            record.model_dump_json(),
        )
        return record

    async def get_flow(self, flow_id: str) -> FlowRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM flows WHERE id = ?", flow_id
        )
        if not row:
            return None
        return FlowRecord.model_validate_json(row["data"])

    async def list_flows(
        self, status: Optional[Iterable[FlowStatus]] = None, user_id: Optional[str] = None
    ) -> list[FlowRecord]:
        query = "SELECT data FROM flows WHERE 1 = 1"
        params: list[Any] = []
        if status is not None:
            values = [FlowStatus(s).value for s in status]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [FlowRecord.model_validate_json(r["data"]) for r in rows]

    async def update_flow(
        self,
        flow_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[Iterable[FlowStatus]] = None,
        expected_version: Optional[int] = None,
    ) -> FlowRecord | None:
        return await asyncio.to_thread(
            self._compare_and_set,
            flow_id,
            changes,
            list(expected_status) if expected_status is not None else None,
            expected_version,
        )

    async def append_log(self, entry: FlowLogEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO flow_logs (flow_id, data) VALUES (?, ?)",
            entry.flow_id,
            entry.model_dump_json(exclude={"id"}),
        )

    async def list_logs(self, flow_id: str) -> list[FlowLogEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, data FROM flow_logs WHERE flow_id = ? ORDER BY id",
            flow_id,
        )
        return [
            FlowLogEntry.model_validate({**json.loads(r["data"]), "id": r["id"]})
            for r in rows
        ]
