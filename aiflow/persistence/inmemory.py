"""In-memory implementation of the flow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Mapping, Optional

from .models import FlowLogEntry, FlowRecord, FlowStatus
from .repository import FlowRepository, matches_expectation, merge_changes


class InMemoryFlowRepository(FlowRepository):
    """Store flow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._flows: Dict[str, FlowRecord] = {}
        self._logs: Dict[str, list[FlowLogEntry]] = {}
        self._log_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def create_flow(self, record: FlowRecord) -> FlowRecord:
        async with self._lock:
            if record.id in self._flows:
                raise ValueError(f"Flow {record.id} already exists")
            self._flows[record.id] = record.model_copy(deep=True)
        return record

    async def get_flow(self, flow_id: str) -> FlowRecord | None:
        record = self._flows.get(flow_id)
        # callers get a snapshot; mutations must go through update_flow
        return record.model_copy(deep=True) if record else None

    async def list_flows(
        self, status: Optional[Iterable[FlowStatus]] = None, user_id: Optional[str] = None
    ) -> list[FlowRecord]:
        statuses = set(status) if status is not None else None
        return [
            r.model_copy(deep=True)
            for r in self._flows.values()
            if (statuses is None or r.status in statuses)
            and (user_id is None or r.user_id == user_id)
        ]

    async def update_flow(
        self,
        flow_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[Iterable[FlowStatus]] = None,
        expected_version: Optional[int] = None,
    ) -> FlowRecord | None:
        async with self._lock:
            current = self._flows.get(flow_id)
            if current is None:
                return None
            if not matches_expectation(current, expected_status, expected_version):
                return None
            updated = merge_changes(current, changes)
            self._flows[flow_id] = updated
            return updated.model_copy(deep=True)

    async def append_log(self, entry: FlowLogEntry) -> None:
        async with self._lock:
            self._log_id += 1
            self._logs.setdefault(entry.flow_id, []).append(
                entry.model_copy(update={"id": self._log_id})
            )

    async def list_logs(self, flow_id: str) -> list[FlowLogEntry]:
        return list(self._logs.get(flow_id, []))
