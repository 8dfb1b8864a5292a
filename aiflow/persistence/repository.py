"""Repository abstraction for flow state persistence."""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Protocol

from .models import FlowLogEntry, FlowRecord, FlowStatus


class FlowRepository(Protocol):
    """Protocol for flow state persistence backends."""

    async def create_flow(self, record: FlowRecord) -> FlowRecord:
        """Persist a new flow record."""

    async def get_flow(self, flow_id: str) -> FlowRecord | None:
        """Retrieve the flow record by id."""

    async def list_flows(
        self, status: Optional[Iterable[FlowStatus]] = None, user_id: Optional[str] = None
    ) -> list[FlowRecord]:
        """Return persisted flows, optionally filtered."""

    async def update_flow(
        self,
        flow_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[Iterable[FlowStatus]] = None,
        expected_version: Optional[int] = None,
    ) -> FlowRecord | None:
        """Atomically apply ``changes`` and return the updated record.

        Returns ``None`` when the flow is missing, its status is not one of
        ``expected_status`` or its version differs from ``expected_version``.
        """

    async def append_log(self, entry: FlowLogEntry) -> None:
        """Record an audit trail entry."""

    async def list_logs(self, flow_id: str) -> list[FlowLogEntry]:
        """Return the audit trail of a flow, oldest first."""


def matches_expectation(
    record: FlowRecord,
    expected_status: Optional[Iterable[FlowStatus]],
    expected_version: Optional[int],
) -> bool:
    if expected_status is not None and record.status not in set(expected_status):
        return False
    if expected_version is not None and record.version != expected_version:
        return False
    return True


def merge_changes(record: FlowRecord, changes: Mapping[str, Any]) -> FlowRecord:
    """Return a re-validated copy of ``record`` with ``changes`` applied."""
    unknown = set(changes) - set(FlowRecord.model_fields)
    if unknown:
        raise ValueError(f"Unknown flow fields: {sorted(unknown)}")
    data = record.model_dump()
    data.update(changes)
    data["id"] = record.id
    data["version"] = record.version + 1
    return FlowRecord.model_validate(data)
