"""Audit trail recording for flow lifecycle events."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .persistence.models import Actor, FlowLogEntry, LogEventType
from .persistence.repository import FlowRepository

logger = logging.getLogger(__name__)


async def record_event(
    repository: FlowRepository,
    flow_id: str,
    event_type: LogEventType,
    message: str,
    step_id: Optional[str] = None,
    actor: Actor = Actor.SYSTEM,
    data: Optional[Dict[str, Any]] = None,
) -> FlowLogEntry:
    """Append an entry to the flow's audit trail and mirror it to the log."""
    entry = FlowLogEntry(
        flow_id=flow_id,
        event_type=event_type,
        message=message,
        step_id=step_id,
        actor=actor,
        data=data or {},
    )
    await repository.append_log(entry)
    logger.info(f"[{event_type.value}] {message} flow_id={flow_id}")
    return entry
