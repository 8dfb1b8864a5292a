"""Message contracts exchanged between the flow queue, driver and callers."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .persistence.models import FlowStatus, PendingPrompt, StepStatus, StepType


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FlowJob(BaseModel):
    """
    Queue envelope for one driver invocation. Carries only the flow id; all
    progress lives in the flow record.
    """

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_id: str
    dispatch_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 1
    enqueued_at: datetime = Field(default_factory=_now)
    available_at: datetime = Field(default_factory=_now)
    tags: List[str] = Field(default_factory=list)

    @classmethod
    def for_flow(
        cls,
        flow_id: str,
        delay: float = 0.0,
        attempt: int = 1,
        dispatch_id: Optional[str] = None,
    ) -> "FlowJob":
        """Build a job for ``flow_id`` that becomes due after ``delay`` seconds."""
        now = _now()
        return cls(
            flow_id=flow_id,
            dispatch_id=dispatch_id or str(uuid.uuid4()),
            attempt=attempt,
            enqueued_at=now,
            available_at=now + timedelta(seconds=max(delay, 0.0)),
            tags=["flow", f"flow:{flow_id}"],
        )

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return self.available_at <= (now or _now())

    def bump_attempt(self, delay: float = 0.0) -> "FlowJob":
        """Return a fresh job for the next attempt of this invocation.

        The retry keeps ``dispatch_id`` so it is still recognised as the
        flow's current invocation.
        """
        return FlowJob.for_flow(
            self.flow_id,
            delay=delay,
            attempt=self.attempt + 1,
            dispatch_id=self.dispatch_id,
        )

    def to_json(self) -> str:
        """Serialize job to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "FlowJob":
        """Deserialize job from JSON."""
        return cls.model_validate_json(data)


class StepOutcome(BaseModel):
    """What a single step execution produced."""

    flow_id: str
    step_id: str
    step_type: StepType
    status: StepStatus
    result: Dict[str, Any] = Field(default_factory=dict)


class FlowStatusView(BaseModel):
    """Read-only projection of a flow for status polling."""

    flow_id: str
    status: FlowStatus
    completed_steps: int
    total_steps: int
    progress: float
    current_step_id: Optional[str] = None
    pending_prompt: Optional[PendingPrompt] = None
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None
