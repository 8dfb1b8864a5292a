"""Data models for persisted flow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class FlowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_USER = "awaiting_user"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


EXECUTABLE_STATUSES = frozenset({FlowStatus.PENDING, FlowStatus.RUNNING})
TERMINAL_STATUSES = frozenset(
    {FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    AWAITING_USER = "awaiting_user"
    CANCELLED = "cancelled"


class StepType(str, Enum):
    TOOL_CALL = "tool_call"
    USER_PROMPT = "user_prompt"
    AI_DECISION = "ai_decision"
    CONDITIONAL = "conditional"
    AGENT = "agent"


_RUNNABLE_STEP_STATUSES = frozenset({StepStatus.PENDING, StepStatus.RUNNING})


class PromptType(str, Enum):
    CHOICE = "choice"
    TEXT = "text"
    CONFIRM = "confirm"


class LogEventType(str, Enum):
    FLOW_CREATED = "flow_created"
    FLOW_STARTED = "flow_started"
    FLOW_PAUSED = "flow_paused"
    FLOW_RESUMED = "flow_resumed"
    FLOW_COMPLETED = "flow_completed"
    FLOW_FAILED = "flow_failed"
    FLOW_CANCELLED = "flow_cancelled"
    FLOW_RETRIED = "flow_retried"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_INSERTED = "step_inserted"
    STEP_DELETED = "step_deleted"
    USER_INPUT_REQUESTED = "user_input_requested"
    USER_INPUT_RECEIVED = "user_input_received"


class Actor(str, Enum):
    SYSTEM = "system"
    AI = "ai"
    USER = "user"


class PromptOption(BaseModel):
    """One selectable answer of a choice prompt."""

    value: str
    label: str
    data: dict[str, Any] = Field(default_factory=dict)


class FlowStep(BaseModel):
    """One planned unit of work within a flow."""

    id: str = Field(default_factory=new_id)
    position: int = 0
    step_type: StepType = StepType.TOOL_CALL
    title: str = ""
    description: Optional[str] = None

    tool: Optional[str] = None
    agent_name: Optional[str] = None
    prompt: Optional[str] = None
    input_params: dict[str, Any] = Field(default_factory=dict)
    param_mappings: dict[str, str] = Field(default_factory=dict)

    condition: dict[str, Any] = Field(default_factory=dict)
    on_success_goto: Optional[int] = None
    on_fail_goto: Optional[int] = None

    prompt_type: Optional[PromptType] = None
    prompt_message: Optional[str] = None
    prompt_options: Optional[list[PromptOption]] = None
    user_response: Any = None

    status: StepStatus = StepStatus.PENDING
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == StepStatus.PENDING


class PendingPrompt(BaseModel):
    """Question shown to the user while a flow is awaiting input."""

    step_id: str
    prompt_type: PromptType
    message: str
    options: Optional[list[PromptOption]] = None


class FlowRecord(BaseModel):
    """Durable state of one multi-step flow.

    ``version`` is bumped by the repository on every update and backs the
    compare-and-set discipline shared by the driver and the resume path.
    ``dispatch_id`` names the one queued driver invocation allowed to
    advance the flow; stale or duplicate deliveries carry a different id.
    """

    id: str = Field(default_factory=new_id)
    status: FlowStatus = FlowStatus.PENDING
    total_steps: int = 0
    completed_steps: int = 0
    context: dict[str, Any] = Field(default_factory=dict)
    steps: list[FlowStep] = Field(default_factory=list)
    current_step_id: Optional[str] = None
    pending_prompt: Optional[PendingPrompt] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    original_request: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dispatch_id: Optional[str] = None
    version: int = 0

    @model_validator(mode="after")
    def _check_step_counters(self) -> "FlowRecord":
        if not 0 <= self.completed_steps <= self.total_steps:
            raise ValueError(
                f"completed_steps={self.completed_steps} outside "
                f"0..total_steps={self.total_steps}"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_executable(self) -> bool:
        return self.status in EXECUTABLE_STATUSES

    def next_pending_step(self) -> Optional[FlowStep]:
        """Return the lowest-positioned step still to run, if any.

        A step found ``running`` belongs to an invocation that crashed or
        timed out, so it is picked up again.
        """
        pending = [s for s in self.steps if s.status in _RUNNABLE_STEP_STATUSES]
        return min(pending, key=lambda s: s.position) if pending else None

    def get_step(self, step_id: str) -> Optional[FlowStep]:
        return next((s for s in self.steps if s.id == step_id), None)

    def step_at(self, position: int) -> Optional[FlowStep]:
        return next((s for s in self.steps if s.position == position), None)

    def progress_percentage(self) -> float:
        if self.total_steps == 0:
            return 0.0
        return round(self.completed_steps / self.total_steps * 100, 1)

    def context_value(self, path: str, default: Any = None) -> Any:
        """Look up a dotted ``path`` in the flow context."""
        return get_path(self.context, path, default)


class FlowLogEntry(BaseModel):
    """Audit trail entry for a flow."""

    id: Optional[int] = None
    flow_id: str
    event_type: LogEventType
    message: str
    step_id: Optional[str] = None
    actor: Actor = Actor.SYSTEM
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve ``a.b.0.c`` against nested dicts and lists."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part in current:
                current = current[part]
            elif part.isdigit() and int(part) in current:
                current = current[int(part)]
            else:
                return default
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current
