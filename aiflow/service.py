"""Entry points used by API layers to start, resume, cancel and retry flows."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .config import FlowConfig
from .contracts import FlowStatusView
from .dispatch import FlowDispatcher
from .errors import FlowConflictError, FlowNotFoundError, InvalidFlowStateError
from .events import record_event
from .context import merge_context
from .persistence.models import (
    TERMINAL_STATUSES,
    Actor,
    FlowLogEntry,
    FlowRecord,
    FlowStatus,
    FlowStep,
    LogEventType,
    PromptType,
    StepStatus,
    new_id,
    utcnow,
)
from .persistence.repository import FlowRepository
from .steps import parse_confirmation, response_value

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (FlowStatus.PENDING, FlowStatus.RUNNING, FlowStatus.AWAITING_USER)
NON_TERMINAL_STATUSES = tuple(s for s in FlowStatus if s not in TERMINAL_STATUSES)

StepInput = Union[FlowStep, Dict[str, Any]]


class FlowService:
    """Creates flows and applies the external actions allowed on them.

    All writes are compare-and-set against the version just read; when a
    driver invocation changes the record in between, the action is
    re-evaluated against the fresh record.
    """

    max_update_attempts = 5

    def __init__(
        self,
        repository: FlowRepository,
        dispatcher: FlowDispatcher,
        config: Optional[FlowConfig] = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config or FlowConfig()

    # ------------------------------------------------------------------
    async def start_flow(
        self,
        steps: Sequence[StepInput],
        context: Optional[Dict[str, Any]] = None,
        original_request: Optional[str] = None,
        user_id: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> FlowRecord:
        """Create a pending flow from ``steps`` and submit its first invocation."""
        planned = [
            FlowStep.model_validate(s if isinstance(s, dict) else s.model_dump()).model_copy(
                update={"position": index, "status": StepStatus.PENDING}
            )
            for index, s in enumerate(steps)
        ]
        dispatch_id = new_id()
        record = FlowRecord(
            total_steps=len(planned),
            steps=planned,
            context=dict(context or {}),
            original_request=original_request,
            user_id=user_id,
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            dispatch_id=dispatch_id,
        )
        await self.repository.create_flow(record)
        await record_event(
            self.repository,
            record.id,
            LogEventType.FLOW_CREATED,
            f"Flow created with {record.total_steps} steps",
            actor=Actor.USER,
        )
        await self.dispatcher.submit(record.id, dispatch_id=dispatch_id)
        return record

    async def resume(
        self, flow_id: str, user_response: Any, step_id: Optional[str] = None
    ) -> FlowRecord:
        """Answer the pending prompt of a parked flow and resubmit it.

        Raises:
            FlowNotFoundError: No such flow.
            InvalidFlowStateError: The flow is not awaiting user input, or
                ``step_id`` is not the step waiting for it.
        """
        if user_response is None:
            raise ValueError("A response is required to resume a flow")

        declined = False

        def build(flow: FlowRecord) -> Dict[str, Any]:
            nonlocal declined
            waiting_id = (
                flow.pending_prompt.step_id if flow.pending_prompt else flow.current_step_id
            )
            if step_id is not None and step_id != waiting_id:
                raise InvalidFlowStateError(
                    flow.id, flow.status.value, f"Step {step_id} is not awaiting input"
                )
            step = flow.get_step(waiting_id) if waiting_id else None

            responses = dict(flow.context.get("user_responses") or {})
            if waiting_id:
                responses[waiting_id] = user_response
            changes: Dict[str, Any] = {
                "context": merge_context(
                    flow.context,
                    {"user_responses": responses, "last_user_response": user_response},
                ),
                "pending_prompt": None,
                "paused_at": None,
            }

            declined = (
                step is not None
                and step.prompt_type == PromptType.CONFIRM
                and not parse_confirmation(response_value(user_response))
            )
            if declined:
                answered = step.model_copy(
                    update={
                        "user_response": user_response,
                        "status": StepStatus.COMPLETED,
                        "result": {"confirmed": False},
                        "completed_at": utcnow(),
                    }
                )
                changes.update(
                    status=FlowStatus.CANCELLED,
                    completed_at=utcnow(),
                    completed_steps=min(flow.completed_steps + 1, flow.total_steps),
                    dispatch_id=None,
                    steps=_cancel_open_steps(_replace(flow.steps, answered)),
                )
                return changes

            steps = flow.steps
            if step is not None:
                steps = _replace(
                    flow.steps,
                    step.model_copy(
                        update={"user_response": user_response, "status": StepStatus.PENDING}
                    ),
                )
            changes.update(status=FlowStatus.RUNNING, steps=steps, dispatch_id=new_id())
            return changes

        before, flow = await self._mutate(
            flow_id,
            [FlowStatus.AWAITING_USER],
            build,
            "Flow is not awaiting user input",
        )
        waiting_id = before.pending_prompt.step_id if before.pending_prompt else None
        await record_event(
            self.repository,
            flow_id,
            LogEventType.USER_INPUT_RECEIVED,
            "User responded",
            step_id=waiting_id,
            actor=Actor.USER,
            data={"response": user_response},
        )

        if declined:
            await record_event(
                self.repository,
                flow_id,
                LogEventType.FLOW_CANCELLED,
                "Flow cancelled: user declined confirmation",
                actor=Actor.USER,
            )
            return flow

        await record_event(
            self.repository, flow_id, LogEventType.FLOW_RESUMED, "Flow resumed", actor=Actor.USER
        )
        await self.dispatcher.submit(flow_id, dispatch_id=flow.dispatch_id)
        return flow

    async def cancel(self, flow_id: str) -> FlowRecord:
        """Cancel a flow; an in-flight invocation stops at its next write."""

        def build(flow: FlowRecord) -> Dict[str, Any]:
            return {
                "status": FlowStatus.CANCELLED,
                "completed_at": utcnow(),
                "pending_prompt": None,
                "dispatch_id": None,
                "steps": _cancel_open_steps(flow.steps),
            }

        _, flow = await self._mutate(
            flow_id, NON_TERMINAL_STATUSES, build, "Flow already finished"
        )
        await record_event(
            self.repository,
            flow_id,
            LogEventType.FLOW_CANCELLED,
            "Flow cancelled by user",
            actor=Actor.USER,
        )
        return flow

    async def retry(self, flow_id: str) -> FlowRecord:
        """Reset a failed flow to pending and submit it again."""

        def build(flow: FlowRecord) -> Dict[str, Any]:
            if flow.retry_count >= flow.max_retries:
                raise InvalidFlowStateError(
                    flow.id, flow.status.value, "Maximum retry attempts reached"
                )
            steps = [
                s.model_copy(
                    update={
                        "status": StepStatus.PENDING,
                        "error_message": None,
                        "started_at": None,
                        "completed_at": None,
                    }
                )
                if s.status
                in (StepStatus.FAILED, StepStatus.RUNNING, StepStatus.AWAITING_USER)
                else s
                for s in flow.steps
            ]
            return {
                "status": FlowStatus.PENDING,
                "last_error": None,
                "completed_at": None,
                "pending_prompt": None,
                "retry_count": flow.retry_count + 1,
                "steps": steps,
                "dispatch_id": new_id(),
            }

        _, flow = await self._mutate(
            flow_id, [FlowStatus.FAILED], build, "Only failed flows can be retried"
        )
        await record_event(
            self.repository,
            flow_id,
            LogEventType.FLOW_RETRIED,
            f"Flow restarted (retry {flow.retry_count}/{flow.max_retries})",
            actor=Actor.USER,
        )
        await self.dispatcher.submit(flow_id, dispatch_id=flow.dispatch_id)
        return flow

    async def insert_step(
        self, flow_id: str, after_position: int, step: StepInput
    ) -> FlowStep:
        """Insert ``step`` right after ``after_position`` in a live flow."""
        new_step = FlowStep.model_validate(
            step if isinstance(step, dict) else step.model_dump()
        ).model_copy(
            update={
                "id": new_id(),
                "position": after_position + 1,
                "status": StepStatus.PENDING,
            }
        )

        def build(flow: FlowRecord) -> Dict[str, Any]:
            _ensure_no_running_step(flow)
            shifted = [
                s.model_copy(update={"position": s.position + 1})
                if s.position > after_position
                else s
                for s in flow.steps
            ]
            steps = sorted([*shifted, new_step], key=lambda s: s.position)
            return {"steps": steps, "total_steps": flow.total_steps + 1}

        await self._mutate(flow_id, NON_TERMINAL_STATUSES, build, "Flow already finished")
        await record_event(
            self.repository,
            flow_id,
            LogEventType.STEP_INSERTED,
            f"Inserted step: {new_step.title or new_step.step_type.value}",
            step_id=new_step.id,
            actor=Actor.USER,
        )
        return new_step

    async def delete_step(self, flow_id: str, step_id: str) -> None:
        """Remove a step that has not started yet."""
        position: Optional[int] = None

        def build(flow: FlowRecord) -> Dict[str, Any]:
            nonlocal position
            _ensure_no_running_step(flow)
            step = flow.get_step(step_id)
            if step is None or not step.is_pending:
                raise InvalidFlowStateError(
                    flow.id, flow.status.value, "Only pending steps can be deleted"
                )
            position = step.position
            steps = [
                s.model_copy(update={"position": s.position - 1})
                if s.position > step.position
                else s
                for s in flow.steps
                if s.id != step_id
            ]
            return {"steps": steps, "total_steps": flow.total_steps - 1}

        await self._mutate(flow_id, NON_TERMINAL_STATUSES, build, "Flow already finished")
        await record_event(
            self.repository,
            flow_id,
            LogEventType.STEP_DELETED,
            f"Deleted step at position {position}",
            actor=Actor.USER,
        )

    # ------------------------------------------------------------------
    # Read model
    async def get_flow(self, flow_id: str) -> FlowRecord:
        flow = await self.repository.get_flow(flow_id)
        if flow is None:
            raise FlowNotFoundError(flow_id)
        return flow

    async def get_status(self, flow_id: str) -> FlowStatusView:
        flow = await self.get_flow(flow_id)
        return FlowStatusView(
            flow_id=flow.id,
            status=flow.status,
            completed_steps=flow.completed_steps,
            total_steps=flow.total_steps,
            progress=flow.progress_percentage(),
            current_step_id=flow.current_step_id,
            pending_prompt=flow.pending_prompt,
            last_error=flow.last_error,
            completed_at=flow.completed_at,
        )

    async def list_active(self, user_id: Optional[str] = None) -> List[FlowRecord]:
        flows = await self.repository.list_flows(status=ACTIVE_STATUSES, user_id=user_id)
        return sorted(flows, key=lambda f: f.created_at, reverse=True)

    async def get_logs(self, flow_id: str) -> List[FlowLogEntry]:
        await self.get_flow(flow_id)
        return await self.repository.list_logs(flow_id)

    # ------------------------------------------------------------------
    async def _mutate(
        self,
        flow_id: str,
        allowed: Iterable[FlowStatus],
        build: Callable[[FlowRecord], Dict[str, Any]],
        message: str,
    ) -> Tuple[FlowRecord, FlowRecord]:
        allowed = list(allowed)
        for _ in range(self.max_update_attempts):
            flow = await self.get_flow(flow_id)
            if flow.status not in allowed:
                raise InvalidFlowStateError(flow_id, flow.status.value, message)
            updated = await self.repository.update_flow(
                flow_id,
                build(flow),
                expected_status=allowed,
                expected_version=flow.version,
            )
            if updated is not None:
                return flow, updated
            logger.debug(f"Retrying update of flow_id={flow_id} after concurrent change")
        raise FlowConflictError(flow_id)


def _ensure_no_running_step(flow: FlowRecord) -> None:
    """Reject plan edits while a step is executing."""
    running = next((s for s in flow.steps if s.status == StepStatus.RUNNING), None)
    if running is not None:
        raise InvalidFlowStateError(
            flow.id,
            flow.status.value,
            f"Step {running.position} is running; edit the plan once it finishes",
        )


def _replace(steps: List[FlowStep], step: FlowStep) -> List[FlowStep]:
    return [step if s.id == step.id else s for s in steps]


def _cancel_open_steps(steps: List[FlowStep]) -> List[FlowStep]:
    return [
        s.model_copy(update={"status": StepStatus.CANCELLED})
        if s.status in (StepStatus.PENDING, StepStatus.AWAITING_USER, StepStatus.RUNNING)
        else s
        for s in steps
    ]
