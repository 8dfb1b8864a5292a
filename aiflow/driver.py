"""Re-entrant driver job that advances a flow by one step per invocation."""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum
from typing import Optional

from .config import JobConfig
from .dispatch import FlowDispatcher
from .errors import FlowConflictError
from .events import record_event
from .persistence.models import (
    EXECUTABLE_STATUSES,
    TERMINAL_STATUSES,
    FlowRecord,
    FlowStatus,
    FlowStep,
    LogEventType,
    StepStatus,
    new_id,
    utcnow,
)
from .persistence.repository import FlowRepository
from .steps import StepExecutor

logger = logging.getLogger(__name__)


class DriverResult(str, Enum):
    """What a single driver invocation ended up doing."""

    NOT_FOUND = "not_found"
    SKIPPED = "skipped"
    STALE = "stale"
    CONFLICT = "conflict"
    FINISHED = "finished"
    CONTINUED = "continued"
    FINALIZING = "finalizing"
    AWAITING_USER = "awaiting_user"
    BUSY = "busy"
    STOPPED = "stopped"


class FlowDriver:
    """Runs one step of a flow, then re-enqueues itself, stops or parks.

    Each invocation either terminates or issues exactly one new submission,
    so a crashed worker loses at most the step it was running and queue
    retries apply per step rather than per flow.
    """

    def __init__(
        self,
        repository: FlowRepository,
        executor: StepExecutor,
        dispatcher: FlowDispatcher,
        config: Optional[JobConfig] = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.dispatcher = dispatcher
        self.config = config or JobConfig()

    async def handle(self, flow_id: str, dispatch_id: Optional[str] = None) -> DriverResult:
        """Advance ``flow_id`` by at most one step.

        Args:
            flow_id: Flow to advance.
            dispatch_id: Token of the queued job being handled. A job whose
                token no longer matches the flow's is a stale duplicate.

        Raises:
            StepExecutionError: The step failed; the worker decides whether
                to retry the invocation.
        """
        flow = await self.repository.get_flow(flow_id)
        if flow is None:
            logger.warning(f"Flow not found, dropping job for flow_id={flow_id}")
            return DriverResult.NOT_FOUND

        if flow.status not in EXECUTABLE_STATUSES:
            logger.info(
                f"Flow not in executable state for flow_id={flow_id} status={flow.status.value}"
            )
            return DriverResult.SKIPPED

        if dispatch_id and flow.dispatch_id and dispatch_id != flow.dispatch_id:
            logger.info(f"Ignoring stale job {dispatch_id} for flow_id={flow_id}")
            return DriverResult.STALE

        step = flow.next_pending_step()
        if step is not None and self._in_flight(step):
            logger.info(f"Step {step.id} is already running for flow_id={flow_id}")
            await self._recheck_after_lease(flow, step)
            return DriverResult.BUSY

        logger.info(
            f"Executing next step for flow_id={flow_id} "
            f"completed={flow.completed_steps} total={flow.total_steps}"
        )

        try:
            outcome = await self.executor.execute_next_step(flow)
        except FlowConflictError:
            logger.info(f"Lost update race for flow_id={flow_id}")
            await self._recover_from_conflict(flow_id, dispatch_id)
            return DriverResult.CONFLICT

        if outcome is None:
            refreshed = await self.repository.get_flow(flow_id)
            status = refreshed.status.value if refreshed else "deleted"
            logger.info(f"Flow execution finished for flow_id={flow_id} status={status}")
            return DriverResult.FINISHED

        flow = await self.repository.get_flow(flow_id)
        if flow is None:
            logger.warning(f"Flow disappeared mid-step for flow_id={flow_id}")
            return DriverResult.NOT_FOUND

        if flow.status == FlowStatus.RUNNING:
            if flow.completed_steps < flow.total_steps:
                await self._reenqueue(flow, self.config.continue_delay)
                return DriverResult.CONTINUED
            logger.info(
                f"All steps done, dispatching final job to complete flow_id={flow_id}"
            )
            await self._reenqueue(flow, self.config.finalize_delay)
            return DriverResult.FINALIZING

        if flow.status == FlowStatus.AWAITING_USER:
            logger.info(
                f"Waiting for user input for flow_id={flow_id} step_id={outcome.step_id}"
            )
            await record_event(
                self.repository,
                flow_id,
                LogEventType.FLOW_PAUSED,
                "Flow paused for user input",
                step_id=outcome.step_id,
            )
            return DriverResult.AWAITING_USER

        logger.info(f"Flow stopped for flow_id={flow_id} status={flow.status.value}")
        return DriverResult.STOPPED

    def _in_flight(self, step: FlowStep) -> bool:
        """A running step started less than one job timeout ago is still owned."""
        if step.status != StepStatus.RUNNING or step.started_at is None:
            return False
        return utcnow() - step.started_at < timedelta(seconds=self.config.timeout)

    def _lease_remaining(self, step: FlowStep) -> float:
        elapsed = (utcnow() - step.started_at).total_seconds()
        return max(self.config.timeout - elapsed, 0.0)

    async def _recheck_after_lease(self, flow: FlowRecord, step: FlowStep) -> None:
        """Keep a job queued for the flow until the running step's owner finishes.

        If the owner is alive it rotates ``dispatch_id`` and this job turns
        stale; if it died, the job re-runs the step once the lease expires.
        """
        delay = self._lease_remaining(step) + self.config.continue_delay
        await self.dispatcher.submit(flow.id, delay=delay, dispatch_id=flow.dispatch_id)

    async def _recover_from_conflict(
        self, flow_id: str, dispatch_id: Optional[str]
    ) -> None:
        flow = await self.repository.get_flow(flow_id)
        if flow is None or not flow.is_executable:
            return
        if dispatch_id and flow.dispatch_id and dispatch_id != flow.dispatch_id:
            return
        step = flow.next_pending_step()
        if step is not None and self._in_flight(step):
            await self._recheck_after_lease(flow, step)
            return
        logger.info(f"Re-submitting flow_id={flow_id} after concurrent change")
        await self.dispatcher.submit(
            flow_id, delay=self.config.continue_delay, dispatch_id=flow.dispatch_id
        )

    async def _reenqueue(self, flow: FlowRecord, delay: float) -> None:
        dispatch_id = new_id()
        updated = await self.repository.update_flow(
            flow.id,
            {"dispatch_id": dispatch_id},
            expected_status=[FlowStatus.RUNNING],
        )
        if updated is None:
            logger.info(f"Flow left running state before re-enqueue, flow_id={flow.id}")
            return
        await self.dispatcher.submit(flow.id, delay=delay, dispatch_id=dispatch_id)

    async def failed(self, flow_id: str, exc: BaseException) -> Optional[FlowRecord]:
        """Job-failure handler: mark the flow failed once retries are exhausted.

        No further invocation is submitted. Flows already in a terminal
        state are left untouched.
        """
        error = str(exc) or exc.__class__.__name__
        logger.error(f"Flow job failed for flow_id={flow_id}: {error}")

        non_terminal = [s for s in FlowStatus if s not in TERMINAL_STATUSES]
        flow = await self.repository.update_flow(
            flow_id,
            {
                "status": FlowStatus.FAILED,
                "last_error": error,
                "completed_at": utcnow(),
                "pending_prompt": None,
                "dispatch_id": None,
            },
            expected_status=non_terminal,
        )
        if flow is None:
            logger.info(f"Flow already finished or missing, not marking failed: flow_id={flow_id}")
            return None

        await record_event(
            self.repository,
            flow_id,
            LogEventType.FLOW_FAILED,
            f"Flow failed: {error}",
            data={"error": error},
        )
        return flow
