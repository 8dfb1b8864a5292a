"""Job submission onto the flow queue."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import FLOW_QUEUE
from .contracts import FlowJob
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class FlowDispatcher:
    """Submits driver invocations for a flow onto the durable queue."""

    def __init__(self, transport: BaseTransport, queue: Optional[str] = None) -> None:
        self.transport = transport
        self.queue = queue or FLOW_QUEUE

    async def submit(
        self,
        flow_id: str,
        delay: float = 0.0,
        attempt: int = 1,
        dispatch_id: Optional[str] = None,
    ) -> FlowJob:
        """Enqueue a driver invocation for ``flow_id``.

        Args:
            flow_id: Flow the invocation should advance.
            delay: Seconds before the job becomes deliverable.
            attempt: Attempt number, above 1 only for retries of a failed invocation.
            dispatch_id: Invocation token already stored on the flow record.

        Returns:
            The job that was published.
        """
        job = FlowJob.for_flow(
            flow_id, delay=delay, attempt=attempt, dispatch_id=dispatch_id
        )
        await self.transport.publish(self.queue, job, delay=delay)
        logger.debug(
            f"Submitted job {job.job_id} for flow_id={flow_id} delay={delay} attempt={attempt}"
        )
        return job

    async def resubmit(self, job: FlowJob, delay: float = 0.0) -> FlowJob:
        """Enqueue the next attempt of a failed invocation."""
        retry = job.bump_attempt(delay=delay)
        await self.transport.publish(self.queue, retry, delay=delay)
        logger.info(
            f"Resubmitted flow_id={job.flow_id} attempt={retry.attempt} in {delay}s"
        )
        return retry
