"""Queue consumer that runs driver invocations with retry and timeout."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .config import JobConfig
from .contracts import FlowJob
from .dispatch import FlowDispatcher
from .driver import DriverResult, FlowDriver
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class FlowWorker:
    """Pulls flow jobs off the transport and hands them to the driver.

    A job that raises or exceeds ``timeout`` is resubmitted with backoff
    until ``max_attempts`` is reached; the final failure is passed to
    :meth:`FlowDriver.failed`, which marks the flow failed for good.
    """

    def __init__(
        self,
        driver: FlowDriver,
        dispatcher: FlowDispatcher,
        config: Optional[JobConfig] = None,
    ) -> None:
        self.driver = driver
        self.dispatcher = dispatcher
        self.config = config or driver.config
        self.processed = 0

    @property
    def transport(self):
        return self.dispatcher.transport

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume the flow queue until ``lifespan`` seconds elapse (forever if None)."""
        logger.info(f"Flow worker listening on {self.dispatcher.queue}")
        async for raw_message, job in self.transport.subscribe(
            self.dispatcher.queue, lifespan=lifespan
        ):
            await self.process(raw_message, job)

    async def run_once(self) -> int:
        """Process every job that is currently due, then return how many ran.

        Jobs re-enqueued with a delay during the drain are left for later.
        """
        count = 0
        pop_due = getattr(self.transport, "pop_due", None)
        if pop_due is None:
            raise TypeError(
                f"{type(self.transport).__name__} cannot be drained; run_once needs pop_due()"
            )
        while True:
            raw = await pop_due(self.dispatcher.queue)
            if raw is None:
                return count
            await self.process(raw, raw[1])
            count += 1

    async def process(self, raw_message: Any, job: FlowJob) -> Optional[DriverResult]:
        """Run one job; never raises for job failures.

        A failed job is nacked without requeue since its retry, if any, is
        published as a new job.
        """
        result: Optional[DriverResult] = None
        try:
            result = await asyncio.wait_for(
                self.driver.handle(job.flow_id, dispatch_id=job.dispatch_id),
                timeout=self.config.timeout,
            )
        except asyncio.TimeoutError:
            await self._on_failure(
                job, TimeoutError(f"Step timed out after {self.config.timeout}s")
            )
            await self.transport.nack(raw_message, requeue=False)
        except Exception as e:
            await self._on_failure(job, e)
            await self.transport.nack(raw_message, requeue=False)
        else:
            await self.transport.ack(raw_message)
        finally:
            self.processed += 1
        return result

    async def _on_failure(self, job: FlowJob, exc: BaseException) -> None:
        if job.attempt < self.config.max_attempts:
            delay = compute_backoff(
                job.attempt,
                base=self.config.backoff,
                jitter=self.config.backoff_jitter,
                exponential=self.config.exponential_backoff,
            )
            logger.warning(
                f"Attempt {job.attempt}/{self.config.max_attempts} failed for "
                f"flow_id={job.flow_id}: {exc}; retrying in {delay:.1f}s"
            )
            await self.dispatcher.resubmit(job, delay=delay)
            return

        logger.error(
            f"Giving up on flow_id={job.flow_id} after {job.attempt} attempts: {exc}"
        )
        await self.driver.failed(job.flow_id, exc)
