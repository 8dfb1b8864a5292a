"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..contracts import FlowJob
from .base import BaseTransport

RawJob = Tuple[str, FlowJob]


class InMemoryTransport(BaseTransport[RawJob]):
    """Simple in-process delayed queue for unit tests."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, List[RawJob]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._poll_interval = poll_interval

    async def publish(self, queue: str, job: FlowJob, delay: float = 0.0) -> None:
        """Publish job to in-memory queue."""
        if delay > 0:
            due = datetime.now(timezone.utc) + timedelta(seconds=delay)
            job = job.model_copy(update={"available_at": max(job.available_at, due)})
        raw = (job.to_json(), job)
        async with self._lock:
            self._queues[queue].append(raw)

    def pending(self, queue: str) -> List[FlowJob]:
        """Jobs still waiting in ``queue``, due or not."""
        return [job for _, job in self._queues[queue]]

    async def pop_due(self, queue: str, now: Optional[datetime] = None) -> Optional[RawJob]:
        """Remove and return the earliest due job, ignoring not-yet-due ones."""
        now = now or datetime.now(timezone.utc)
        async with self._lock:
            due = [raw for raw in self._queues[queue] if raw[1].is_due(now)]
            if not due:
                return None
            raw = min(due, key=lambda r: r[1].available_at)
            self._queues[queue].remove(raw)
            return raw

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawJob, FlowJob]]:
        """Subscribe to due jobs from queue.

        Args:
            queue: The queue to consume from
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            raw_message = await self.pop_due(queue)
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(self._poll_interval)

    async def ack(self, raw_message: RawJob) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
