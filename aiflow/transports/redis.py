"""Redis transport for cross-process flow queues."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..constants import DEFAULT_VISIBILITY_TIMEOUT
from ..contracts import FlowJob
from .base import BaseTransport

logger = logging.getLogger(__name__)

# KEYS: queue, processing. ARGV: now, claim deadline.
_CLAIM_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #due == 0 then return false end
redis.call('ZREM', KEYS[1], due[1])
redis.call('ZADD', KEYS[2], ARGV[2], due[1])
return due[1]
"""

# KEYS: queue, processing. ARGV: now.
_REQUEUE_EXPIRED_LUA = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, member in ipairs(expired) do
  redis.call('ZREM', KEYS[2], member)
  redis.call('ZADD', KEYS[1], ARGV[1], member)
end
return #expired
"""


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-based delayed queue with at-least-once delivery.

    Each queue is a sorted set scored by the job's due time. A consumer
    claims a due job by atomically moving it into the queue's processing
    set, scored by the claim deadline. ``ack`` drops the claim; claims still
    held after ``visibility_timeout`` (a worker died mid-job) are moved back
    onto the queue and delivered again.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        poll_interval: float = 0.2,
        visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self._redis: Optional[Any] = None
        self._claim_script = None
        self._requeue_script = None

    async def connect(self) -> None:
        """Connect to Redis and register the queue scripts."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        self._claim_script = self._redis.register_script(_CLAIM_LUA)
        self._requeue_script = self._redis.register_script(_REQUEUE_EXPIRED_LUA)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def _key(queue: str) -> str:
        return f"aiflow:{queue}"

    @staticmethod
    def _processing_key(queue: str) -> str:
        return f"aiflow:{queue}:processing"

    async def publish(self, queue: str, job: FlowJob, delay: float = 0.0) -> None:
        """Add job to the queue's sorted set, scored by its due time."""
        if not self._redis:
            await self.connect()

        due = max(job.available_at.timestamp(), time.time() + max(delay, 0.0))
        await self._redis.zadd(self._key(queue), {job.to_json(): due})

    async def requeue_expired(self, queue: str) -> int:
        """Move claims whose deadline passed back onto ``queue``."""
        count = await self._requeue_script(
            keys=[self._key(queue), self._processing_key(queue)], args=[time.time()]
        )
        count = int(count or 0)
        if count:
            logger.warning(f"Re-queued {count} expired claim(s) on {queue}")
        return count

    async def _claim_due(self, queue: str) -> Optional[str]:
        now = time.time()
        return await self._claim_script(
            keys=[self._key(queue), self._processing_key(queue)],
            args=[now, now + self.visibility_timeout],
        )

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], FlowJob]]:
        """Yield due jobs from the Redis queue."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = loop.time() - start_time
                if elapsed >= lifespan:
                    break

            await self.requeue_expired(queue)
            raw = await self._claim_due(queue)
            if raw is None:
                await asyncio.sleep(self.poll_interval)
                continue

            try:
                job = FlowJob.from_json(raw)
            except ValidationError as e:
                logger.error(f"Dropping unparseable job on {queue}: {e}")
                await self._redis.zrem(self._processing_key(queue), raw)
                continue
            yield (queue, raw), job

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """Release the claim on a processed job."""
        queue, raw = raw_message
        await self._redis.zrem(self._processing_key(queue), raw)

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        """Release the claim, putting the job back on the queue when ``requeue``."""
        queue, raw = raw_message
        await self._redis.zrem(self._processing_key(queue), raw)
        if requeue:
            await self._redis.zadd(self._key(queue), {raw: time.time()})
