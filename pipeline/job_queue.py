"""
Job queue for transcode work.

A Redis list carries asset ids: producers LPUSH, workers BRPOP, so the oldest
entry is served first. Delivery is at-least-once; the processor's claim step
turns a duplicate delivery into a no-op.
"""

import logging
from typing import Optional

from redis.exceptions import RedisError

from config import QUEUE_POLL_TIMEOUT, REDIS_KEY_PREFIX
from pipeline.errors import QueueUnavailable
from pipeline.redis_client import RedisClient

logger = logging.getLogger(__name__)


def queue_key(prefix: str = REDIS_KEY_PREFIX) -> str:
    return f"{prefix}:transcode:queue"


class JobQueue:
    """Redis list backed transcode queue."""

    def __init__(self, redis_client: RedisClient, prefix: str = REDIS_KEY_PREFIX) -> None:
        self.redis_client = redis_client
        self.key = queue_key(prefix)

    async def _client(self):
        client = await self.redis_client.get_client()
        if client is None:
            if not self.redis_client.is_configured:
                raise QueueUnavailable("Redis URL not configured")
            raise QueueUnavailable("Redis is not available (circuit open or unreachable)")
        return client

    async def enqueue(self, asset_id: str) -> None:
        """
        Push an asset id onto the queue.

        Duplicate enqueues are allowed; redelivery is handled by the claim.

        Raises:
            QueueUnavailable: Redis unreachable or circuit breaker open
        """
        client = await self._client()
        try:
            await client.lpush(self.key, asset_id)
        except RedisError as e:
            self.redis_client.record_failure()
            raise QueueUnavailable(f"Failed to enqueue {asset_id}: {e}") from e
        self.redis_client.record_success()
        logger.info(f"Enqueued transcode job for asset {asset_id}")

    async def dequeue(self, timeout: int = QUEUE_POLL_TIMEOUT) -> Optional[str]:
        """
        Block up to timeout seconds for the next asset id.

        Returns:
            The asset id, or None if nothing arrived before the timeout

        Raises:
            QueueUnavailable: Redis unreachable or circuit breaker open
        """
        client = await self._client()
        try:
            result = await client.brpop([self.key], timeout=timeout)
        except RedisError as e:
            self.redis_client.record_failure()
            raise QueueUnavailable(f"Failed to dequeue: {e}") from e
        self.redis_client.record_success()

        if result is None:
            return None
        _key, asset_id = result
        return asset_id

    async def length(self) -> int:
        """Number of asset ids waiting in the queue."""
        client = await self._client()
        try:
            return await client.llen(self.key)
        except RedisError as e:
            self.redis_client.record_failure()
            raise QueueUnavailable(f"Failed to read queue length: {e}") from e
