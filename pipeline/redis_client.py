"""
Redis connection shared by the job queue and the status cache.

One pooled redis.asyncio client per process (the worker and the CLI each own a
RedisClient; there is no module-level singleton), guarded by a circuit breaker.
While the breaker is open the queue raises QueueUnavailable immediately and the
status cache silently skips its writes instead of waiting on socket timeouts.
"""

import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config import (
    REDIS_HEALTH_CHECK_INTERVAL,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Counts consecutive Redis failures and rejects calls for a cool-down period.

    The circuit opens at `threshold` failures. Each further failure doubles the
    cool-down, starting at `base_cooldown` and capped at `max_cooldown` seconds.
    Once the cool-down has elapsed one call is let through; its outcome either
    resets the breaker or re-opens it for longer.
    """

    def __init__(self, threshold: int = 3, base_cooldown: float = 30.0, max_cooldown: float = 300.0):
        self.threshold = threshold
        self.base_cooldown = base_cooldown
        self.max_cooldown = max_cooldown
        self.failures = 0
        self.open_until: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.open_until is not None and time.monotonic() < self.open_until

    def cooldown(self) -> float:
        doublings = max(0, self.failures - self.threshold)
        return min(self.max_cooldown, self.base_cooldown * (2**doublings))

    def record_failure(self) -> Optional[float]:
        """Count a failure. Returns the cool-down in seconds if the circuit is now open."""
        self.failures += 1
        if self.failures < self.threshold:
            return None
        cooldown = self.cooldown()
        self.open_until = time.monotonic() + cooldown
        return cooldown

    def record_success(self) -> int:
        """Reset the breaker. Returns how many failures preceded the success."""
        previous = self.failures
        self.failures = 0
        self.open_until = None
        return previous


class RedisClient:
    """Pooled async Redis connection with health tracking."""

    def __init__(
        self,
        url: str = REDIS_URL,
        socket_timeout: float = REDIS_SOCKET_TIMEOUT,
        pool_size: int = REDIS_POOL_SIZE,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        # The worker passes a socket timeout longer than its BRPOP timeout so an
        # idle blocking pop is never mistaken for a dead connection.
        self.url = url
        self.socket_timeout = socket_timeout
        self.pool_size = pool_size
        self.breaker = breaker or CircuitBreaker()
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._healthy = False
        self._last_ping: Optional[float] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.url)

    @property
    def is_available(self) -> bool:
        """Connected, healthy at the last check, and not held off by the breaker."""
        return self._client is not None and self._healthy and not self.breaker.is_open

    async def connect(self) -> None:
        """Create the pool and ping once. An unreachable Redis is logged and counted, not raised."""
        if not self.url:
            logger.info("Redis URL not configured, queue and status cache disabled")
            return

        self._pool = ConnectionPool.from_url(
            self.url,
            max_connections=self.pool_size,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=REDIS_SOCKET_CONNECT_TIMEOUT,
            retry_on_error=[RedisConnectionError],
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)

        if await self.health_check(force=True):
            logger.info(f"Connected to Redis at {self.url.split('@')[-1]}")
        else:
            logger.warning(f"Redis at {self.url.split('@')[-1]} unreachable at startup")

    async def get_client(self) -> Optional[Redis]:
        """
        The live client, or None while Redis is unavailable.

        After the breaker's cool-down an unhealthy client gets one ping before
        it is handed out again.
        """
        if self._client is None or self.breaker.is_open:
            return None
        if not self._healthy and not await self.health_check(force=True):
            return None
        return self._client

    async def execute_with_fallback(
        self,
        redis_fn: Callable[..., Awaitable[T]],
        fallback_fn: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Run redis_fn(client, *args, **kwargs), or fallback_fn(*args, **kwargs)
        when Redis is unavailable or the call raises a RedisError.
        """
        client = await self.get_client()
        if client is None:
            return await fallback_fn(*args, **kwargs)

        try:
            result = await redis_fn(client, *args, **kwargs)
        except RedisError as e:
            logger.warning(f"Redis call failed, falling back: {e}")
            self.record_failure()
            return await fallback_fn(*args, **kwargs)
        self.record_success()
        return result

    def record_failure(self) -> None:
        self._healthy = False
        cooldown = self.breaker.record_failure()
        if cooldown is not None:
            logger.warning(f"Redis circuit open for {cooldown:.0f}s after {self.breaker.failures} consecutive failures")

    def record_success(self) -> None:
        self._healthy = True
        previous = self.breaker.record_success()
        if previous:
            logger.info(f"Redis recovered after {previous} failures")

    async def health_check(self, force: bool = False) -> bool:
        """
        Ping Redis, at most once per REDIS_HEALTH_CHECK_INTERVAL unless forced.

        Returns the cached health between pings.
        """
        if self._client is None:
            return False

        now = time.monotonic()
        if not force and self._last_ping is not None and now - self._last_ping < REDIS_HEALTH_CHECK_INTERVAL:
            return self._healthy

        self._last_ping = now
        try:
            await self._client.ping()
        except Exception as e:
            logger.warning(f"Redis ping failed: {e}")
            self.record_failure()
            return False
        self.record_success()
        return True

    async def close(self) -> None:
        """Release the client and its pool. Errors during shutdown are logged at debug level."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.debug(f"Error closing Redis client: {e}")
        if self._pool is not None:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Error disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
        self._healthy = False
