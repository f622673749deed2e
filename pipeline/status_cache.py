"""
Advisory job status cache.

Snapshots are written to Redis with a TTL whenever a job changes state so a
catalog service can show progress without querying the job store. The cache
is never read back by the processor, and every failure here is logged and
swallowed: the job store stays authoritative.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from redis.asyncio import Redis

from config import REDIS_KEY_PREFIX, STATUS_CACHE_TTL
from pipeline.enums import AssetStatus
from pipeline.redis_client import RedisClient
from pipeline.schemas import StatusSnapshot

logger = logging.getLogger(__name__)


def status_key(asset_id: str, prefix: str = REDIS_KEY_PREFIX) -> str:
    return f"{prefix}:status:{asset_id}"


class StatusCache:
    """Best-effort status snapshots keyed by asset id."""

    def __init__(self, redis_client: RedisClient, prefix: str = REDIS_KEY_PREFIX) -> None:
        self.redis_client = redis_client
        self.prefix = prefix

    async def publish(
        self,
        asset_id: str,
        status: AssetStatus,
        progress: int = 0,
        error: Optional[str] = None,
        ttl: int = STATUS_CACHE_TTL,
    ) -> bool:
        """
        Store a snapshot for asset_id, expiring after ttl seconds.

        Returns:
            True if written, False if the snapshot was invalid, Redis was
            unavailable or the write failed
        """
        try:
            payload = StatusSnapshot(
                asset_id=asset_id,
                status=status,
                progress=progress,
                error=error,
                updated_at=datetime.now(timezone.utc),
            ).model_dump_json()
        except ValidationError as e:
            logger.warning(f"Status snapshot for {asset_id} not published, invalid: {e}")
            return False
        key = status_key(asset_id, self.prefix)

        async def _write(client: Redis) -> bool:
            await client.set(key, payload, ex=ttl)
            return True

        async def _skip() -> bool:
            logger.debug(f"Status cache unavailable, snapshot for {asset_id} not published")
            return False

        return await self.redis_client.execute_with_fallback(_write, _skip)

    async def get(self, asset_id: str) -> Optional[dict]:
        """
        Read the latest snapshot for asset_id.

        Returns:
            The snapshot as a dict, or None if missing, expired, undecodable or Redis is down
        """
        key = status_key(asset_id, self.prefix)

        async def _read(client: Redis) -> Optional[str]:
            return await client.get(key)

        async def _missing() -> None:
            return None

        raw = await self.redis_client.execute_with_fallback(_read, _missing)
        if raw is None:
            return None

        try:
            return StatusSnapshot.model_validate_json(raw).model_dump(mode="json")
        except ValidationError as e:
            logger.warning(f"Discarding undecodable status snapshot for {asset_id}: {e}")
            return None
