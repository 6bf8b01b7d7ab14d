"""Redis lock that keeps crawl runs from overlapping."""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

import redis.asyncio as redis

from mirror_crawler.config import settings
from mirror_crawler.utils.timeutil import now_iso

logger = logging.getLogger(__name__)

LOCK_KEY = "crawler:run:lock"
HEARTBEAT_KEY = "crawler:run:heartbeat"

# 0 = not held, 1 = released, 2 = held by someone else
_UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end
local ok, data = pcall(cjson.decode, lock_value)
if not ok then
    return 2
end
if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    redis.call('DEL', KEYS[2])
    return 1
end
return 2
"""

# 0 = not held, 1 = refreshed, 2 = held by someone else
_REFRESH_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end
local ok, data = pcall(cjson.decode, lock_value)
if not ok then
    return 0
end
if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
    redis.call('SET', KEYS[2], ARGV[4], 'EX', ARGV[3])
    return 1
end
return 2
"""


class RunLockManager:
    """
    Single-holder lock around a crawl run.

    The lock value records run id, stage and an ownership token; release and
    refresh only succeed for the holder. A TTL bounds how long a crashed run
    can block the next one.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire_lock(self, run_id: str, stage: str = "all", ttl_seconds: int = 7200) -> Optional[str]:
        """
        Acquire the run lock.

        Args:
            run_id: Unique run identifier
            stage: Stage being run (recorded for diagnostics)
            ttl_seconds: Lock expiry

        Returns:
            Ownership token, or None if another run holds the lock
        """
        client = await self._get_redis()
        token = uuid4().hex
        value = json.dumps({"run_id": run_id, "token": token, "stage": stage, "started_at": now_iso()})

        acquired = await client.set(LOCK_KEY, value, nx=True, ex=ttl_seconds)
        if acquired:
            await client.set(HEARTBEAT_KEY, str(time.time()), ex=ttl_seconds)
            logger.info(f"Acquired run lock for {stage} run {run_id[:16]}")
            return token

        info = await self.get_lock_info()
        if info:
            logger.warning(
                f"Run lock held by {info.get('stage', '?')} run {str(info.get('run_id', 'unknown'))[:16]} "
                f"since {info.get('started_at', '?')}"
            )
        return None

    async def safe_unlock(self, run_id: str, token: Optional[str]) -> bool:
        """Release the lock only if `run_id` and `token` match the holder."""
        if not token:
            logger.warning("Unlock requested without token; refusing")
            return False
        client = await self._get_redis()
        try:
            result = await client.eval(_UNLOCK_SCRIPT, 2, LOCK_KEY, HEARTBEAT_KEY, run_id, token)
        except redis.RedisError as e:
            logger.error(f"Error releasing run lock: {e}")
            return False

        if result == 2:
            logger.warning(f"Refused to release run lock held by another run (requested {run_id[:16]})")
            return False
        if result == 1:
            logger.info(f"Released run lock for run {run_id[:16]}")
        return True

    async def refresh_lock(self, run_id: str, token: str, ttl_seconds: int = 7200) -> bool:
        """Extend the TTL and heartbeat if we still hold the lock."""
        client = await self._get_redis()
        try:
            result = await client.eval(
                _REFRESH_SCRIPT, 2, LOCK_KEY, HEARTBEAT_KEY, run_id, token, str(ttl_seconds), str(time.time()),
            )
        except redis.RedisError as e:
            logger.error(f"Error refreshing run lock: {e}")
            return False
        return result == 1

    async def force_unlock(self) -> bool:
        """Clear the lock without ownership checks (operator recovery)."""
        client = await self._get_redis()
        try:
            await client.delete(LOCK_KEY, HEARTBEAT_KEY)
        except redis.RedisError as e:
            logger.error(f"Failed to force unlock: {e}")
            return False
        logger.warning("Force-cleared run lock and heartbeat")
        return True

    async def get_lock_info(self) -> Optional[dict[str, Any]]:
        client = await self._get_redis()
        raw = await client.get(LOCK_KEY)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Run lock value is not JSON: {raw!r}")
            return {"raw": raw}


async def _heartbeat(manager: RunLockManager, run_id: str, token: str, ttl_seconds: int, max_failures: int = 3):
    """Refresh the lock every third of its TTL until cancelled."""
    interval = max(ttl_seconds / 3, 0.1)
    failures = 0
    while True:
        await asyncio.sleep(interval)
        if await manager.refresh_lock(run_id, token, ttl_seconds):
            failures = 0
            continue
        failures += 1
        logger.warning(f"Run lock heartbeat failed for run {run_id[:16]} (consecutive failures: {failures})")
        if failures >= max_failures:
            logger.error(f"Run lock heartbeat stopped for run {run_id[:16]}; the lock may expire mid-run")
            return


@asynccontextmanager
async def guarded_run(stage: str, manager: Optional[RunLockManager] = None) -> AsyncIterator[bool]:
    """
    Hold the run lock for the duration of the block when locking is enabled.

    While the block runs a heartbeat task keeps extending the lock TTL.

    Yields:
        True when the run may proceed
    """
    if not settings.run_lock_enabled:
        yield True
        return

    manager = manager or RunLockManager()
    run_id = uuid4().hex
    ttl_seconds = settings.run_lock_ttl_seconds
    token = await manager.acquire_lock(run_id, stage, ttl_seconds)
    heartbeat = (
        asyncio.create_task(_heartbeat(manager, run_id, token, ttl_seconds)) if token is not None else None
    )
    try:
        yield token is not None
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
        if token is not None:
            await manager.safe_unlock(run_id, token)
        await manager.close()
