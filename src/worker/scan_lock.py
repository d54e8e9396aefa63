"""Redis-based per-tenant lock so only one duplicate scan runs per tenant."""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis

from src.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "scan:dedupe"

# Atomically verify run_id + token, then delete lock + heartbeat.
# Returns: 0 = not found/already released, 1 = deleted, 2 = mismatch
UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 2
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    redis.call('DEL', KEYS[2])
    return 1
end
return 2
"""

# Atomically verify run_id + token, extend TTL and stamp the heartbeat.
# Returns: 0 = not found, 1 = refreshed, 2 = mismatch
REFRESH_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end

local success, data = pcall(cjson.decode, lock_value)
if not success then
    return 0
end

if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
    redis.call('SET', KEYS[2], ARGV[4], 'EX', ARGV[3])
    return 1
end
return 2
"""


def lock_key(tenant_id: int) -> str:
    return f"{LOCK_KEY_PREFIX}:{tenant_id}:lock"


def heartbeat_key(tenant_id: int) -> str:
    return f"{LOCK_KEY_PREFIX}:{tenant_id}:heartbeat"


class ScanLockHeld(Exception):
    """Another scan already holds the tenant lock."""

    def __init__(self, tenant_id: int, lock_info: Optional[Dict[str, Any]] = None):
        super().__init__(f"A duplicate scan is already running for tenant {tenant_id}")
        self.tenant_id = tenant_id
        self.lock_info = lock_info or {}


class ScanLockManager:
    """
    Per-tenant scan lock in Redis.

    Features:
    - SET NX EX acquisition with a random ownership token
    - Token-verified release and refresh (Lua)
    - Heartbeat key stamped on every refresh
    - Force unlock for the watchdog
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
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def acquire_lock(
        self,
        tenant_id: int,
        run_id: str,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[str]:
        """
        Acquire the scan lock for a tenant.

        Returns:
            Ownership token if acquired, None if another run holds it
        """
        ttl = ttl_seconds or settings.scan_lock_ttl_seconds
        redis_client = await self._get_redis()
        token = uuid4().hex
        lock_value = json.dumps({
            "run_id": run_id,
            "token": token,
            "tenant_id": tenant_id,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await redis_client.set(lock_key(tenant_id), lock_value, nx=True, ex=ttl)
        if not acquired:
            logger.debug(f"Scan lock for tenant {tenant_id} already held")
            return None

        await redis_client.set(heartbeat_key(tenant_id), str(time.time()), ex=ttl)
        logger.info(f"Acquired scan lock for tenant {tenant_id} (run_id: {run_id[:16]}...)")
        return token

    async def safe_unlock(self, tenant_id: int, run_id: str, token: Optional[str]) -> bool:
        """
        Release the lock only if run_id and token match the holder.

        Returns:
            True if released (or already gone), False on mismatch or error
        """
        if not token:
            logger.warning("Unlock requested without token; refusing (use force_unlock for recovery).")
            return False

        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(
                UNLOCK_SCRIPT,
                2,
                lock_key(tenant_id),
                heartbeat_key(tenant_id),
                run_id,
                token,
            )
        except redis.RedisError as e:
            logger.error(f"Error releasing scan lock for tenant {tenant_id}: {e}")
            return False

        if result in (0, 1):
            return True
        logger.warning(
            f"Refused to release scan lock for tenant {tenant_id}: "
            f"held by another run (requested={run_id[:16]}...)"
        )
        return False

    async def force_unlock(self, tenant_id: int) -> bool:
        """Drop the lock without token verification (watchdog/admin use)."""
        redis_client = await self._get_redis()
        try:
            await redis_client.delete(lock_key(tenant_id), heartbeat_key(tenant_id))
        except redis.RedisError as e:
            logger.error(f"Failed to force unlock tenant {tenant_id}: {e}")
            return False
        logger.warning(f"Force-cleared scan lock for tenant {tenant_id}")
        return True

    async def refresh_lock(
        self,
        tenant_id: int,
        run_id: str,
        token: str,
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """Extend the lock TTL if this run still owns it."""
        ttl = ttl_seconds or settings.scan_lock_ttl_seconds
        redis_client = await self._get_redis()
        try:
            result = await redis_client.eval(
                REFRESH_SCRIPT,
                2,
                lock_key(tenant_id),
                heartbeat_key(tenant_id),
                run_id,
                token,
                str(ttl),
                str(time.time()),
            )
        except redis.RedisError as e:
            logger.error(f"Error refreshing scan lock for tenant {tenant_id}: {e}")
            return False

        if result == 1:
            return True
        if result == 2:
            logger.warning(f"Scan lock for tenant {tenant_id} is now held by another run")
        return False

    async def get_lock_info(self, tenant_id: int) -> Optional[Dict[str, Any]]:
        """Current holder of a tenant lock, or None."""
        redis_client = await self._get_redis()
        value = await redis_client.get(lock_key(tenant_id))
        if not value:
            return None
        ttl = await redis_client.ttl(lock_key(tenant_id))

        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            logger.error(f"Invalid lock value for tenant {tenant_id}: {value!r}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "run_id": data.get("run_id"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }

    async def get_heartbeat_age(self, tenant_id: int) -> Optional[float]:
        """Seconds since the tenant lock was last refreshed, or None."""
        redis_client = await self._get_redis()
        value = await redis_client.get(heartbeat_key(tenant_id))
        if not value:
            return None
        try:
            return max(0.0, time.time() - float(value))
        except (TypeError, ValueError):
            return None

    @asynccontextmanager
    async def hold(self, tenant_id: int, run_id: str) -> AsyncIterator[str]:
        """
        Hold the tenant lock for the duration of the block, with a heartbeat.

        Raises:
            ScanLockHeld: Another run holds the lock
        """
        token = await self.acquire_lock(tenant_id, run_id)
        if token is None:
            raise ScanLockHeld(tenant_id, await self.get_lock_info(tenant_id))

        heartbeat = asyncio.create_task(
            refresh_lock_heartbeat(
                self,
                tenant_id=tenant_id,
                run_id=run_id,
                token=token,
                interval=settings.scan_lock_heartbeat_interval_seconds,
                ttl=settings.scan_lock_ttl_seconds,
            )
        )
        try:
            yield token
        finally:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
            if not await self.safe_unlock(tenant_id, run_id, token):
                logger.warning(f"Failed to release scan lock for tenant {tenant_id}")


async def refresh_lock_heartbeat(
    lock_manager: ScanLockManager,
    tenant_id: int,
    run_id: str,
    token: str,
    interval: int = 45,
    ttl: int = 7200,
) -> None:
    """Background task that keeps a held lock alive until cancelled."""
    failure_count = 0
    try:
        while True:
            await asyncio.sleep(interval)
            if await lock_manager.refresh_lock(tenant_id, run_id, token, ttl):
                failure_count = 0
                continue

            failure_count += 1
            logger.warning(
                f"Heartbeat failed for tenant {tenant_id} run_id: {run_id[:16]}... "
                f"(consecutive failures: {failure_count})"
            )
            if failure_count >= 3:
                logger.error(f"Heartbeat stopping after {failure_count} failures")
                break
    except asyncio.CancelledError:
        logger.debug(f"Heartbeat cancelled for run_id: {run_id[:16]}...")
        raise


# Global lock manager instance
scan_lock_manager = ScanLockManager()
