from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis

# Atomic get-and-delete for servers or clients without GETDEL
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _pending_key(continuation: str) -> str:
    # Only a digest of the continuation reference is stored server-side
    digest = hashlib.sha256(continuation.encode()).hexdigest()
    return f"auth:2fa:pending:{digest}"


def _ttl_seconds(expires_at: datetime) -> int:
    """Clamp to at least 1 second so Redis never sees a zero or negative TTL."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _decode(cached: Any) -> Optional[Dict[str, Any]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper holding suspended two-factor logins."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_pending_two_factor(
        self, continuation: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        await self.client.set(
            _pending_key(continuation), json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def get_pending_two_factor(self, continuation: str) -> Optional[Dict[str, Any]]:
        return _decode(await self.client.get(_pending_key(continuation)))

    async def pop_pending_two_factor(self, continuation: str) -> Optional[Dict[str, Any]]:
        """Atomically read and delete so a continuation completes at most once."""
        key = _pending_key(continuation)
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            cached = await self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode(cached)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, while exposing the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def set_pending_two_factor(
        self, continuation: str, payload: Dict[str, Any], expires_at: datetime
    ) -> None:
        self.client.set(
            _pending_key(continuation), json.dumps(payload), ex=_ttl_seconds(expires_at)
        )

    async def get_pending_two_factor(self, continuation: str) -> Optional[Dict[str, Any]]:
        return _decode(self.client.get(_pending_key(continuation)))

    async def pop_pending_two_factor(self, continuation: str) -> Optional[Dict[str, Any]]:
        key = _pending_key(continuation)
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.delete(key)
        cached, _ = pipe.execute()
        return _decode(cached)

    async def close(self) -> None:
        self.client.close()
