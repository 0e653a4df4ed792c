from __future__ import annotations

import contextlib
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from tokenward.logging import get_logger
from tokenward.storage.common import ensure_ttl
from tokenward.storage.errors import StoreError, StoreUnavailable

logger = get_logger(__name__)


@contextlib.contextmanager
def _translate_errors(command: str, key: Optional[str] = None) -> Iterator[None]:
    """Re-raise redis-py failures as store errors so callers fail closed."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.warning("credential_store_unavailable", command=command, key=key, error=str(exc))
        raise StoreUnavailable(f"credential store unavailable during {command}") from exc
    except RedisError as exc:
        logger.error("credential_store_command_failed", command=command, key=key, error=str(exc))
        raise StoreError(f"credential store command {command} failed: {exc}") from exc


def _ttl_or_none(raw: int) -> Optional[int]:
    # TTL replies -2 for a missing key and -1 for a key without expiry
    ttl = int(raw)
    return ttl if ttl >= 0 else None


class RedisCredentialStore:
    """Credential store backed by Redis via ``redis.asyncio``."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        # Explicit timeouts so a stalled server surfaces as StoreUnavailable
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            with _translate_errors("PING"):
                sync_client.ping()
        finally:
            sync_client.close()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("SET", key):
            await self.client.set(key, value, ex=ttl)

    async def put_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("SET NX", key):
            return bool(await self.client.set(key, value, ex=ttl, nx=True))

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("GET", key):
            return await self.client.get(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _translate_errors("DEL", keys[0]):
            return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        with _translate_errors("EXISTS", key):
            return bool(await self.client.exists(key))

    async def ttl_remaining(self, key: str) -> Optional[int]:
        with _translate_errors("TTL", key):
            return _ttl_or_none(await self.client.ttl(key))

    async def incr(self, key: str) -> int:
        with _translate_errors("INCR", key):
            return int(await self.client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("EXPIRE", key):
            return bool(await self.client.expire(key, ttl))

    async def add_to_set(self, set_key: str, member: str) -> None:
        with _translate_errors("SADD", set_key):
            await self.client.sadd(set_key, member)

    async def members(self, set_key: str) -> set[str]:
        with _translate_errors("SMEMBERS", set_key):
            return set(await self.client.smembers(set_key))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCredentialStore:
    """Redis credential store using a synchronous client behind async methods.

    Used in test mode: a sync client avoids binding connections to the event
    loop that pytest creates per test, while callers still ``await`` every
    command exactly as they do against :class:`RedisCredentialStore`.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ):
        self.redis_url = redis_url
        self._sync_client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        with _translate_errors("PING"):
            self._sync_client.ping()

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("SET", key):
            self._sync_client.set(key, value, ex=ttl)

    async def put_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("SET NX", key):
            return bool(self._sync_client.set(key, value, ex=ttl, nx=True))

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("GET", key):
            return self._sync_client.get(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _translate_errors("DEL", keys[0]):
            return int(self._sync_client.delete(*keys))

    async def exists(self, key: str) -> bool:
        with _translate_errors("EXISTS", key):
            return bool(self._sync_client.exists(key))

    async def ttl_remaining(self, key: str) -> Optional[int]:
        with _translate_errors("TTL", key):
            return _ttl_or_none(self._sync_client.ttl(key))

    async def incr(self, key: str) -> int:
        with _translate_errors("INCR", key):
            return int(self._sync_client.incr(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        ttl = ensure_ttl(ttl_seconds)
        with _translate_errors("EXPIRE", key):
            return bool(self._sync_client.expire(key, ttl))

    async def add_to_set(self, set_key: str, member: str) -> None:
        with _translate_errors("SADD", set_key):
            self._sync_client.sadd(set_key, member)

    async def members(self, set_key: str) -> set[str]:
        with _translate_errors("SMEMBERS", set_key):
            return set(self._sync_client.smembers(set_key))

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCredentialStore", "SyncRedisCredentialStore"]
