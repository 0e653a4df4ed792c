from __future__ import annotations

import hashlib
from dataclasses import dataclass

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.storage.common import CredentialStore

logger = get_logger(__name__)

LOGIN_LIMIT_PREFIX = "rate:login:"
IP_LIMIT_PREFIX = "rate:ip:"
_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


def _rate_key(prefix: str, subject: str) -> str:
    # Hash so identifiers containing ':' cannot collide with other keys
    return f"{prefix}{hashlib.sha256(subject.encode()).hexdigest()}"


class RateLimiter:
    """Fixed-window request counters kept in the shared credential store."""

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.enabled = settings.rate_limiting_enabled
        self.login_limit = settings.login_rate_limit_per_minute
        self.ip_limit = settings.ip_rate_limit_per_minute

    async def _check(self, key: str, limit: int) -> RateLimitDecision:
        count = await self.store.incr(key)
        if count == 1:
            await self.store.expire(key, _WINDOW_SECONDS)
        if count > limit:
            retry_after = await self.store.ttl_remaining(key)
            logger.warning("rate_limit_exceeded", key=key, count=count, limit=limit)
            return RateLimitDecision(False, retry_after or _WINDOW_SECONDS)
        return RateLimitDecision(True)

    async def check_login_rate_limit(self, identifier: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(True)
        return await self._check(_rate_key(LOGIN_LIMIT_PREFIX, identifier), self.login_limit)

    async def check_ip_rate_limit(self, ip_address: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(True)
        return await self._check(_rate_key(IP_LIMIT_PREFIX, ip_address), self.ip_limit)

    async def reset_login_limit(self, identifier: str) -> None:
        await self.store.delete(_rate_key(LOGIN_LIMIT_PREFIX, identifier))


__all__ = ["RateLimitDecision", "RateLimiter"]
