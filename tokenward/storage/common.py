from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

Clock = Callable[[], float]


def system_clock() -> float:
    """Wall-clock seconds since the epoch."""

    return time.time()


def ensure_ttl(ttl_seconds: int) -> int:
    """Validate a TTL before it reaches the store.

    Redis rejects zero or negative expiries on ``SET EX``; catching it here
    turns a wire error into a programming error at the call site.
    """

    ttl = int(ttl_seconds)
    if ttl <= 0:
        raise ValueError(f"ttl must be positive, got {ttl_seconds!r}")
    return ttl


class CredentialStore(Protocol):
    """Key/value store with per-key TTL, atomic increment and set membership.

    Every method is a single round trip. Failures raise
    :class:`~tokenward.storage.errors.StoreError`; they are never reported as
    absence or success.
    """

    async def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def put_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl_remaining(self, key: str) -> Optional[int]: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def add_to_set(self, set_key: str, member: str) -> None: ...

    async def members(self, set_key: str) -> set[str]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


__all__ = ["Clock", "CredentialStore", "ensure_ttl", "system_clock"]
