from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Union

from tokenward.logging import get_logger
from tokenward.storage.common import Clock, ensure_ttl, system_clock
from tokenward.storage.errors import StoreError


@dataclass
class _Entry:
    value: Union[str, set[str]]
    expires_at: Optional[float] = None


class MemoryCredentialStore:
    """In-process credential store with Redis-compatible TTL semantics.

    Only suitable for tests and single-process development: state is not
    shared between workers, so lockouts and blacklists would diverge across
    instances in a real deployment.
    """

    def __init__(self, *, clock: Clock = system_clock) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        # RLock so helpers can be called while a command already holds it
        self._data_lock = threading.RLock()

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _string(self, key: str) -> Optional[_Entry]:
        entry = self._live(key)
        if entry is not None and not isinstance(entry.value, str):
            raise StoreError("WRONGTYPE operation against a set key", {"key": key})
        return entry

    def _set(self, key: str) -> Optional[_Entry]:
        entry = self._live(key)
        if entry is not None and not isinstance(entry.value, set):
            raise StoreError("WRONGTYPE operation against a string key", {"key": key})
        return entry

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = ensure_ttl(ttl_seconds)
        with self._data_lock:
            self._entries[key] = _Entry(str(value), self._clock() + ttl)

    async def put_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ttl = ensure_ttl(ttl_seconds)
        with self._data_lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = _Entry(str(value), self._clock() + ttl)
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            entry = self._string(key)
            return entry.value if entry else None  # type: ignore[return-value]

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._data_lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._entries[key]
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._data_lock:
            return self._live(key) is not None

    async def ttl_remaining(self, key: str) -> Optional[int]:
        with self._data_lock:
            entry = self._live(key)
            if entry is None or entry.expires_at is None:
                return None
            return max(1, math.ceil(entry.expires_at - self._clock()))

    async def incr(self, key: str) -> int:
        with self._data_lock:
            entry = self._string(key)
            if entry is None:
                self._entries[key] = _Entry("1")
                return 1
            try:
                current = int(entry.value)  # type: ignore[arg-type]
            except ValueError as exc:
                raise StoreError("value is not an integer", {"key": key}) from exc
            # INCR keeps any existing expiry
            entry.value = str(current + 1)
            return current + 1

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        ttl = ensure_ttl(ttl_seconds)
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._clock() + ttl
            return True

    async def add_to_set(self, set_key: str, member: str) -> None:
        with self._data_lock:
            entry = self._set(set_key)
            if entry is None:
                self._entries[set_key] = _Entry({member})
            else:
                entry.value.add(member)  # type: ignore[union-attr]

    async def members(self, set_key: str) -> set[str]:
        with self._data_lock:
            entry = self._set(set_key)
            return set(entry.value) if entry else set()  # type: ignore[arg-type]

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._data_lock:
            self._entries.clear()


__all__ = ["MemoryCredentialStore"]
