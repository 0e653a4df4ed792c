from __future__ import annotations

from typing import Optional

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.storage.common import CredentialStore

logger = get_logger(__name__)

FAILED_LOGIN_PREFIX = "login:failed:"
USER_LOCKOUT_PREFIX = "user:lockout:"
LOCKOUT_NOTICE_PREFIX = "notify:lockout:"


class LockoutGovernor:
    """Failed-attempt counting and temporary lockout per login identifier.

    Counters use the store's atomic increment so concurrent processes never
    lose an attempt. Two callers may both see the threshold-crossing
    increment; both then write the same lockout record, which only resets its
    TTL. Callers that notify on lockout de-duplicate through
    :meth:`claim_lockout_notice`.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.max_failed_attempts = settings.max_failed_login_attempts
        self.failed_login_window_seconds = settings.failed_login_window_seconds
        self.lockout_duration_seconds = settings.lockout_duration_seconds

    async def record_failed_login(self, identifier: str) -> bool:
        """Count one failed attempt.

        Returns:
            True if this attempt reached the threshold and locked the account
        """
        key = f"{FAILED_LOGIN_PREFIX}{identifier}"
        attempts = await self.store.incr(key)
        if attempts == 1:
            await self.store.expire(key, self.failed_login_window_seconds)
        logger.warning("login_failed", identifier=identifier, attempts=attempts)
        if attempts >= self.max_failed_attempts:
            await self._lock_user_account(identifier)
            return True
        return False

    async def clear_failed_logins(self, identifier: str) -> None:
        await self.store.delete(f"{FAILED_LOGIN_PREFIX}{identifier}")

    async def _lock_user_account(self, identifier: str) -> None:
        await self.store.put(
            f"{USER_LOCKOUT_PREFIX}{identifier}", "locked", self.lockout_duration_seconds
        )
        logger.warning(
            "account_locked",
            identifier=identifier,
            lockout_seconds=self.lockout_duration_seconds,
        )

    async def is_user_locked(self, identifier: str) -> bool:
        return await self.store.exists(f"{USER_LOCKOUT_PREFIX}{identifier}")

    async def get_lockout_time_remaining(self, identifier: str) -> Optional[int]:
        """Seconds left on the lockout, or None when not locked."""
        return await self.store.ttl_remaining(f"{USER_LOCKOUT_PREFIX}{identifier}")

    async def claim_lockout_notice(self, identifier: str) -> bool:
        """True for exactly one caller per lockout period."""
        return await self.store.put_if_absent(
            f"{LOCKOUT_NOTICE_PREFIX}{identifier}", "sent", self.lockout_duration_seconds
        )

    async def unlock_user_account(self, identifier: str) -> None:
        """Administrative override: drop both the lockout and the counter."""
        await self.store.delete(
            f"{USER_LOCKOUT_PREFIX}{identifier}",
            f"{FAILED_LOGIN_PREFIX}{identifier}",
            f"{LOCKOUT_NOTICE_PREFIX}{identifier}",
        )
        logger.info("account_unlocked", identifier=identifier)


__all__ = [
    "FAILED_LOGIN_PREFIX",
    "LOCKOUT_NOTICE_PREFIX",
    "LockoutGovernor",
    "USER_LOCKOUT_PREFIX",
]
