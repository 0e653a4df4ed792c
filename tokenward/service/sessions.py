from __future__ import annotations

from typing import Optional

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.storage.common import Clock, CredentialStore, system_clock

logger = get_logger(__name__)

ACCESS_TOKEN_PREFIX = "token:access:"
REFRESH_TOKEN_PREFIX = "token:refresh:"
USER_TOKENS_PREFIX = "user:tokens:"
BLACKLISTED_TOKEN_PREFIX = "token:blacklisted:"
TOKEN_FAMILY_PREFIX = "token:family:"
REMEMBER_ME_PREFIX = "token:remember:"


class SessionLifecycleManager:
    """Owns every read and write of token state in the credential store.

    Each subject has exactly one access slot and one refresh slot. The refresh
    slot is the replay detector: once a token is rotated out, presenting it
    again no longer matches the slot even though its own expiry has not
    passed. The manager holds no process-local state; concurrent writers to
    the same slot resolve as last-writer-wins in the store.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Clock = system_clock,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = logger

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def _index_token_key(self, subject_id: str, token_key: str, ttl_seconds: int) -> None:
        index_key = f"{USER_TOKENS_PREFIX}{subject_id}"
        await self.store.add_to_set(index_key, token_key)
        # The index must outlive the longest token it points at, and no longer
        remaining = await self.store.ttl_remaining(index_key)
        if remaining is None or remaining < ttl_seconds:
            await self.store.expire(index_key, ttl_seconds)

    async def save_access_token(self, subject_id: str, token: str, ttl_seconds: int) -> None:
        token_key = f"{ACCESS_TOKEN_PREFIX}{subject_id}"
        await self.store.put(token_key, token, ttl_seconds)
        await self._index_token_key(subject_id, token_key, ttl_seconds)
        self.logger.debug("access_token_saved", subject_id=subject_id, ttl_seconds=ttl_seconds)

    async def save_refresh_token(
        self,
        subject_id: str,
        token: str,
        ttl_seconds: int,
        remember_me: bool = False,
    ) -> None:
        token_key = f"{REFRESH_TOKEN_PREFIX}{subject_id}"
        await self.store.put(token_key, token, ttl_seconds)
        await self._index_token_key(subject_id, token_key, ttl_seconds)
        if remember_me and ttl_seconds > self.settings.remember_me_threshold_seconds:
            await self.store.put(f"{REMEMBER_ME_PREFIX}{token}", "1", ttl_seconds)
        self.logger.debug(
            "refresh_token_saved",
            subject_id=subject_id,
            ttl_seconds=ttl_seconds,
            remember_me=remember_me,
        )

    async def get_latest_access_token(self, subject_id: str) -> Optional[str]:
        return await self.store.get(f"{ACCESS_TOKEN_PREFIX}{subject_id}")

    async def is_access_token_current(self, subject_id: str, token: str) -> bool:
        latest = await self.get_latest_access_token(subject_id)
        return latest is not None and latest == token

    async def validate_refresh_token(self, subject_id: str, token: str) -> bool:
        """True iff ``token`` is exactly the value in the subject's refresh slot."""
        stored = await self.store.get(f"{REFRESH_TOKEN_PREFIX}{subject_id}")
        return stored is not None and stored == token

    # ------------------------------------------------------------------
    # Blacklist and remember-me markers
    # ------------------------------------------------------------------

    async def is_token_blacklisted(self, token: str) -> bool:
        return await self.store.exists(f"{BLACKLISTED_TOKEN_PREFIX}{token}")

    async def blacklist_token(self, token: str, ttl_seconds: int) -> None:
        # The entry must not outlive the token it suppresses
        if ttl_seconds <= 0:
            self.logger.debug("blacklist_skipped_expired_token", ttl_seconds=ttl_seconds)
            return
        await self.store.put(f"{BLACKLISTED_TOKEN_PREFIX}{token}", "blacklisted", ttl_seconds)
        self.logger.debug("token_blacklisted", ttl_seconds=ttl_seconds)

    async def is_remember_me_token(self, token: str) -> bool:
        return await self.store.exists(f"{REMEMBER_ME_PREFIX}{token}")

    async def _remaining_or_default(self, key: str, default_ttl: int) -> int:
        remaining = await self.store.ttl_remaining(key)
        return remaining if remaining is not None else default_ttl

    # ------------------------------------------------------------------
    # Logout and revocation
    # ------------------------------------------------------------------

    async def remove_refresh_token(self, subject_id: str) -> None:
        """Blacklist and delete both slots for ``subject_id``."""
        refresh_key = f"{REFRESH_TOKEN_PREFIX}{subject_id}"
        access_key = f"{ACCESS_TOKEN_PREFIX}{subject_id}"

        refresh_token = await self.store.get(refresh_key)
        access_token = await self.store.get(access_key)

        if refresh_token is not None:
            ttl = await self._remaining_or_default(
                refresh_key, self.settings.refresh_token_ttl_seconds
            )
            await self.blacklist_token(refresh_token, ttl)
            await self.store.delete(f"{REMEMBER_ME_PREFIX}{refresh_token}")
        if access_token is not None:
            ttl = await self._remaining_or_default(
                access_key, self.settings.access_token_ttl_seconds
            )
            await self.blacklist_token(access_token, ttl)

        await self.store.delete(refresh_key, access_key)
        self.logger.debug("tokens_removed", subject_id=subject_id)

    async def revoke_all_user_tokens(self, subject_id: str) -> int:
        """Blacklist and delete every indexed token for ``subject_id``.

        Returns:
            Number of live tokens that were blacklisted
        """
        index_key = f"{USER_TOKENS_PREFIX}{subject_id}"
        token_keys = await self.store.members(index_key)
        revoked = 0
        for token_key in token_keys:
            token = await self.store.get(token_key)
            if token is not None:
                if token_key.startswith(ACCESS_TOKEN_PREFIX):
                    default_ttl = self.settings.access_token_ttl_seconds
                else:
                    default_ttl = self.settings.refresh_token_ttl_seconds
                ttl = await self._remaining_or_default(token_key, default_ttl)
                await self.blacklist_token(token, ttl)
                if token_key.startswith(REFRESH_TOKEN_PREFIX):
                    await self.store.delete(f"{REMEMBER_ME_PREFIX}{token}")
                revoked += 1
            await self.store.delete(token_key)
        await self.store.delete(index_key)
        self.logger.info("all_user_tokens_revoked", subject_id=subject_id, revoked=revoked)
        return revoked

    # ------------------------------------------------------------------
    # Token families and rotation
    # ------------------------------------------------------------------

    def _family_record_ttl(self) -> int:
        # Outlive every refresh token a family can still hold, so an aged-out
        # family is found and rejected instead of being recreated as new
        longest_refresh = (
            self.settings.refresh_token_ttl_seconds * self.settings.remember_me_multiplier
        )
        return self.settings.max_token_family_lifetime_seconds + longest_refresh

    async def open_token_family(self, family_id: str) -> bool:
        """Record the family's creation time unless it already exists.

        Returns:
            True if this call created the record
        """
        return await self.store.put_if_absent(
            f"{TOKEN_FAMILY_PREFIX}{family_id}",
            str(int(self._clock() * 1000)),
            self._family_record_ttl(),
        )

    async def is_token_family_expired(self, family_id: str) -> bool:
        """Whether the rotation chain for ``family_id`` is older than allowed.

        The first call for an unknown family creates it and reports it as
        live. The record is never overwritten, so the age is measured from the
        chain's origin rather than from the newest rotated token.
        """
        if await self.open_token_family(family_id):
            return False
        raw = await self.store.get(f"{TOKEN_FAMILY_PREFIX}{family_id}")
        if raw is None:
            # Lost the record between the two round trips: its TTL ran out
            return True
        try:
            created_ms = int(raw)
        except ValueError:
            self.logger.warning("token_family_record_corrupt", family_id=family_id)
            return True
        elapsed_ms = int(self._clock() * 1000) - created_ms
        return elapsed_ms > self.settings.max_token_family_lifetime_seconds * 1000

    async def rotate_refresh_token(
        self,
        subject_id: str,
        old_token: str,
        new_token: str,
        family_id: str,
        ttl_seconds: int,
    ) -> None:
        """Replace the refresh slot value and retire ``old_token``.

        A remember-me marker on the old token moves to the new one.
        """
        refresh_key = f"{REFRESH_TOKEN_PREFIX}{subject_id}"
        old_ttl = await self._remaining_or_default(refresh_key, ttl_seconds)
        await self.blacklist_token(old_token, old_ttl)

        carried_marker = await self.is_remember_me_token(old_token)
        if carried_marker:
            await self.store.delete(f"{REMEMBER_ME_PREFIX}{old_token}")
            await self.store.put(f"{REMEMBER_ME_PREFIX}{new_token}", "1", ttl_seconds)

        await self.store.put(refresh_key, new_token, ttl_seconds)
        await self._index_token_key(subject_id, refresh_key, ttl_seconds)
        await self.open_token_family(family_id)
        self.logger.debug(
            "refresh_token_rotated",
            subject_id=subject_id,
            family_id=family_id,
            remember_me=carried_marker,
        )


__all__ = [
    "ACCESS_TOKEN_PREFIX",
    "BLACKLISTED_TOKEN_PREFIX",
    "REFRESH_TOKEN_PREFIX",
    "REMEMBER_ME_PREFIX",
    "SessionLifecycleManager",
    "TOKEN_FAMILY_PREFIX",
    "USER_TOKENS_PREFIX",
]
