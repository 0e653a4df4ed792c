"""Tests for the session lifecycle manager: slots, blacklist, rotation and families."""

from tokenward.service.sessions import (
    ACCESS_TOKEN_PREFIX,
    REFRESH_TOKEN_PREFIX,
    REMEMBER_ME_PREFIX,
    TOKEN_FAMILY_PREFIX,
    USER_TOKENS_PREFIX,
)

DAY = 24 * 3600


class TestSlots:
    async def test_saved_refresh_token_validates(self, sessions):
        await sessions.save_refresh_token("u1", "refresh-1", 3600)
        assert await sessions.validate_refresh_token("u1", "refresh-1")

    async def test_validation_is_exact_match(self, sessions):
        await sessions.save_refresh_token("u1", "refresh-1", 3600)
        assert not await sessions.validate_refresh_token("u1", "refresh-")
        assert not await sessions.validate_refresh_token("u2", "refresh-1")

    async def test_second_save_overwrites_slot(self, sessions):
        await sessions.save_refresh_token("u1", "device-a", 3600)
        await sessions.save_refresh_token("u1", "device-b", 3600)
        assert not await sessions.validate_refresh_token("u1", "device-a")
        assert await sessions.validate_refresh_token("u1", "device-b")

    async def test_slot_expires(self, sessions, clock):
        await sessions.save_refresh_token("u1", "refresh-1", 60)
        clock.advance(61)
        assert not await sessions.validate_refresh_token("u1", "refresh-1")

    async def test_access_slot(self, sessions):
        await sessions.save_access_token("u1", "access-1", 600)
        assert await sessions.get_latest_access_token("u1") == "access-1"
        assert await sessions.is_access_token_current("u1", "access-1")
        assert not await sessions.is_access_token_current("u1", "access-0")
        assert await sessions.get_latest_access_token("nobody") is None

    async def test_index_tracks_both_slots(self, sessions, store):
        await sessions.save_access_token("u1", "a", 600)
        await sessions.save_refresh_token("u1", "r", 7200)
        members = await store.members(f"{USER_TOKENS_PREFIX}u1")
        assert members == {f"{ACCESS_TOKEN_PREFIX}u1", f"{REFRESH_TOKEN_PREFIX}u1"}
        # Index lives as long as the longest indexed token
        assert await store.ttl_remaining(f"{USER_TOKENS_PREFIX}u1") == 7200


class TestBlacklist:
    async def test_blacklisted_until_ttl_elapses(self, sessions, clock):
        await sessions.blacklist_token("t", 100)
        assert await sessions.is_token_blacklisted("t")
        clock.advance(99)
        assert await sessions.is_token_blacklisted("t")
        clock.advance(1)
        assert not await sessions.is_token_blacklisted("t")

    async def test_expired_token_is_not_blacklisted(self, sessions):
        await sessions.blacklist_token("t", 0)
        await sessions.blacklist_token("t2", -5)
        assert not await sessions.is_token_blacklisted("t")
        assert not await sessions.is_token_blacklisted("t2")


class TestRememberMe:
    async def test_marker_requires_flag_and_long_ttl(self, sessions):
        await sessions.save_refresh_token("u1", "short", DAY, remember_me=True)
        await sessions.save_refresh_token("u2", "long-no-flag", 7 * DAY)
        await sessions.save_refresh_token("u3", "long", 20 * DAY, remember_me=True)
        assert not await sessions.is_remember_me_token("short")
        assert not await sessions.is_remember_me_token("long-no-flag")
        assert await sessions.is_remember_me_token("long")

    async def test_marker_moves_on_rotation(self, sessions):
        await sessions.save_refresh_token("u1", "T", 20 * DAY, remember_me=True)
        await sessions.rotate_refresh_token("u1", "T", "T2", "fam", 20 * DAY)
        assert await sessions.is_remember_me_token("T2")
        assert not await sessions.is_remember_me_token("T")

    async def test_no_marker_created_when_old_had_none(self, sessions):
        await sessions.save_refresh_token("u1", "T", 7 * DAY)
        await sessions.rotate_refresh_token("u1", "T", "T2", "fam", 7 * DAY)
        assert not await sessions.is_remember_me_token("T2")


class TestRotation:
    async def test_rotation_swaps_valid_token(self, sessions):
        await sessions.save_refresh_token("u1", "old", 3600)
        await sessions.rotate_refresh_token("u1", "old", "new", "fam", 3600)
        assert not await sessions.validate_refresh_token("u1", "old")
        assert await sessions.validate_refresh_token("u1", "new")
        assert await sessions.is_token_blacklisted("old")

    async def test_old_token_blacklisted_for_remaining_slot_life(self, sessions, store, clock):
        await sessions.save_refresh_token("u1", "old", 3600)
        clock.advance(600)
        await sessions.rotate_refresh_token("u1", "old", "new", "fam", 3600)
        key = "token:blacklisted:old"
        assert await store.ttl_remaining(key) == 3000

    async def test_rotation_creates_missing_family(self, sessions, store):
        await sessions.save_refresh_token("u1", "old", 3600)
        await sessions.rotate_refresh_token("u1", "old", "new", "fam-x", 3600)
        assert await store.exists(f"{TOKEN_FAMILY_PREFIX}fam-x")


class TestRevocation:
    async def test_remove_refresh_token(self, sessions, store):
        await sessions.save_access_token("u1", "a", 600)
        await sessions.save_refresh_token("u1", "r", 20 * DAY, remember_me=True)
        await sessions.remove_refresh_token("u1")

        assert await sessions.get_latest_access_token("u1") is None
        assert not await sessions.validate_refresh_token("u1", "r")
        assert await sessions.is_token_blacklisted("a")
        assert await sessions.is_token_blacklisted("r")
        assert not await store.exists(f"{REMEMBER_ME_PREFIX}r")

    async def test_remove_with_empty_slots(self, sessions):
        await sessions.remove_refresh_token("nobody")
        assert await sessions.get_latest_access_token("nobody") is None

    async def test_revoke_all(self, sessions, store):
        await sessions.save_access_token("u1", "a", 600)
        await sessions.save_refresh_token("u1", "r", 20 * DAY, remember_me=True)

        revoked = await sessions.revoke_all_user_tokens("u1")

        assert revoked == 2
        assert await sessions.is_token_blacklisted("a")
        assert await sessions.is_token_blacklisted("r")
        assert not await sessions.validate_refresh_token("u1", "r")
        assert not await sessions.is_remember_me_token("r")
        assert not await store.exists(f"{USER_TOKENS_PREFIX}u1")

    async def test_revoke_all_skips_expired_slots(self, sessions, clock):
        await sessions.save_access_token("u1", "a", 60)
        await sessions.save_refresh_token("u1", "r", 3600)
        clock.advance(120)
        assert await sessions.revoke_all_user_tokens("u1") == 1
        assert not await sessions.is_token_blacklisted("a")


class TestTokenFamilies:
    async def test_first_check_creates_family(self, sessions, store):
        assert not await sessions.is_token_family_expired("fam")
        assert await store.exists(f"{TOKEN_FAMILY_PREFIX}fam")

    async def test_family_ages_from_creation(self, sessions, clock, settings):
        assert await sessions.open_token_family("fam")
        assert not await sessions.open_token_family("fam")
        clock.advance(settings.max_token_family_lifetime_seconds - 1)
        assert not await sessions.is_token_family_expired("fam")

    async def test_record_never_overwritten(self, sessions, store, clock):
        await sessions.open_token_family("fam")
        original = await store.get(f"{TOKEN_FAMILY_PREFIX}fam")
        clock.advance(3600)
        await sessions.rotate_refresh_token("u1", "old", "new", "fam", 3600)
        assert await store.get(f"{TOKEN_FAMILY_PREFIX}fam") == original

    async def test_corrupt_record_counts_as_expired(self, sessions, store):
        await store.put(f"{TOKEN_FAMILY_PREFIX}fam", "not-a-timestamp", 60)
        assert await sessions.is_token_family_expired("fam")

    async def test_old_record_counts_as_expired(self, sessions, store, clock, settings):
        created_ms = int((clock() - settings.max_token_family_lifetime_seconds - 10) * 1000)
        await store.put(f"{TOKEN_FAMILY_PREFIX}fam", str(created_ms), 60)
        assert await sessions.is_token_family_expired("fam")
