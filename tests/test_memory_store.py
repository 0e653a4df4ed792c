"""Unit tests for the in-process credential store.

Tests for:
- TTL expiry driven by an injected clock
- Atomic increment semantics
- put_if_absent
- Set membership and type errors
"""

import pytest

from tokenward.storage.errors import StoreError


class TestStringKeys:
    async def test_put_then_get(self, store):
        await store.put("k", "v", 10)
        assert await store.get("k") == "v"
        assert await store.exists("k")

    async def test_value_expires_with_ttl(self, store, clock):
        await store.put("k", "v", 10)
        clock.advance(9)
        assert await store.get("k") == "v"
        clock.advance(1)
        assert await store.get("k") is None
        assert not await store.exists("k")

    async def test_ttl_remaining(self, store, clock):
        await store.put("k", "v", 10)
        clock.advance(2.5)
        assert await store.ttl_remaining("k") == 8
        assert await store.ttl_remaining("missing") is None

    async def test_non_positive_ttl_rejected(self, store):
        with pytest.raises(ValueError):
            await store.put("k", "v", 0)

    async def test_delete_counts_live_keys(self, store):
        await store.put("a", "1", 10)
        await store.put("b", "1", 10)
        assert await store.delete("a", "b", "c") == 2
        assert await store.get("a") is None

    async def test_put_if_absent(self, store, clock):
        assert await store.put_if_absent("k", "first", 5)
        assert not await store.put_if_absent("k", "second", 5)
        assert await store.get("k") == "first"
        clock.advance(5)
        assert await store.put_if_absent("k", "third", 5)


class TestCounters:
    async def test_incr_creates_without_expiry(self, store):
        assert await store.incr("c") == 1
        assert await store.incr("c") == 2
        assert await store.ttl_remaining("c") is None

    async def test_incr_keeps_existing_expiry(self, store, clock):
        await store.incr("c")
        await store.expire("c", 60)
        clock.advance(30)
        assert await store.incr("c") == 2
        assert await store.ttl_remaining("c") == 30

    async def test_incr_on_non_integer_raises(self, store):
        await store.put("c", "abc", 10)
        with pytest.raises(StoreError):
            await store.incr("c")

    async def test_expire_missing_key(self, store):
        assert await store.expire("missing", 10) is False


class TestSets:
    async def test_members(self, store):
        await store.add_to_set("s", "a")
        await store.add_to_set("s", "b")
        await store.add_to_set("s", "a")
        assert await store.members("s") == {"a", "b"}
        assert await store.members("empty") == set()

    async def test_wrong_type_raises(self, store):
        await store.add_to_set("s", "a")
        with pytest.raises(StoreError):
            await store.get("s")
        await store.put("k", "v", 10)
        with pytest.raises(StoreError):
            await store.add_to_set("k", "a")

    async def test_close_clears_entries(self, store):
        await store.put("k", "v", 10)
        await store.close()
        assert await store.get("k") is None
