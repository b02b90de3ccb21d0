import asyncio

import pytest

from sessionvault.storage.memory import MemoryStore


class TestMemoryStoreKeys:
    @pytest.mark.asyncio
    async def test_set_get_and_expiry(self, store, clock):
        await store.set_with_ttl("k", "v", 60)

        assert await store.get("k") == "v"
        assert store.ttl("k") == 60

        clock.advance(60)

        assert await store.get("k") is None
        assert await store.exists("k") is False

    @pytest.mark.asyncio
    async def test_get_many_preserves_order(self, store):
        await store.set_with_ttl("a", "1", 60)
        await store.set_with_ttl("c", "3", 60)

        assert await store.get_many(["a", "b", "c"]) == ["1", None, "3"]

    @pytest.mark.asyncio
    async def test_delete_counts_live_keys_only(self, store, clock):
        await store.set_with_ttl("a", "1", 10)
        await store.set_with_ttl("b", "2", 100)
        clock.advance(20)

        assert await store.delete("a", "b", "missing") == 1

    @pytest.mark.asyncio
    async def test_pop_returns_value_once(self, store):
        await store.set_with_ttl("k", "v", 60)

        assert await store.pop("k") == "v"
        assert await store.pop("k") is None

    @pytest.mark.asyncio
    async def test_concurrent_pops_single_winner(self, store):
        await store.set_with_ttl("k", "v", 60)

        results = await asyncio.gather(*(store.pop("k") for _ in range(5)))

        assert results.count("v") == 1
        assert results.count(None) == 4


class TestMemoryStoreSets:
    @pytest.mark.asyncio
    async def test_membership(self, store):
        await store.add_to_set("s", "a")
        await store.add_to_set("s", "b")
        await store.add_to_set("s", "a")

        assert await store.set_members("s") == {"a", "b"}
        assert await store.is_member("s", "a") is True
        assert await store.is_member("s", "z") is False

    @pytest.mark.asyncio
    async def test_removing_last_member_drops_set(self, store):
        await store.add_to_set("s", "a")
        await store.remove_from_set("s", "a")

        assert await store.exists("s") is False
        assert await store.set_members("s") == set()

    @pytest.mark.asyncio
    async def test_expire_set(self, store, clock):
        assert await store.expire_set("s", 30) is False

        await store.add_to_set("s", "a")
        assert store.ttl("s") is None
        assert await store.expire_set("s", 30) is True

        clock.advance(30)

        assert await store.is_member("s", "a") is False

    @pytest.mark.asyncio
    async def test_string_and_set_namespaces_do_not_mix(self, store):
        await store.add_to_set("s", "a")

        assert await store.get("s") is None


class TestMemoryStoreScan:
    @pytest.mark.asyncio
    async def test_scan_paginates_and_filters(self, store, clock):
        for i in range(25):
            await store.set_with_ttl(f"refresh_token:{i:02d}", "x", 60)
        await store.set_with_ttl("session:1", "x", 60)
        await store.set_with_ttl("refresh_token:old", "x", 5)
        clock.advance(10)

        found = [key async for key in store.scan_keys("refresh_token:*", count=4)]

        assert len(found) == 25
        assert "refresh_token:old" not in found
        assert "session:1" not in found

    @pytest.mark.asyncio
    async def test_close_clears_data(self):
        store = MemoryStore()
        await store.set_with_ttl("k", "v", 60)

        await store.close()

        assert store.keys() == []
        assert await store.ping() is True
