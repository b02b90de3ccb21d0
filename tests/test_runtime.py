from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from sessionvault.service.runtime import Runtime
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.redis_cache import RedisStore


@pytest.mark.asyncio
async def test_runtime_with_memory_store(settings):
    async with Runtime(settings) as runtime:
        assert isinstance(runtime.store, MemoryStore)
        pair = await runtime.auth.issue("user-1", "a@example.com")
        refreshed = await runtime.auth.refresh(pair.refresh_token)
        assert runtime.auth.verify_access_token(refreshed.access_token).user_id == "user-1"


@pytest.mark.asyncio
async def test_runtime_accepts_injected_store(settings, store):
    runtime = Runtime(settings, store=store)

    assert runtime.store is store
    assert runtime.refresh_tokens.sessions is runtime.sessions
    await runtime.close()


def test_unreachable_redis_falls_back_in_test_mode(settings):
    configured = settings.model_copy(update={"use_memory_store": False, "test_mode": True})

    with patch.object(
        RedisStore, "verify_connection", side_effect=RedisConnectionError("refused")
    ):
        runtime = Runtime(configured)

    assert isinstance(runtime.store, MemoryStore)


def test_unreachable_redis_is_fatal_otherwise(settings):
    configured = settings.model_copy(
        update={"use_memory_store": False, "test_mode": False, "allow_memory_fallback_dev": False}
    )

    with patch.object(
        RedisStore, "verify_connection", side_effect=RedisConnectionError("refused")
    ):
        with pytest.raises(RuntimeError):
            Runtime(configured)
