from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Set, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionvault.logging import get_logger, mask_url_password
from sessionvault.service.errors import StoreUnavailableError

logger = get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError)


class RedisStore:
    """Redis-backed key-value store for refresh-token and session state."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic get-and-delete for servers without GETDEL (Redis < 6.2)
    _GET_AND_DELETE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        retry_attempts: int = 3,
        retry_backoff_ms: int = 50,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff_ms = max(0, retry_backoff_ms)
        # The pool is shared by every registry; redis-py clients are safe for
        # concurrent use from many tasks.
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._get_and_delete = self.client.register_script(self._GET_AND_DELETE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup."""

        # Short-lived synchronous client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        retry: bool = True,
    ) -> T:
        """Run one command bounded by the operation timeout.

        Transport failures are retried with exponential backoff (backoff_ms,
        then x4 each attempt) when ``retry`` is set. Exhaustion raises
        StoreUnavailableError; cancellation from the caller propagates untouched.
        """
        attempts = self.retry_attempts if retry else 1
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(call(), timeout=self.operation_timeout)
            except _TRANSIENT_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "store_operation_failed",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt < attempts and self.retry_backoff_ms:
                    await asyncio.sleep(self.retry_backoff_ms * (4 ** (attempt - 1)) / 1000)
        logger.error(
            "store_unavailable",
            operation=operation,
            attempts=attempts,
            redis_url=mask_url_password(self.redis_url),
        )
        raise StoreUnavailableError(
            f"key-value store unavailable during {operation}"
        ) from last_error

    async def get(self, key: str) -> Optional[str]:
        return await self._execute("get", lambda: self.client.get(key))

    async def get_many(self, keys: Iterable[str]) -> List[Optional[str]]:
        key_list = list(keys)
        if not key_list:
            return []
        return list(await self._execute("mget", lambda: self.client.mget(key_list)))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        await self._execute("set", lambda: self.client.set(key, value, ex=ttl))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._execute("delete", lambda: self.client.delete(*keys)))

    async def pop(self, key: str) -> Optional[str]:
        # Not retried: a GETDEL whose reply was lost would report "absent" on retry
        try:
            return await self._execute("getdel", lambda: self.client.getdel(key), retry=False)
        except ResponseError:
            return await self._execute(
                "getdel_script",
                lambda: self._get_and_delete(keys=[key]),
                retry=False,
            )

    async def add_to_set(self, set_key: str, member: str) -> None:
        await self._execute("sadd", lambda: self.client.sadd(set_key, member))

    async def remove_from_set(self, set_key: str, member: str) -> None:
        await self._execute("srem", lambda: self.client.srem(set_key, member))

    async def set_members(self, set_key: str) -> Set[str]:
        members = await self._execute("smembers", lambda: self.client.smembers(set_key))
        return set(members or ())

    async def is_member(self, set_key: str, member: str) -> bool:
        return bool(
            await self._execute("sismember", lambda: self.client.sismember(set_key, member))
        )

    async def exists(self, key: str) -> bool:
        return bool(await self._execute("exists", lambda: self.client.exists(key)))

    async def expire_set(self, set_key: str, ttl_seconds: int) -> bool:
        ttl = max(1, int(ttl_seconds))
        return bool(await self._execute("expire", lambda: self.client.expire(set_key, ttl)))

    async def scan_keys(self, pattern: str, *, count: int = 100) -> AsyncIterator[str]:
        """Iterate keys matching ``pattern`` with a paginated SCAN cursor.

        Each page is a separate bounded command, so a large keyspace never
        blocks the server the way KEYS would.
        """
        cursor = 0
        while True:
            current = cursor
            cursor, keys = await self._execute(
                "scan",
                lambda: self.client.scan(cursor=current, match=pattern, count=count),
            )
            for key in keys:
                yield key
            if int(cursor) == 0:
                break

    async def ping(self) -> bool:
        return bool(await self._execute("ping", lambda: self.client.ping()))

    async def close(self) -> None:
        """Close the connection pool. Call on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisStore"]
