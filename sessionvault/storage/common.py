from __future__ import annotations

from typing import AsyncIterator, Iterable, List, Optional, Protocol, Set

REFRESH_TOKEN_PREFIX = "refresh_token:"
TOKEN_FAMILY_PREFIX = "token_family:"
SESSION_PREFIX = "session:"
USER_SESSIONS_PREFIX = "user_sessions:"


def refresh_token_key(token_hash: str) -> str:
    return f"{REFRESH_TOKEN_PREFIX}{token_hash}"


def token_family_key(family_id: str) -> str:
    return f"{TOKEN_FAMILY_PREFIX}{family_id}"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"{USER_SESSIONS_PREFIX}{user_id}"


class KeyValueStore(Protocol):
    """Primitives the token and session registries need from the cache.

    Every method is a network round trip in production and may raise
    ``StoreUnavailableError`` once the adapter's bounded retries are exhausted.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def get_many(self, keys: Iterable[str]) -> List[Optional[str]]: ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``; None if it was already absent."""
        ...

    async def add_to_set(self, set_key: str, member: str) -> None: ...

    async def remove_from_set(self, set_key: str, member: str) -> None: ...

    async def set_members(self, set_key: str) -> Set[str]: ...

    async def is_member(self, set_key: str, member: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def expire_set(self, set_key: str, ttl_seconds: int) -> bool: ...

    def scan_keys(self, pattern: str, *, count: int = 100) -> AsyncIterator[str]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


__all__ = [
    "KeyValueStore",
    "REFRESH_TOKEN_PREFIX",
    "TOKEN_FAMILY_PREFIX",
    "SESSION_PREFIX",
    "USER_SESSIONS_PREFIX",
    "refresh_token_key",
    "token_family_key",
    "session_key",
    "user_sessions_key",
]
