from __future__ import annotations

import asyncio
import fnmatch
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Union


@dataclass
class _Entry:
    value: Union[str, Set[str]]
    expires_at: Optional[float] = None


class MemoryStore:
    """In-process key-value store with Redis-like TTL and set semantics.

    Used for tests and local development. Expiry is evaluated lazily against
    ``clock`` so tests can advance time without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._data: Dict[str, _Entry] = {}
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()

    async def _yield(self) -> None:
        # Let concurrent coroutines interleave like they would on a network store
        await asyncio.sleep(0)

    def _live_entry(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.clock():
            del self._data[key]
            return None
        return entry

    def _live_string(self, key: str) -> Optional[str]:
        entry = self._live_entry(key)
        if entry is None or not isinstance(entry.value, str):
            return None
        return entry.value

    def _live_set(self, key: str) -> Optional[Set[str]]:
        entry = self._live_entry(key)
        if entry is None or not isinstance(entry.value, set):
            return None
        return entry.value

    async def get(self, key: str) -> Optional[str]:
        await self._yield()
        with self._data_lock:
            return self._live_string(key)

    async def get_many(self, keys: Iterable[str]) -> List[Optional[str]]:
        await self._yield()
        with self._data_lock:
            return [self._live_string(key) for key in keys]

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._yield()
        ttl = max(1, int(ttl_seconds))
        with self._data_lock:
            self._data[key] = _Entry(value=value, expires_at=self.clock() + ttl)

    async def delete(self, *keys: str) -> int:
        await self._yield()
        removed = 0
        with self._data_lock:
            for key in keys:
                if self._live_entry(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    async def pop(self, key: str) -> Optional[str]:
        await self._yield()
        with self._data_lock:
            value = self._live_string(key)
            if value is not None:
                del self._data[key]
            return value

    async def add_to_set(self, set_key: str, member: str) -> None:
        await self._yield()
        with self._data_lock:
            members = self._live_set(set_key)
            if members is None:
                self._data[set_key] = _Entry(value={member})
            else:
                members.add(member)

    async def remove_from_set(self, set_key: str, member: str) -> None:
        await self._yield()
        with self._data_lock:
            members = self._live_set(set_key)
            if members is None:
                return
            members.discard(member)
            if not members:
                # Redis drops a set once its last member is removed
                del self._data[set_key]

    async def set_members(self, set_key: str) -> Set[str]:
        await self._yield()
        with self._data_lock:
            return set(self._live_set(set_key) or ())

    async def is_member(self, set_key: str, member: str) -> bool:
        await self._yield()
        with self._data_lock:
            members = self._live_set(set_key)
            return bool(members and member in members)

    async def exists(self, key: str) -> bool:
        await self._yield()
        with self._data_lock:
            return self._live_entry(key) is not None

    async def expire_set(self, set_key: str, ttl_seconds: int) -> bool:
        await self._yield()
        ttl = max(1, int(ttl_seconds))
        with self._data_lock:
            entry = self._live_entry(set_key)
            if entry is None:
                return False
            entry.expires_at = self.clock() + ttl
            return True

    async def scan_keys(self, pattern: str, *, count: int = 100) -> AsyncIterator[str]:
        with self._data_lock:
            snapshot = sorted(self._data.keys())
        batch = max(1, count)
        for start in range(0, len(snapshot), batch):
            await self._yield()
            with self._data_lock:
                page = [
                    key
                    for key in snapshot[start : start + batch]
                    if fnmatch.fnmatchcase(key, pattern) and self._live_entry(key) is not None
                ]
            for key in page:
                yield key

    def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime of ``key`` in seconds; None if absent or persistent."""
        with self._data_lock:
            entry = self._live_entry(key)
            if entry is None or entry.expires_at is None:
                return None
            return entry.expires_at - self.clock()

    def keys(self, pattern: str = "*") -> List[str]:
        with self._data_lock:
            return sorted(
                key
                for key in list(self._data.keys())
                if fnmatch.fnmatchcase(key, pattern) and self._live_entry(key) is not None
            )

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()


__all__ = ["MemoryStore"]
