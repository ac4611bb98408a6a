from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence, Set, Tuple, Union

from agentcanvas.storage.kv import StoreCapabilities

_Value = Union[str, Set[str]]


class MemoryKVStore:
    """In-process KV store with per-key expiry for tests and local development.

    Every single operation runs under one re-entrant lock. Callers needing a
    composite atomic unit hold :meth:`locked` across the whole sequence; it
    is an asyncio lock, so other coroutines wait even if a step suspends.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.RLock()
        self._unit_lock = asyncio.Lock()

    @contextlib.asynccontextmanager
    async def locked(self) -> AsyncIterator[None]:
        async with self._unit_lock:
            yield

    def _live(self, key: str) -> Optional[Tuple[_Value, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _string(self, key: str) -> Optional[str]:
        entry = self._live(key)
        if entry is None:
            return None
        value, _ = entry
        if not isinstance(value, str):
            raise TypeError(f"key {key!r} holds a set, not a string")
        return value

    def _members(self, key: str) -> Set[str]:
        entry = self._live(key)
        if entry is None:
            return set()
        value, _ = entry
        if not isinstance(value, set):
            raise TypeError(f"key {key!r} holds a string, not a set")
        return value

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._string(key)

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        with self._lock:
            if nx and self._live(key) is not None:
                return False
            expires_at = self._clock() + ex if ex is not None else None
            self._data[key] = (value, expires_at)
            return True

    async def delete(self, key: str) -> int:
        with self._lock:
            if self._live(key) is None:
                return 0
            del self._data[key]
            return 1

    async def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", None)
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._data[key] = (str(count), expires_at)
            return count

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + seconds)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            expires_at = entry[1]
            if expires_at is None:
                return -1
            # Redis rounds remaining TTL to whole seconds
            return max(0, int(round(expires_at - self._clock())))

    async def pttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            expires_at = entry[1]
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at * 1000)) - int(round(self._clock() * 1000)))

    async def sadd(self, key: str, member: str) -> int:
        with self._lock:
            members = self._members(key)
            if member in members:
                return 0
            expires_at = self._data[key][1] if key in self._data else None
            self._data[key] = (members | {member}, expires_at)
            return 1

    async def srem(self, key: str, member: str) -> int:
        with self._lock:
            members = self._members(key)
            if member not in members:
                return 0
            remaining = members - {member}
            if remaining:
                self._data[key] = (remaining, self._data[key][1])
            else:
                del self._data[key]
            return 1

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._members(key))

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._string(key)
            if value is not None:
                del self._data[key]
            return value

    async def eval(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        raise NotImplementedError("MemoryKVStore does not support server-side scripting")

    def probe_capabilities(self) -> StoreCapabilities:
        return StoreCapabilities(scripting=False, getdel=True, in_process=True)

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


__all__ = ["MemoryKVStore"]
