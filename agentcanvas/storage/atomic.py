"""Race-free KV primitives with capability-selected strategies.

Three interchangeable strategies implement the same five operations:

- ``ScriptedAtomicOps`` runs each operation as one Lua script on the server.
- ``LockedAtomicOps`` serves the in-process store by holding its lock across
  the composite operation.
- ``BestEffortAtomicOps`` issues separate commands. It is racy: a magic link
  may be consumed twice by concurrent redeemers, a rate-limit counter may
  miss its expiry if the process dies between INCR and EXPIRE, and the
  allowlist index may under-list an entry, or keep a member whose entry is
  gone, until the next add/remove of that address repairs it.

:func:`select_atomic_ops` picks exactly one strategy from the probed store
capabilities and refuses the best-effort one when strict atomicity is
required.
"""

from __future__ import annotations

from typing import Optional, Tuple

from agentcanvas.logging import get_logger
from agentcanvas.storage.errors import AtomicityUnavailableError
from agentcanvas.storage.kv import KVStore, StoreCapabilities

logger = get_logger(__name__)

_GET_AND_DELETE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

_INCR_WITH_EXPIRY_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], window)
end
local pttl = redis.call('PTTL', KEYS[1])
if pttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  pttl = window * 1000
end
return {current, pttl}
"""

_SET_IF_ABSENT_INDEXED_SCRIPT = """
local created = redis.call('SET', KEYS[1], ARGV[1], 'NX')
redis.call('SADD', KEYS[2], ARGV[2])
if created then
  return 1
end
return 0
"""

_DELETE_INDEXED_SCRIPT = """
local removed = redis.call('DEL', KEYS[1])
redis.call('SREM', KEYS[2], ARGV[1])
return removed
"""

_PRUNE_INDEX_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return redis.call('SREM', KEYS[2], ARGV[1])
end
return 0
"""


class AtomicOps:
    """Interface shared by all strategies."""

    name: str = "abstract"
    atomic: bool = True

    def __init__(self, store: KVStore) -> None:
        self.store = store

    async def get_and_delete(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def incr_with_expiry(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment ``key``; returns ``(count, ttl_remaining_ms)``."""
        raise NotImplementedError

    async def set_if_absent_indexed(
        self, key: str, value: str, index_key: str, member: str
    ) -> bool:
        raise NotImplementedError

    async def delete_indexed(self, key: str, index_key: str, member: str) -> bool:
        raise NotImplementedError

    async def prune_index(self, key: str, index_key: str, member: str) -> bool:
        """Drop ``member`` from the index only while ``key`` is absent."""
        raise NotImplementedError


class ScriptedAtomicOps(AtomicOps):
    name = "scripted"
    atomic = True

    async def get_and_delete(self, key: str) -> Optional[str]:
        return await self.store.eval(_GET_AND_DELETE_SCRIPT, [key], [])

    async def incr_with_expiry(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, pttl = await self.store.eval(_INCR_WITH_EXPIRY_SCRIPT, [key], [window_seconds])
        return int(count), int(pttl)

    async def set_if_absent_indexed(
        self, key: str, value: str, index_key: str, member: str
    ) -> bool:
        created = await self.store.eval(
            _SET_IF_ABSENT_INDEXED_SCRIPT, [key, index_key], [value, member]
        )
        return int(created) == 1

    async def delete_indexed(self, key: str, index_key: str, member: str) -> bool:
        removed = await self.store.eval(_DELETE_INDEXED_SCRIPT, [key, index_key], [member])
        return int(removed) > 0

    async def prune_index(self, key: str, index_key: str, member: str) -> bool:
        removed = await self.store.eval(_PRUNE_INDEX_SCRIPT, [key, index_key], [member])
        return int(removed) > 0


class LockedAtomicOps(AtomicOps):
    """Composite operations under the in-process store's lock."""

    name = "locked"
    atomic = True

    async def get_and_delete(self, key: str) -> Optional[str]:
        async with self.store.locked():
            value = await self.store.get(key)
            if value is not None:
                await self.store.delete(key)
            return value

    async def incr_with_expiry(self, key: str, window_seconds: int) -> Tuple[int, int]:
        async with self.store.locked():
            count = await self.store.incr(key)
            pttl = await self.store.pttl(key)
            if count == 1 or pttl < 0:
                await self.store.expire(key, window_seconds)
                pttl = window_seconds * 1000
            return count, pttl

    async def set_if_absent_indexed(
        self, key: str, value: str, index_key: str, member: str
    ) -> bool:
        async with self.store.locked():
            created = await self.store.set(key, value, nx=True)
            await self.store.sadd(index_key, member)
            return created

    async def delete_indexed(self, key: str, index_key: str, member: str) -> bool:
        async with self.store.locked():
            removed = await self.store.delete(key)
            await self.store.srem(index_key, member)
            return removed > 0

    async def prune_index(self, key: str, index_key: str, member: str) -> bool:
        async with self.store.locked():
            if await self.store.get(key) is not None:
                return False
            return await self.store.srem(index_key, member) > 0


class BestEffortAtomicOps(AtomicOps):
    """Separate round trips; see the module docstring for the races."""

    name = "best_effort"
    atomic = False

    def __init__(self, store: KVStore, *, use_getdel: bool = False) -> None:
        super().__init__(store)
        self.use_getdel = use_getdel

    async def get_and_delete(self, key: str) -> Optional[str]:
        if self.use_getdel:
            return await self.store.getdel(key)
        value = await self.store.get(key)
        if value is not None:
            await self.store.delete(key)
        return value

    async def incr_with_expiry(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count = await self.store.incr(key)
        if count == 1:
            await self.store.expire(key, window_seconds)
        pttl = await self.store.pttl(key)
        if pttl < 0:
            # Counter lost its expiry between INCR and EXPIRE; repair it
            await self.store.expire(key, window_seconds)
            pttl = window_seconds * 1000
        return count, pttl

    async def set_if_absent_indexed(
        self, key: str, value: str, index_key: str, member: str
    ) -> bool:
        created = await self.store.set(key, value, nx=True)
        await self.store.sadd(index_key, member)
        return created

    async def delete_indexed(self, key: str, index_key: str, member: str) -> bool:
        removed = await self.store.delete(key)
        await self.store.srem(index_key, member)
        return removed > 0

    async def prune_index(self, key: str, index_key: str, member: str) -> bool:
        if await self.store.get(key) is not None:
            return False
        return await self.store.srem(index_key, member) > 0


def select_atomic_ops(
    store: KVStore, capabilities: StoreCapabilities, *, require_atomic: bool
) -> AtomicOps:
    """Pick one strategy for the lifetime of the process."""
    if capabilities.scripting:
        ops: AtomicOps = ScriptedAtomicOps(store)
    elif capabilities.in_process:
        ops = LockedAtomicOps(store)
    elif require_atomic:
        raise AtomicityUnavailableError(
            "KV store lacks server-side scripting and strict atomicity is required",
            detail={"getdel": capabilities.getdel},
        )
    else:
        ops = BestEffortAtomicOps(store, use_getdel=capabilities.getdel)
        logger.warning(
            "kv_atomicity_degraded",
            strategy=ops.name,
            getdel=capabilities.getdel,
            message=(
                "Rate-limit counters and allowlist index updates are not atomic; "
                "magic-link consumption is "
                + ("atomic via GETDEL" if capabilities.getdel else "at-least-once")
            ),
        )
    logger.info("kv_atomic_strategy_selected", strategy=ops.name, atomic=ops.atomic)
    return ops


__all__ = [
    "AtomicOps",
    "ScriptedAtomicOps",
    "LockedAtomicOps",
    "BestEffortAtomicOps",
    "select_atomic_ops",
]
