"""Tests for the KV stores and the atomic primitive strategies.

Covers:
- MemoryKVStore expiry and Redis-compatible ttl semantics
- Consume-once under concurrent callers
- Increment-with-expiry never extending an open window
- Indexed set-if-absent, delete and index pruning
- The Lua scripts executed by a real script engine
- Strategy selection and fail-fast when atomicity is required
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentcanvas.storage.atomic import (
    BestEffortAtomicOps,
    LockedAtomicOps,
    ScriptedAtomicOps,
    select_atomic_ops,
)
from agentcanvas.storage.errors import AtomicityUnavailableError
from agentcanvas.storage.kv import StoreCapabilities
from agentcanvas.storage.memory_kv import MemoryKVStore


class SuspendingStore(MemoryKVStore):
    """Memory store whose reads yield to the event loop, like a network round trip."""

    async def get(self, key):
        value = await super().get(key)
        await asyncio.sleep(0)
        return value


class TestMemoryKVStore:
    """Behaviour the atomic strategies rely on."""

    async def test_ttl_reports_missing_and_persistent_keys(self, memory_store):
        assert await memory_store.ttl("absent") == -2
        await memory_store.set("persistent", "v")
        assert await memory_store.ttl("persistent") == -1

    async def test_expired_keys_disappear(self, memory_store, clock):
        await memory_store.set("k", "v", ex=10)
        clock.advance(9)
        assert await memory_store.get("k") == "v"
        clock.advance(1)
        assert await memory_store.get("k") is None

    async def test_set_nx_only_writes_absent_keys(self, memory_store):
        assert await memory_store.set("k", "first", nx=True) is True
        assert await memory_store.set("k", "second", nx=True) is False
        assert await memory_store.get("k") == "first"

    async def test_incr_keeps_existing_expiry(self, memory_store, clock):
        await memory_store.incr("counter")
        await memory_store.expire("counter", 60)
        clock.advance(20)
        assert await memory_store.incr("counter") == 2
        assert await memory_store.ttl("counter") == 40

    async def test_pttl_has_millisecond_resolution(self, memory_store, clock):
        clock.advance(0.6)
        await memory_store.set("k", "v", ex=60)
        clock.advance(0.35)
        assert await memory_store.pttl("k") == 59_650
        assert await memory_store.pttl("absent") == -2
        await memory_store.set("persistent", "v")
        assert await memory_store.pttl("persistent") == -1

    async def test_set_members_are_removed_with_last_member(self, memory_store):
        await memory_store.sadd("idx", "a")
        await memory_store.sadd("idx", "b")
        await memory_store.srem("idx", "a")
        assert await memory_store.smembers("idx") == {"b"}
        await memory_store.srem("idx", "b")
        assert await memory_store.ttl("idx") == -2

    def test_capabilities(self, memory_store):
        caps = memory_store.probe_capabilities()
        assert caps == StoreCapabilities(scripting=False, getdel=True, in_process=True)


class TestLockedAtomicOps:
    """Composite operations for the in-process store."""

    async def test_get_and_delete_has_single_winner(self, memory_store, locked_ops):
        await memory_store.set("magiclink:abc", "payload")

        results = await asyncio.gather(
            *(locked_ops.get_and_delete("magiclink:abc") for _ in range(50))
        )

        assert [r for r in results if r is not None] == ["payload"]
        assert await memory_store.get("magiclink:abc") is None

    async def test_get_and_delete_missing_key(self, locked_ops):
        assert await locked_ops.get_and_delete("nothing") is None

    async def test_incr_with_expiry_sets_window_once(self, locked_ops, clock):
        count, ttl = await locked_ops.incr_with_expiry("ratelimit:ip:1.2.3.4", 900)
        assert (count, ttl) == (1, 900_000)

        clock.advance(100)
        count, ttl = await locked_ops.incr_with_expiry("ratelimit:ip:1.2.3.4", 900)
        assert (count, ttl) == (2, 800_000)

    async def test_incr_with_expiry_restarts_after_window(self, locked_ops, clock):
        await locked_ops.incr_with_expiry("k", 60)
        await locked_ops.incr_with_expiry("k", 60)
        clock.advance(60)
        count, ttl = await locked_ops.incr_with_expiry("k", 60)
        assert (count, ttl) == (1, 60_000)

    async def test_incr_with_expiry_repairs_counter_without_ttl(self, memory_store, locked_ops):
        await memory_store.incr("k")
        count, ttl = await locked_ops.incr_with_expiry("k", 30)
        assert count == 2
        assert ttl == 30_000
        assert await memory_store.ttl("k") == 30

    async def test_set_if_absent_indexed(self, memory_store, locked_ops):
        assert await locked_ops.set_if_absent_indexed("allowlist:a@x.io", "{}", "allowlist:index", "a@x.io")
        assert not await locked_ops.set_if_absent_indexed("allowlist:a@x.io", "{}", "allowlist:index", "a@x.io")
        assert await memory_store.smembers("allowlist:index") == {"a@x.io"}

    async def test_concurrent_adds_create_one_entry(self, memory_store, locked_ops):
        results = await asyncio.gather(
            *(
                locked_ops.set_if_absent_indexed("allowlist:a@x.io", str(i), "allowlist:index", "a@x.io")
                for i in range(20)
            )
        )
        assert results.count(True) == 1

    async def test_delete_indexed(self, memory_store, locked_ops):
        await locked_ops.set_if_absent_indexed("allowlist:a@x.io", "{}", "allowlist:index", "a@x.io")

        assert await locked_ops.delete_indexed("allowlist:a@x.io", "allowlist:index", "a@x.io")
        assert not await locked_ops.delete_indexed("allowlist:a@x.io", "allowlist:index", "a@x.io")
        assert await memory_store.smembers("allowlist:index") == set()

    async def test_prune_index_only_drops_orphans(self, memory_store, locked_ops):
        await locked_ops.set_if_absent_indexed("allowlist:a@x.io", "{}", "allowlist:index", "a@x.io")
        await memory_store.sadd("allowlist:index", "ghost@x.io")

        assert not await locked_ops.prune_index("allowlist:a@x.io", "allowlist:index", "a@x.io")
        assert await locked_ops.prune_index("allowlist:ghost@x.io", "allowlist:index", "ghost@x.io")
        assert await memory_store.smembers("allowlist:index") == {"a@x.io"}

    async def test_lock_holds_when_store_calls_suspend(self, clock):
        store = SuspendingStore(clock=clock)
        await store.set("magiclink:abc", "payload")
        ops = LockedAtomicOps(store)

        results = await asyncio.gather(*(ops.get_and_delete("magiclink:abc") for _ in range(10)))

        assert results.count("payload") == 1


class TestScriptedAtomicOps:
    """Lua strategy: one eval per operation with keys and args in order."""

    @pytest.fixture
    def store(self):
        store = MagicMock()
        store.eval = AsyncMock()
        return store

    async def test_get_and_delete_uses_single_eval(self, store):
        store.eval.return_value = "payload"
        ops = ScriptedAtomicOps(store)

        assert await ops.get_and_delete("magiclink:t") == "payload"
        store.eval.assert_awaited_once()
        script, keys, args = store.eval.call_args[0]
        assert "GET" in script and "DEL" in script
        assert keys == ["magiclink:t"]
        assert args == []

    async def test_incr_with_expiry_parses_pair(self, store):
        store.eval.return_value = [3, 412]
        ops = ScriptedAtomicOps(store)

        assert await ops.incr_with_expiry("ratelimit:ip:x", 900) == (3, 412)
        script, keys, args = store.eval.call_args[0]
        assert "INCR" in script and "EXPIRE" in script
        assert args == [900]

    async def test_set_if_absent_indexed(self, store):
        store.eval.return_value = 0
        ops = ScriptedAtomicOps(store)

        assert await ops.set_if_absent_indexed("k", "v", "idx", "m") is False
        _, keys, args = store.eval.call_args[0]
        assert keys == ["k", "idx"]
        assert args == ["v", "m"]

    async def test_delete_indexed(self, store):
        store.eval.return_value = 1
        ops = ScriptedAtomicOps(store)

        assert await ops.delete_indexed("k", "idx", "m") is True

    async def test_prune_index(self, store):
        store.eval.return_value = 0
        ops = ScriptedAtomicOps(store)

        assert await ops.prune_index("k", "idx", "m") is False
        script, keys, args = store.eval.call_args[0]
        assert "EXISTS" in script and "SREM" in script
        assert keys == ["k", "idx"]
        assert args == ["m"]


class TestScriptedAtomicOpsOnRedis:
    """The Lua scripts themselves, run by an in-process Redis server."""

    async def test_get_and_delete_has_single_winner(self, redis_store, scripted_ops):
        await redis_store.set("magiclink:abc", "payload", ex=900)

        results = await asyncio.gather(
            *(scripted_ops.get_and_delete("magiclink:abc") for _ in range(50))
        )

        assert [r for r in results if r is not None] == ["payload"]
        assert await redis_store.get("magiclink:abc") is None

    async def test_first_increment_sets_expiry(self, redis_store, scripted_ops):
        count, pttl = await scripted_ops.incr_with_expiry("ratelimit:ip:1.2.3.4", 900)

        assert count == 1
        assert 899_000 < pttl <= 900_000
        assert 899 <= await redis_store.ttl("ratelimit:ip:1.2.3.4") <= 900

    async def test_later_increments_keep_expiry(self, redis_store, scripted_ops):
        await scripted_ops.incr_with_expiry("k", 900)
        await redis_store.expire("k", 100)

        count, pttl = await scripted_ops.incr_with_expiry("k", 900)

        assert count == 2
        assert 99_000 < pttl <= 100_000

    async def test_counter_without_expiry_is_repaired(self, redis_store, scripted_ops):
        await redis_store.incr("k")

        count, pttl = await scripted_ops.incr_with_expiry("k", 30)

        assert count == 2
        assert pttl == 30_000
        assert 29 <= await redis_store.ttl("k") <= 30

    async def test_set_if_absent_indexed(self, redis_store, scripted_ops):
        results = await asyncio.gather(
            *(
                scripted_ops.set_if_absent_indexed("allowlist:a@x.io", str(i), "allowlist:index", "a@x.io")
                for i in range(20)
            )
        )

        assert results.count(True) == 1
        assert await redis_store.smembers("allowlist:index") == {"a@x.io"}
        assert await redis_store.get("allowlist:a@x.io") in {str(i) for i in range(20)}

    async def test_delete_indexed(self, redis_store, scripted_ops):
        await scripted_ops.set_if_absent_indexed("allowlist:a@x.io", "{}", "allowlist:index", "a@x.io")

        assert await scripted_ops.delete_indexed("allowlist:a@x.io", "allowlist:index", "a@x.io")
        assert not await scripted_ops.delete_indexed("allowlist:a@x.io", "allowlist:index", "a@x.io")
        assert await redis_store.smembers("allowlist:index") == set()

    async def test_prune_index_only_drops_orphans(self, redis_store, scripted_ops):
        await scripted_ops.set_if_absent_indexed("allowlist:a@x.io", "{}", "allowlist:index", "a@x.io")
        await redis_store.sadd("allowlist:index", "ghost@x.io")

        assert not await scripted_ops.prune_index("allowlist:a@x.io", "allowlist:index", "a@x.io")
        assert await scripted_ops.prune_index("allowlist:ghost@x.io", "allowlist:index", "ghost@x.io")
        assert await redis_store.smembers("allowlist:index") == {"a@x.io"}


class TestBestEffortAtomicOps:
    """Fallback without scripting; correct sequentially, racy under concurrency."""

    async def test_uses_getdel_when_available(self):
        store = MagicMock()
        store.getdel = AsyncMock(return_value="v")
        store.get = AsyncMock()
        ops = BestEffortAtomicOps(store, use_getdel=True)

        assert await ops.get_and_delete("k") == "v"
        store.get.assert_not_called()

    async def test_get_then_delete_without_getdel(self, memory_store):
        ops = BestEffortAtomicOps(memory_store, use_getdel=False)
        await memory_store.set("k", "v")

        assert await ops.get_and_delete("k") == "v"
        assert await ops.get_and_delete("k") is None

    async def test_incr_with_expiry(self, memory_store, clock):
        ops = BestEffortAtomicOps(memory_store)

        assert await ops.incr_with_expiry("k", 60) == (1, 60_000)
        clock.advance(10)
        assert await ops.incr_with_expiry("k", 60) == (2, 50_000)

    def test_is_not_atomic(self, memory_store):
        assert BestEffortAtomicOps(memory_store).atomic is False

    async def test_get_then_delete_races_when_store_calls_suspend(self, clock):
        store = SuspendingStore(clock=clock)
        await store.set("magiclink:abc", "payload")
        ops = BestEffortAtomicOps(store, use_getdel=False)

        results = await asyncio.gather(*(ops.get_and_delete("magiclink:abc") for _ in range(10)))

        assert results.count("payload") > 1


class TestSelectAtomicOps:
    """Exactly one strategy per process."""

    def test_prefers_scripting(self, memory_store):
        caps = StoreCapabilities(scripting=True, getdel=True)
        assert isinstance(select_atomic_ops(memory_store, caps, require_atomic=True), ScriptedAtomicOps)

    def test_in_process_store_uses_lock(self, memory_store):
        caps = memory_store.probe_capabilities()
        ops = select_atomic_ops(memory_store, caps, require_atomic=True)
        assert isinstance(ops, LockedAtomicOps)
        assert ops.atomic is True

    def test_fails_fast_when_atomicity_required(self, memory_store):
        caps = StoreCapabilities(scripting=False, getdel=True)
        with pytest.raises(AtomicityUnavailableError):
            select_atomic_ops(memory_store, caps, require_atomic=True)

    def test_degraded_strategy_logs_warning(self, memory_store):
        caps = StoreCapabilities(scripting=False, getdel=False)
        with patch("agentcanvas.storage.atomic.logger") as mock_logger:
            ops = select_atomic_ops(memory_store, caps, require_atomic=False)

        assert isinstance(ops, BestEffortAtomicOps)
        assert ops.use_getdel is False
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "kv_atomicity_degraded"
