from __future__ import annotations

import contextlib
from typing import Any, Iterator, Optional, Sequence, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

from agentcanvas.logging import get_logger
from agentcanvas.storage.kv import StoreCapabilities

logger = get_logger(__name__)

_PROBE_KEY = "agentcanvas:capability-probe"


class RedisKVStore:
    """Thin async Redis wrapper implementing the KV store surface."""

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @contextlib.contextmanager
    def _sync_client(self) -> Iterator[Redis]:
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url, decode_responses=True, socket_timeout=self.socket_timeout
        )
        try:
            yield sync_client
        finally:
            sync_client.close()

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        with self._sync_client() as client:
            client.ping()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        result = await self.client.set(key, value, ex=ex, nx=nx)
        return bool(result)

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    async def incr(self, key: str) -> int:
        return int(await self.client.incr(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def pttl(self, key: str) -> int:
        return int(await self.client.pttl(key))

    async def sadd(self, key: str, member: str) -> int:
        return int(await self.client.sadd(key, member))

    async def srem(self, key: str, member: str) -> int:
        return int(await self.client.srem(key, member))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def getdel(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def eval(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        return await self.client.eval(script, len(keys), *keys, *args)

    def probe_capabilities(self) -> StoreCapabilities:
        """Detect server-side scripting and GETDEL (Redis 6.2+) support."""
        with self._sync_client() as client:
            scripting = True
            try:
                client.eval("return 1", 0)
            except ResponseError as exc:
                scripting = False
                logger.warning("redis_scripting_unavailable", error=str(exc))

            getdel = True
            try:
                client.getdel(_PROBE_KEY)
            except ResponseError as exc:
                getdel = False
                logger.warning("redis_getdel_unavailable", error=str(exc))

        return StoreCapabilities(scripting=scripting, getdel=getdel, in_process=False)

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisKVStore"]
