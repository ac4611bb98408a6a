from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Set


@dataclass(frozen=True)
class StoreCapabilities:
    """What a KV backend can guarantee, probed once at startup."""

    scripting: bool = False
    getdel: bool = False
    in_process: bool = False


class KVStore(Protocol):
    """Minimal key-value surface consumed by the credential subsystem.

    Values are strings; callers own serialisation. ``ttl`` and ``pttl``
    follow Redis semantics: -2 when the key is missing, -1 when it has no expiry.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool: ...

    async def delete(self, key: str) -> int: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def pttl(self, key: str) -> int: ...

    async def sadd(self, key: str, member: str) -> int: ...

    async def srem(self, key: str, member: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def eval(self, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any: ...

    def probe_capabilities(self) -> StoreCapabilities: ...

    async def close(self) -> None: ...


__all__ = ["KVStore", "StoreCapabilities"]
