from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from agentcanvas.logging import get_logger
from agentcanvas.storage.atomic import AtomicOps
from agentcanvas.storage.models import RateLimitResult

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_seconds: int


# Defaults for the magic-link endpoint; runtime builds configured copies
IP_POLICY = RateLimitPolicy(max_requests=10, window_seconds=15 * 60)
EMAIL_POLICY = RateLimitPolicy(max_requests=5, window_seconds=15 * 60)


def rate_limit_key(identifier: str) -> str:
    """Email identifiers share a namespace distinct from client addresses."""
    kind = "email" if "@" in identifier else "ip"
    return f"ratelimit:{kind}:{identifier}"


def retry_after(result: RateLimitResult, now: float | None = None) -> int:
    """Seconds until the window resets, never less than one."""
    now = time.time() if now is None else now
    return max(1, int(result.reset_at - now))


class RateLimiter:
    """Fixed-window counter over the atomic increment-with-expiry primitive.

    The first increment in a window sets the counter's expiry; later
    increments never extend it. ``reset_at`` is derived from the counter's
    remaining lifetime in milliseconds, so it names the same second for the
    whole window whatever the sub-second timing of the queries.
    """

    def __init__(self, ops: AtomicOps, *, clock: Callable[[], float] = time.time) -> None:
        self.ops = ops
        self._clock = clock

    async def check(self, identifier: str, policy: RateLimitPolicy) -> RateLimitResult:
        now_ms = int(round(self._clock() * 1000))
        if policy.max_requests <= 0:
            return RateLimitResult(
                allowed=True, remaining=0, reset_at=now_ms // 1000, limit=policy.max_requests
            )
        window_seconds = policy.window_seconds
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_seconds=window_seconds,
                message=f"Invalid rate limit window_seconds; defaulting to {DEFAULT_WINDOW_SECONDS} seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        key = rate_limit_key(identifier)
        count, pttl_ms = await self.ops.incr_with_expiry(key, window_seconds)
        if pttl_ms <= 0:
            pttl_ms = window_seconds * 1000
        # Counter expiry instant, rounded up to whole seconds
        reset_at = -(-(now_ms + pttl_ms) // 1000)
        allowed = count <= policy.max_requests
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                kind="email" if "@" in identifier else "ip",
                count=count,
                limit=policy.max_requests,
            )
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, policy.max_requests - count),
            reset_at=reset_at,
            limit=policy.max_requests,
        )

    def retry_after(self, result: RateLimitResult) -> int:
        return retry_after(result, self._clock())


__all__ = [
    "RateLimitPolicy",
    "RateLimiter",
    "IP_POLICY",
    "EMAIL_POLICY",
    "rate_limit_key",
    "retry_after",
]
