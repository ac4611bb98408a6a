from __future__ import annotations

import asyncio
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlencode

from agentcanvas.logging import get_logger, redact_email
from agentcanvas.service.allowlist import AllowlistGate
from agentcanvas.service.email import EmailService
from agentcanvas.service.errors import RateLimitedError, ValidationError
from agentcanvas.service.rate_limit import RateLimiter, RateLimitPolicy
from agentcanvas.service.validation import is_valid_email, normalize_email, validate_redirect_url
from agentcanvas.storage.atomic import AtomicOps
from agentcanvas.storage.kv import KVStore
from agentcanvas.storage.models import MagicLinkRecord, RateLimitResult

logger = get_logger(__name__)

MAGIC_LINK_SENT_MESSAGE = "If that email is registered, a magic link has been sent."
MAGIC_LINK_KEY_PREFIX = "magiclink:"
DEFAULT_TTL_SECONDS = 15 * 60
# token_urlsafe(32) yields 43 characters; anything far longer is not ours
_MAX_TOKEN_LENGTH = 128


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MagicLinkService:
    """Issue and redeem single-use sign-in links.

    A link moves Requested -> Pending (stored under ``magiclink:<token>``)
    and then to exactly one of Consumed or Expired. Consumption goes
    through the atomic get-and-delete primitive, so concurrent redeemers of
    one token see at most one record.
    """

    def __init__(
        self,
        store: KVStore,
        ops: AtomicOps,
        *,
        base_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        limiter: Optional[RateLimiter] = None,
        ip_policy: Optional[RateLimitPolicy] = None,
        email_policy: Optional[RateLimitPolicy] = None,
        allowlist: Optional[AllowlistGate] = None,
        email_service: Optional[EmailService] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.ops = ops
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.limiter = limiter
        self.ip_policy = ip_policy
        self.email_policy = email_policy
        self.allowlist = allowlist
        self.email_service = email_service
        self._clock = clock

    async def issue(
        self,
        email: str,
        ttl_seconds: Optional[int] = None,
        redirect_url: Optional[str] = None,
    ) -> str:
        ttl = ttl_seconds or self.ttl_seconds
        token = secrets.token_urlsafe(32)
        record = MagicLinkRecord(
            email=normalize_email(email),
            expires_at=self._clock() + timedelta(seconds=ttl),
            redirect_url=redirect_url,
        )
        # Store expiry is a backstop; expires_at is re-checked on redemption
        await self.store.set(
            f"{MAGIC_LINK_KEY_PREFIX}{token}", json.dumps(record.to_dict()), ex=ttl
        )
        logger.info("magic_link_issued", ttl_seconds=ttl)
        return token

    async def verify_and_consume(self, token: Optional[str]) -> Optional[MagicLinkRecord]:
        """Redeem ``token`` once. Absent, expired and corrupt links all yield None."""
        if not token or len(token) > _MAX_TOKEN_LENGTH:
            return None
        if not self.ops.atomic:
            logger.warning("magic_link_consume_not_atomic", strategy=self.ops.name)

        raw = await self.ops.get_and_delete(f"{MAGIC_LINK_KEY_PREFIX}{token}")
        if raw is None:
            logger.info("magic_link_not_found")
            return None
        try:
            record = MagicLinkRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("magic_link_record_corrupt", error_type=type(exc).__name__)
            return None
        if record.is_expired(self._clock()):
            logger.info("magic_link_expired")
            return None
        logger.info("magic_link_consumed")
        return record

    def build_link(self, token: str, redirect_url: Optional[str] = None) -> str:
        params = {"token": token}
        if redirect_url:
            params["redirect"] = redirect_url
        return f"{self.base_url}/auth/verify?{urlencode(params)}"

    async def _enforce(self, identifier: str, policy: Optional[RateLimitPolicy]) -> None:
        if self.limiter is None or policy is None:
            return
        result: RateLimitResult = await self.limiter.check(identifier, policy)
        if not result.allowed:
            raise RateLimitedError(
                retry_after=self.limiter.retry_after(result),
                limit=result.limit,
                reset_at=result.reset_at,
            )

    async def request_link(
        self, email: Optional[str], redirect_url: Optional[str], client_ip: str
    ) -> str:
        """Handle a sign-in request and return the user-facing message.

        Raises ``RateLimitedError`` for either policy and ``ValidationError``
        for a malformed address. Unknown addresses and delivery failures
        return the same message as a successful send.
        """
        await self._enforce(client_ip, self.ip_policy)

        if not email or not is_valid_email(email):
            raise ValidationError("Invalid email format")
        normalized = normalize_email(email)

        await self._enforce(normalized, self.email_policy)

        if self.allowlist is not None and not await self.allowlist.is_allowed(normalized):
            logger.info("magic_link_not_allowlisted", recipient=redact_email(normalized))
            return MAGIC_LINK_SENT_MESSAGE

        validated_redirect = validate_redirect_url(redirect_url, self.base_url)
        token = await self.issue(normalized, redirect_url=validated_redirect)
        link = self.build_link(token, validated_redirect)

        if self.email_service is not None:
            sent = await asyncio.to_thread(
                self.email_service.send_magic_link_email,
                normalized,
                link,
                max(1, self.ttl_seconds // 60),
            )
            if not sent:
                logger.error("magic_link_email_failed", recipient=redact_email(normalized))
        return MAGIC_LINK_SENT_MESSAGE


__all__ = ["MagicLinkService", "MAGIC_LINK_SENT_MESSAGE", "MAGIC_LINK_KEY_PREFIX"]
