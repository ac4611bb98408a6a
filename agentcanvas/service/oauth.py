from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import replace
from typing import Callable, List, Optional, Tuple

from agentcanvas.logging import get_logger
from agentcanvas.service.allowlist import AllowlistGate
from agentcanvas.service.errors import (
    AUTH_REASON_AUTH_FAILED,
    AUTH_REASON_CONFIG_ERROR,
    AUTH_REASON_INVALID_STATE,
    AUTH_REASON_MISSING_CODE,
    AUTH_REASON_NO_ORGANIZATION,
    AuthFlowError,
    ConfigurationError,
    IdentityProviderError,
    RefreshFailedError,
)
from agentcanvas.service.id_tokens import IdTokenIssuer
from agentcanvas.service.identity_provider import IdentityProviderClient
from agentcanvas.storage.models import OAuthTokens, OrgClaim, Session, SessionUser

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 50 * 60
DEFAULT_REFRESH_MARGIN_SECONDS = 10 * 60


def new_state() -> str:
    return secrets.token_urlsafe(32)


def states_match(received: Optional[str], stored: Optional[str]) -> bool:
    """Both values present and equal, compared in constant time."""
    if not received or not stored:
        return False
    return hmac.compare_digest(received.encode("utf-8"), stored.encode("utf-8"))


class OAuthFlow:
    """Authorization-code sign-in and refresh-token renewal.

    ``complete`` and ``refresh`` return a new :class:`Session`; the HTTP
    layer owns the cookies. Every failure in ``complete`` surfaces as an
    :class:`AuthFlowError` carrying one stable reason code.
    """

    def __init__(
        self,
        idp: IdentityProviderClient,
        *,
        callback_url: str,
        id_tokens: Optional[IdTokenIssuer] = None,
        allowlist: Optional[AllowlistGate] = None,
        refresh_margin_seconds: int = DEFAULT_REFRESH_MARGIN_SECONDS,
        default_expires_in_seconds: int = DEFAULT_EXPIRES_IN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.idp = idp
        self.callback_url = callback_url
        self.id_tokens = id_tokens
        self.allowlist = allowlist
        self.refresh_margin_seconds = refresh_margin_seconds
        self.default_expires_in_seconds = default_expires_in_seconds
        self._clock = clock

    def start(self) -> Tuple[str, str]:
        """Return ``(authorization_url, state)``; the caller stores ``state`` in a cookie."""
        state = new_state()
        return self.idp.authorization_url(state, self.callback_url), state

    def _expires_at_ms(self, expires_in: Optional[int]) -> int:
        lifetime = expires_in if expires_in else self.default_expires_in_seconds
        now_ms = int(self._clock() * 1000)
        return now_ms + lifetime * 1000 - self.refresh_margin_seconds * 1000

    def _is_super_admin(self, user: SessionUser) -> bool:
        return self.allowlist is not None and self.allowlist.is_super_admin(user.email)

    def _id_token_for(
        self, tokens: OAuthTokens, user: SessionUser, orgs: List[OrgClaim]
    ) -> Optional[str]:
        # Minted only when the provider sends none
        if tokens.id_token or self.id_tokens is None:
            return tokens.id_token
        return self.id_tokens.issue_id_token(user, orgs, self._is_super_admin(user))

    async def complete(
        self,
        code: Optional[str],
        state: Optional[str],
        stored_state: Optional[str],
        error: Optional[str] = None,
    ) -> Session:
        if error:
            raise AuthFlowError(error, "identity provider returned an error")
        if not code:
            raise AuthFlowError(AUTH_REASON_MISSING_CODE)
        if not states_match(state, stored_state):
            logger.warning("oauth_state_mismatch", state_present=bool(state), cookie_present=bool(stored_state))
            raise AuthFlowError(AUTH_REASON_INVALID_STATE)
        if not self.idp.is_configured:
            logger.error("oauth_not_configured")
            raise AuthFlowError(AUTH_REASON_CONFIG_ERROR)

        try:
            tokens = await self.idp.authenticate_with_code(code)
        except IdentityProviderError as exc:
            logger.warning("oauth_code_exchange_failed", status_code=exc.status_code)
            raise AuthFlowError(AUTH_REASON_AUTH_FAILED) from exc

        try:
            orgs = await self.idp.list_organization_memberships(tokens.user.id)
        except IdentityProviderError as exc:
            logger.warning("oauth_memberships_failed", status_code=exc.status_code)
            raise AuthFlowError(AUTH_REASON_AUTH_FAILED) from exc
        if not orgs:
            logger.info("oauth_no_organization", user_id=tokens.user.id)
            raise AuthFlowError(AUTH_REASON_NO_ORGANIZATION)

        try:
            id_token = self._id_token_for(tokens, tokens.user, orgs)
        except ConfigurationError as exc:
            logger.error("oauth_id_token_config_error", error=exc.message)
            raise AuthFlowError(AUTH_REASON_CONFIG_ERROR) from exc

        logger.info("oauth_sign_in_completed", user_id=tokens.user.id, org_count=len(orgs))
        return Session(
            user=tokens.user,
            orgs=orgs,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            id_token=id_token,
            id_token_expires_at=self._expires_at_ms(tokens.expires_in),
        )

    async def refresh(self, session: Session) -> Session:
        """Exchange the session's refresh token for fresh tokens.

        The refresh token is replaced only when the provider rotates it.
        Refusal is final for this session; there is no retry.
        """
        if not session.refresh_token:
            raise RefreshFailedError("No refresh token")
        if not self.idp.is_configured:
            raise ConfigurationError("identity provider client is not configured")

        try:
            tokens = await self.idp.authenticate_with_refresh_token(session.refresh_token)
        except IdentityProviderError as exc:
            logger.warning(
                "oauth_refresh_failed", user_id=session.user.id, status_code=exc.status_code
            )
            raise RefreshFailedError("Refresh failed") from exc

        id_token = self._id_token_for(tokens, session.user, session.orgs)
        refresh_token = tokens.refresh_token or session.refresh_token
        logger.info(
            "oauth_refresh_completed",
            user_id=session.user.id,
            rotated=refresh_token != session.refresh_token,
        )
        return replace(
            session,
            access_token=tokens.access_token or session.access_token,
            refresh_token=refresh_token,
            id_token=id_token,
            id_token_expires_at=self._expires_at_ms(tokens.expires_in),
        )


__all__ = ["OAuthFlow", "new_state", "states_match"]
