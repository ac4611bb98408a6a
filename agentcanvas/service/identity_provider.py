from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx

from agentcanvas.logging import get_logger
from agentcanvas.service.errors import ConfigurationError, IdentityProviderError
from agentcanvas.storage.models import OAuthTokens, OrgClaim, SessionUser

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class IdentityProviderClient:
    """HTTP client for the hosted identity provider's user-management API.

    Every call uses a fresh ``httpx.AsyncClient`` with an explicit timeout.
    Non-2xx responses raise :class:`IdentityProviderError`; response bodies
    are logged here and never propagated to callers.
    """

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        api_base_url: str = "https://api.workos.com",
        provider: str = "authkit",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.provider = provider
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        if not self.client_id:
            raise ConfigurationError("OAUTH_CLIENT_ID is not configured")
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "provider": self.provider,
            "state": state,
        }
        return f"{self.api_base_url}/user_management/authorize?{urlencode(params)}"

    async def _request_json(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if json_body is None:
            headers["Authorization"] = f"Bearer {self.client_secret}"
        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    f"{self.api_base_url}{path}",
                    json=json_body,
                    params=params,
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_request_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise IdentityProviderError(operation) from exc

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(
                "identity_provider_error_response",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise IdentityProviderError(operation, response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            logger.error("identity_provider_invalid_json", operation=operation)
            raise IdentityProviderError(operation, response.status_code) from exc
        if not isinstance(data, dict):
            logger.error("identity_provider_unexpected_payload", operation=operation)
            raise IdentityProviderError(operation, response.status_code)
        return data

    def _parse_tokens(self, operation: str, data: Dict[str, Any]) -> OAuthTokens:
        user = data.get("user")
        if not isinstance(user, dict) or not user.get("id") or not user.get("email"):
            logger.error("identity_provider_missing_user", operation=operation)
            raise IdentityProviderError(operation)
        expires_in = data.get("expires_in")
        return OAuthTokens(
            user=SessionUser.from_provider(user),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
        )

    async def _authenticate(self, operation: str, grant: Dict[str, str]) -> OAuthTokens:
        body = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            **grant,
        }
        data = await self._request_json(
            operation, "POST", "/user_management/authenticate", json_body=body
        )
        return self._parse_tokens(operation, data)

    async def authenticate_with_code(self, code: str) -> OAuthTokens:
        return await self._authenticate(
            "code_exchange", {"code": code, "grant_type": "authorization_code"}
        )

    async def authenticate_with_refresh_token(self, refresh_token: str) -> OAuthTokens:
        return await self._authenticate(
            "refresh", {"refresh_token": refresh_token, "grant_type": "refresh_token"}
        )

    async def list_organization_memberships(self, user_id: str) -> List[OrgClaim]:
        """Memberships as org claims, named when the provider includes the organization name."""
        data = await self._request_json(
            "list_memberships",
            "GET",
            "/user_management/organization_memberships",
            params={"user_id": user_id},
        )
        orgs: List[OrgClaim] = []
        for membership in data.get("data") or []:
            org_id = membership.get("organization_id")
            if not org_id:
                continue
            role = membership.get("role") or {}
            orgs.append(
                OrgClaim(
                    id=str(org_id),
                    role=role.get("slug") or "member",
                    name=membership.get("organization_name") or None,
                )
            )
        return orgs

    async def get_organization(self, org_id: str) -> Optional[Dict[str, Any]]:
        """Fetch organization details; None when the provider does not know it."""
        try:
            return await self._request_json(
                "get_organization", "GET", f"/organizations/{quote(org_id, safe='')}"
            )
        except IdentityProviderError as exc:
            if exc.status_code == 404:
                return None
            raise


__all__ = ["IdentityProviderClient"]
