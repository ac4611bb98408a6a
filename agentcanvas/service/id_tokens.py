"""RS256 id tokens minted by this service and the JWKS that verifies them.

Used when the identity provider does not return an id token of its own. The
downstream backend trusts the issuer by fetching ``/auth/jwks``; the ``kid``
in every token header must be present in that document.
"""

from __future__ import annotations

import base64
import json
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from agentcanvas.logging import get_logger
from agentcanvas.service.errors import ConfigurationError
from agentcanvas.storage.models import OrgClaim, SessionUser

logger = get_logger(__name__)

ALGORITHM = "RS256"
DEFAULT_TTL_SECONDS = 60 * 60


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _int_from_b64url(value: str) -> int:
    padding = "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(value + padding), "big")


def public_jwk(public_key: rsa.RSAPublicKey, kid: str) -> Dict[str, str]:
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "use": "sig",
        "alg": ALGORITHM,
        "kid": kid,
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


def jwk_to_public_key(jwk: Dict[str, Any]) -> rsa.RSAPublicKey:
    if jwk.get("kty") != "RSA":
        raise ValueError("only RSA keys are supported")
    return rsa.RSAPublicNumbers(_int_from_b64url(jwk["e"]), _int_from_b64url(jwk["n"])).public_key()


class IdTokenIssuer:
    def __init__(
        self,
        private_jwk_json: Optional[str],
        *,
        key_id: str,
        issuer: str,
        audience: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        retired_public_keys: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not private_jwk_json:
            raise ConfigurationError("JWT_PRIVATE_KEY is not configured")
        try:
            private_key = RSAAlgorithm.from_jwk(private_jwk_json)
        except (jwt.PyJWTError, ValueError, KeyError, TypeError) as exc:
            raise ConfigurationError("JWT_PRIVATE_KEY is not a valid RSA private JWK") from exc
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ConfigurationError("JWT_PRIVATE_KEY must contain the private exponent")

        self._private_key = private_key
        self.key_id = key_id
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._published: List[Dict[str, str]] = [public_jwk(private_key.public_key(), key_id)]
        for jwk in self._parse_retired(retired_public_keys):
            if jwk.get("kid") and jwk["kid"] != key_id:
                self._published.append(
                    {**jwk, "use": jwk.get("use", "sig"), "alg": jwk.get("alg", ALGORITHM)}
                )

    @staticmethod
    def _parse_retired(raw: Optional[str]) -> Sequence[Dict[str, Any]]:
        if not raw:
            return []
        try:
            keys = json.loads(raw)
        except ValueError as exc:
            raise ConfigurationError("JWT_RETIRED_PUBLIC_KEYS must be a JSON list of JWKs") from exc
        if isinstance(keys, dict):
            keys = keys.get("keys", [])
        if not isinstance(keys, list):
            raise ConfigurationError("JWT_RETIRED_PUBLIC_KEYS must be a JSON list of JWKs")
        # Public members only; a pasted private JWK must not be republished
        return [
            {k: v for k, v in key.items() if k in {"kty", "kid", "use", "alg", "n", "e"}}
            for key in keys
            if isinstance(key, dict)
        ]

    def issue_id_token(
        self,
        user: SessionUser,
        orgs: Sequence[OrgClaim] = (),
        is_super_admin: bool = False,
    ) -> str:
        now = int(self._clock())
        claims: Dict[str, Any] = {
            "sub": user.id,
            "email": user.email,
            "email_verified": True,
            "name": user.name,
            "given_name": user.first_name,
            "family_name": user.last_name,
            "picture": user.profile_picture_url,
            "orgs": [{"id": org.id, "role": org.role} for org in orgs],
            "isSuperAdmin": is_super_admin,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        payload = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(
            payload,
            self._private_key,
            algorithm=ALGORITHM,
            headers={"kid": self.key_id, "typ": "JWT"},
        )

    def jwks(self) -> Dict[str, List[Dict[str, str]]]:
        return {"keys": [dict(key) for key in self._published]}

    def verify(self, token: str) -> Dict[str, Any]:
        """Decode ``token`` against the published keys; raises ``jwt.PyJWTError``."""
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        for jwk in self._published:
            if jwk["kid"] == kid:
                return jwt.decode(
                    token,
                    jwk_to_public_key(jwk),
                    algorithms=[ALGORITHM],
                    audience=self.audience,
                    issuer=self.issuer,
                    leeway=5,
                )
        raise jwt.InvalidKeyError(f"unknown signing key {kid!r}")


__all__ = ["IdTokenIssuer", "public_jwk", "jwk_to_public_key"]
