from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
import time
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from agentcanvas.config import MIN_SESSION_SECRET_LENGTH
from agentcanvas.logging import get_logger
from agentcanvas.service.errors import ConfigurationError
from agentcanvas.storage.models import Session

logger = get_logger(__name__)

PAYLOAD_VERSION = 1
DEFAULT_MAX_AGE_SECONDS = 7 * 24 * 60 * 60
_HKDF_SALT = b"agentcanvas-session-v1"
_HKDF_INFO = b"encryption"
_ASSOCIATED_DATA = b"agentcanvas-session"
_NONCE_BYTES = 12


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _derive_key(secret: str) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_HKDF_SALT,
        info=_HKDF_INFO,
    ).derive(secret.encode("utf-8"))


class SessionCodec:
    """Authenticated encryption of :class:`Session` into a cookie value.

    The token is base64url(nonce || ciphertext || tag) under AES-256-GCM with
    a key derived from the server secret by HKDF-SHA256. The plaintext
    carries its own ``exp`` so an expired cookie is rejected even if the
    browser keeps sending it.
    """

    def __init__(
        self,
        secret: Optional[str],
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._key_fingerprint: Optional[str] = None
        self._aead: Optional[AESGCM] = None
        self.rotate(secret)

    def rotate(self, secret: Optional[str]) -> None:
        """Re-derive the key. Cookies sealed under the old secret stop decrypting."""
        if not secret or len(secret) < MIN_SESSION_SECRET_LENGTH:
            raise ConfigurationError(
                f"SESSION_SECRET must be at least {MIN_SESSION_SECRET_LENGTH} characters"
            )
        fingerprint = hashlib.sha256(secret.encode("utf-8")).hexdigest()
        if fingerprint == self._key_fingerprint:
            return
        self._aead = AESGCM(_derive_key(secret))
        self._key_fingerprint = fingerprint
        logger.info("session_key_derived", key_fingerprint=fingerprint[:8])

    def encrypt(self, session: Session) -> str:
        now = int(self._clock())
        payload = {
            "v": PAYLOAD_VERSION,
            "iat": now,
            "exp": now + self.max_age_seconds,
            "data": session.to_dict(),
        }
        plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext, _ASSOCIATED_DATA)
        return _b64encode(nonce + ciphertext)

    def decrypt(self, token: Optional[str]) -> Optional[Session]:
        """Return the session, or None for anything that is not a live cookie."""
        if not token:
            return None
        try:
            raw = _b64decode(token)
            if len(raw) <= _NONCE_BYTES:
                raise ValueError("token too short")
            plaintext = self._aead.decrypt(raw[:_NONCE_BYTES], raw[_NONCE_BYTES:], _ASSOCIATED_DATA)
            payload = json.loads(plaintext)
            if payload.get("v") != PAYLOAD_VERSION:
                raise ValueError("unsupported payload version")
            if int(payload["exp"]) <= int(self._clock()):
                logger.debug("session_cookie_expired")
                return None
            return Session.from_dict(payload["data"])
        except (InvalidTag, binascii.Error, ValueError, KeyError, TypeError, AttributeError) as exc:
            # Never log cookie contents or decryption detail
            logger.debug("session_cookie_rejected", error_type=type(exc).__name__)
            return None


__all__ = ["SessionCodec"]
