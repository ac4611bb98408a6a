from __future__ import annotations

import re
import unicodedata
from typing import Mapping, Optional
from urllib.parse import urlsplit

DEFAULT_CLIENT_IP = "127.0.0.1"
MAX_EMAIL_INPUT_LENGTH = 320
MAX_REDIRECT_URL_LENGTH = 2048

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    """Canonical form used for every allowlist, rate-limit and session key."""
    return unicodedata.normalize("NFKC", value.strip().lower())


def validate_email(value: str) -> str:
    """Return the normalised address or raise ``ValueError``."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    if len(value) > MAX_EMAIL_INPUT_LENGTH:
        raise ValueError("email address too long")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def is_valid_email(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        validate_email(value)
    except ValueError:
        return False
    return True


def validate_redirect_url(url: Optional[str], base_url: str) -> Optional[str]:
    """Reduce a post-login redirect to a same-origin path, or None.

    Relative paths are accepted as-is; protocol-relative (``//host``) and
    backslash forms are rejected because browsers resolve them off-origin.
    Absolute URLs on the application origin are reduced to path, query and
    fragment.
    """
    if not url or len(url) > MAX_REDIRECT_URL_LENGTH:
        return None
    if "\\" in url or any(ord(ch) < 0x20 for ch in url):
        return None
    if url.startswith("/"):
        return None if url.startswith("//") else url

    try:
        target = urlsplit(url)
        base = urlsplit(base_url)
    except ValueError:
        return None
    if target.scheme not in {"http", "https"}:
        return None
    if (target.scheme, target.netloc.lower()) != (base.scheme, base.netloc.lower()):
        return None
    path = target.path or "/"
    if target.query:
        path = f"{path}?{target.query}"
    if target.fragment:
        path = f"{path}#{target.fragment}"
    return path


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer or DEFAULT_CLIENT_IP


__all__ = [
    "normalize_email",
    "validate_email",
    "is_valid_email",
    "validate_redirect_url",
    "client_ip",
]
