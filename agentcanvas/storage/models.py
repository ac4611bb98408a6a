from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


@dataclass
class SessionUser:
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_picture_url: Optional[str] = None

    @property
    def name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "profilePictureUrl": self.profile_picture_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionUser":
        return cls(
            id=str(data["id"]),
            email=str(data["email"]),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
            profile_picture_url=data.get("profilePictureUrl"),
        )

    @classmethod
    def from_provider(cls, user: Dict[str, Any]) -> "SessionUser":
        """Build from the identity provider's snake_case user object."""
        return cls(
            id=str(user["id"]),
            email=str(user["email"]),
            first_name=user.get("first_name"),
            last_name=user.get("last_name"),
            profile_picture_url=user.get("profile_picture_url"),
        )


@dataclass
class OrgClaim:
    id: str
    role: str = "member"
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "role": self.role}
        if self.name is not None:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrgClaim":
        return cls(id=str(data["id"]), role=data.get("role") or "member", name=data.get("name"))


@dataclass
class Session:
    """Decrypted contents of the session cookie.

    ``access_token`` and ``refresh_token`` are absent for magic-link sessions.
    ``id_token_expires_at`` is epoch milliseconds.
    """

    user: SessionUser
    orgs: List[OrgClaim] = field(default_factory=list)
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    id_token_expires_at: Optional[int] = None

    def needs_refresh(self, now_ms: Optional[int] = None) -> bool:
        if not self.refresh_token:
            return False
        if not self.id_token or self.id_token_expires_at is None:
            return True
        now_ms = _now_ms() if now_ms is None else now_ms
        return self.id_token_expires_at <= now_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict(),
            "orgs": [org.to_dict() for org in self.orgs],
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "idToken": self.id_token,
            "idTokenExpiresAt": self.id_token_expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        expires_at = data.get("idTokenExpiresAt")
        return cls(
            user=SessionUser.from_dict(data["user"]),
            orgs=[OrgClaim.from_dict(org) for org in data.get("orgs") or []],
            access_token=data.get("accessToken"),
            refresh_token=data.get("refreshToken"),
            id_token=data.get("idToken"),
            id_token_expires_at=int(expires_at) if expires_at is not None else None,
        )


@dataclass
class MagicLinkRecord:
    email: str
    expires_at: datetime
    redirect_url: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "expiresAt": self.expires_at.isoformat(),
            "redirectUrl": self.redirect_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MagicLinkRecord":
        expires_at = datetime.fromisoformat(data["expiresAt"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            email=str(data["email"]),
            expires_at=expires_at,
            redirect_url=data.get("redirectUrl"),
        )


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int
    limit: int


@dataclass
class AllowlistEntry:
    email: str
    added_at: Optional[str] = None
    added_by: Optional[str] = None
    source: str = "kv"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "addedAt": self.added_at,
            "addedBy": self.added_by,
            "source": self.source,
        }


@dataclass
class OAuthTokens:
    user: SessionUser
    access_token: Optional[str]
    refresh_token: Optional[str]
    id_token: Optional[str] = None
    expires_in: Optional[int] = None
