from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request, Response

SESSION_COOKIE = "session"
OAUTH_STATE_COOKIE = "oauth_state"


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes applied to every cookie this service writes."""

    secure: bool
    session_max_age: int = 7 * 24 * 60 * 60
    state_max_age: int = 10 * 60
    samesite: str = "lax"
    path: str = "/"


class CookieJar:
    """Reads and writes the session and OAuth state cookies."""

    def __init__(self, policy: CookiePolicy) -> None:
        self.policy = policy

    def _set(self, response: Response, name: str, value: str, max_age: int) -> None:
        response.set_cookie(
            key=name,
            value=value,
            max_age=max_age,
            path=self.policy.path,
            secure=self.policy.secure,
            httponly=True,
            samesite=self.policy.samesite,
        )

    def get_session_token(self, request: Request) -> Optional[str]:
        return request.cookies.get(SESSION_COOKIE) or None

    def get_oauth_state(self, request: Request) -> Optional[str]:
        return request.cookies.get(OAUTH_STATE_COOKIE) or None

    def set_session(self, response: Response, token: str) -> None:
        self._set(response, SESSION_COOKIE, token, self.policy.session_max_age)

    def clear_session(self, response: Response) -> None:
        self._set(response, SESSION_COOKIE, "", 0)

    def set_oauth_state(self, response: Response, state: str) -> None:
        self._set(response, OAUTH_STATE_COOKIE, state, self.policy.state_max_age)

    def clear_oauth_state(self, response: Response) -> None:
        self._set(response, OAUTH_STATE_COOKIE, "", 0)


__all__ = ["CookieJar", "CookiePolicy", "SESSION_COOKIE", "OAUTH_STATE_COOKIE"]
