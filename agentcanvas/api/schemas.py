from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MagicLinkRequest(BaseModel):
    # Lengths and formats are checked in the service, after the per-IP limit
    email: Optional[str] = None
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")

    model_config = ConfigDict(populate_by_name=True)


class AllowlistAddRequest(BaseModel):
    email: Optional[str] = None


class AuthUrlResponse(BaseModel):
    url: str


class SessionResponse(BaseModel):
    authenticated: bool
    user: Optional[Dict[str, Any]] = None
    orgs: Optional[List[Dict[str, Any]]] = None
    idToken: Optional[str] = None
    idTokenExpiresAt: Optional[int] = None
    needsRefresh: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


class RefreshResponse(BaseModel):
    success: bool = True
    idToken: Optional[str] = None
    idTokenExpiresAt: Optional[int] = None


class MessageResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    email: Optional[str] = None
    logoutUrl: Optional[str] = None


class OrganizationsResponse(BaseModel):
    organizations: List[Dict[str, Any]]


class AllowlistListResponse(BaseModel):
    success: bool = True
    emails: List[Dict[str, Any]]
    count: int
