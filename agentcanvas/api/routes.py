from __future__ import annotations

import html
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Query, Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse

from agentcanvas.api.cookies import CookieJar, CookiePolicy
from agentcanvas.api.schemas import (
    AllowlistAddRequest,
    AllowlistListResponse,
    AuthUrlResponse,
    MagicLinkRequest,
    MessageResponse,
    OrganizationsResponse,
    RefreshResponse,
    SessionResponse,
)
from agentcanvas.logging import get_logger, redact_email
from agentcanvas.service.errors import (
    AuthenticationError,
    AuthFlowError,
    ConflictError,
    ForbiddenError,
    IdentityProviderError,
    NotFoundError,
    RefreshFailedError,
    ValidationError,
)
from agentcanvas.service.runtime import Runtime, get_runtime
from agentcanvas.service.validation import client_ip, is_valid_email, normalize_email, validate_redirect_url
from agentcanvas.storage.models import Session, SessionUser

logger = get_logger(__name__)

router = APIRouter()

JWKS_CACHE_CONTROL = "public, max-age=3600"


def _cookies(runtime: Runtime) -> CookieJar:
    settings = runtime.settings
    return CookieJar(
        CookiePolicy(
            secure=settings.secure_cookies,
            session_max_age=settings.session_max_age_seconds,
            state_max_age=settings.oauth_state_max_age_seconds,
        )
    )


def _current_session(runtime: Runtime, request: Request) -> Optional[Session]:
    return runtime.codec.decrypt(_cookies(runtime).get_session_token(request))


def _require_admin(runtime: Runtime, request: Request) -> Session:
    session = _current_session(runtime, request)
    if session is None:
        raise AuthenticationError("Authentication required")
    if not runtime.allowlist.is_admin(session.user.email):
        raise ForbiddenError("Admin access required")
    return session


def _login_redirect(runtime: Runtime, reason: str) -> RedirectResponse:
    url = f"{runtime.settings.app_base_url}/login?error={quote(reason, safe='')}"
    return RedirectResponse(url, status_code=302)


def _html_error_page(title: str, message: str, status_code: int) -> HTMLResponse:
    body = (
        "<!DOCTYPE html>\n<html>\n<head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>\n<body>\n"
        f"<h1>{html.escape(title)}</h1>\n<p>{html.escape(message)}</p>\n"
        "<p><a href=\"/login\">Return to login</a></p>\n</body>\n</html>"
    )
    return HTMLResponse(body, status_code=status_code)


# OAuth sign-in


@router.post("/auth/url", response_model=AuthUrlResponse)
async def auth_url(response: Response):
    runtime = get_runtime()
    url, state = runtime.oauth.start()
    _cookies(runtime).set_oauth_state(response, state)
    return AuthUrlResponse(url=url)


@router.get("/auth/callback")
async def auth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    runtime = get_runtime()
    cookies = _cookies(runtime)
    try:
        session = await runtime.oauth.complete(
            code, state, cookies.get_oauth_state(request), error=error
        )
    except AuthFlowError as exc:
        logger.warning("auth_callback_failed", reason=exc.reason)
        # No cookie changes on failure; the state cookie lapses on its own
        return _login_redirect(runtime, exc.reason)

    response = RedirectResponse(runtime.settings.app_base_url, status_code=302)
    cookies.set_session(response, runtime.codec.encrypt(session))
    cookies.clear_oauth_state(response)
    return response


@router.get("/auth/session", response_model=SessionResponse, response_model_exclude_none=True)
async def auth_session(request: Request):
    runtime = get_runtime()
    session = _current_session(runtime, request)
    if session is None:
        return SessionResponse(authenticated=False)
    return SessionResponse(
        authenticated=True,
        user=session.user.to_dict(),
        orgs=[org.to_dict() for org in session.orgs],
        idToken=session.id_token,
        idTokenExpiresAt=session.id_token_expires_at,
        needsRefresh=session.needs_refresh(),
    )


@router.get("/auth/orgs", response_model=OrganizationsResponse)
async def auth_orgs(request: Request):
    runtime = get_runtime()
    session = _current_session(runtime, request)
    if session is None:
        return OrganizationsResponse(organizations=[])

    organizations: List[Dict[str, Any]] = []
    for org in session.orgs:
        name = org.name
        if name is None and runtime.idp.is_configured:
            try:
                details = await runtime.idp.get_organization(org.id)
            except IdentityProviderError as exc:
                logger.warning("org_details_unavailable", org_id=org.id, status_code=exc.status_code)
                details = None
            name = (details or {}).get("name")
        organizations.append({"id": org.id, "name": name or org.id, "role": org.role})
    return OrganizationsResponse(organizations=organizations)


@router.post("/auth/refresh", response_model=RefreshResponse)
async def auth_refresh(request: Request, response: Response):
    runtime = get_runtime()
    session = _current_session(runtime, request)
    if session is None or not session.refresh_token:
        raise RefreshFailedError("No refresh token")
    refreshed = await runtime.oauth.refresh(session)
    _cookies(runtime).set_session(response, runtime.codec.encrypt(refreshed))
    return RefreshResponse(
        idToken=refreshed.id_token, idTokenExpiresAt=refreshed.id_token_expires_at
    )


@router.post("/auth/logout", response_model=MessageResponse, response_model_exclude_none=True)
async def auth_logout(response: Response):
    runtime = get_runtime()
    _cookies(runtime).clear_session(response)
    return MessageResponse(logoutUrl=f"{runtime.settings.app_base_url}/login")


@router.get("/auth/jwks")
async def auth_jwks(response: Response) -> Dict[str, Any]:
    runtime = get_runtime()
    if runtime.id_tokens is None:
        raise NotFoundError("No signing keys are configured")
    response.headers["Cache-Control"] = JWKS_CACHE_CONTROL
    return runtime.id_tokens.jwks()


# Magic links


@router.post("/auth/send-magic-link", response_model=MessageResponse, response_model_exclude_none=True)
async def send_magic_link(body: MagicLinkRequest, request: Request):
    runtime = get_runtime()
    ip = client_ip(request.headers, request.client.host if request.client else None)
    message = await runtime.magic_links.request_link(body.email, body.redirect_url, ip)
    return MessageResponse(message=message)


@router.get("/auth/verify")
async def verify_magic_link(
    token: Optional[str] = Query(None),
    redirect: Optional[str] = Query(None),
):
    runtime = get_runtime()
    if not token:
        return _html_error_page(
            "Invalid Link", "This magic link is invalid. Please request a new one.", 400
        )
    try:
        record = await runtime.magic_links.verify_and_consume(token)
        if record is None:
            return _html_error_page(
                "Link Expired or Invalid",
                "This magic link has expired or has already been used. Please request a new one.",
                401,
            )
        session = Session(user=SessionUser(id=record.email, email=record.email))
        sealed = runtime.codec.encrypt(session)
    except Exception:
        logger.exception("magic_link_verify_failed")
        return _html_error_page(
            "Server Error",
            "An error occurred while verifying your magic link. Please try again.",
            500,
        )

    target = validate_redirect_url(record.redirect_url or redirect, runtime.settings.app_base_url) or "/"
    response = RedirectResponse(target, status_code=302)
    _cookies(runtime).set_session(response, sealed)
    logger.info("magic_link_session_created", subject=redact_email(record.email))
    return response


# Allowlist administration


@router.get("/admin/allowlist", response_model=AllowlistListResponse)
async def list_allowlist(request: Request):
    runtime = get_runtime()
    _require_admin(runtime, request)
    entries = await runtime.allowlist.list()
    return AllowlistListResponse(
        emails=[entry.to_dict() for entry in entries], count=len(entries)
    )


@router.post("/admin/allowlist", response_model=MessageResponse, response_model_exclude_none=True)
async def add_to_allowlist(body: AllowlistAddRequest, request: Request):
    runtime = get_runtime()
    admin = _require_admin(runtime, request)
    if not is_valid_email(body.email):
        raise ValidationError("Invalid email format")
    email = normalize_email(body.email)
    if not await runtime.allowlist.add(email, admin.user.email):
        raise ConflictError("Email already in allowlist")
    return MessageResponse(message="Email added to allowlist", email=email)


@router.delete("/admin/allowlist", response_model=MessageResponse, response_model_exclude_none=True)
async def remove_from_allowlist(request: Request, email: Optional[str] = Query(None)):
    runtime = get_runtime()
    _require_admin(runtime, request)
    if not is_valid_email(email):
        raise ValidationError("Invalid email format")
    normalized = normalize_email(email)
    # StaticAllowlistEntryError (403) propagates to the exception handlers
    if not await runtime.allowlist.remove(normalized):
        raise NotFoundError("Email not found in allowlist")
    return MessageResponse(message="Email removed from allowlist", email=normalized)


@router.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    return {
        "status": "ok",
        "kv": {
            "backend": type(runtime.store).__name__,
            "strategy": runtime.atomic_ops.name,
            "atomic": runtime.atomic_ops.atomic,
        },
    }
