from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from agentcanvas.config import Settings, get_settings, reset_settings_cache
from agentcanvas.logging import get_logger
from agentcanvas.service.allowlist import AllowlistGate
from agentcanvas.service.email import EmailService
from agentcanvas.service.errors import ConfigurationError
from agentcanvas.service.id_tokens import IdTokenIssuer
from agentcanvas.service.identity_provider import IdentityProviderClient
from agentcanvas.service.magic_link import MagicLinkService
from agentcanvas.service.oauth import OAuthFlow
from agentcanvas.service.rate_limit import RateLimiter, RateLimitPolicy
from agentcanvas.service.session_codec import SessionCodec
from agentcanvas.storage.atomic import AtomicOps, select_atomic_ops
from agentcanvas.storage.kv import KVStore, StoreCapabilities
from agentcanvas.storage.memory_kv import MemoryKVStore
from agentcanvas.storage.redis_kv import RedisKVStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the service graph for the FastAPI app.

    Every collaborator is built here from :class:`Settings` and handed its
    dependencies explicitly; nothing below this layer reads the environment.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KVStore] = None,
        idp_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            memory_kv=self.settings.memory_kv_enabled,
        )

        self.store: KVStore = store or self._build_store()
        self.capabilities: StoreCapabilities = self.store.probe_capabilities()
        # Raises AtomicityUnavailableError when strict atomicity cannot be met
        self.atomic_ops: AtomicOps = select_atomic_ops(
            self.store, self.capabilities, require_atomic=self.settings.strict_atomic_kv
        )

        self.codec = SessionCodec(
            self.settings.session_secret, self.settings.session_max_age_seconds
        )
        self.limiter = RateLimiter(self.atomic_ops)
        self.ip_policy = RateLimitPolicy(
            self.settings.rate_limit_ip_max_requests,
            self.settings.rate_limit_ip_window_seconds,
        )
        self.email_policy = RateLimitPolicy(
            self.settings.rate_limit_email_max_requests,
            self.settings.rate_limit_email_window_seconds,
        )
        self.allowlist = AllowlistGate(
            self.store,
            self.atomic_ops,
            static_emails=self.settings.allowed_emails,
            super_admin_emails=self.settings.super_admin_emails,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.app_name,
        )
        self.magic_links = MagicLinkService(
            self.store,
            self.atomic_ops,
            base_url=self.settings.app_base_url,
            ttl_seconds=self.settings.magic_link_ttl_seconds,
            limiter=self.limiter,
            ip_policy=self.ip_policy,
            email_policy=self.email_policy,
            allowlist=self.allowlist,
            email_service=self.email,
        )
        self.idp = IdentityProviderClient(
            client_id=self.settings.oauth_client_id,
            client_secret=self.settings.oauth_client_secret,
            api_base_url=self.settings.oauth_api_base_url,
            provider=self.settings.oauth_provider,
            timeout=self.settings.oauth_http_timeout_seconds,
            transport=idp_transport,
        )
        self.id_tokens = self._build_id_tokens()
        self.oauth = OAuthFlow(
            self.idp,
            callback_url=self.settings.callback_url,
            id_tokens=self.id_tokens,
            allowlist=self.allowlist,
            refresh_margin_seconds=self.settings.token_refresh_margin_seconds,
            default_expires_in_seconds=self.settings.default_token_expires_in_seconds,
        )

        logger.info(
            "runtime_initialized",
            kv_backend=type(self.store).__name__,
            kv_strategy=self.atomic_ops.name,
            kv_atomic=self.atomic_ops.atomic,
            oauth_configured=self.idp.is_configured,
            id_tokens_configured=self.id_tokens is not None,
            email_configured=self.email.is_configured,
        )

    def _build_store(self) -> KVStore:
        if self.settings.memory_kv_enabled:
            logger.warning(
                "kv_memory_backend",
                message="Using the in-process KV store; state is lost on restart and not shared across workers.",
            )
            return MemoryKVStore()
        if not self.settings.redis_url:
            raise ConfigurationError(
                "REDIS_URL is required unless TEST_MODE=true or USE_MEMORY_KV=true"
            )
        store = RedisKVStore(
            self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
        )
        try:
            store.verify_connection()
        except Exception as exc:
            logger.error(
                "redis_connection_failed",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
            )
            raise
        return store

    def _build_id_tokens(self) -> Optional[IdTokenIssuer]:
        if not self.settings.jwt_private_key:
            logger.warning("id_token_issuer_disabled", message="JWT_PRIVATE_KEY is not set")
            return None
        return IdTokenIssuer(
            self.settings.jwt_private_key,
            key_id=self.settings.jwt_key_id,
            issuer=self.settings.app_base_url,
            audience=self.settings.jwt_audience,
            ttl_seconds=self.settings.jwt_ttl_seconds,
            retired_public_keys=self.settings.jwt_retired_public_keys,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Optional[Runtime]) -> None:
    """Install a prebuilt runtime, e.g. one with a fake identity provider."""
    global runtime
    with _runtime_lock:
        runtime = new_runtime


def reset_runtime_for_tests() -> None:
    """Drop the singleton and cached settings so the next call re-reads the environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = None


__all__ = ["Runtime", "get_runtime", "set_runtime", "reset_runtime_for_tests"]
