from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from agentcanvas.api.error_handling import register_exception_handlers
from agentcanvas.api.routes import router
from agentcanvas.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so misconfiguration fails at startup."""
    from agentcanvas.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", kv_strategy=runtime.atomic_ops.name)

    yield

    try:
        await runtime.store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="AgentCanvas Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Request-ID (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Credential responses must never be cached; JWKS sets its own policy first
    if request.url.path.startswith(("/auth/", "/admin/")):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)
