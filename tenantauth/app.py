from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from tenantauth.api.error_handling import register_exception_handlers
from tenantauth.api.routes import auth_router, tenant_router
from tenantauth.logging import clear_request_context, get_logger, set_correlation_id
from tenantauth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

MAX_REQUEST_ID_LENGTH = 128


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the invalidation bus listener on startup and drain it on shutdown."""
    runtime = get_runtime()
    await runtime.start()
    logger.info("runtime_started", bus=type(runtime.bus).__name__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tenantauth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the request's X-Request-ID (or a fresh one) to every log line and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    if client_request_id and len(client_request_id) > MAX_REQUEST_ID_LENGTH:
        client_request_id = None
    clear_request_context()
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    # Responses carry credentials and permission maps
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(tenant_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "bus": type(runtime.bus).__name__,
        "permission_cache_enabled": runtime.permissions.cache is not None,
    }
