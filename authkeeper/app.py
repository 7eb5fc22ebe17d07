from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authkeeper.api.error_handling import register_exception_handlers
from authkeeper.api.routes import router
from authkeeper.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so configuration errors fail fast."""
    from authkeeper.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, issuer=runtime.settings.jwt_issuer)
    yield
    removed = runtime.sessions.sweep_revocations()
    logger.info("app_stopped", revocations_swept=removed)


app = FastAPI(title="authkeeper", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation ID to each request.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated, and echoed back in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    # Token responses must never be cached by proxies
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from authkeeper.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        stats = runtime.revocations.stats()
    except Exception as exc:
        logger.error("health_check_failed", error_type=type(exc).__name__, error=str(exc))
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "version": __version__},
        )
    return {"status": "healthy", "version": __version__, "revocations": stats}


def create_app() -> FastAPI:
    return app
