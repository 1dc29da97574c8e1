from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from invitely.api.error_handling import register_exception_handlers
from invitely.api.routes import router
from invitely.config import get_settings
from invitely.logging import get_logger, set_correlation_id
from invitely.service.deadline import Deadline
from invitely.service.errors import InternalError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools and workers on shutdown."""
    from invitely.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Invitely Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    configured = get_settings().cors_allowed_origins
    if configured:
        return [origin.strip() for origin in configured.split(",") if origin.strip()]
    return ["http://localhost:3000", "http://localhost:5173"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    # Cookies carry the session
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with an X-Request-ID for log correlation.

    A client-supplied header is reused; otherwise a new id is generated.
    """
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
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report session store connectivity."""
    from invitely.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        store_ok = await runtime.store.ping(
            deadline=Deadline.after(HEALTH_CHECK_TIMEOUT_SECONDS)
        )
    except InternalError as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    body: Dict[str, Any] = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {
            "session_store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": type(runtime.store).__name__,
            },
            "email": {"status": "configured" if runtime.email.is_configured else "dev_mode"},
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=body)


def create_app() -> FastAPI:
    return app
