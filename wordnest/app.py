from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from wordnest.api.error_handling import register_exception_handlers
from wordnest.api.middleware import resolve_identity
from wordnest.api.routes import router, user_router
from wordnest.api.schemas import HealthResponse
from wordnest.config import Settings
from wordnest.logging import get_logger, set_correlation_id
from wordnest.storage.postgres import PostgresStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the database pool on shutdown."""
    from wordnest.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        logger.info("app_started", store_type=runtime.store_type, version=__version__)
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))
        raise

    yield

    try:
        runtime = get_runtime()
        if isinstance(runtime.store, PostgresStore):
            runtime.store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="wordnest", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard since credentials (cookies) are allowed.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


# Registered innermost first: identity runs inside the correlation-id scope.
app.middleware("http")(resolve_identity)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with a correlation ID for structured logging.

    Taken from ``X-Request-ID`` when the client sends one, generated
    otherwise, and echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)
app.include_router(user_router)


@app.get("/healthz", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness probe reporting which user store backs the runtime."""
    from wordnest.service.runtime import get_runtime

    return HealthResponse(status="ok", store=get_runtime().store_type)


def create_app() -> FastAPI:
    return app
