from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pitchcoach.api.error_handling import register_exception_handlers
from pitchcoach.api.routes import router
from pitchcoach.api.schemas import HealthResponse
from pitchcoach.config import Settings, get_settings
from pitchcoach.logging import get_logger, set_correlation_id
from pitchcoach.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Responses on these prefixes carry credentials or personal data
_NO_STORE_PREFIXES = ("/auth/", "/user/")


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup unless one was injected; close it on shutdown."""
    owned = getattr(app.state, "runtime", None) is None
    if owned:
        app.state.runtime = Runtime(app.state.settings)
        logger.info("runtime_started")
    yield
    if owned:
        app.state.runtime.close()
        app.state.runtime = None
        logger.info("runtime_cleanup_complete")


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Assemble the HTTP application.

    Passing ``runtime`` skips construction in the lifespan hook, which is how
    tests run the API against an in-memory store.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    app = FastAPI(title="PitchCoach Auth", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith(_NO_STORE_PREFIXES):
            response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(
            "request_received",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )
        return await call_next(request)

    # Registered last so it wraps the others and the ID is set before logging
    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get(
        "/health",
        response_model=HealthResponse,
        response_model_exclude_none=True,
        tags=["ops"],
    )
    async def health(request: Request):
        """Database connectivity check, bounded by a timeout."""
        current: Runtime = request.app.state.runtime
        timestamp = datetime.now(timezone.utc)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(current.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", error=str(exc))
        else:
            return HealthResponse(status="ok", database="connected", timestamp=timestamp)
        body = HealthResponse(
            status="error",
            database="disconnected",
            message="Database connection failed",
            timestamp=timestamp,
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json", exclude_none=True))

    return app


app = create_app()
