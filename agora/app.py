from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from agora.api.error_handling import register_exception_handlers
from agora.api.routes import router
from agora.config import Settings, get_settings
from agora.logging import get_logger, set_correlation_id
from agora.service.errors import StoreUnavailableError
from agora.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_HEALTH_PROBE_KEY = "auth:healthz"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard because cookies are sent with credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP application.

    When ``runtime`` is given the app uses it as is and leaves closing it to
    the caller; otherwise the lifespan builds one from ``settings`` and closes
    it on shutdown.
    """
    settings = settings or (runtime.settings if runtime is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            app.state.runtime = Runtime(settings)
        logger.info("app_started", owned_runtime=owned)

        yield

        if owned:
            try:
                await app.state.runtime.close()
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))
            app.state.runtime = None

    app = FastAPI(title="Agora Identity", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with the client's X-Request-ID (or a fresh UUID) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith(("/auth/", "/users/")):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> Dict[str, Any]:
        """Probe the ephemeral store and the account directory under short deadlines."""
        runtime: Runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        try:
            await asyncio.wait_for(
                runtime.cache.exists(_HEALTH_PROBE_KEY), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            checks["cache"] = {"status": "healthy"}
        except (asyncio.TimeoutError, StoreUnavailableError) as exc:
            logger.error("health_check_cache_failed", error=str(exc))
            checks["cache"] = {"status": "unhealthy"}

        try:
            await asyncio.wait_for(
                runtime.directory.email_exists("healthz@invalid.invalid"),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["directory"] = {"status": "healthy"}
        except (asyncio.TimeoutError, StoreUnavailableError) as exc:
            logger.error("health_check_directory_failed", error=str(exc))
            checks["directory"] = {"status": "unhealthy"}

        healthy = all(check["status"] == "healthy" for check in checks.values())
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat(),
        }

    return app


app = create_app()
