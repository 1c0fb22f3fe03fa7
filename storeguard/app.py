from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from storeguard.api.error_handling import register_exception_handlers
from storeguard.api.routes import router
from storeguard.config import Settings, get_settings
from storeguard.logging import configure_logging, get_logger, set_correlation_id
from storeguard.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


def create_app(
    settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the application around an explicitly constructed runtime.

    The runtime is created eagerly so routes can be exercised without running
    the lifespan; the lifespan only starts and stops its background workers.
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    configure_logging(settings.log_level, settings.log_json, settings.log_dev_mode)
    runtime = runtime or Runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await runtime.start()
            logger.info("runtime_started")
        except Exception as exc:
            logger.error("startup_failed", error=str(exc))
            raise
        yield
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="storeguard", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-Rate-Limit-Remaining",
            "X-Rate-Limit-Retry-After-Seconds",
            "Retry-After",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Bind the caller's X-Request-ID (or a fresh one) to every log line."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-XSS-Protection", "1; mode=block")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        store_ok = await _run_bounded("store", runtime.store.verify_connection)
        checks["store"] = {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        }
        healthy = store_ok
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}
        checks["audit"] = {
            "status": "healthy" if runtime.audit.running else "stopped",
            "pending": runtime.audit.pending(),
            "dropped": runtime.audit.dropped,
        }
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "build": settings.build_sha,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
