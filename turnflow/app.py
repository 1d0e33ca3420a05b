from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from turnflow.api.error_handling import register_exception_handlers
from turnflow.api.routes import router
from turnflow.config import LockBackend
from turnflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and drain it on shutdown."""
    from turnflow.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    application = FastAPI(title="Turnflow", version=__version__, lifespan=lifespan)

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with a correlation ID.

        Taken from the X-Request-ID header when the client sends one,
        otherwise generated, and echoed back on the response.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.middleware("http")
    async def add_api_version_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report whether the turn-lock store answers within the check timeout."""
        from turnflow.service.runtime import get_runtime

        runtime = get_runtime()
        healthy = True
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            healthy = False
        except Exception as exc:
            logger.error("health_check_lock_store_failed", error=str(exc))
            healthy = False

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": {
                "lock_store": {
                    "status": "healthy" if healthy else "unhealthy",
                    "backend": LockBackend(runtime.settings.lock_backend).value,
                }
            },
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return application


app = create_app()
