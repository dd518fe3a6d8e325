from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tokenkeep.api.error_handling import register_exception_handlers
from tokenkeep.api.routes import router
from tokenkeep.config import Settings
from tokenkeep.logging import get_logger, set_correlation_id
from tokenkeep.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


def create_app(
    runtime: Optional[Runtime] = None, *, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the HTTP app around ``runtime``.

    Without a runtime one is built from ``settings`` (or the environment) at
    startup and closed at shutdown. A runtime passed in stays owned by the
    caller. Serve with ``uvicorn tokenkeep.app:create_app --factory``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            app.state.runtime = Runtime(settings)
        yield
        if owned:
            try:
                await app.state.runtime.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="tokenkeep", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag every log line of the request with X-Request-ID (client or generated)."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request):
        runtime: Runtime = request.app.state.runtime
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

        if hasattr(runtime.store, "_connect"):
            def _ping_database() -> None:
                with runtime.store._connect() as conn:
                    conn.execute("SELECT 1").fetchone()

            db_ok = await _run_bounded("database", _ping_database)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        else:
            db_ok = True
            checks["database"] = {"status": "healthy", "type": "memory"}

        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        checks["cache"] = {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        }

        healthy = db_ok and cache_ok
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "version": __version__,
                "checks": checks,
            },
        )

    return app
