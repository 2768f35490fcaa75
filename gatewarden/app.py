from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from gatewarden.api.error_handling import register_exception_handlers
from gatewarden.api.routes import router
from gatewarden.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the maintenance sweeps with the app and stop them on shutdown."""
    from gatewarden.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.sweeps_enabled:
            await runtime.scheduler.start()
            logger.info("sweeps_started_on_startup", sweeps=runtime.scheduler.names())
    except Exception as exc:
        logger.error("startup_sweeps_failed", error=str(exc))

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Gatewarden", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID (or a fresh one)."""
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
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from gatewarden.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "ok",
        "version": __version__,
        "redis": runtime.cache is not None,
        "sweeps": {
            name: {"running": task.running, "runs": task.runs}
            for name, task in runtime.scheduler.tasks.items()
        },
    }


def create_app() -> FastAPI:
    return app
