from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from passgate.api.error_handling import register_exception_handlers
from passgate.api.routes import router
from passgate.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from passgate.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="passgate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Bind a request id per request, taken from X-Request-ID when the client sends one."""
    request_id = bind_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from passgate.service.runtime import get_runtime

    runtime = get_runtime()
    verify = getattr(runtime.store, "verify_connection", None)
    if verify is None:
        database = {"status": "healthy", "type": "memory"}
        healthy = True
    else:
        try:
            await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
            healthy = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            healthy = False
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            healthy = False
        database = {"status": "healthy" if healthy else "unhealthy", "type": "postgres"}
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": {"database": database},
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
