from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eventflow_auth.api.error_handling import register_exception_handlers
from eventflow_auth.api.routes import router
from eventflow_auth.config import get_settings
from eventflow_auth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

CORRELATION_HEADER = "X-Correlation-Id"
HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from eventflow_auth.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        # A missing default role or unreachable store must stop the process
        logger.error("startup_failed", error_type=type(exc).__name__, error=str(exc))
        raise

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="EventFlow Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return get_settings().cors_allow_origins or ["http://localhost:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", CORRELATION_HEADER],
    expose_headers=[CORRELATION_HEADER],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate X-Correlation-Id into log context and echo it on the response."""
    correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
    response = await call_next(request)
    response.headers[CORRELATION_HEADER] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health/live", tags=["health"])
async def health_live() -> Dict[str, Any]:
    return {"status": "healthy", "version": __version__}


@app.get("/health/ready", tags=["health"])
async def health_ready():
    """Readiness: the credential store and revocation cache both answer."""
    from eventflow_auth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, str] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["store"] = "ok"
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        checks["store"] = "timeout"
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["store"] = "error"

    try:
        await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["cache"] = "ok"
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache")
        checks["cache"] = "timeout"
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        checks["cache"] = "error"

    healthy = all(value == "ok" for value in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "unhealthy", "checks": checks},
    )
