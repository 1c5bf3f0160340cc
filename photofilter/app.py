from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from photofilter.api.error_handling import register_exception_handlers
from photofilter.api.routes import router
from photofilter.config import Settings
from photofilter.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

# How often expired in-memory share links are swept
SHARE_CLEANUP_INTERVAL_SECONDS = 15 * 60

_cleanup_task: asyncio.Task | None = None


async def _run_share_cleanup(interval_seconds: int) -> None:
    from photofilter.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await get_runtime().shares.cleanup_expired()
        except Exception as exc:
            logger.warning("share_cleanup_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release connections on shutdown."""
    global _cleanup_task
    from photofilter.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_share_cleanup(SHARE_CLEANUP_INTERVAL_SECONDS)
    )
    logger.info("app_started", version=__version__)
    yield
    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="PhotoFilter Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; avoid a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with the client's X-Request-ID (or a new UUID) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
