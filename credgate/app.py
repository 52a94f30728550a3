from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from credgate.api.error_handling import register_exception_handlers
from credgate.api.routes import router
from credgate.logging import get_logger, set_correlation_id
from credgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

_purge_task: asyncio.Task | None = None


async def _run_token_purge(interval_seconds: int) -> None:
    """Periodically delete expired one-time tokens."""
    from credgate.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().auth.purge_expired_tokens)
        except StoreUnavailable as exc:
            logger.warning("token_purge_skipped", error=str(exc))
        except Exception:
            logger.exception("token_purge_failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _purge_task
    from credgate.service.runtime import get_runtime

    runtime = get_runtime()
    _purge_task = asyncio.create_task(
        _run_token_purge(runtime.settings.token_purge_interval_seconds)
    )
    logger.info(
        "token_purge_scheduled",
        interval_seconds=runtime.settings.token_purge_interval_seconds,
    )

    try:
        yield
    finally:
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
            _purge_task = None
        runtime.close()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="Credgate", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
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
    response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/healthz", tags=["ops"])
async def healthz():
    return {"status": "ok", "version": __version__}


register_exception_handlers(app)
app.include_router(router)
