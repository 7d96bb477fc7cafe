from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from lockgate.api.error_handling import register_exception_handlers
from lockgate.api.routes import router
from lockgate.api.session_middleware import bind_session
from lockgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store on startup and release it on shutdown."""
    from lockgate.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.open()
    logger.info("runtime_started", version=__version__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="lockgate", version=__version__, lifespan=lifespan)

# Registered before the correlation middleware so request ids cover session logs
app.middleware("http")(bind_session)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id.

    Taken from the ``X-Request-ID`` header when the client sends one, otherwise
    generated. The id is bound for structured logging and echoed back in the
    response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "same-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
