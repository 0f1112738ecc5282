from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_fastapi_instrumentator import Instrumentator

from . import db
from .config import get_settings
from .db import dispose_engine, init_engine
from .observability import RequestContextMiddleware, configure_logging, init_sentry
from .startup import validate_settings
from .routes import (
    biometrics,
    generate,
    guardrails,
    health,
    ingredients,
    library,
    macros,
    me,
    meal_boards,
    plans,
    reminders,
    week_boards,
)
from .ratelimit import limiter
from .services.reminders import reminder_dispatch_loop
from slowapi.errors import RateLimitExceeded
from slowapi import _rate_limit_exceeded_handler

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject requests whose declared Content-Length exceeds the configured limit."""

    def __init__(self, app, max_bytes: int):
        super().__init__(app)
        self.max_bytes = max_bytes

    async def dispatch(self, request: Request, call_next):
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={"detail": f"Request body exceeds {self.max_bytes} bytes"},
            )
        return await call_next(request)


@asynccontextmanager
async def lifespan(app: FastAPI):
    s = get_settings()
    stop = asyncio.Event()
    task = None
    if s.reminder_dispatch_enabled and db.SessionLocal is not None:
        task = asyncio.create_task(reminder_dispatch_loop(stop))
    elif s.reminder_dispatch_enabled:
        logger.warning("Reminder dispatch enabled but no database configured; loop not started")
    try:
        yield
    finally:
        stop.set()
        if task is not None:
            await task
        await dispose_engine()


def create_app() -> FastAPI:
    s = get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level)
    init_sentry(s)
    validate_settings(s)
    app = FastAPI(title=s.app_name, lifespan=lifespan)

    # Initialize DB engine if configured
    init_engine()

    # CORS
    origins: List[str] = s.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Security headers
    app.add_middleware(SecurityHeadersMiddleware)
    # Body size
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=s.request_max_body_mb * 1024 * 1024)
    # Request id for structured logs
    app.add_middleware(RequestContextMiddleware)
    # Compression
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    # Routers
    prefix = "/v1"
    app.include_router(health.router, prefix=prefix)
    app.include_router(me.router, prefix=prefix)
    app.include_router(plans.router, prefix=prefix)
    app.include_router(guardrails.router, prefix=prefix)
    app.include_router(library.router, prefix=prefix)
    app.include_router(generate.router, prefix=prefix)
    app.include_router(ingredients.router, prefix=prefix)
    app.include_router(week_boards.router, prefix=prefix)
    app.include_router(meal_boards.router, prefix=prefix)
    app.include_router(macros.router, prefix=prefix)
    app.include_router(biometrics.router, prefix=prefix)
    app.include_router(reminders.router, prefix=prefix)

    # Rate limit handling
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Metrics
    Instrumentator().instrument(app).expose(app, include_in_schema=False)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("app.main:app", host="0.0.0.0", port=port, reload=False)
