from __future__ import annotations

import logging
import sys
import uuid
from typing import Any, Dict, List, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import Settings

REQUEST_ID_HEADER = "X-Request-ID"
SAFETY_AUDIT_LOGGER = "mealplan.safety"
FRAMEWORK_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn")
# Request bodies on these paths carry allergies, conditions or biometrics.
SENSITIVE_PATH_PREFIXES = ("/v1/me", "/v1/biometrics", "/v1/guardrails", "/v1/macros")
SCRUBBED_HEADERS = {"authorization", "cookie"}

_state = {"logging": False, "sentry": False}


def _shared_processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def _renderer(json_logs: bool) -> Any:
    if json_logs:
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(colors=False)


def configure_logging(json_logs: bool, level: str = "INFO") -> None:
    """Send stdlib and structlog records through one stdout handler."""
    if _state["logging"]:
        return
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_renderer(json_logs),
            foreign_pre_chain=_shared_processors(),
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in FRAMEWORK_LOGGERS:
        framework_logger = logging.getLogger(name)
        framework_logger.handlers.clear()
        framework_logger.propagate = True
        framework_logger.setLevel(log_level)
    _state["logging"] = True


def get_safety_audit_logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(SAFETY_AUDIT_LOGGER)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a request id into the structlog context and echo it on the response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response


def scrub_event(event: Dict[str, Any], hint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Drop credentials everywhere and request bodies on health-data routes."""
    request = event.get("request")
    if not isinstance(request, dict):
        return event
    headers = request.get("headers")
    if isinstance(headers, dict):
        request["headers"] = {
            key: ("[scrubbed]" if key.lower() in SCRUBBED_HEADERS else value) for key, value in headers.items()
        }
    url = str(request.get("url") or "")
    if any(prefix in url for prefix in SENSITIVE_PATH_PREFIXES):
        request.pop("data", None)
    return event


def init_sentry(settings: Settings) -> None:
    if _state["sentry"] or not settings.sentry_dsn:
        return
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[
            FastApiIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        before_send=scrub_event,
    )
    _state["sentry"] = True
