from __future__ import annotations

import logging
import sys
import uuid
from typing import Any, List

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .config import Settings

_LOGGING_CONFIGURED = False
_SENTRY_CONFIGURED = False

REQUEST_ID_HEADER = "X-Request-ID"

# Loggers whose chatter drowns out the batch-level similarity logs.
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "aiosqlite", "sqlalchemy.engine")
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn")


def _pre_chain() -> List[structlog.types.Processor]:
    # Applied to stdlib records too, so request context reaches every service log line.
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging(json_logs: bool, level: str = "INFO") -> None:
    """Route stdlib logging through structlog, rendering JSON or console lines."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)
    renderer: structlog.types.Processor
    if json_logs:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
            foreign_pre_chain=_pre_chain(),
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_pre_chain(),
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True
        server_logger.setLevel(log_level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    _LOGGING_CONFIGURED = True


def bind_log_context(**values: Any) -> None:
    """Attach key/values to every log line emitted for the rest of this request."""
    structlog.contextvars.bind_contextvars(**values)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request's logs with a request id, echoed back in the response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        bind_log_context(request_id=request_id, method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def init_sentry(settings: Settings) -> None:
    """Initialise Sentry when a DSN is configured; ERROR logs become events."""
    global _SENTRY_CONFIGURED
    if _SENTRY_CONFIGURED or not settings.sentry_dsn:
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[
            FastApiIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
    )
    sentry_sdk.set_tag("similarity_mode", settings.similarity_mode)
    _SENTRY_CONFIGURED = True
