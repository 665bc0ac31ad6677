from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.gzip import GZipMiddleware

from .config import get_settings
from .db import dispose_engine, init_engine
from .observability import RequestContextMiddleware, configure_logging, init_sentry
from .routes import health, shopping
from .services.shopping_list import drain_background_tasks
from .startup import validate_settings

logger = logging.getLogger(__name__)

# Grace period for detached cache-warming runs when the process stops.
SHUTDOWN_DRAIN_SECONDS = 10.0


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await drain_background_tasks(SHUTDOWN_DRAIN_SECONDS)
    await dispose_engine()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    s = get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level)
    init_sentry(s)
    validate_settings(s)
    init_engine()

    app = FastAPI(title=s.app_name, lifespan=lifespan)

    origins: List[str] = s.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(RequestContextMiddleware)

    prefix = "/v1"
    app.include_router(health.router, prefix=prefix)
    app.include_router(shopping.router, prefix=prefix)

    Instrumentator().instrument(app).expose(app, include_in_schema=False)

    logger.info(
        "Application configured env=%s similarity_mode=%s batch_size=%d max_concurrency=%d",
        s.environment,
        s.similarity_mode,
        s.similarity_batch_size,
        s.similarity_max_concurrency,
    )
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("mealcart.main:app", host="0.0.0.0", port=port, reload=False)
