from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings

engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker[AsyncSession]] = None

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})


def init_engine(database_url: Optional[str] = None) -> None:
    """(Re)build the engine and session factory; no URL leaves the DB unconfigured."""
    global engine, SessionLocal
    url = normalize_database_url(database_url or get_settings().database_url)
    if not url:
        engine = None
        SessionLocal = None
        return
    options = {"pool_pre_ping": True} if url.startswith("postgresql") else {}
    engine = create_async_engine(url, future=True, **options)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def dispose_engine() -> None:
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for components that open short-lived sessions of their own."""
    if SessionLocal is None:
        raise RuntimeError("Database not configured")
    return SessionLocal


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session


async def session_dependency() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding one session per request."""
    async with get_session() as session:
        yield session


def normalize_database_url(raw_url: Optional[str]) -> Optional[str]:
    """Pick async drivers and sane SSL defaults.

    `postgres://` and `postgresql://` become asyncpg URLs and plain `sqlite://`
    becomes aiosqlite. Hosts on a private `.internal` network do not terminate
    TLS, so SSL is disabled for them unless the URL sets `ssl=` or `sslmode=`.
    """
    if not raw_url:
        return raw_url

    url = raw_url
    for prefix, replacement in (
        ("postgres://", "postgresql+asyncpg://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ):
        if url.startswith(prefix):
            url = replacement + url[len(prefix):]
            break

    parsed = urlparse(url)
    if parsed.scheme != "postgresql+asyncpg":
        return url

    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    sslmode = query.pop("sslmode", None)
    if sslmode and "ssl" not in query:
        query["ssl"] = sslmode
    if "ssl" in query:
        mode = query["ssl"].lower()
        query["ssl"] = mode if mode in _SSL_MODES else "disable"
    elif parsed.hostname and parsed.hostname.endswith(".internal"):
        query["ssl"] = "disable"
    return urlunparse(parsed._replace(query=urlencode(query)))
