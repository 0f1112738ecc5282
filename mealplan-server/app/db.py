from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings

logger = logging.getLogger(__name__)

engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def init_engine(url: Optional[str] = None) -> None:
    global engine, SessionLocal
    url = normalize_database_url(url or get_settings().database_url)
    if not url:
        engine = None
        SessionLocal = None
        return
    engine = create_async_engine(url, future=True, pool_pre_ping=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def bind_sessionmaker(sessionmaker: Optional[async_sessionmaker[AsyncSession]]) -> None:
    """Swap the session factory, e.g. to point routes at an in-memory database."""
    global SessionLocal
    SessionLocal = sessionmaker


async def dispose_engine() -> None:
    if engine is not None:
        await engine.dispose()


async def ping() -> Optional[bool]:
    """None when no database is configured, otherwise whether `SELECT 1` succeeds."""
    if SessionLocal is None:
        return None
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Database ping failed: %s", exc)
        return False
    return True


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    if not SessionLocal:
        raise RuntimeError("Database not configured")
    async with SessionLocal() as session:
        yield session


def normalize_database_url(raw_url: Optional[str]) -> Optional[str]:
    """Force the asyncpg driver for Postgres URLs and translate `sslmode`.

    Internal `.internal` hosts do not terminate TLS, so SSL is disabled for
    them unless the URL asks for it explicitly.
    """
    if not raw_url:
        return raw_url

    url = raw_url
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    parsed = urlparse(url)
    if not parsed.scheme.startswith("postgresql+asyncpg"):
        return url

    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    sslmode = query.pop("sslmode", None)
    if sslmode:
        query["ssl"] = sslmode.lower()
    if "ssl" not in query and parsed.hostname and parsed.hostname.endswith(".internal"):
        query["ssl"] = "disable"
    elif "ssl" in query:
        allowed = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}
        query["ssl"] = query["ssl"].lower()
        if query["ssl"] not in allowed:
            query["ssl"] = "disable"

    return urlunparse(parsed._replace(query=urlencode(query)))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop the offset."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
