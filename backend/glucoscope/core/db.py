import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_async_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def init_db(url: Optional[str]) -> None:
    global _async_engine, _async_session_factory

    if not url:
        logger.warning("DATABASE_URL not set. Rollups are cached in memory only.")
        _async_engine = None
        _async_session_factory = None
        return

    safe_url = url.split("@")[-1] if "@" in url else "..."
    logger.info("Connecting to database", extra={"target": safe_url})

    connect_args: dict = {}
    if "asyncpg" in url:
        u = make_url(url)
        query = dict(u.query)
        mode = query.pop("sslmode", None)
        if mode in ("require", "verify-full"):
            connect_args["ssl"] = "require"
        elif mode == "disable":
            connect_args["ssl"] = False
        query.pop("channel_binding", None)
        _async_engine = create_async_engine(u._replace(query=query), connect_args=connect_args, pool_pre_ping=True)
    else:
        _async_engine = create_async_engine(url, pool_pre_ping=True)

    _async_session_factory = async_sessionmaker(_async_engine, expire_on_commit=False)


def get_engine() -> Optional[AsyncEngine]:
    return _async_engine


def get_session_factory() -> Optional[async_sessionmaker[AsyncSession]]:
    return _async_session_factory


async def create_tables() -> None:
    if _async_engine is None:
        return
    # registers the rollup table on Base.metadata
    from glucoscope.models import rollup  # noqa: F401

    async with _async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def check_db_health() -> dict:
    if _async_engine is None:
        return {"ok": True, "mode": "memory"}
    try:
        async with _async_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"ok": True, "mode": "database"}
    except Exception as exc:
        logger.error("Database health check failed", extra={"error": str(exc)})
        return {"ok": False, "mode": "database", "error": str(exc)}


__all__ = ["Base", "init_db", "create_tables", "check_db_health", "get_engine", "get_session_factory"]
