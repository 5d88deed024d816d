import logging
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from checkin_sync.core.config import settings

logger = logging.getLogger(__name__)


def async_database_url(url: str) -> str:
    """
    Force an async driver onto plain PostgreSQL URLs.
    """
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def listener_dsn(url: str) -> str:
    """
    asyncpg connects with a bare libpq DSN, without the SQLAlchemy driver suffix.
    """
    return async_database_url(url).replace("postgresql+asyncpg://", "postgresql://", 1)


def build_engine(url: str) -> AsyncEngine:
    if url.startswith("postgresql+asyncpg://"):
        return create_async_engine(url, poolclass=NullPool, pool_pre_ping=True, echo=False)
    return create_async_engine(url, echo=False)


_db_url = async_database_url(str(settings.DATABASE_URL))
logger.info("Database driver: %s", _db_url.split("://", 1)[0])

engine = build_engine(_db_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def test_db_connection() -> bool:
    """
    Connection check for health endpoints; returns False instead of raising.
    """
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error("Database connection test failed: %s", e)
        return False


async def get_db():
    """
    Dependency that provides a database session.
    """
    async with SessionLocal() as session:
        yield session
