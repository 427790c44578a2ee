"""
Async database access for the API.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from api.src.config import get_settings

settings = get_settings()

def async_url(url: str) -> str:
    """Point a plain or psycopg2 postgres URL at the asyncpg driver."""
    for prefix in ("postgresql+psycopg2://", "postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url

engine = create_async_engine(
    async_url(settings.database_url),
    echo=settings.database_echo,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()

async def get_db():
    """Request-scoped session dependency."""
    async with async_session() as session:
        yield session

async def init_db():
    # Tables must be registered on Base before create_all
    from api.src.models import pipeline  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
