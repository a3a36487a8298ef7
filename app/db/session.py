from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings


def make_engine(url: str, **kwargs):
    return create_async_engine(url, future=True, echo=False, **kwargs)


def make_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


# DATABASE_URL uses asyncpg in production (postgresql+asyncpg://)
async_engine = make_engine(settings.DATABASE_URL, pool_pre_ping=True)
AsyncSessionLocal = make_session_factory(async_engine)
