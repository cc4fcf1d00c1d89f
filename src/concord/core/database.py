"""Async database engine and session management."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

engine = None
async_session_factory = None


class Base(DeclarativeBase):
    pass


def init_engine(database_url: str):
    global engine, async_session_factory
    connect_args = {}
    if "sqlite" in database_url:
        connect_args["check_same_thread"] = False
    engine = create_async_engine(database_url, echo=False, connect_args=connect_args)
    async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if async_session_factory is None:
        raise RuntimeError("Database engine not initialized; call init_engine() first")
    return async_session_factory


async def get_session() -> AsyncSession:
    async with get_session_factory()() as session:
        yield session


async def create_tables():
    # Register every mapped table before create_all
    import concord.models.record  # noqa: F401
    import concord.models.run  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global engine, async_session_factory
    if engine is not None:
        await engine.dispose()
    engine = None
    async_session_factory = None
