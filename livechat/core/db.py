from uuid import uuid4

from fastapi import Request

from sqlalchemy import Column, String
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession,
                                    async_sessionmaker, create_async_engine)
from sqlalchemy.orm import declarative_base, declared_attr

from livechat.core.config import settings


def generate_id() -> str:
    return str(uuid4())


class PreBase:
    @declared_attr
    def __tablename__(cls):
        return cls.__name__.lower()
    id = Column(String(36), primary_key=True, default=generate_id)


Base = declarative_base(cls=PreBase)


def get_engine(test=False) -> AsyncEngine:
    """
    Lazily initializes and returns the database engine.
    """

    database_url = settings.get_database_url(test)
    engine_kwargs = {'echo': settings.database_echo, 'future': True}
    if not database_url.startswith('sqlite'):
        engine_kwargs.update(pool_size=5, max_overflow=10)
    return create_async_engine(database_url, **engine_kwargs)


def get_async_session(test=False, engine: AsyncEngine | None = None):
    if engine is None:
        engine = get_engine(test)
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


async def get_session(request: Request):
    """
    Dependency-injected session generator for FastAPI routes.
    """
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session
