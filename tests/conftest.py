import asyncio
import logging
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import (AsyncSession, async_sessionmaker,
                                    create_async_engine)

from livechat.core.base import Base
from livechat.core.config import settings
from livechat.core.db import get_session
from livechat.main import app
from livechat.services.chat_hub import ChatHub
from livechat.services.chat_registry import ChatConnection, ConnectionRole
from livechat.services.session_store import ChatSessionStore

logger = logging.getLogger('livechat')


class FakeTransport:
    """Collects frames the server pushes to one browser."""

    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)

    def types(self):
        return [frame['type'] for frame in self.sent]

    def of_type(self, event_type):
        return [frame for frame in self.sent if frame['type'] == event_type]

    def last(self, event_type):
        frames = self.of_type(event_type)
        assert frames, f'no {event_type} in {self.types()}'
        return frames[-1]


class FailingTransport(FakeTransport):
    async def send_json(self, data):
        raise ConnectionResetError('socket gone')


class SlowTransport(FakeTransport):
    """A browser on a slow link: every frame takes ``delay`` to go out."""

    def __init__(self, delay=0.2):
        super().__init__()
        self.delay = delay

    async def send_json(self, data):
        await asyncio.sleep(self.delay)
        self.sent.append(data)


def issue_token(subject, expires_delta=None, **claims):
    """Bearer token as the admin login service signs it."""
    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(hours=12)
    )
    return jwt.encode(
        {'sub': subject, 'exp': expire, **claims},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


@pytest.fixture(scope="function")
async def test_engine():
    engine = create_async_engine(
        settings.get_database_url(test=True),
        future=True
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Удаление таблиц после тестов
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def test_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(session_factory) -> ChatSessionStore:
    return ChatSessionStore(session_factory)


@pytest.fixture
async def chat_hub(store, session_factory):
    hub = ChatHub(store, send_timeout=0.5, history_limit=50)
    app.state.chat = hub
    app.state.session_factory = session_factory
    yield hub
    await hub.aclose()


@pytest.fixture
def make_visitor():
    def _make(visitor_id='v_test', transport=None):
        return ChatConnection(
            transport=transport or FakeTransport(),
            role=ConnectionRole.VISITOR,
            visitor_id=visitor_id,
        )
    return _make


@pytest.fixture
def make_admin():
    counter = iter(range(1, 1000))

    def _make(name='Alice', transport=None):
        return ChatConnection(
            transport=transport or FakeTransport(),
            role=ConnectionRole.ADMIN,
            admin_id=f'admin-{next(counter)}',
            admin_name=name,
        )
    return _make


@pytest.fixture
def token_factory():
    return issue_token


@pytest.fixture
def admin_token():
    return issue_token('admin-1', name='Alice', email='alice@test.com')


@pytest.fixture
def auth_headers(admin_token):
    return {'Authorization': f'Bearer {admin_token}'}


@pytest.fixture(scope='function')
async def async_client(chat_hub, session_factory):
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    transport = ASGITransport(app=app)
    async with AsyncClient(
            transport=transport,
            base_url='http://test'
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(scope='function', autouse=True)
def test_logging():
    logger = logging.getLogger("livechat")
    if not any(
        getattr(h, 'baseFilename', '').endswith('test_livechat.log')
        for h in logger.handlers
    ):
        logger.setLevel(logging.DEBUG)
        handler = RotatingFileHandler(
            "test_livechat.log",
            maxBytes=200000,
            backupCount=10
        )
        handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    yield


@pytest.fixture
def failing_transport():
    return FailingTransport()


@pytest.fixture
def slow_transport():
    return SlowTransport()
