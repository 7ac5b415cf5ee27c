"""Shared test fixtures and configuration for the test suite."""

import asyncio
from typing import Callable, Generator, Optional
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from limits.aio.storage import MemoryStorage
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from taskapi.auth.provider import Identity, SessionTokens
from taskapi.core.config import Settings, get_settings
from taskapi.core.errors import IdentityProviderError
from taskapi.database import build_session_factory, get_db, get_service_db
from taskapi.main import create_app

SERVICE_KEY = "service-secret"


class FakeIdentityProvider:
    """In-memory stand-in for the external identity provider."""

    def __init__(self):
        self.users = {
            "token-alice": Identity(id="alice", email="alice@example.com", display_name="Alice"),
            "token-bob": Identity(id="bob", email="bob@example.com", display_name="Bob"),
        }
        self.refresh_tokens = {
            "refresh-alice": SessionTokens("token-alice", "refresh-alice-2", 3600),
        }
        self.signed_out: list[str] = []
        self.unavailable = False
        self.fail_sign_out = False

    async def get_user(self, access_token: str) -> Optional[Identity]:
        if self.unavailable:
            raise IdentityProviderError("identity provider down")
        return self.users.get(access_token)

    async def refresh_session(self, refresh_token: str) -> Optional[SessionTokens]:
        if self.unavailable:
            raise IdentityProviderError("identity provider down")
        return self.refresh_tokens.get(refresh_token)

    async def sign_out(self, access_token: str) -> None:
        if self.fail_sign_out:
            raise IdentityProviderError("sign out failed")
        self.signed_out.append(access_token)

    async def aclose(self) -> None:
        pass


def broken_redis() -> MagicMock:
    """A Redis client whose every call fails as if the server were down."""
    error = RedisConnectionError("Connection refused")
    client = MagicMock()
    for name in ("get", "set", "delete", "scan", "ping", "aclose"):
        setattr(client, name, AsyncMock(side_effect=error))
    return client


class UnreachableStorage(MemoryStorage):
    """Limiter storage whose every call fails as if Redis were down."""

    async def acquire_entry(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")

    async def get_moving_window(self, *args, **kwargs):
        raise RedisConnectionError("Connection refused")


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings with a temporary database."""
    return Settings(
        _env_file=None,
        environment="test",
        log_level="DEBUG",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        cors_origins="https://app.example,http://localhost:3000",
        service_role_key=SERVICE_KEY,
        archive_schedule_enabled=False,
    )


@pytest.fixture
def engine(test_settings):
    # NullPool: every session opens its connection on the running loop, so
    # the TestClient loop and the pytest-asyncio loop never share one
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async def create_tables():
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    asyncio.run(create_tables())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def limiter_storage():
    return MemoryStorage()


@pytest.fixture
def dead_limiter_storage():
    return UnreachableStorage()


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def make_app(
    session_factory, fake_redis, limiter_storage, identity_provider, test_settings
) -> Callable[..., FastAPI]:
    """Build an app wired to the test backends; keyword args override settings."""

    def factory(redis=None, storage=None, provider=None, **overrides) -> FastAPI:
        settings = test_settings.model_copy(update=overrides)
        app = create_app(
            settings,
            redis=redis if redis is not None else fake_redis,
            identity_provider=provider if provider is not None else identity_provider,
            limiter_storage=storage if storage is not None else limiter_storage,
        )

        async def override_db():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_settings] = lambda: settings
        app.dependency_overrides[get_db] = override_db
        app.dependency_overrides[get_service_db] = override_db
        return app

    return factory


@pytest.fixture
def client(make_app) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    with TestClient(make_app()) as test_client:
        yield test_client


@pytest.fixture
def sample_task_data():
    return {"title": "Buy milk", "status": "todo"}


@pytest.fixture
def dead_redis() -> MagicMock:
    return broken_redis()
