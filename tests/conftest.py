"""Shared test fixtures for the workspace backup service and engine."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from backend.config import Settings
from backend.main import create_app, initialize_app_state
from backend.models.base import Base
from backend.services.blob_store import LocalBlobStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "admin-password-123"


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Performs the work of the application lifespan (DB schema, blob directory,
    admin user) because ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()
    await initialize_app_state(app)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        ac.app = app  # type: ignore[attr-defined]
        yield ac

    await app.state.engine.dispose()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        _env_file=None,
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        blob_dir=tmp_path / "blobs",
        public_base_url="http://test",
        admin_username=ADMIN_USERNAME,
        admin_password=ADMIN_PASSWORD,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine = create_async_engine(test_settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def blob_store(test_settings: Settings) -> LocalBlobStore:
    return LocalBlobStore(test_settings.blob_dir, test_settings.public_base_url)


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(test_settings) as ac:
        yield ac


@pytest.fixture
def app(client: AsyncClient) -> FastAPI:
    return client.app  # type: ignore[attr-defined,no-any-return]


LoginFn = Callable[[str, str], Awaitable[dict[str, str]]]


@pytest.fixture
def login_as(client: AsyncClient) -> LoginFn:
    """Return a coroutine function that logs in and returns Authorization headers."""

    async def _login(username: str, password: str) -> dict[str, str]:
        resp = await client.post(
            "/api/auth/login", json={"username": username, "password": password}
        )
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}

    return _login


@pytest.fixture
async def auth_headers(login_as: LoginFn) -> dict[str, str]:
    return await login_as(ADMIN_USERNAME, ADMIN_PASSWORD)


@pytest.fixture
async def project_id(client: AsyncClient, auth_headers: dict[str, str]) -> str:
    resp = await client.post("/api/projects", json={"name": "demo"}, headers=auth_headers)
    assert resp.status_code == 201, resp.text
    result: str = resp.json()["id"]
    return result
