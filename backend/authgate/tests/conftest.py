"""Shared fixtures for Authgate API tests."""
from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from backend.authgate.app.config import (
    AuthSettings,
    GoogleSettings,
    Settings,
    StorageSettings,
    WebAuthnSettings,
)
from backend.authgate.app.dependencies import get_session
from backend.authgate.app.email import EmailDispatcher
from backend.authgate.app.main import create_app
from backend.authgate.db.base import create_all, create_engine, create_session, dispose_engine


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Return a SQLite database URL located in a temporary directory."""

    return f"sqlite+aiosqlite:///{tmp_path / 'authgate.sqlite3'}"


@pytest.fixture
def test_settings(db_url: str) -> Settings:
    return Settings(
        _env_file=None,
        ENV="dev",
        auth=AuthSettings(
            public_base_url="http://localhost:3000",
            trusted_origins=["http://localhost:3000", "https://app.example.com"],
        ),
        webauthn=WebAuthnSettings(rp_id="localhost", rp_name="Authgate"),
        google=GoogleSettings(client_id="client-id.apps.example.com", client_secret="shh"),
        storage=StorageSettings(database_url=db_url),
    )


@pytest_asyncio.fixture
async def db_session(db_url: str) -> AsyncIterator[AsyncSession]:
    """Create the schema and yield a session bound to the test database."""

    create_engine(db_url)
    await create_all()
    session = create_session()
    try:
        yield session
    finally:
        await session.close()
        await dispose_engine()


@pytest.fixture
def app(test_settings: Settings, db_session: AsyncSession):
    """Create a FastAPI test application sharing the test database session."""

    application = create_app(settings=test_settings)

    async def _override_session():
        yield db_session

    application.dependency_overrides[get_session] = _override_session
    return application


@pytest.fixture
def email_dispatcher(app) -> EmailDispatcher:
    dispatcher: EmailDispatcher = app.state.email_dispatcher
    dispatcher.clear_captured()
    return dispatcher


@pytest_asyncio.fixture
async def client(app) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        yield http
