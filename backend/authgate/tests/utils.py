"""Testing utilities for Authgate API tests."""
from __future__ import annotations

from typing import Any

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from backend.authgate.app.email import EmailDispatcher
from backend.authgate.app.security import hash_password
from backend.authgate.db.models import User


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    password: str | None = "correct-horse",
    name: str = "Test User",
    email_verified: bool = False,
) -> User:
    """Insert a user directly for integration tests."""

    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password) if password else None,
        email_verified=email_verified,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def sign_in(client: AsyncClient, *, email: str, password: str = "correct-horse") -> dict[str, Any]:
    response = await client.post("/auth/sign-in/email", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def last_email(dispatcher: EmailDispatcher, *, to: str, kind: str | None = None) -> dict[str, Any]:
    for item in dispatcher.list_captured():
        if item["to"] == to and (kind is None or item["kind"] == kind):
            return item
    raise AssertionError(f"No captured email for {to}")
