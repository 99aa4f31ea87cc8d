"""Utilities for recording the authentication audit trail."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import AuditEvent
from .logging import get_logger
from .timeutils import utcnow


logger = get_logger("authgate.audit")


async def record_audit_event(
    session: AsyncSession,
    *,
    action: str,
    result: str,
    actor_user_id: int | None = None,
    target_user_id: int | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    """Add an audit event to the current transaction; the caller commits."""

    event = AuditEvent(
        action=action,
        result=result,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=occurred_at or utcnow(),
        metadata_json=dict(metadata or {}),
    )
    session.add(event)
    await session.flush()
    logger.info(
        "audit_event",
        action=action,
        result=result,
        actor_user_id=actor_user_id,
        reason=(metadata or {}).get("reason"),
    )
    return event


def extract_client_ip(request: Request) -> str:
    """Client address, honouring the usual reverse proxy headers."""

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",", 1)[0].strip()
        if candidate:
            return candidate
    for header in ("cf-connecting-ip", "x-real-ip"):
        candidate = (request.headers.get(header) or "").strip()
        if candidate:
            return candidate
    client = request.client
    if client and client.host:
        return client.host
    return "unknown"


async def record_auth_event(
    db: AsyncSession,
    request: Request,
    *,
    action: str,
    result: str,
    actor_user_id: int | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> None:
    """Record an event about the requesting user acting on their own account."""

    await record_audit_event(
        db,
        action=action,
        result=result,
        actor_user_id=actor_user_id,
        target_user_id=actor_user_id,
        ip_address=extract_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        metadata=metadata,
    )


__all__ = ["extract_client_ip", "record_audit_event", "record_auth_event"]
