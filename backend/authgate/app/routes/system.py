"""Health check and the development email outbox."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ..config import Settings
from ..dependencies import get_email_dispatcher, get_settings
from ..email import EmailDispatcher
from ..timeutils import utcnow


router = APIRouter(tags=["system"])

_STARTED_AT = time.monotonic()


class HealthStatusResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime: float
    environment: str


class DevEmailsResponse(BaseModel):
    count: int
    emails: list[dict[str, Any]]


class DevEmailsCleared(BaseModel):
    cleared: int


def _require_dev(settings: Settings) -> None:
    if not settings.is_dev:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Not available in production")


@router.get("/health", response_model=HealthStatusResponse)
async def get_health_status(settings: Settings = Depends(get_settings)) -> HealthStatusResponse:
    """Report that the service is up, with its uptime in seconds."""

    return HealthStatusResponse(
        status="healthy",
        timestamp=utcnow(),
        uptime=round(time.monotonic() - _STARTED_AT, 3),
        environment=settings.env,
    )


@router.get("/dev-emails", response_model=DevEmailsResponse)
async def list_dev_emails(
    settings: Settings = Depends(get_settings),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> DevEmailsResponse:
    _require_dev(settings)
    emails = email_dispatcher.list_captured()
    return DevEmailsResponse(count=len(emails), emails=emails)


@router.delete("/dev-emails", response_model=DevEmailsCleared)
async def clear_dev_emails(
    settings: Settings = Depends(get_settings),
    email_dispatcher: EmailDispatcher = Depends(get_email_dispatcher),
) -> DevEmailsCleared:
    _require_dev(settings)
    return DevEmailsCleared(cleared=email_dispatcher.clear_captured())
