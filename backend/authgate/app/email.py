"""Transactional e-mail for verification links, reset links and one-time codes."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from typing import Any
from urllib.parse import urlencode, urlsplit

import aiosmtplib
from fastapi import HTTPException, status

from ..db.models import EmailOtpType
from .config import AuthSettings, EmailSettings
from .timeutils import utcnow

logger = logging.getLogger(__name__)

_OUTBOX_LIMIT = 100

_OTP_SUBJECTS = {
    EmailOtpType.EMAIL_VERIFICATION: "Verify your email address for {host}",
    EmailOtpType.SIGN_IN: "Your sign-in code for {host}",
    EmailOtpType.FORGET_PASSWORD: "Reset your password for {host}",
}

_OTP_HEADLINES = {
    EmailOtpType.EMAIL_VERIFICATION: "Verify your email for {host}",
    EmailOtpType.SIGN_IN: "Sign in to {host}",
    EmailOtpType.FORGET_PASSWORD: "Reset your password for {host}",
}


def _describe_duration(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    minutes = max(seconds // 60, 1)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


@dataclass(slots=True)
class SentEmail:
    """Copy of a message kept by the development outbox."""

    kind: str
    to: str
    subject: str
    text: str
    sent_at: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "to": self.to,
            "subject": self.subject,
            "text": self.text,
            "sentAt": self.sent_at.isoformat(),
            **self.details,
        }


class EmailDispatcher:
    """Compose messages and either capture them (development) or send via SMTP."""

    def __init__(self, config: EmailSettings, auth: AuthSettings, *, capture: bool) -> None:
        self._config = config
        self._auth = auth
        self.capture = capture
        self.outbox: deque[SentEmail] = deque(maxlen=_OUTBOX_LIMIT)

    @property
    def host(self) -> str:
        return urlsplit(self._auth.public_base_url).netloc or "localhost:3000"

    def build_url(self, path: str, **params: str) -> str:
        """Absolute URL on the public site; absolute ``path`` values are kept as is."""

        if path.startswith(("http://", "https://")):
            base = path
        else:
            suffix = path if path.startswith("/") else f"/{path}"
            base = f"{self._auth.public_base_url.rstrip('/')}{suffix}"
        if not params:
            return base
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{urlencode(params)}"

    async def send_email_verification(self, *, email: str, url: str) -> None:
        text = (
            f"Verify your email for {self.host}\n\n"
            f"Click this link to verify your email:\n{url}\n\n"
            "If you did not request this email you can safely ignore it."
        )
        await self._deliver(
            kind="email_verification",
            to=email,
            subject=f"Verify your email address for {self.host}",
            text=text,
            details={"url": url},
        )

    async def send_password_reset_email(self, *, email: str, url: str) -> None:
        expiry = _describe_duration(self._auth.password_reset_token_ttl_seconds)
        text = (
            f"Reset your password for {self.host}\n\n"
            f"Click this link to reset your password:\n{url}\n\n"
            "If you did not request this email you can safely ignore it. "
            f"This link will expire in {expiry}."
        )
        await self._deliver(
            kind="password_reset",
            to=email,
            subject=f"Reset your password for {self.host}",
            text=text,
            details={"url": url},
        )

    async def send_otp_email(self, *, email: str, otp: str, otp_type: EmailOtpType) -> None:
        expiry = _describe_duration(self._auth.otp_ttl_seconds)
        text = (
            f"{_OTP_HEADLINES[otp_type].format(host=self.host)}\n\n"
            f"Your verification code is: {otp}\n\n"
            f"This code will expire in {expiry}. "
            "If you did not request this code, you can safely ignore this email."
        )
        await self._deliver(
            kind="otp",
            to=email,
            subject=_OTP_SUBJECTS[otp_type].format(host=self.host),
            text=text,
            details={"otp": otp, "type": otp_type.value},
        )

    async def _deliver(
        self,
        *,
        kind: str,
        to: str,
        subject: str,
        text: str,
        details: dict[str, Any],
    ) -> None:
        if self.capture:
            self.outbox.append(
                SentEmail(kind=kind, to=to, subject=subject, text=text, sent_at=utcnow(), details=details)
            )
            logger.info("Captured %s email for %s: %s", kind, to, subject)
            return

        if not (self._config.smtp_host and self._config.email_from):
            logger.error("SMTP delivery requested but EMAIL__SMTP_HOST or EMAIL__EMAIL_FROM is missing")
            raise HTTPException(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Email delivery is not configured",
            )

        message = EmailMessage()
        message["From"] = self._config.email_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)

        try:
            await aiosmtplib.send(
                message,
                hostname=self._config.smtp_host,
                port=self._config.smtp_port,
                username=self._config.smtp_username,
                password=self._config.smtp_password,
                use_tls=self._config.use_tls,
                start_tls=not self._config.use_tls,
                timeout=self._config.timeout_seconds,
            )
        except aiosmtplib.SMTPException as exc:
            logger.exception("Failed to send %s email to %s", kind, to)
            raise HTTPException(
                status.HTTP_502_BAD_GATEWAY,
                detail="Failed to send email",
            ) from exc
        logger.info("Sent %s email to %s", kind, to)

    def list_captured(self) -> list[dict[str, Any]]:
        return [item.as_dict() for item in reversed(self.outbox)]

    def clear_captured(self) -> int:
        count = len(self.outbox)
        self.outbox.clear()
        return count


__all__ = ["EmailDispatcher", "SentEmail"]
