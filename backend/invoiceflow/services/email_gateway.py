"""Email gateway: plain-text SMTP delivery that reports failure as ``False``."""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional, Protocol

from invoiceflow.core.config import Settings

logger = logging.getLogger(__name__)


class EmailGateway(Protocol):
    async def send(self, to_address: str, subject: str, body: str) -> bool: ...


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    from_email: str

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["SmtpConfig"]:
        if not settings.smtp_configured:
            return None
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
            from_email=settings.smtp_from_email,
        )


def send_email_via_smtp(*, smtp: SmtpConfig, to_email: str, subject: str, body_text: str) -> None:
    msg = EmailMessage()
    msg["From"] = smtp.from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body_text)

    context = ssl.create_default_context()

    # Port 465 uses implicit SSL (SMTP_SSL), port 587 uses STARTTLS
    if smtp.port == 465:
        server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=20, context=context)
    else:
        server = smtplib.SMTP(smtp.host, smtp.port, timeout=20)
        if smtp.use_tls:
            server.starttls(context=context)
    try:
        if smtp.user and smtp.password:
            server.login(smtp.user, smtp.password)
        server.send_message(msg)
    finally:
        try:
            server.quit()
        except smtplib.SMTPException:
            logger.debug("SMTP quit failed after send to %s", to_email)


class SmtpEmailGateway:
    def __init__(self, settings: Settings) -> None:
        self._config = SmtpConfig.from_settings(settings)

    @property
    def configured(self) -> bool:
        return self._config is not None

    async def send(self, to_address: str, subject: str, body: str) -> bool:
        to_address = (to_address or "").strip()
        if self._config is None:
            logger.warning("Email not sent to %s: SMTP is not configured", to_address)
            return False
        if "@" not in to_address:
            logger.warning("Email not sent: invalid recipient %r", to_address)
            return False
        try:
            await asyncio.to_thread(
                send_email_via_smtp,
                smtp=self._config,
                to_email=to_address,
                subject=subject,
                body_text=body,
            )
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Email to %s failed: %s", to_address, exc)
            return False
        return True
