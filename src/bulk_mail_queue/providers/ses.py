# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Amazon SES provider using the SES SMTP interface.

SES enforces a strict per-second sending rate (14/s for new accounts), so
this provider reports a ``second`` quota window and the queue spreads its
attempts evenly across each second.

Messages are built with :class:`email.message.EmailMessage` (multipart
alternative text/html, plus attachments) and sent through a pooled
aiosmtplib connection.
"""

from __future__ import annotations

import asyncio
import time
from email.message import EmailMessage
from email.utils import make_msgid

import aiosmtplib

from ..attachments import AttachmentResolver
from ..config_loader import SESSettings
from ..logger import get_logger
from ..models import EmailParams, QuotaWindow, RateLimitWindow, SendResult
from ..smtp_pool import SMTPPool
from .base import EmailProvider, QuotaTracker

logger = get_logger("SESProvider")


class SESProvider(EmailProvider):
    """Per-second capped provider backed by Amazon SES over SMTP."""

    name = "ses"

    def __init__(
        self,
        settings: SESSettings,
        pool: SMTPPool | None = None,
        attachments: AttachmentResolver | None = None,
        send_timeout: float = 30.0,
    ):
        self.settings = settings
        self.pool = pool or SMTPPool()
        self.attachments = attachments or AttachmentResolver()
        self.quota = QuotaTracker(settings.rate_limit, QuotaWindow.SECOND)
        self._send_timeout = send_timeout

    def is_configured(self) -> bool:
        return self.settings.configured

    def get_rate_limit(self) -> RateLimitWindow:
        return self.quota.snapshot()

    async def build_message(self, params: EmailParams) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = params.from_addr
        msg["To"] = params.to
        msg["Subject"] = params.subject
        msg["Message-ID"] = make_msgid()
        if params.text:
            msg.set_content(params.text)
            if params.html:
                msg.add_alternative(params.html, subtype="html")
        else:
            msg.set_content(params.html, subtype="html")
        for filename, content, (maintype, subtype) in await self.attachments.resolve_all(params.attachments or []):
            msg.add_attachment(content, maintype=maintype, subtype=subtype, filename=filename)
        return msg

    async def send_email(self, params: EmailParams) -> SendResult:
        if not self.is_configured():
            return self._failure("AWS SES not configured")
        if self.quota.exhausted():
            wait_ms = max(0, round((self.quota.reset_at - time.time()) * 1000))
            return self._failure(f"Rate limit exceeded. Wait {wait_ms}ms")

        host = self.settings.endpoint
        port = self.settings.smtp_port
        try:
            msg = await self.build_message(params)
            smtp = await self.pool.get_connection(
                host, port, self.settings.smtp_user, self.settings.smtp_password, use_tls=True
            )
            await asyncio.wait_for(smtp.send_message(msg), timeout=self._send_timeout)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            logger.error("SES email error for %s: %s", params.to, exc)
            await self.pool.discard(host, port, self.settings.smtp_user, use_tls=True)
            return self._failure(str(exc) or exc.__class__.__name__)

        self.quota.consume()
        return SendResult(success=True, id=msg["Message-ID"], provider=self.name)

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.close()
