# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Resend provider using the Resend HTTP API.

Resend plans are budgeted per hour (100/hour on the entry tier), so this
provider reports an ``hour`` quota window and the queue spreads attempts
across the whole hour instead of bursting into the cap.
"""

from __future__ import annotations

import asyncio
import base64
import time

import aiohttp

from ..attachments import AttachmentResolver
from ..config_loader import ResendSettings
from ..logger import get_logger
from ..models import EmailParams, QuotaWindow, RateLimitWindow, SendResult
from .base import EmailProvider, QuotaTracker

RESEND_HOURLY_LIMIT = 100

logger = get_logger("ResendProvider")


class ResendProvider(EmailProvider):
    """Hourly-budget provider backed by the Resend REST API."""

    name = "resend"

    def __init__(
        self,
        settings: ResendSettings,
        attachments: AttachmentResolver | None = None,
        hourly_limit: int = RESEND_HOURLY_LIMIT,
        timeout: float = 30.0,
    ):
        self.settings = settings
        self.attachments = attachments or AttachmentResolver()
        self.quota = QuotaTracker(hourly_limit, QuotaWindow.HOUR)
        self._timeout = timeout

    def is_configured(self) -> bool:
        return self.settings.configured

    def get_rate_limit(self) -> RateLimitWindow:
        return self.quota.snapshot()

    async def build_payload(self, params: EmailParams) -> dict:
        payload: dict = {
            "from": params.from_addr,
            "to": [params.to],
            "subject": params.subject,
            "html": params.html,
        }
        if params.text:
            payload["text"] = params.text
        resolved = await self.attachments.resolve_all(params.attachments or [])
        if resolved:
            payload["attachments"] = [
                {
                    "filename": filename,
                    "content": base64.b64encode(content).decode("ascii"),
                    "content_type": f"{maintype}/{subtype}",
                }
                for filename, content, (maintype, subtype) in resolved
            ]
        return payload

    async def send_email(self, params: EmailParams) -> SendResult:
        if not self.is_configured():
            return self._failure("Resend API key not configured")
        if self.quota.exhausted():
            reset = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.quota.reset_at))
            return self._failure(f"Rate limit exceeded. Resets at {reset}")

        headers = {"Authorization": f"Bearer {self.settings.api_key}"}
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            payload = await self.build_payload(params)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.settings.api_url, json=payload, headers=headers) as resp:
                    resp.raise_for_status()
                    data = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Resend email error for %s: %s", params.to, exc)
            return self._failure(str(exc) or exc.__class__.__name__)

        self.quota.consume()
        return SendResult(success=True, id=(data or {}).get("id") or "", provider=self.name)
