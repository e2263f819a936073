# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery providers and the factory that picks the configured one.

SES is preferred when its SMTP credentials are present (higher volume),
Resend is the fallback. The chosen provider is cached for the life of the
process; :func:`clear_provider_cache` resets it.
"""

from __future__ import annotations

from typing import Any

from ..config_loader import Settings
from ..errors import ProviderNotConfiguredError
from ..logger import get_logger
from .base import EmailProvider, QuotaTracker
from .resend import ResendProvider
from .ses import SESProvider

__all__ = [
    "EmailProvider",
    "QuotaTracker",
    "ResendProvider",
    "SESProvider",
    "clear_provider_cache",
    "get_email_provider",
    "provider_info",
]

logger = get_logger("ProviderFactory")

_cached_provider: EmailProvider | None = None


def get_email_provider(settings: Settings) -> EmailProvider:
    """Return the configured provider, SES first, then Resend.

    Raises:
        ProviderNotConfiguredError: If neither provider has credentials.
    """
    global _cached_provider
    if _cached_provider is not None:
        return _cached_provider

    ses = SESProvider(settings.ses)
    if ses.is_configured():
        logger.info("Using Amazon SES email provider")
        _cached_provider = ses
        return ses

    resend = ResendProvider(settings.resend)
    if resend.is_configured():
        logger.info("Using Resend email provider")
        _cached_provider = resend
        return resend

    raise ProviderNotConfiguredError()


def provider_info(settings: Settings) -> dict[str, Any]:
    """Describe the active provider for display."""
    try:
        provider = get_email_provider(settings)
    except ProviderNotConfiguredError:
        return {"name": "None", "configured": False}
    window = provider.get_rate_limit()
    return {
        "name": provider.name.upper(),
        "configured": True,
        "rate_limit": {"limit": window.limit, "window": window.window.value},
    }


def clear_provider_cache() -> None:
    global _cached_provider
    _cached_provider = None
