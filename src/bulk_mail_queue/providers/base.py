# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base interface for delivery providers.

A provider is the external service that actually sends mail. The delivery
queue only relies on the capability set defined here: a ``name``, a
``send_email`` coroutine and a ``get_rate_limit`` quota snapshot. New
providers subclass :class:`EmailProvider`; the queue never needs to change.

:class:`QuotaTracker` is the local window bookkeeping shared by the bundled
providers: it counts successful sends and resets the budget whenever the
window expires.
"""

from __future__ import annotations

import time

from ..models import EmailParams, QuotaWindow, RateLimitWindow, SendResult


class QuotaTracker:
    """Locally tracked send budget for one provider.

    Attributes:
        limit: Sends allowed per window.
        window: Quota period.
        remaining: Sends left in the current window.
        reset_at: Epoch seconds at which the current window ends.
    """

    def __init__(self, limit: int, window: QuotaWindow):
        self.limit = max(1, int(limit))
        self.window = window
        self.remaining = self.limit
        self.reset_at = time.time() + window.seconds

    def refresh(self) -> None:
        """Start a new window with a full budget once the current one expired."""
        now = time.time()
        if now >= self.reset_at:
            self.remaining = self.limit
            self.reset_at = now + self.window.seconds

    def exhausted(self) -> bool:
        """True when the current window has no budget left."""
        self.refresh()
        return self.remaining <= 0

    def consume(self) -> None:
        self.remaining = max(0, self.remaining - 1)

    def snapshot(self) -> RateLimitWindow:
        self.refresh()
        return RateLimitWindow(
            limit=self.limit,
            remaining=self.remaining,
            reset_at=self.reset_at,
            window=self.window,
        )


class EmailProvider:
    """Abstract base class defining the provider capability set.

    Subclasses set :attr:`name` and implement :meth:`send_email`,
    :meth:`get_rate_limit` and :meth:`is_configured`.
    """

    name: str = "base"

    async def send_email(self, params: EmailParams) -> SendResult:
        """Send one message.

        Transport errors should be reported as ``SendResult(success=False)``
        rather than raised; the queue treats both the same way.

        Raises:
            NotImplementedError: If called on the base class directly.
        """
        raise NotImplementedError

    def get_rate_limit(self) -> RateLimitWindow:
        """Return the current quota window."""
        raise NotImplementedError

    def is_configured(self) -> bool:
        """True when the provider has the credentials it needs."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release network resources held by the provider."""
        return None

    async def cleanup(self) -> None:
        """Drop idle resources that outlived their lifetime. Called periodically."""
        return None

    def _failure(self, error: str) -> SendResult:
        return SendResult(success=False, id="", error=error, provider=self.name)
