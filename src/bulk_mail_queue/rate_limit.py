# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window request rate limiter.

This module implements a per-key fixed-window counter. Each key owns a
bucket holding a request count and the epoch timestamp at which its window
resets. When the window expires the bucket is replaced wholesale, so up to
``2 * limit`` requests can pass across a window boundary; this is an
accepted simplification of the algorithm.

Buckets live in process memory. One :class:`RateLimiter` is created when the
service starts and handed to the request layer; deployments running several
instances need a shared external store instead, since buckets are not
coordinated across processes.

Example:
    Gating an endpoint::

        limiter = RateLimiter(window_seconds=60, limits={"email": 60})
        key = build_key("email", "/bulk-email", user_id=None, ip="10.0.0.1")
        decision = limiter.rate_limit(key, "email")
        for name, value in decision.headers().items():
            response.headers[name] = value
        if not decision.allowed:
            ...  # reply 429
"""

from __future__ import annotations

import math
import time
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_WINDOW_SECONDS = 60
DEFAULT_LIMITS: dict[str, int] = {
    "api": 120,
    "upload": 6,
    "generate": 10,
    "zip": 5,
    "email": 60,
}
FALLBACK_CATEGORY = "api"


@dataclass
class Bucket:
    """Counter state for one key."""

    count: int
    reset_at: float


@dataclass(frozen=True)
class CheckResult:
    """Outcome of :meth:`RateLimiter.check`.

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window.
        reset_at: Epoch seconds at which the window resets.
    """

    allowed: bool
    remaining: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision(CheckResult):
    """A :class:`CheckResult` carrying the limit it was checked against."""

    limit: int = 0

    def retry_after(self, now: float | None = None) -> int:
        """Seconds until the window resets, rounded up and never negative."""
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_at - now))

    def headers(self, now: float | None = None) -> dict[str, str]:
        """Conventional rate-limit response headers for this decision.

        ``Retry-After`` is only present when the request was denied. Emitting
        the headers is up to the caller.
        """
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after(now))
        return headers


class RateLimiter:
    """In-memory fixed-window limiter keyed by arbitrary strings.

    Attributes:
        window_seconds: Length of every window.
        limits: Per-category request limits used by :meth:`rate_limit`.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        limits: Mapping[str, int] | None = None,
    ):
        self.window_seconds = float(window_seconds)
        self.limits: dict[str, int] = dict(DEFAULT_LIMITS)
        if limits:
            self.limits.update(limits)
        self._buckets: dict[str, Bucket] = {}

    def check(self, key: str, limit: int) -> CheckResult:
        """Count one request for ``key`` and report whether it is allowed.

        Starts a fresh window on first use of the key or once the previous
        window has expired. Never raises.
        """
        now = time.time()
        bucket = self._buckets.get(key)
        if bucket is None or now >= bucket.reset_at:
            reset_at = now + self.window_seconds
            self._buckets[key] = Bucket(count=1, reset_at=reset_at)
            return CheckResult(allowed=True, remaining=max(0, limit - 1), reset_at=reset_at)
        if bucket.count < limit:
            bucket.count += 1
            return CheckResult(
                allowed=True, remaining=max(0, limit - bucket.count), reset_at=bucket.reset_at
            )
        return CheckResult(allowed=False, remaining=0, reset_at=bucket.reset_at)

    def limit_for(self, category: str) -> int:
        """Configured limit for ``category``, falling back to the api limit."""
        if category in self.limits:
            return self.limits[category]
        return self.limits.get(FALLBACK_CATEGORY, DEFAULT_LIMITS[FALLBACK_CATEGORY])

    def rate_limit(self, key: str, category: str) -> RateLimitDecision:
        """Check ``key`` against the limit configured for ``category``."""
        limit = self.limit_for(category)
        result = self.check(key, limit)
        return RateLimitDecision(
            allowed=result.allowed,
            remaining=result.remaining,
            reset_at=result.reset_at,
            limit=limit,
        )

    def reset(self) -> None:
        """Forget every bucket."""
        self._buckets.clear()

    def __len__(self) -> int:
        return len(self._buckets)


def build_key(
    category: str,
    route: str,
    user_id: str | None = None,
    ip: str | None = None,
) -> str:
    """Build a limiter key unique per category, route, user and client IP."""
    user = f"u:{user_id}" if user_id else "u:anon"
    addr = f"ip:{ip}" if ip else "ip:unknown"
    return f"{category}:{route}:{user}:{addr}"


def client_ip(headers: Mapping[str, str], remote_addr: str | None = None) -> str | None:
    """Best guess at the client address behind proxies.

    ``X-Real-IP`` wins, then the first hop listed in ``X-Forwarded-For``,
    then the socket peer address.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    real_ip = (lowered.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    forwarded = (lowered.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return remote_addr or None
