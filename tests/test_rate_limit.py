import pytest

from bulk_mail_queue.rate_limit import (
    DEFAULT_LIMITS,
    RateLimitDecision,
    RateLimiter,
    build_key,
    client_ip,
)


@pytest.fixture
def clock(monkeypatch):
    now = {"t": 1_000_000.0}
    monkeypatch.setattr("bulk_mail_queue.rate_limit.time.time", lambda: now["t"])
    return now


def test_check_allows_up_to_limit_then_denies(clock):
    limiter = RateLimiter(window_seconds=1)
    results = [limiter.check("k", 2) for _ in range(3)]
    assert [r.allowed for r in results] == [True, True, False]
    assert [r.remaining for r in results] == [1, 0, 0]
    assert results[0].reset_at == clock["t"] + 1


def test_check_starts_fresh_window_after_expiry(clock):
    limiter = RateLimiter(window_seconds=1)
    for _ in range(3):
        limiter.check("k", 2)

    clock["t"] += 1.5
    result = limiter.check("k", 2)
    assert result.allowed is True
    assert result.remaining == 1
    assert result.reset_at == clock["t"] + 1


def test_reset_at_is_fixed_within_window(clock):
    limiter = RateLimiter(window_seconds=60)
    first = limiter.check("k", 5)
    clock["t"] += 10
    second = limiter.check("k", 5)
    assert second.reset_at == first.reset_at


def test_keys_are_independent(clock):
    limiter = RateLimiter(window_seconds=60)
    assert limiter.check("a", 1).allowed is True
    assert limiter.check("a", 1).allowed is False
    assert limiter.check("b", 1).allowed is True
    assert len(limiter) == 2


def test_reset_forgets_buckets(clock):
    limiter = RateLimiter(window_seconds=60)
    limiter.check("a", 1)
    limiter.reset()
    assert len(limiter) == 0
    assert limiter.check("a", 1).allowed is True


def test_limit_for_uses_defaults_and_overrides():
    limiter = RateLimiter(limits={"email": 3})
    assert limiter.limit_for("email") == 3
    assert limiter.limit_for("upload") == DEFAULT_LIMITS["upload"]
    assert limiter.limit_for("unknown-category") == DEFAULT_LIMITS["api"]


def test_rate_limit_uses_category_limit(clock):
    limiter = RateLimiter(window_seconds=60, limits={"zip": 1})
    decision = limiter.rate_limit("zip:/x:u:anon:ip:1.2.3.4", "zip")
    assert isinstance(decision, RateLimitDecision)
    assert decision.allowed is True
    assert decision.limit == 1
    assert limiter.rate_limit("zip:/x:u:anon:ip:1.2.3.4", "zip").allowed is False


def test_headers_for_allowed_decision():
    decision = RateLimitDecision(allowed=True, remaining=4, reset_at=1000.2, limit=5)
    assert decision.headers(now=990) == {
        "X-RateLimit-Limit": "5",
        "X-RateLimit-Remaining": "4",
        "X-RateLimit-Reset": "1001",
    }


def test_headers_for_denied_decision_include_retry_after():
    decision = RateLimitDecision(allowed=False, remaining=0, reset_at=1000.0, limit=5)
    headers = decision.headers(now=987.5)
    assert headers["Retry-After"] == "13"
    assert headers["X-RateLimit-Remaining"] == "0"


def test_retry_after_never_negative():
    decision = RateLimitDecision(allowed=False, remaining=0, reset_at=1000.0, limit=5)
    assert decision.retry_after(now=2000) == 0


def test_build_key():
    assert build_key("email", "/bulk-email", "42", "10.0.0.1") == "email:/bulk-email:u:42:ip:10.0.0.1"
    assert build_key("api", "/bulk-email") == "api:/bulk-email:u:anon:ip:unknown"


def test_client_ip_prefers_real_ip_then_forwarded_then_peer():
    assert client_ip({"X-Real-IP": "1.1.1.1", "X-Forwarded-For": "2.2.2.2"}, "3.3.3.3") == "1.1.1.1"
    assert client_ip({"x-forwarded-for": " 2.2.2.2 , 4.4.4.4"}, "3.3.3.3") == "2.2.2.2"
    assert client_ip({}, "3.3.3.3") == "3.3.3.3"
    assert client_ip({}) is None
