import asyncio
import base64
import time

import aiosmtplib
import pytest
from aioresponses import aioresponses
from yarl import URL

from bulk_mail_queue import providers
from bulk_mail_queue.config_loader import ResendSettings, SESSettings, Settings
from bulk_mail_queue.errors import ProviderNotConfiguredError
from bulk_mail_queue.models import EmailAttachment, EmailParams, QuotaWindow
from bulk_mail_queue.providers import (
    ResendProvider,
    SESProvider,
    clear_provider_cache,
    get_email_provider,
    provider_info,
)
from bulk_mail_queue.providers.base import EmailProvider, QuotaTracker

RESEND_URL = "https://api.resend.com/emails"


class DummySMTP:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def send_message(self, msg):
        if self.error is not None:
            raise self.error
        self.sent.append(msg)
        return {}, "OK"


class DummyPool:
    def __init__(self, smtp=None):
        self.smtp = smtp or DummySMTP()
        self.requests = []
        self.discarded = []
        self.cleaned = 0
        self.closed = False

    async def get_connection(self, host, port, user, password, *, use_tls):
        self.requests.append((host, port, user, password, use_tls))
        return self.smtp

    async def discard(self, host, port, user, *, use_tls):
        self.discarded.append((host, port, user, use_tls))

    async def cleanup(self):
        self.cleaned += 1

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def reset_cache():
    clear_provider_cache()
    yield
    clear_provider_cache()


def ses_settings(**overrides):
    values = {"region": "eu-west-1", "smtp_user": "AKIA", "smtp_password": "secret"}
    values.update(overrides)
    return SESSettings(**values)


def params(**overrides):
    values = {"to": "dest@example.com", "from": "Sender <sender@example.com>", "subject": "Hi", "html": "<p>Hi</p>"}
    values.update(overrides)
    return EmailParams.model_validate(values)


# --- QuotaTracker ---

def test_quota_tracker_consumes_and_refreshes(monkeypatch):
    now = {"t": 1000.0}
    monkeypatch.setattr("bulk_mail_queue.providers.base.time.time", lambda: now["t"])
    quota = QuotaTracker(2, QuotaWindow.SECOND)

    quota.consume()
    quota.consume()
    assert quota.exhausted() is True
    assert quota.snapshot().remaining == 0

    now["t"] += 1.0
    window = quota.snapshot()
    assert window.remaining == 2
    assert window.reset_at == 1002.0
    assert window.window is QuotaWindow.SECOND


def test_base_provider_is_abstract():
    provider = EmailProvider()
    with pytest.raises(NotImplementedError):
        provider.get_rate_limit()
    with pytest.raises(NotImplementedError):
        provider.is_configured()


# --- SES ---

def test_ses_settings_endpoint():
    assert ses_settings().endpoint == "email-smtp.eu-west-1.amazonaws.com"
    assert ses_settings(smtp_host="smtp.local").endpoint == "smtp.local"
    assert SESSettings().configured is False


@pytest.mark.asyncio
async def test_ses_send_success_consumes_quota():
    pool = DummyPool()
    provider = SESProvider(ses_settings(rate_limit=14), pool=pool)

    result = await provider.send_email(params(text="Hi"))

    assert result.success is True
    assert result.provider == "ses"
    assert result.id.startswith("<")
    assert pool.requests == [("email-smtp.eu-west-1.amazonaws.com", 587, "AKIA", "secret", True)]
    msg = pool.smtp.sent[0]
    assert msg["To"] == "dest@example.com"
    assert msg["Subject"] == "Hi"
    assert msg.is_multipart()
    assert provider.get_rate_limit().remaining == 13
    assert provider.get_rate_limit().window is QuotaWindow.SECOND


@pytest.mark.asyncio
async def test_ses_message_includes_attachments():
    pool = DummyPool()
    provider = SESProvider(ses_settings(), pool=pool)
    attachment = EmailAttachment(filename="cert.pdf", content=b"%PDF-1.4")

    await provider.send_email(params(attachments=[attachment]))

    msg = pool.smtp.sent[0]
    parts = [part for part in msg.iter_attachments()]
    assert len(parts) == 1
    assert parts[0].get_filename() == "cert.pdf"
    assert parts[0].get_content_type() == "application/pdf"
    assert parts[0].get_content() == b"%PDF-1.4"


@pytest.mark.asyncio
async def test_ses_not_configured_returns_failure():
    provider = SESProvider(SESSettings(), pool=DummyPool())
    result = await provider.send_email(params())
    assert result.success is False
    assert result.error == "AWS SES not configured"


@pytest.mark.asyncio
async def test_ses_quota_exhausted_returns_failure():
    pool = DummyPool()
    provider = SESProvider(ses_settings(rate_limit=1), pool=pool)
    assert (await provider.send_email(params())).success is True

    result = await provider.send_email(params())

    assert result.success is False
    assert result.error.startswith("Rate limit exceeded. Wait ")
    assert len(pool.smtp.sent) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [aiosmtplib.SMTPServerDisconnected("gone"), asyncio.TimeoutError(), ConnectionRefusedError("refused")],
)
async def test_ses_transport_errors_become_failures(error):
    pool = DummyPool(DummySMTP(error=error))
    provider = SESProvider(ses_settings(), pool=pool)

    result = await provider.send_email(params())

    assert result.success is False
    assert result.error
    assert pool.discarded == [("email-smtp.eu-west-1.amazonaws.com", 587, "AKIA", True)]
    assert provider.get_rate_limit().remaining == provider.quota.limit


@pytest.mark.asyncio
async def test_ses_close_closes_pool():
    pool = DummyPool()
    provider = SESProvider(ses_settings(), pool=pool)
    await provider.close()
    assert pool.closed is True


@pytest.mark.asyncio
async def test_ses_cleanup_expires_pooled_connections():
    pool = DummyPool()
    provider = SESProvider(ses_settings(), pool=pool)
    await provider.cleanup()
    assert pool.cleaned == 1
    assert pool.closed is False


@pytest.mark.asyncio
async def test_base_provider_cleanup_is_noop():
    assert await EmailProvider().cleanup() is None


# --- Resend ---

@pytest.mark.asyncio
async def test_resend_send_success():
    provider = ResendProvider(ResendSettings(api_key="re_test"))

    with aioresponses() as m:
        m.post(RESEND_URL, status=200, payload={"id": "email-123"})
        result = await provider.send_email(
            params(text="Hi", attachments=[EmailAttachment(filename="a.txt", content="hello")])
        )

        request = m.requests[("POST", URL(RESEND_URL))][0]
        assert request.kwargs["headers"]["Authorization"] == "Bearer re_test"
        body = request.kwargs["json"]
        assert body["to"] == ["dest@example.com"]
        assert body["from"] == "Sender <sender@example.com>"
        assert body["text"] == "Hi"
        assert body["attachments"] == [
            {
                "filename": "a.txt",
                "content": base64.b64encode(b"hello").decode("ascii"),
                "content_type": "text/plain",
            }
        ]

    assert result.success is True
    assert result.id == "email-123"
    assert provider.get_rate_limit().remaining == 99
    assert provider.get_rate_limit().window is QuotaWindow.HOUR


@pytest.mark.asyncio
async def test_resend_http_error_returns_failure():
    provider = ResendProvider(ResendSettings(api_key="re_test"))

    with aioresponses() as m:
        m.post(RESEND_URL, status=422, payload={"message": "invalid from"})
        result = await provider.send_email(params())

    assert result.success is False
    assert "422" in result.error
    assert provider.get_rate_limit().remaining == 100


@pytest.mark.asyncio
async def test_resend_hourly_quota_exhausted():
    provider = ResendProvider(ResendSettings(api_key="re_test"), hourly_limit=1)
    provider.quota.consume()

    result = await provider.send_email(params())

    assert result.success is False
    assert result.error.startswith("Rate limit exceeded. Resets at ")


@pytest.mark.asyncio
async def test_resend_not_configured():
    result = await ResendProvider(ResendSettings()).send_email(params())
    assert result.success is False
    assert result.error == "Resend API key not configured"


# --- factory ---

def test_factory_prefers_ses():
    settings = Settings(ses=ses_settings(), resend=ResendSettings(api_key="re_test"))
    provider = get_email_provider(settings)
    assert isinstance(provider, SESProvider)


def test_factory_falls_back_to_resend():
    provider = get_email_provider(Settings(resend=ResendSettings(api_key="re_test")))
    assert isinstance(provider, ResendProvider)


def test_factory_raises_when_nothing_configured():
    with pytest.raises(ProviderNotConfiguredError):
        get_email_provider(Settings())


def test_factory_caches_choice():
    first = get_email_provider(Settings(resend=ResendSettings(api_key="re_test")))
    second = get_email_provider(Settings(ses=ses_settings()))
    assert first is second
    assert providers._cached_provider is first


def test_provider_info():
    assert provider_info(Settings()) == {"name": "None", "configured": False}

    clear_provider_cache()
    info = provider_info(Settings(ses=ses_settings(rate_limit=14)))
    assert info == {"name": "SES", "configured": True, "rate_limit": {"limit": 14, "window": "second"}}


def test_quota_window_reset_is_in_future():
    provider = ResendProvider(ResendSettings(api_key="re_test"))
    assert provider.get_rate_limit().reset_at > time.time()
