"""Tests for CLI commands and helper functions."""

import json
import time

import click
import pytest
from click.testing import CliRunner
from rich.console import Console

from bulk_mail_queue import cli
from bulk_mail_queue.cli import build_messages, main, read_recipients, run_async
from bulk_mail_queue.models import QuotaWindow, RateLimitWindow, SendResult
from bulk_mail_queue.providers import clear_provider_cache
from bulk_mail_queue.providers.base import EmailProvider


class DummyProvider(EmailProvider):
    name = "dummy"

    def __init__(self, fail_for=()):
        self.calls = []
        self.fail_for = set(fail_for)
        self.closed = False

    async def send_email(self, params):
        self.calls.append(params)
        if params.to in self.fail_for:
            return SendResult(success=False, error="rejected", provider=self.name)
        return SendResult(success=True, id="ok", provider=self.name)

    def get_rate_limit(self):
        return RateLimitWindow(limit=1000, remaining=1000, reset_at=time.time() + 1, window=QuotaWindow.SECOND)

    def is_configured(self):
        return True

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def reset_provider_cache():
    clear_provider_cache()
    yield
    clear_provider_cache()


@pytest.fixture(autouse=True)
def keep_logging(monkeypatch):
    # CliRunner streams are closed after each invoke
    monkeypatch.setattr(cli, "configure_logging", lambda level=None: None)


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # rich wraps at 80 columns when it cannot detect a terminal
    monkeypatch.setattr(cli, "console", Console(width=200))
    monkeypatch.setattr(cli, "err_console", Console(stderr=True, width=200))


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[email]\nemail_from = certs@example.com\n\n[resend]\napi_key = re_test\n")
    return str(path)


@pytest.fixture
def recipients(tmp_path):
    path = tmp_path / "recipients.csv"
    path.write_text("Email,Name\nann@example.com,Ann\nbob@example.com,Bob\n,Nobody\n")
    return path


class TestHelpers:
    def test_run_async(self):
        async def answer():
            return 42

        assert run_async(answer()) == 42

    def test_read_recipients_skips_blank_rows(self, recipients):
        rows = read_recipients(recipients)
        assert [r["email"] for r in rows] == ["ann@example.com", "bob@example.com"]
        assert rows[0]["name"] == "Ann"

    def test_read_recipients_requires_email_column(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("name\nAnn\n")
        with pytest.raises(click.BadParameter):
            read_recipients(path)

    def test_build_messages_substitutes_name(self):
        rows = [{"email": "ann@example.com", "name": "Ann"}]
        messages = build_messages(rows, subject="Hi {name}", body="Dear {name}", html=False, sender=None)
        assert messages == [{"to": "ann@example.com", "subject": "Hi Ann", "text": "Dear Ann"}]

    def test_build_messages_html_and_sender(self):
        rows = [{"email": "ann@example.com"}]
        messages = build_messages(rows, subject="S", body="<p>B</p>", html=True, sender="Acme <a@example.com>")
        assert messages[0]["html"] == "<p>B</p>"
        assert messages[0]["from"] == "Acme <a@example.com>"
        assert "text" not in messages[0]


class TestCommands:
    def test_provider_json(self, config_file):
        result = CliRunner().invoke(main, ["--config", config_file, "provider", "--json"])
        assert result.exit_code == 0, result.output
        info = json.loads(result.output)
        assert info["name"] == "RESEND"
        assert info["rate_limit"] == {"limit": 100, "window": "hour"}

    def test_provider_table_when_unconfigured(self, tmp_path):
        path = tmp_path / "empty.ini"
        path.write_text("")
        result = CliRunner().invoke(main, ["--config", str(path), "provider"])
        assert result.exit_code == 0, result.output
        assert "None" in result.output

    def test_missing_config_file_exits_2(self, tmp_path):
        result = CliRunner().invoke(main, ["--config", str(tmp_path / "nope.ini"), "provider"])
        assert result.exit_code == 2

    def test_send_delivers_every_row(self, monkeypatch, config_file, recipients):
        provider = DummyProvider()
        monkeypatch.setattr(cli, "get_email_provider", lambda settings: provider)

        result = CliRunner().invoke(
            main,
            ["--config", config_file, "send", str(recipients), "--subject", "Hi {name}",
             "--body", "Hello {name}", "--sender-name", "Acme"],
        )

        assert result.exit_code == 0, result.output
        assert "Sent 2 of 2" in result.output
        assert [p.to for p in provider.calls] == ["ann@example.com", "bob@example.com"]
        assert provider.calls[0].subject == "Hi Ann"
        assert provider.calls[0].from_addr == "Acme <certs@example.com>"
        assert provider.closed is True

    def test_send_without_sender_name_uses_configured_sender(self, monkeypatch, config_file, recipients):
        provider = DummyProvider()
        monkeypatch.setattr(cli, "get_email_provider", lambda settings: provider)

        result = CliRunner().invoke(
            main, ["--config", config_file, "send", str(recipients), "--subject", "S", "--body", "B"]
        )

        assert result.exit_code == 0, result.output
        assert "Sent 2 of 2" in result.output
        assert [p.from_addr for p in provider.calls] == ["certs@example.com", "certs@example.com"]

    def test_send_exits_1_on_failure(self, monkeypatch, config_file, recipients):
        provider = DummyProvider(fail_for=["bob@example.com"])
        monkeypatch.setattr(cli, "get_email_provider", lambda settings: provider)

        result = CliRunner().invoke(
            main, ["--config", config_file, "send", str(recipients), "--subject", "S", "--body", "B"]
        )

        assert result.exit_code == 1
        assert "Sent 1 of 2" in result.output
        assert len(provider.calls) == 4

    def test_send_without_provider_exits_1(self, tmp_path, recipients):
        path = tmp_path / "empty.ini"
        path.write_text("")
        result = CliRunner().invoke(
            main, ["--config", str(path), "send", str(recipients), "--subject", "S", "--body", "B"]
        )
        assert result.exit_code == 1

    def test_check_limit_prints_headers(self, config_file):
        result = CliRunner().invoke(main, ["--config", config_file, "check-limit", "203.0.113.7", "--category", "email"])
        assert result.exit_code == 0, result.output
        assert "X-RateLimit-Limit" in result.output
        assert "email:/bulk-email:u:anon:ip:203.0.113.7" in result.output
        assert "allowed" in result.output
