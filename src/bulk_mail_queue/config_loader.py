# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the bulk mail queue.

Settings are read from an INI file with ``BMQ_*`` environment variables as
fallbacks for every key. Values present in the file win over the
environment.

Example:
    Configuration file format (config.ini)::

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [rate_limit]
        window_seconds = 60
        api = 120
        upload = 6
        generate = 10
        zip = 5
        email = 60

        [email]
        email_from = certificates@example.com
        log_delivery_activity = false

        [ses]
        region = eu-west-1
        smtp_user = AKIA...
        smtp_password = secret
        rate_limit = 14

        [resend]
        api_key = re_...

        [sessions]
        idle_seconds = 3600
        sweep_interval_seconds = 600

    Loading::

        settings = load_settings("/etc/bulk-mail-queue/config.ini")
        limiter = RateLimiter(settings.rate_limit.window_seconds, settings.rate_limit.limits)

Environment variables:
    BMQ_CONFIG - Path to config.ini (default: config.ini)
    BMQ_HOST, BMQ_PORT, BMQ_API_TOKEN
    BMQ_RATE_LIMIT_WINDOW_SECONDS
    BMQ_RATE_LIMIT_API_PER_MIN, BMQ_RATE_LIMIT_UPLOAD_PER_MIN,
    BMQ_RATE_LIMIT_GENERATE_PER_MIN, BMQ_RATE_LIMIT_ZIP_PER_MIN,
    BMQ_RATE_LIMIT_EMAIL_PER_MIN
    BMQ_EMAIL_FROM, BMQ_LOG_DELIVERY_ACTIVITY
    BMQ_SES_REGION, BMQ_SES_SMTP_USER, BMQ_SES_SMTP_PASSWORD,
    BMQ_SES_SMTP_HOST, BMQ_SES_SMTP_PORT, BMQ_SES_RATE_LIMIT
    BMQ_RESEND_API_KEY, BMQ_RESEND_API_URL
    BMQ_SESSION_IDLE_SECONDS, BMQ_SESSION_SWEEP_SECONDS
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError
from .logger import get_logger
from .rate_limit import DEFAULT_LIMITS, DEFAULT_WINDOW_SECONDS

DEFAULT_EMAIL_FROM = "onboarding@resend.dev"
DEFAULT_RESEND_API_URL = "https://api.resend.com/emails"
SES_DEFAULT_RATE_LIMIT = 14

logger = get_logger("ConfigLoader")


@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None


@dataclass
class RateLimitSettings:
    """Fixed-window limiter settings.

    Attributes:
        window_seconds: Length of each limiter window.
        limits: Requests allowed per window, by category.
    """

    window_seconds: int = DEFAULT_WINDOW_SECONDS
    limits: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_LIMITS))


@dataclass
class EmailSettings:
    email_from: str = DEFAULT_EMAIL_FROM
    log_delivery_activity: bool = False


@dataclass
class SESSettings:
    """Amazon SES reached through its SMTP interface.

    Attributes:
        region: AWS region; selects the default SMTP endpoint.
        smtp_user: SES SMTP credential user name.
        smtp_password: SES SMTP credential password.
        smtp_host: Explicit endpoint, overriding the region default.
        smtp_port: SMTP port (STARTTLS on 587, implicit TLS on 465).
        rate_limit: Maximum sends per second.
    """

    region: str | None = None
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    rate_limit: int = SES_DEFAULT_RATE_LIMIT

    @property
    def configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_password and (self.region or self.smtp_host))

    @property
    def endpoint(self) -> str | None:
        if self.smtp_host:
            return self.smtp_host
        if self.region:
            return f"email-smtp.{self.region}.amazonaws.com"
        return None


@dataclass
class ResendSettings:
    api_key: str | None = None
    api_url: str = DEFAULT_RESEND_API_URL

    @property
    def configured(self) -> bool:
        return bool(self.api_key)


@dataclass
class SessionSettings:
    """Lifetime of per-session queues kept by the HTTP layer."""

    idle_seconds: int = 3600
    sweep_interval_seconds: int = 600


@dataclass
class Settings:
    server: ServerSettings = field(default_factory=ServerSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    ses: SESSettings = field(default_factory=SESSettings)
    resend: ResendSettings = field(default_factory=ResendSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)


def load_settings(config_path: str | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Load settings from an INI file with environment variables as fallbacks.

    Args:
        config_path: Path to the INI file. When omitted, ``BMQ_CONFIG`` or
            ``config.ini`` is used and a missing file is not an error.
        environ: Environment mapping, defaults to ``os.environ``.

    Returns:
        Settings with defaults for anything not provided.

    Raises:
        FileNotFoundError: If an explicit ``config_path`` does not exist.
        ConfigurationError: If a rate limit or window is out of range.
    """
    env = os.environ if environ is None else environ
    parser = configparser.ConfigParser()
    if config_path is not None:
        if not Path(config_path).exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        parser.read(config_path)
    else:
        parser.read(env.get("BMQ_CONFIG", "config.ini"))

    def get(section: str, option: str, env_name: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or default
        value = env.get(env_name)
        if value is None or not value.strip():
            return default
        return value.strip()

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Invalid int for [{section}] {option}: {value!r}, using default {default}")
            return default

    def get_bool(section: str, option: str, env_name: str, default: bool) -> bool:
        value = get(section, option, env_name)
        if value is None:
            return default
        normalized = value.lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    limits = {
        category: get_int("rate_limit", category, f"BMQ_RATE_LIMIT_{category.upper()}_PER_MIN", default)
        for category, default in DEFAULT_LIMITS.items()
    }

    settings = Settings(
        server=ServerSettings(
            host=get("server", "host", "BMQ_HOST", "0.0.0.0"),
            port=get_int("server", "port", "BMQ_PORT", 8000),
            api_token=get("server", "api_token", "BMQ_API_TOKEN"),
        ),
        rate_limit=RateLimitSettings(
            window_seconds=get_int("rate_limit", "window_seconds", "BMQ_RATE_LIMIT_WINDOW_SECONDS", DEFAULT_WINDOW_SECONDS),
            limits=limits,
        ),
        email=EmailSettings(
            email_from=get("email", "email_from", "BMQ_EMAIL_FROM", DEFAULT_EMAIL_FROM),
            log_delivery_activity=get_bool("email", "log_delivery_activity", "BMQ_LOG_DELIVERY_ACTIVITY", False),
        ),
        ses=SESSettings(
            region=get("ses", "region", "BMQ_SES_REGION"),
            smtp_user=get("ses", "smtp_user", "BMQ_SES_SMTP_USER"),
            smtp_password=get("ses", "smtp_password", "BMQ_SES_SMTP_PASSWORD"),
            smtp_host=get("ses", "smtp_host", "BMQ_SES_SMTP_HOST"),
            smtp_port=get_int("ses", "smtp_port", "BMQ_SES_SMTP_PORT", 587),
            rate_limit=get_int("ses", "rate_limit", "BMQ_SES_RATE_LIMIT", SES_DEFAULT_RATE_LIMIT),
        ),
        resend=ResendSettings(
            api_key=get("resend", "api_key", "BMQ_RESEND_API_KEY"),
            api_url=get("resend", "api_url", "BMQ_RESEND_API_URL", DEFAULT_RESEND_API_URL),
        ),
        sessions=SessionSettings(
            idle_seconds=get_int("sessions", "idle_seconds", "BMQ_SESSION_IDLE_SECONDS", 3600),
            sweep_interval_seconds=get_int("sessions", "sweep_interval_seconds", "BMQ_SESSION_SWEEP_SECONDS", 600),
        ),
    )
    _validate(settings)
    return settings


def _validate(settings: Settings) -> None:
    if settings.rate_limit.window_seconds <= 0:
        raise ConfigurationError(
            f"rate_limit window_seconds must be positive, got {settings.rate_limit.window_seconds}"
        )
    negative = sorted(k for k, v in settings.rate_limit.limits.items() if v < 0)
    if negative:
        raise ConfigurationError(f"Negative rate limits for: {', '.join(negative)}")
    if settings.ses.rate_limit <= 0:
        raise ConfigurationError(f"ses rate_limit must be positive, got {settings.ses.rate_limit}")
