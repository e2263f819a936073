# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception types raised by the bulk mail queue."""


class BulkMailError(RuntimeError):
    """Base class for errors raised by this package."""

    code = "bulk_mail_error"


class ConfigurationError(BulkMailError):
    """Raised when settings are present but unusable."""

    code = "invalid_configuration"


class ProviderNotConfiguredError(BulkMailError):
    """Raised when no delivery provider has usable credentials."""

    code = "provider_not_configured"

    def __init__(
        self,
        message: str = (
            "No email provider configured. Please set either AWS SES SMTP "
            "credentials or a Resend API key."
        ),
    ):
        super().__init__(message)
