# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Rate-limited, retryable bulk email delivery.

This package provides:

- A fixed-window rate limiter for HTTP endpoints
- Email providers (Amazon SES over SMTP, Resend over HTTP) with quota tracking
- A delivery queue that paces sends to the provider quota and retries failures
- Prometheus metrics for monitoring
- FastAPI REST API and a click CLI

Example:
    Sending a batch from a coroutine::

        from bulk_mail_queue.config_loader import load_settings
        from bulk_mail_queue.delivery_queue import DeliveryQueueManager
        from bulk_mail_queue.providers import get_email_provider

        settings = load_settings()
        queue = DeliveryQueueManager(get_email_provider(settings))
        queue.add_items(messages)
        await queue.start()
        await queue.wait_until_idle()

Authors:
    Softwell S.r.l.
"""

__version__ = "0.1.0"
