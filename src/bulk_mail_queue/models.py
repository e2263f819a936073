# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models shared by the queue, the providers and the HTTP layer.

Models:
    - EmailAttachment: reference to a file attached to a message
    - EmailParams: what a provider needs to send one message
    - SendResult: outcome reported by a provider
    - RateLimitWindow: provider quota snapshot
    - DeliveryItem: one queued message and its delivery state
    - BulkProgress: progress snapshot emitted after each drain step
    - QueueStatusSnapshot: aggregate status for polling clients
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_ATTEMPTS = 3
DEFAULT_SUBJECT = "Your Certificate"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class DeliveryStatus(str, Enum):
    """Lifecycle of a single queued message.

    Attributes:
        PENDING: Waiting for (another) attempt.
        SENDING: Attempt in flight.
        SENT: Terminal, provider accepted the message.
        FAILED: Terminal, the attempt ceiling was reached.
    """

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (DeliveryStatus.SENT, DeliveryStatus.FAILED)


class QueueStatus(str, Enum):
    """Aggregate state of a delivery queue."""

    IDLE = "idle"
    PROCESSING = "processing"
    PAUSED = "paused"


class QuotaWindow(str, Enum):
    """Period over which a provider quota is counted."""

    SECOND = "second"
    HOUR = "hour"
    DAY = "day"

    @property
    def seconds(self) -> float:
        return {"second": 1.0, "hour": 3600.0, "day": 86400.0}[self.value]


class EmailAttachment(BaseModel):
    """Attachment reference.

    Either ``content`` carries the bytes (or text) directly, or ``path``
    points to an http(s) URL or a local file resolved at send time.
    """

    model_config = ConfigDict(extra="forbid")

    filename: Annotated[str, Field(min_length=1)]
    content: bytes | str | None = None
    path: str | None = None
    content_type: str | None = None


class EmailParams(BaseModel):
    """Message handed to :meth:`EmailProvider.send_email`."""

    model_config = ConfigDict(populate_by_name=True)

    to: str
    from_addr: str = Field(default="", alias="from")
    subject: str
    html: str = ""
    text: str | None = None
    attachments: list[EmailAttachment] | None = None


class SendResult(BaseModel):
    """Outcome of one provider send call."""

    success: bool
    id: str | None = None
    error: str | None = None
    provider: str | None = None


class RateLimitWindow(BaseModel):
    """Quota snapshot reported by a provider.

    Attributes:
        limit: Sends allowed per window.
        remaining: Sends still available in the current window.
        reset_at: Epoch seconds at which the window resets.
        window: Length of the quota period.
    """

    limit: int
    remaining: int
    reset_at: float
    window: QuotaWindow = QuotaWindow.HOUR


class DeliveryItem(BaseModel):
    """One message owned by a delivery queue."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    to: str
    from_addr: str | None = None
    subject: str | None = None
    html: str | None = None
    text: str | None = None
    attachments: list[EmailAttachment] | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    sent_at: datetime | None = None
    last_error: str | None = None

    @model_validator(mode="after")
    def _body_present(self) -> DeliveryItem:
        if self.html is None and self.text is None:
            raise ValueError("either html or text body is required")
        return self

    @classmethod
    def from_params(cls, params: EmailParams | dict) -> DeliveryItem:
        """Build a fresh pending item from send parameters."""
        if isinstance(params, dict):
            params = EmailParams.model_validate(params)
        return cls(
            to=params.to,
            from_addr=params.from_addr,
            subject=params.subject,
            html=params.html,
            text=params.text,
            attachments=params.attachments,
        )

    def to_params(self, default_sender: str) -> EmailParams:
        """Return the provider payload, filling in sender and subject defaults."""
        return EmailParams(
            to=self.to,
            from_addr=self.from_addr or default_sender,
            subject=self.subject or DEFAULT_SUBJECT,
            html=self.html or "",
            text=self.text,
            attachments=self.attachments,
        )


class BulkProgress(BaseModel):
    """Progress snapshot emitted after every attempt and on completion."""

    total: int
    sent: int
    failed: int
    remaining: int
    estimated_seconds_remaining: float


class RateLimitStatus(BaseModel):
    limit: int
    remaining: int
    reset_in_ms: int


class QueueStatusSnapshot(BaseModel):
    """Aggregate status returned to polling clients."""

    status: QueueStatus
    processed: int
    failed: int
    total: int
    remaining: int
    provider: str | None = None
    rate_limit: RateLimitStatus | None = None

    @classmethod
    def empty(cls) -> QueueStatusSnapshot:
        """Snapshot reported for a session that has no queue yet."""
        return cls(status=QueueStatus.IDLE, processed=0, failed=0, total=0, remaining=0)
