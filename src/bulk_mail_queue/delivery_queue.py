# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Rate-limited, retryable delivery queue.

This module provides :class:`DeliveryQueueManager`, which owns an ordered
list of :class:`~bulk_mail_queue.models.DeliveryItem` and drains it one
message at a time through an :class:`~bulk_mail_queue.providers.EmailProvider`.

Each *drain step*:

1. stops when the queue is not processing;
2. refreshes the provider quota window;
3. picks the first pending item in insertion order (retried items keep
   their original slot);
4. goes idle when nothing is pending;
5. waits out an exhausted quota by rescheduling itself at the reset time;
6. otherwise attempts the send, retrying failures up to three attempts;
7. publishes a progress snapshot;
8. reschedules itself after the provider pacing delay.

Scheduling is single-owned: the manager keeps at most one pending
``asyncio.TimerHandle`` and at most one executing step. ``pause()`` cancels
the pending handle only; a send already in flight completes and its result
is applied.

Example:
    Sending a batch::

        queue = DeliveryQueueManager(provider, default_sender="noreply@example.com")
        queue.progress.subscribe(lambda p: print(f"{p.sent}/{p.total}"))
        queue.add_items([{"to": "a@example.com", "from": "x@example.com", "subject": "Hi", "html": "<p>Hi</p>"}])
        await queue.start()
        await queue.wait_until_idle()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from typing import Any

from .config_loader import DEFAULT_EMAIL_FROM
from .events import EventChannel
from .logger import get_logger
from .models import (
    MAX_ATTEMPTS,
    BulkProgress,
    DeliveryItem,
    DeliveryStatus,
    EmailParams,
    QueueStatus,
    QueueStatusSnapshot,
    QuotaWindow,
    RateLimitStatus,
    RateLimitWindow,
    utc_now,
)
from .prometheus import QueueMetrics
from .providers.base import EmailProvider


class DeliveryQueueManager:
    """Paced, retrying sender for one bulk-send session.

    Attributes:
        provider: The delivery provider every item is sent through.
        default_sender: ``From`` used for items that carry none.
        processed: Items that reached ``sent``.
        failed: Items that reached ``failed``.
        rate_limit: Last quota window observed from the provider.
        progress: Channel receiving a :class:`BulkProgress` after each attempt
            and once when the queue drains.
        item_completed: Channel receiving each item once, when it reaches a
            terminal state.
        last_activity: Epoch seconds of the last control call or drain step.
    """

    def __init__(
        self,
        provider: EmailProvider,
        *,
        default_sender: str = DEFAULT_EMAIL_FROM,
        metrics: QueueMetrics | None = None,
        logger=None,
        log_delivery_activity: bool = False,
    ):
        self.provider = provider
        self.default_sender = default_sender
        self.metrics = metrics or QueueMetrics()
        self.logger = logger or get_logger("DeliveryQueue")
        self._log_delivery_activity = bool(log_delivery_activity)

        self._items: list[DeliveryItem] = []
        self._status = QueueStatus.IDLE
        self.processed = 0
        self.failed = 0
        self.rate_limit: RateLimitWindow = provider.get_rate_limit()

        self.progress: EventChannel[BulkProgress] = EventChannel("progress")
        self.item_completed: EventChannel[DeliveryItem] = EventChannel("item-completed")

        self._timer: asyncio.TimerHandle | None = None
        self._step_task: asyncio.Task | None = None
        self._executing = False
        self._generation = 0
        self._idle = asyncio.Event()
        self.last_activity = time.time()

    # ----------------------------------------------------------------- state
    @property
    def status(self) -> QueueStatus:
        return self._status

    @property
    def items(self) -> tuple[DeliveryItem, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def is_processing(self) -> bool:
        return self._status is QueueStatus.PROCESSING

    def pending_count(self) -> int:
        return sum(1 for item in self._items if item.status is DeliveryStatus.PENDING)

    def _touch(self) -> None:
        self.last_activity = time.time()

    # -------------------------------------------------------------- commands
    def add_items(self, items: Iterable[EmailParams | dict[str, Any]]) -> list[DeliveryItem]:
        """Append messages to the tail of the queue.

        Works in any state; does not start processing.

        Raises:
            pydantic.ValidationError: If a message payload is invalid. Nothing
                is appended in that case.
        """
        new_items = [DeliveryItem.from_params(item) for item in items]
        self._items.extend(new_items)
        self.metrics.add_pending(self.provider.name, len(new_items))
        self._touch()
        return new_items

    async def start(self) -> None:
        """Begin draining; no-op when already processing."""
        if self._status is QueueStatus.PROCESSING:
            self.logger.debug("Queue already processing")
            return
        self._set_processing()
        await self._run_step()

    def start_soon(self) -> None:
        """Like :meth:`start`, but run the first drain step on the next loop tick.

        Must be called from a running event loop. Lets request handlers
        return without waiting for the first send.
        """
        if self._status is QueueStatus.PROCESSING:
            self.logger.debug("Queue already processing")
            return
        self._set_processing()
        if not self._executing:
            self._schedule(0)

    def pause(self) -> None:
        """Stop scheduling new attempts; state and in-flight send are preserved."""
        self._status = QueueStatus.PAUSED
        self._cancel_timer()
        self._touch()

    async def resume(self) -> None:
        """Continue a paused queue; ignored in any other state."""
        if self._status is not QueueStatus.PAUSED:
            return
        self._set_processing()
        await self._run_step()

    def resume_soon(self) -> None:
        """Like :meth:`resume`, with the drain step deferred to the next loop tick."""
        if self._status is not QueueStatus.PAUSED:
            return
        self._set_processing()
        if not self._executing:
            self._schedule(0)

    def clear(self) -> None:
        """Pause, then drop every item and reset the counters."""
        self.pause()
        unfinished = sum(1 for item in self._items if not item.status.terminal)
        self.metrics.add_pending(self.provider.name, -unfinished)
        self._items = []
        self.processed = 0
        self.failed = 0
        self._generation += 1

    async def wait_until_idle(self, timeout: float | None = None) -> None:
        """Block until the queue drains.

        Returns immediately when the queue is idle.

        Raises:
            asyncio.TimeoutError: If ``timeout`` elapses first.
        """
        if self._status is QueueStatus.IDLE:
            return
        await asyncio.wait_for(self._idle.wait(), timeout)

    async def close(self) -> None:
        """Pause and cancel any executing drain step."""
        self.pause()
        task = self._step_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------- reporting
    def pacing_delay(self) -> float:
        """Seconds between attempts for the current quota window.

        A per-second quota spreads attempts evenly across each second; any
        longer quota spreads them across the hour.

        The formula is chosen from the quota window the provider reports,
        not from the provider's name. For SES (14 per second) and Resend
        (100 per hour) this matches a lookup by name, and any other provider
        still gets a delay that fits its quota.
        """
        limit = max(1, self.rate_limit.limit)
        if self.rate_limit.window is QuotaWindow.SECOND:
            return 1.0 / limit
        return QuotaWindow.HOUR.seconds / limit

    def progress_snapshot(self) -> BulkProgress:
        sent = failed = remaining = 0
        for item in self._items:
            if item.status is DeliveryStatus.SENT:
                sent += 1
            elif item.status is DeliveryStatus.FAILED:
                failed += 1
            elif item.status is DeliveryStatus.PENDING:
                remaining += 1
        return BulkProgress(
            total=len(self._items),
            sent=sent,
            failed=failed,
            remaining=remaining,
            estimated_seconds_remaining=remaining * self.pacing_delay(),
        )

    def status_snapshot(self) -> QueueStatusSnapshot:
        """Aggregate status for polling clients."""
        reset_in_ms = max(0, round((self.rate_limit.reset_at - time.time()) * 1000))
        return QueueStatusSnapshot(
            status=self._status,
            processed=self.processed,
            failed=self.failed,
            total=len(self._items),
            remaining=self.pending_count(),
            provider=self.provider.name,
            rate_limit=RateLimitStatus(
                limit=self.rate_limit.limit,
                remaining=self.rate_limit.remaining,
                reset_in_ms=reset_in_ms,
            ),
        )

    def _emit_progress(self) -> None:
        self.progress.emit(self.progress_snapshot())

    # ------------------------------------------------------------ scheduling
    def _set_processing(self) -> None:
        self._status = QueueStatus.PROCESSING
        self._idle.clear()
        self._touch()

    def _set_idle(self) -> None:
        self._status = QueueStatus.IDLE
        self._cancel_timer()
        self._idle.set()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, delay: float) -> None:
        """Arm the single next-step timer; ignored unless processing."""
        if self._status is not QueueStatus.PROCESSING:
            return
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(0.0, delay), self._fire)

    def _fire(self) -> None:
        self._timer = None
        self._step_task = asyncio.get_running_loop().create_task(
            self._run_step(), name="delivery-queue-drain-step"
        )

    async def _run_step(self) -> None:
        # The executing step schedules its own successor.
        if self._executing:
            return
        self._executing = True
        try:
            await self._drain_step()
        except Exception as exc:
            self.logger.exception("Unhandled error in delivery queue drain step: %s", exc)
            self._schedule(self.pacing_delay())
        finally:
            self._executing = False

    # ------------------------------------------------------------ drain step
    async def _drain_step(self) -> None:
        if self._status is not QueueStatus.PROCESSING:
            return

        self.rate_limit = self.provider.get_rate_limit()

        item = next((i for i in self._items if i.status is DeliveryStatus.PENDING), None)
        if item is None:
            self.logger.info(
                "Delivery queue drained (processed=%d, failed=%d)", self.processed, self.failed
            )
            self._set_idle()
            self._emit_progress()
            return

        if self.rate_limit.remaining <= 0:
            wait = self.rate_limit.reset_at - time.time()
            if wait > 0:
                self.logger.info("Rate limit reached. Waiting %dms", round(wait * 1000))
                self.metrics.inc_quota_wait(self.provider.name)
                self._schedule(wait)
                return

        await self._attempt(item)
        self._emit_progress()
        self._schedule(self.pacing_delay())
        self._touch()

    async def _attempt(self, item: DeliveryItem) -> None:
        """Send ``item`` once and apply the outcome."""
        provider_name = self.provider.name
        generation = self._generation
        item.status = DeliveryStatus.SENDING
        item.attempts += 1
        self.metrics.inc_attempt(provider_name)
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for item %s to %s (attempt %d/%d, provider=%s)",
                item.id,
                item.to,
                item.attempts,
                MAX_ATTEMPTS,
                provider_name,
            )

        error: str | None = None
        try:
            result = await self.provider.send_email(item.to_params(self.default_sender))
            if not result.success:
                error = result.error or "Failed to send email"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__

        if generation != self._generation:
            self.logger.warning("Dropping result for item %s discarded by clear()", item.id)
            return

        if error is None:
            item.status = DeliveryStatus.SENT
            item.sent_at = utc_now()
            self.processed += 1
            self.metrics.inc_sent(provider_name)
            self.metrics.add_pending(provider_name, -1)
            self.item_completed.emit(item)
            return

        item.last_error = error
        if item.attempts < MAX_ATTEMPTS:
            item.status = DeliveryStatus.PENDING
            self.metrics.inc_retry(provider_name)
            self.logger.warning(
                "Failed to send email to %s (attempt %d/%d): %s - will retry",
                item.to,
                item.attempts,
                MAX_ATTEMPTS,
                error,
            )
            return

        item.status = DeliveryStatus.FAILED
        self.failed += 1
        self.metrics.inc_failed(provider_name)
        self.metrics.add_pending(provider_name, -1)
        self.logger.error(
            "Email to %s failed permanently after %d attempts: %s", item.to, item.attempts, error
        )
        self.item_completed.emit(item)
