# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""In-memory registry of delivery queues keyed by bulk-send session.

Queues are not persisted: a process restart loses them. Idle queues that
saw no activity for ``idle_seconds`` are removed by :meth:`cleanup_idle`,
which the server runs periodically.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from .delivery_queue import DeliveryQueueManager
from .logger import get_logger
from .models import QueueStatus

logger = get_logger("QueueRegistry")


class QueueRegistry:
    """Session id to :class:`DeliveryQueueManager` mapping.

    Attributes:
        factory: Callable building a new queue for a session.
        idle_seconds: Inactivity after which an idle queue may be dropped.
    """

    def __init__(self, factory: Callable[[], DeliveryQueueManager], idle_seconds: float = 3600):
        self.factory = factory
        self.idle_seconds = idle_seconds
        self._queues: dict[str, DeliveryQueueManager] = {}

    def get(self, session_id: str) -> DeliveryQueueManager | None:
        return self._queues.get(session_id)

    def get_or_create(self, session_id: str) -> DeliveryQueueManager:
        """Return the session queue, building it on first use.

        Raises:
            ProviderNotConfiguredError: Propagated from the factory when no
                provider is available; nothing is registered in that case.
        """
        queue = self._queues.get(session_id)
        if queue is None:
            queue = self.factory()
            self._queues[session_id] = queue
            logger.debug("Created delivery queue for session %s", session_id)
        return queue

    async def remove(self, session_id: str) -> bool:
        """Clear and forget a session queue; False when unknown."""
        queue = self._queues.pop(session_id, None)
        if queue is None:
            return False
        queue.clear()
        await queue.close()
        return True

    def cleanup_idle(self, now: float | None = None) -> list[str]:
        """Drop idle queues inactive for longer than ``idle_seconds``."""
        now = time.time() if now is None else now
        expired = [
            session_id
            for session_id, queue in self._queues.items()
            if queue.status is QueueStatus.IDLE and queue.last_activity < now - self.idle_seconds
        ]
        for session_id in expired:
            del self._queues[session_id]
        if expired:
            logger.info("Removed %d idle delivery queue(s)", len(expired))
        return expired

    async def sweep_forever(
        self,
        interval: float,
        stop: asyncio.Event,
        on_sweep: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Run :meth:`cleanup_idle` every ``interval`` seconds until ``stop`` is set.

        ``on_sweep`` is awaited after each pass. The server uses it to close
        pooled provider connections that outlived their TTL.
        """
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                self.cleanup_idle()
                if on_sweep is not None:
                    await on_sweep()

    async def close(self) -> None:
        """Close every queue, leaving their items in place."""
        await asyncio.gather(*(queue.close() for queue in self._queues.values()), return_exceptions=True)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._queues

    def __len__(self) -> int:
        return len(self._queues)
