# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Observer lists used by the delivery queue to publish notifications.

An :class:`EventChannel` keeps its listeners in registration order and
calls each of them synchronously on :meth:`EventChannel.emit`. A listener
that raises is logged and skipped; the remaining listeners still run and
the exception never reaches the publisher.

Example:
    Subscribing to queue progress::

        unsubscribe = queue.progress.subscribe(lambda p: print(p.sent, p.total))
        ...
        unsubscribe()
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

from .logger import get_logger

T = TypeVar("T")

logger = get_logger("EventChannel")


class EventChannel(Generic[T]):
    """Ordered list of listeners for one kind of event."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: Callable[[T], None]) -> bool:
        """Remove the first registration of ``listener``; False if absent."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def emit(self, event: T) -> int:
        """Deliver ``event`` to every listener, returning how many succeeded."""
        delivered = 0
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r on channel %s failed", listener, self.name)
                continue
            delivered += 1
        return delivered

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
