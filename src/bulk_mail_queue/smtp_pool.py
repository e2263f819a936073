# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP connection pool.

Connections are keyed by their parameters (host, port, user, TLS mode), so
consecutive drain steps of a queue, each running in its own task, reuse the
same authenticated session instead of reconnecting for every message.

The pool handles connection lifecycle:
- TTL-based expiration
- Health checking via SMTP NOOP before reuse
- Reconnection when a pooled session is stale or broken

Example:
    Sending through the pool::

        pool = SMTPPool(ttl=300)
        smtp = await pool.get_connection(
            host="email-smtp.eu-west-1.amazonaws.com",
            port=587,
            user="AKIA...",
            password="secret",
            use_tls=True,
        )
        await smtp.send_message(message)
        await pool.close()
"""

import asyncio
import time

import aiosmtplib

from .logger import get_logger

ConnectionKey = tuple[str, int, str | None, bool]

logger = get_logger("SMTPPool")


class SMTPPool:
    """SMTP connection pool with per-endpoint connection reuse.

    Attributes:
        ttl: Maximum idle age in seconds before a pooled connection is replaced.
        pool: Mapping of connection key to ``(smtp, last_used)``.
        lock: Asyncio lock guarding the mapping.
    """

    def __init__(self, ttl: int = 300, timeout: float = 10.0):
        """Initialize the pool.

        Args:
            ttl: Idle time-to-live for pooled connections, in seconds.
            timeout: Socket timeout handed to aiosmtplib.
        """
        self.ttl = ttl
        self.timeout = timeout
        self.pool: dict[ConnectionKey, tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()
        self._key_locks: dict[ConnectionKey, asyncio.Lock] = {}

    async def _connect(self, host: str, port: int, user: str | None, password: str | None, use_tls: bool) -> aiosmtplib.SMTP:
        """Open and optionally authenticate a new SMTP session.

        Port 465 with ``use_tls`` uses implicit TLS; any other port with
        ``use_tls`` upgrades through STARTTLS; otherwise plain SMTP.

        Raises:
            asyncio.TimeoutError: If connecting takes longer than 15 seconds.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        if use_tls and port == 465:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=True, timeout=self.timeout)
        elif use_tls:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=True, use_tls=False, timeout=self.timeout)
        else:
            smtp = aiosmtplib.SMTP(hostname=host, port=port, start_tls=False, use_tls=False, timeout=self.timeout)

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        logger.debug("Opened SMTP connection to %s:%s", host, port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Send NOOP and report whether the server answered 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError):
            return False

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    def _key_lock(self, key: ConnectionKey) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    async def get_connection(self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool) -> aiosmtplib.SMTP:
        """Return a live connection for these parameters, opening one if needed.

        Callers asking for the same key are serialized from the pool lookup
        until the connection is stored, so at most one connection per key
        is ever open.

        Raises:
            asyncio.TimeoutError: If connection establishment times out.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        key = (host, port, user, use_tls)

        async with self._key_lock(key):
            async with self.lock:
                entry = self.pool.pop(key, None)

            if entry:
                smtp, last_used = entry
                if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                    async with self.lock:
                        self.pool[key] = (smtp, time.time())
                    return smtp
                await self._quit(smtp)

            smtp = await self._connect(host, port, user, password, use_tls)
            async with self.lock:
                self.pool[key] = (smtp, time.time())
            return smtp

    async def discard(self, host: str, port: int, user: str | None, *, use_tls: bool) -> None:
        """Drop and close the pooled connection for these parameters, if any."""
        async with self.lock:
            entry = self.pool.pop((host, port, user, use_tls), None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self) -> None:
        """Close pooled connections that exceeded the TTL."""
        now = time.time()
        async with self.lock:
            expired = [key for key, (_smtp, last_used) in self.pool.items() if (now - last_used) > self.ttl]
            entries = [self.pool.pop(key) for key in expired]
        for smtp, _last_used in entries:
            await self._quit(smtp)

    async def close(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used in entries:
            await self._quit(smtp)
