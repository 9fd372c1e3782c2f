# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared, reusable SMTP relay connection.

The relay transport keeps a single aiosmtplib client per set of connection
parameters for the whole process. Concurrent dispatch calls share that
handle; a per-parameters lock serialises its use, since one SMTP session
can only carry one transaction at a time.

Connection lifecycle:
- TTL-based expiration of idle connections
- Health check via SMTP NOOP before reuse
- Automatic reconnection when the connection is stale or broken
- Best-effort close on cleanup and shutdown

Example:
    Sending through the shared connection::

        pool = SMTPPool(ttl=300)
        async with pool.connection(relay_config, helo="example.com") as smtp:
            await smtp.send_message(message)

        # At shutdown
        await pool.close_all()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosmtplib

from .logger import get_logger
from .models import NetworkRelayConfig

ConnectionKey = tuple[str, int, str | None, str | None, bool, str | None]

# Errors after which the session cannot be trusted any more.
BROKEN_CONNECTION_ERRORS = (
    aiosmtplib.SMTPServerDisconnected,
    aiosmtplib.SMTPConnectError,
    aiosmtplib.SMTPTimeoutError,
    asyncio.TimeoutError,
    OSError,
)


class SMTPPool:
    """Process-wide cache of relay connections keyed by connection parameters.

    Attributes:
        ttl: Maximum idle age in seconds before a connection is replaced.
        pool: Mapping of connection key to ``(smtp, last_used)``.
        lock: Guards ``pool`` and the per-key locks.
    """

    def __init__(self, ttl: int = 300):
        """Initialize the pool.

        Args:
            ttl: Idle time-to-live in seconds. Defaults to 300 (5 minutes).
        """
        self.ttl = ttl
        self.pool: dict[ConnectionKey, tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()
        self._key_locks: dict[ConnectionKey, asyncio.Lock] = {}
        self.logger = get_logger("SMTPPool")

    @staticmethod
    def _key(config: NetworkRelayConfig, helo: str | None) -> ConnectionKey:
        return (
            config.host,
            config.effective_port,
            config.username,
            config.password,
            config.use_tls,
            helo,
        )

    async def _connect(self, config: NetworkRelayConfig, helo: str | None) -> aiosmtplib.SMTP:
        """Establish a new SMTP connection with optional authentication.

        TLS behaviour based on port and ``use_tls``:
        - Port 465 with use_tls: direct (implicit) TLS
        - Other ports with use_tls: STARTTLS
        - use_tls off: plain SMTP

        Raises:
            asyncio.TimeoutError: If connecting exceeds the configured timeout.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        port = config.effective_port
        direct_tls = config.use_tls and port == 465
        smtp = aiosmtplib.SMTP(
            hostname=config.host,
            port=port,
            use_tls=direct_tls,
            start_tls=config.use_tls and not direct_tls,
            local_hostname=helo,
            timeout=config.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if config.username and config.password:
                await smtp.login(config.username, config.password)

        # aiosmtplib's own timeout covers each command, not the whole handshake
        await asyncio.wait_for(_do_connect(), timeout=config.timeout + 5.0)
        self.logger.debug("Connected to relay %s:%s", config.host, port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Check a pooled connection with NOOP."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except Exception:
            return False

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception:
            smtp.close()

    async def _acquire(self, key: ConnectionKey, config: NetworkRelayConfig, helo: str | None) -> aiosmtplib.SMTP:
        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)

        return await self._connect(config, helo)

    @asynccontextmanager
    async def connection(self, config: NetworkRelayConfig, helo: str | None = None) -> AsyncIterator[aiosmtplib.SMTP]:
        """Hold the shared connection for ``config`` for one send.

        Callers for the same relay wait for each other. The connection is
        returned to the pool on success and on protocol-level rejections;
        it is dropped after connection-level failures.
        """
        key = self._key(config, helo)
        async with self.lock:
            key_lock = self._key_locks.setdefault(key, asyncio.Lock())

        async with key_lock:
            smtp = await self._acquire(key, config, helo)
            try:
                yield smtp
            except BROKEN_CONNECTION_ERRORS:
                await self._quit(smtp)
                raise
            except BaseException:
                async with self.lock:
                    self.pool[key] = (smtp, time.time())
                raise
            async with self.lock:
                self.pool[key] = (smtp, time.time())

    async def cleanup(self) -> None:
        """Close idle connections that exceeded the TTL or fail NOOP."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        for key, (smtp, last_used) in items:
            if (now - last_used) <= self.ttl and await self._is_alive(smtp):
                continue
            async with self.lock:
                entry = self.pool.pop(key, None)
            if entry:
                await self._quit(entry[0])

    async def close_all(self) -> None:
        """Close every pooled connection (process shutdown)."""
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()
        for smtp, _last_used in items:
            await self._quit(smtp)
