# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transport backends and the selector that maps a config to one of them.

Every transport exposes ``await send(message)`` and raises
:class:`mail_dispatch.errors.TransportError` (carrying the underlying error
and the message) on any delivery failure.

Transports:
    - DisabledTransport: no-op.
    - LocalAgentTransport: pipes the message to a sendmail-compatible binary.
    - NetworkRelayTransport: submits over SMTP through the shared pool.
    - FileSinkTransport: appends to an mbox file.
    - TestSinkTransport: file sink whose captured mail can be read back.
"""

from __future__ import annotations

import asyncio
import mailbox
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from email.message import EmailMessage
from email.utils import parseaddr
from pathlib import Path
from typing import ClassVar

import aiosmtplib

from .errors import ConfigurationError, TransportError
from .logger import get_logger
from .message import parse_message, recipients, rfc2822_now, serialize_message
from .models import (
    DeliveryMethod,
    FileSinkConfig,
    LocalAgentConfig,
    NetworkRelayConfig,
    TestSinkConfig,
    TransportConfig,
)
from .smtp_pool import SMTPPool

logger = get_logger("Transport")


class Transport(ABC):
    """Hands a finished message to a delivery backend."""

    method: ClassVar[DeliveryMethod]

    # Local agents add From domains and Date themselves; other backends don't.
    injects_headers: ClassVar[bool] = False

    @abstractmethod
    async def send(self, message: EmailMessage) -> None:
        """Deliver ``message`` or raise :class:`TransportError`."""

    async def close(self) -> None:
        """Release resources held by the transport."""


class DisabledTransport(Transport):
    method = DeliveryMethod.DISABLED

    async def send(self, message: EmailMessage) -> None:
        return None


class LocalAgentTransport(Transport):
    """Delivery through a local sendmail-compatible executable.

    The message goes to the process on stdin; recipients and the envelope
    sender are passed on the command line. Any non-zero exit status or I/O
    error is a transport failure.
    """

    method = DeliveryMethod.LOCAL_AGENT
    injects_headers = True

    def __init__(self, config: LocalAgentConfig):
        self.config = config

    def command(self, message: EmailMessage) -> list[str]:
        args = [self.config.executable, "-i"]
        _name, sender = parseaddr(str(message.get("From", "")))
        if sender:
            args += ["-f", sender]
        args.append("--")
        args.extend(recipients(message))
        return args

    async def send(self, message: EmailMessage) -> None:
        args = self.command(message)
        env = dict(os.environ, PATH=self.config.search_path)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
            _out, err = await proc.communicate(serialize_message(message).encode("utf-8"))
        except OSError as exc:
            raise TransportError(exc, message) from exc

        if proc.returncode != 0:
            detail = err.decode("utf-8", errors="replace").strip()
            raise TransportError(
                f"{self.config.executable} exited with status {proc.returncode}: {detail}", message
            )


class NetworkRelayTransport(Transport):
    """SMTP submission through a shared, reused relay connection."""

    method = DeliveryMethod.NETWORK_RELAY

    def __init__(self, config: NetworkRelayConfig, pool: SMTPPool | None = None, helo: str | None = None):
        self.config = config
        self.pool = pool or SMTPPool()
        self.helo = config.helo or helo

    async def send(self, message: EmailMessage) -> None:
        try:
            async with self.pool.connection(self.config, helo=self.helo) as smtp:
                await smtp.send_message(message)
        except (aiosmtplib.SMTPException, asyncio.TimeoutError, OSError) as exc:
            logger.error("Relay %s refused message: %s", self.config.host, exc)
            raise TransportError(exc, message) from exc

    async def close(self) -> None:
        await self.pool.close_all()


class FileSinkTransport(Transport):
    """Appends messages to a local file in mbox format.

    Each entry is a blank separator, a ``From - <date>`` line and the
    serialized message. Body lines starting with ``From `` are quoted as
    ``>From `` so the file stays readable by mailbox tools.
    """

    method = DeliveryMethod.FILE_SINK

    def __init__(self, config: FileSinkConfig | TestSinkConfig):
        self.path = Path(config.path)

    async def send(self, message: EmailMessage) -> None:
        date = message.get("Date") or rfc2822_now()
        entry = f"\n\nFrom - {date}\n{serialize_message(message, mangle_from=True)}"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(entry)
        except OSError as exc:
            raise TransportError(exc, message) from exc


class TestSinkTransport(FileSinkTransport):
    """File sink used by test suites to assert on outgoing mail."""

    __test__ = False
    method = DeliveryMethod.TEST_SINK

    def messages(self) -> list[EmailMessage]:
        """Read back every message captured so far, oldest first."""
        if not self.path.exists():
            return []
        box = mailbox.mbox(self.path, create=False)
        try:
            return [parse_message(box.get_string(key)) for key in box.keys()]
        finally:
            box.close()

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


TransportFactory = Callable[[TransportConfig], Transport]


class TransportSelector:
    """Resolves a transport config to a concrete, cached transport.

    The mapping from method to factory is fixed; a transport built for a
    given config is cached so the relay client and its connection are reused
    by every dispatch call in the process.

    Attributes:
        pool: SMTP pool shared by relay transports.
        helo: Name announced to relays that don't configure one.
    """

    def __init__(self, *, pool: SMTPPool | None = None, helo: str | None = None):
        self.pool = pool or SMTPPool()
        self.helo = helo
        self._cache: dict[TransportConfig, Transport] = {}
        self._factories: dict[DeliveryMethod, TransportFactory] = {
            DeliveryMethod.DISABLED: lambda _cfg: DisabledTransport(),
            DeliveryMethod.LOCAL_AGENT: LocalAgentTransport,
            DeliveryMethod.NETWORK_RELAY: lambda cfg: NetworkRelayTransport(cfg, self.pool, self.helo),
            DeliveryMethod.FILE_SINK: FileSinkTransport,
            DeliveryMethod.TEST_SINK: TestSinkTransport,
        }

    def resolve(self, config: TransportConfig) -> Transport:
        """Return the transport for ``config``, building it on first use."""
        transport = self._cache.get(config)
        if transport is not None:
            return transport
        try:
            factory = self._factories[DeliveryMethod(config.method)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"Unknown delivery method: {config.method!r}") from exc
        transport = factory(config)
        self._cache[config] = transport
        logger.debug("Resolved %s transport", config.method)
        return transport

    async def close(self) -> None:
        """Close every cached transport."""
        for transport in self._cache.values():
            await transport.close()
        self._cache.clear()
