# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Single entry point that moves a finished message to a transport.

:class:`MessageDispatcher` sequences the whole send:

1. Entry guard: a disabled delivery method drops the message with no side
   effect at all, not even staging.
2. Optional hand-off to the job queue for non-transactional sends.
3. Staging: inside an open transaction (and unless forced with
   ``send_now``) the message is persisted and sent after commit.
4. Rate check for the recipient.
5. Transport resolution and header normalisation (From domain, Date).
6. Before-send hooks, then the empty-recipient check.
7. Transport send; on success the send is recorded in the rate ledger.

Normal outcomes are reported as a :class:`DispatchResult`; failures are
raised (:class:`RateLimitExceeded`, :class:`TransportError`,
:class:`StagingPersistenceError`).

Example:
    Wiring the dispatcher to a unit of work::

        dispatcher = await create_dispatcher(settings)
        async with dispatcher.persistence.transaction():
            ...  # application writes
            await dispatcher.send(msg)  # staged
        # committed: the staged message has been sent
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from email.message import EmailMessage
from enum import Enum
from typing import Any, Protocol

from .errors import ConfigurationError, RateLimitExceeded, TransportError
from .logger import get_logger
from .message import ensure_message, rfc2822_now, serialize_message, set_header
from .models import DeliveryMethod, MailerSettings
from .persistence import Persistence
from .prometheus import MailMetrics
from .rate_limit import RateLimiter
from .staging import DrainResult, TransactionalStager
from .thread_marker import ThreadMarkerBuilder, site_hostname
from .transports import TransportSelector

SEND_MAIL_JOB = "send_mail"

BeforeSendHook = Callable[[EmailMessage], Awaitable[None] | None]


class DispatchStatus(str, Enum):
    SENT = "sent"
    DEFERRED = "deferred"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of :meth:`MessageDispatcher.send`.

    Attributes:
        status: Sent, deferred (staged or queued) or suppressed.
        reason: ``staged``, ``queued``, ``disabled`` or ``empty_recipient``.
        staging_id: Row id when the message was staged.
    """

    status: DispatchStatus
    reason: str | None = None
    staging_id: int | None = None


class JobQueue(Protocol):
    """Background job queue used when ``use_mailer_queue`` is enabled."""

    async def insert(self, job_name: str, payload: dict[str, Any]) -> Any: ...


def _has_recipient(msg: EmailMessage) -> bool:
    return bool(str(msg.get("To", "")).strip())


class MessageDispatcher:
    """Orchestrates staging, rate limiting and transport dispatch.

    Constructed once per process (or per unit-of-work connection) and shared
    by every caller; the transport selector it owns caches the relay
    connection across calls.

    Attributes:
        settings: Immutable mailer settings.
        persistence: Staging and rate storage, also the transaction authority.
        selector: Transport selector (owns the cached relay connection).
        rate_limiter: Per-recipient limiter.
        stager: Staging table manager.
        job_queue: Optional job queue for deferred non-transactional sends.
        metrics: Prometheus metrics collector.
        last_drain: Result of the most recent drain, including the one run
            after a commit.
        markers: Thread marker builder for the configured site.
    """

    def __init__(
        self,
        settings: MailerSettings,
        persistence: Persistence,
        *,
        selector: TransportSelector | None = None,
        rate_limiter: RateLimiter | None = None,
        stager: TransactionalStager | None = None,
        job_queue: JobQueue | None = None,
        metrics: MailMetrics | None = None,
        logger=None,
    ):
        if settings.use_mailer_queue and job_queue is None:
            raise ConfigurationError("use_mailer_queue is enabled but no job queue was provided")

        self.settings = settings
        self.persistence = persistence
        self.hostname = site_hostname(settings.url_base)
        self.transport_config = settings.transport_config()
        self.selector = selector or TransportSelector(helo=self.hostname)
        self.rate_limiter = rate_limiter or RateLimiter(
            persistence,
            limit_per_minute=settings.limit_per_minute,
            limit_per_hour=settings.limit_per_hour,
        )
        self.stager = stager or TransactionalStager(persistence)
        self.job_queue = job_queue
        self.metrics = metrics or MailMetrics()
        self.logger = logger or get_logger("Dispatcher")
        self.markers = ThreadMarkerBuilder(settings.url_base)
        self._before_send_hooks: list[BeforeSendHook] = []
        self._attached = False
        self.last_drain: DrainResult | None = None

    @property
    def method(self) -> DeliveryMethod:
        return self.settings.mail_delivery_method

    def attach(self) -> None:
        """Drain staged mail after every outermost commit."""
        if self._attached:
            return
        self.persistence.on_commit(self._drain_after_commit)
        self._attached = True

    async def start(self) -> None:
        """Create the tables, hook the commit drain and publish the backlog."""
        await self.persistence.init_db()
        self.attach()
        self.metrics.set_staged(await self.persistence.count_staged())

    def add_before_send_hook(self, hook: BeforeSendHook) -> None:
        """Register a callable run on the message right before transport.

        Hooks may edit headers; blanking ``To`` suppresses the delivery.
        """
        self._before_send_hooks.append(hook)

    async def _run_before_send_hooks(self, msg: EmailMessage) -> None:
        for hook in self._before_send_hooks:
            result = hook(msg)
            if inspect.isawaitable(result):
                await result

    def _suppressed(self, reason: str) -> DispatchResult:
        self.metrics.inc_suppressed(self.method.value, reason)
        self.logger.debug("Message suppressed (%s)", reason)
        return DispatchResult(DispatchStatus.SUPPRESSED, reason)

    def normalize_headers(self, msg: EmailMessage) -> None:
        """Add what a local mail agent would otherwise add itself.

        A From address without a domain gets the site hostname appended and
        a missing Date header is set to now.
        """
        sender = str(msg.get("From", "")).strip()
        if sender and "@" not in sender:
            set_header(msg, "From", f"{sender}@{self.hostname}")
        if msg.get("Date") is None:
            msg["Date"] = rfc2822_now()

    async def send(self, message: EmailMessage | str | bytes, send_now: bool = False) -> DispatchResult:
        """Send, stage or queue one message.

        Args:
            message: A structured message or its serialized text.
            send_now: Bypass staging and queueing (used by the drain and by
                queue workers).

        Returns:
            The dispatch outcome.

        Raises:
            RateLimitExceeded: The recipient reached a send limit.
            TransportError: The transport failed; carries the message.
            StagingPersistenceError: The message could not be staged.
        """
        method = self.method
        if method is DeliveryMethod.DISABLED:
            return self._suppressed("disabled")

        msg = ensure_message(message)
        if not _has_recipient(msg):
            return self._suppressed("empty_recipient")

        in_transaction = self.persistence.in_transaction
        if self.settings.use_mailer_queue and not send_now and not in_transaction:
            await self.job_queue.insert(SEND_MAIL_JOB, {"msg": serialize_message(msg)})
            self.metrics.inc_deferred(method.value, "queued")
            self.logger.debug("Message for %s queued", msg.get("To"))
            return DispatchResult(DispatchStatus.DEFERRED, "queued")

        if self.stager.should_defer(send_now, in_transaction):
            record = await self.stager.stage(msg)
            self.metrics.inc_deferred(method.value, "staged")
            return DispatchResult(DispatchStatus.DEFERRED, "staged", staging_id=record.id)

        recipient = str(msg.get("To", "")).strip()
        try:
            await self.rate_limiter.check(recipient)
        except RateLimitExceeded:
            self.metrics.inc_rate_limited(method.value)
            raise

        transport = self.selector.resolve(self.transport_config)
        if not transport.injects_headers:
            self.normalize_headers(msg)

        await self._run_before_send_hooks(msg)
        if not _has_recipient(msg):
            return self._suppressed("empty_recipient")

        try:
            await transport.send(msg)
        except TransportError as exc:
            if exc.mail is None:
                exc.mail = msg
            self.metrics.inc_error(method.value)
            self.logger.error("Sending mail to %s failed: %s", recipient, exc)
            raise

        await self.rate_limiter.record_send(recipient)
        self.metrics.inc_sent(method.value)
        self.logger.debug("Mail to %s sent via %s", recipient, method.value)
        return DispatchResult(DispatchStatus.SENT)

    async def send_staged_mail(self, halt_on_error: bool = False) -> DrainResult:
        """Replay every staged message with ``send_now`` forced."""

        async def replay(msg: EmailMessage) -> DispatchResult:
            return await self.send(msg, send_now=True)

        result = await self.stager.drain(replay, halt_on_error=halt_on_error)
        self.last_drain = result
        self.metrics.set_staged(await self.persistence.count_staged())
        return result

    async def _drain_after_commit(self) -> DrainResult:
        # stops at the first failure; later records stay staged in order
        result = await self.send_staged_mail(halt_on_error=True)
        if not result.ok:
            self.logger.warning(
                "Commit drain stopped at staged message %s; %d message(s) left staged",
                result.failed_ids[0],
                len(result.failed) + len(result.remaining),
            )
        return result

    async def run_send_mail_job(self, payload: dict[str, Any]) -> DispatchResult:
        """Job queue worker entry point for ``send_mail`` jobs."""
        return await self.send(payload["msg"], send_now=True)

    async def aclose(self) -> None:
        """Release cached transports and the persistence connection."""
        await self.selector.close()
        await self.persistence.close()


async def create_dispatcher(
    settings: MailerSettings,
    *,
    persistence: Persistence | None = None,
    job_queue: JobQueue | None = None,
    metrics: MailMetrics | None = None,
) -> MessageDispatcher:
    """Build a dispatcher with an initialised database and commit drain."""
    persistence = persistence or Persistence(settings.database_path)
    dispatcher = MessageDispatcher(settings, persistence, job_queue=job_queue, metrics=metrics)
    await dispatcher.start()
    return dispatcher
