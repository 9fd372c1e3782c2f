# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient sliding-window rate limiter using persisted send records.

Counts are always re-derived from exact timestamp ranges (the last 60
seconds for the minute limit, the last 3600 seconds for the hour limit), so
the opportunistic pruning of old rows only controls table growth.

The check and the later record are two separate statements and no lock is
taken between them: two concurrent sends to the same recipient may both be
admitted before either is recorded. The limits are therefore a best-effort
bound under contention, not a hard guarantee.

Example:
    Gating a send::

        limiter = RateLimiter(persistence, limit_per_minute=5, limit_per_hour=30)
        await limiter.check(recipient)        # raises RateLimitExceeded
        await transport.send(msg)
        await limiter.record_send(recipient)  # only after a confirmed send
"""

import time

from .errors import RateLimitExceeded
from .logger import get_logger
from .persistence import Persistence

MINUTE = 60
HOUR = 3600


class RateLimiter:
    """Per-recipient limiter backed by the ``email_rates`` table.

    A limit of zero or ``None`` disables that window. With both windows
    disabled the limiter always admits and never touches the database.

    Attributes:
        persistence: The Persistence instance holding the send records.
        limit_per_minute: Max sends per recipient in the last minute.
        limit_per_hour: Max sends per recipient in the last hour.
    """

    def __init__(self, persistence: Persistence, limit_per_minute: int | None = 0, limit_per_hour: int | None = 0):
        self.persistence = persistence
        self.limit_per_minute = _positive(limit_per_minute)
        self.limit_per_hour = _positive(limit_per_hour)
        self.logger = get_logger("RateLimiter")

    @property
    def enabled(self) -> bool:
        return self.limit_per_minute is not None or self.limit_per_hour is not None

    async def prune(self, now: int | None = None) -> int:
        """Drop records older than the longest window."""
        if not self.enabled:
            return 0
        now = int(time.time()) if now is None else now
        return await self.persistence.prune_rates_before(now - HOUR)

    async def check(self, recipient: str) -> None:
        """Raise :class:`RateLimitExceeded` if ``recipient`` is at a limit.

        Reaching a limit exactly counts as exceeded: admission requires the
        current count to be strictly below the limit.
        """
        if not self.enabled:
            return
        now = int(time.time())
        await self.prune(now)

        if self.limit_per_minute is not None:
            count = await self.persistence.count_rates_since(recipient, now - MINUTE)
            if count >= self.limit_per_minute:
                self.logger.warning("Recipient %s reached %d mails per minute", recipient, count)
                raise RateLimitExceeded(recipient, "minute", self.limit_per_minute)
        if self.limit_per_hour is not None:
            count = await self.persistence.count_rates_since(recipient, now - HOUR)
            if count >= self.limit_per_hour:
                self.logger.warning("Recipient %s reached %d mails per hour", recipient, count)
                raise RateLimitExceeded(recipient, "hour", self.limit_per_hour)

    async def admit(self, recipient: str) -> bool:
        """Return True if a send to ``recipient`` is currently allowed."""
        try:
            await self.check(recipient)
        except RateLimitExceeded:
            return False
        return True

    async def usage(self, recipient: str, now: int | None = None) -> dict[str, int]:
        """Sends recorded for ``recipient`` in the last minute and hour."""
        now = int(time.time()) if now is None else now
        return {
            "minute": await self.persistence.count_rates_since(recipient, now - MINUTE),
            "hour": await self.persistence.count_rates_since(recipient, now - HOUR),
        }

    async def record_send(self, recipient: str, now: int | None = None) -> None:
        """Record a confirmed delivery to ``recipient``.

        Must only be called once the transport accepted the message, so a
        failed send does not consume rate budget.
        """
        if not self.enabled:
            return
        await self.persistence.insert_rate(recipient, int(time.time()) if now is None else int(now))


def _positive(value: int | None) -> int | None:
    """Normalise a limit: non-positive values mean unlimited."""
    if value is None:
        return None
    value = int(value)
    return value if value > 0 else None
