# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transactional staging of outgoing mail.

A message generated inside an open transaction must not leave the process
before that transaction commits: if it were sent immediately and the
transaction then rolled back, recipients would be notified about work that
never happened. Such messages are written to ``mail_staging`` in the same
transaction and replayed by :meth:`TransactionalStager.drain` once the
commit has happened.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any

import aiosqlite

from .errors import StagingPersistenceError
from .logger import get_logger
from .message import parse_message, serialize_message
from .persistence import Persistence

Replay = Callable[[EmailMessage], Awaitable[Any]]


@dataclass(frozen=True)
class StagingRecord:
    """A message waiting in ``mail_staging``."""

    id: int
    raw_message: str


@dataclass(frozen=True)
class DrainFailure:
    id: int
    error: Exception


@dataclass
class DrainResult:
    """Outcome of one drain pass.

    Attributes:
        sent: Ids replayed and deleted, in drain order.
        failed: Records whose replay failed; they are still staged.
        remaining: Ids left untouched because the drain halted early.
    """

    sent: list[int] = field(default_factory=list)
    failed: list[DrainFailure] = field(default_factory=list)
    remaining: list[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_ids(self) -> list[int]:
        return [failure.id for failure in self.failed]


class TransactionalStager:
    """Decides when to defer, and persists and drains deferred messages."""

    def __init__(self, persistence: Persistence):
        self.persistence = persistence
        self.logger = get_logger("Stager")
        self._drain_lock = asyncio.Lock()

    @staticmethod
    def should_defer(send_now: bool, in_transaction: bool) -> bool:
        """Defer exactly when not forced and a transaction is open."""
        return not send_now and in_transaction

    async def stage(self, message: EmailMessage) -> StagingRecord:
        """Persist ``message`` for sending after commit. Never sends.

        Raises:
            StagingPersistenceError: If the row cannot be written.
        """
        raw = serialize_message(message)
        try:
            staging_id = await self.persistence.insert_staged(raw)
        except aiosqlite.Error as exc:
            raise StagingPersistenceError(f"Unable to stage message: {exc}") from exc
        self.logger.debug("Staged message %s", staging_id)
        return StagingRecord(id=staging_id, raw_message=raw)

    async def staged(self) -> list[StagingRecord]:
        """Staged records in insertion order."""
        rows = await self.persistence.list_staged()
        return [StagingRecord(id=row["id"], raw_message=row["message"]) for row in rows]

    async def drain(self, replay: Replay, *, halt_on_error: bool = False) -> DrainResult:
        """Replay every staged message in insertion order.

        Each record is deleted only after ``replay`` returned. A failing
        record stays staged and is reported in the result; the remaining
        records are still attempted unless ``halt_on_error`` is set, in which
        case they are left staged for a later drain. Deletions already made
        are kept. An empty staging table is not an error.

        Args:
            replay: Coroutine function sending one message immediately.
            halt_on_error: Stop at the first failing record.
        """
        result = DrainResult()
        async with self._drain_lock:
            records = await self.staged()
            for index, record in enumerate(records):
                try:
                    await replay(parse_message(record.raw_message))
                except Exception as exc:
                    self.logger.error("Staged message %s failed: %s", record.id, exc)
                    result.failed.append(DrainFailure(record.id, exc))
                    if halt_on_error:
                        result.remaining = [r.id for r in records[index + 1:]]
                        break
                    continue
                await self.persistence.delete_staged(record.id)
                result.sent.append(record.id)

        if records:
            self.logger.info(
                "Drained staged mail: %d sent, %d failed, %d left",
                len(result.sent),
                len(result.failed),
                len(result.remaining),
            )
        return result
