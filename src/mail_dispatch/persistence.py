# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite-backed persistence for staged messages and send rates.

The application's unit of work and the mail tables share one aiosqlite
connection, so a staged message is committed or rolled back together with
the work that produced it. The connection runs in autocommit mode and
transactions are opened explicitly through :meth:`Persistence.transaction`,
which supports nesting and runs the registered commit callbacks once the
outermost level has committed.

Tables:
    - mail_staging: messages waiting for the enclosing transaction to commit.
    - email_rates: one row per delivered message, used by the rate limiter.

Example:
    Staging inside a unit of work::

        persistence = Persistence("/data/mail_dispatch.db")
        await persistence.init_db()

        async with persistence.transaction():
            await persistence.insert_staged(raw_message)
        # commit callbacks (the staged-mail drain) have run here

Concurrency:
    The connection is shared by every task using this instance. The
    transaction depth is tracked per task (a ``ContextVar``), so
    ``in_transaction`` describes the calling task. An outermost transaction
    holds the connection lock until it commits or rolls back; statements
    issued by other tasks wait for it instead of landing in its ``BEGIN``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any

import aiosqlite

from .logger import get_logger

CommitCallback = Callable[[], Awaitable[Any]]

logger = get_logger("Persistence")


class Persistence:
    """Async SQLite persistence layer with explicit transactions.

    Attributes:
        db_path: Path to the SQLite database file, or ":memory:".
    """

    def __init__(self, db_path: str = "/data/mail_dispatch.db"):
        """Initialize the persistence layer with a database path.

        Args:
            db_path: Path to the SQLite database file. Use ":memory:" for
                an in-memory database suitable for testing.
        """
        self.db_path = db_path or ":memory:"
        self._db: aiosqlite.Connection | None = None
        self._depth: ContextVar[int] = ContextVar(f"mail_dispatch_tx_depth_{id(self)}", default=0)
        self._lock = asyncio.Lock()
        self._open_transaction = False
        self._commit_callbacks: list[CommitCallback] = []

    # ---------------------------------------------------------------- lifecycle
    async def connect(self) -> aiosqlite.Connection:
        """Open the shared connection if it is not open yet."""
        if self._db is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        return self._db

    async def close(self) -> None:
        """Close the shared connection, rolling back an open transaction."""
        if self._db is None:
            return
        if self._open_transaction:
            logger.warning("Closing persistence with an open transaction; rolling back")
            await self._db.execute("ROLLBACK")
            self._open_transaction = False
        await self._db.close()
        self._db = None

    @asynccontextmanager
    async def _statement(self) -> AsyncIterator[aiosqlite.Connection]:
        """Yield the connection once no other task's transaction holds it."""
        db = await self.connect()
        if self.in_transaction:
            yield db
            return
        async with self._lock:
            yield db

    async def init_db(self) -> None:
        """Create the staging and rate tables. Idempotent."""
        async with self._statement() as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS mail_staging (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS email_rates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipient TEXT NOT NULL,
                    message_ts INTEGER NOT NULL
                );
                CREATE INDEX IF NOT EXISTS email_rates_recipient_idx
                    ON email_rates (recipient, message_ts);
                """
            )

    # ------------------------------------------------------------- transactions
    @property
    def in_transaction(self) -> bool:
        """True while the calling task has a :meth:`transaction` block open."""
        return self._depth.get() > 0

    def on_commit(self, callback: CommitCallback) -> None:
        """Register a coroutine function to run after each outermost commit."""
        self._commit_callbacks.append(callback)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Persistence]:
        """Open a (possibly nested) transaction for the calling task.

        Only the outermost block issues ``BEGIN``/``COMMIT``/``ROLLBACK``, and
        it keeps the connection to itself until then. An exception leaving
        the outermost block rolls everything back, including staged messages,
        and the commit callbacks do not run. The callbacks run after the
        connection has been released.
        """
        depth = self._depth.get()
        if depth:
            token = self._depth.set(depth + 1)
            try:
                yield self
            finally:
                self._depth.reset(token)
            return

        db = await self.connect()
        async with self._lock:
            await db.execute("BEGIN")
            self._open_transaction = True
            token = self._depth.set(1)
            try:
                yield self
            except BaseException:
                await db.execute("ROLLBACK")
                logger.debug("Transaction rolled back")
                raise
            else:
                await db.execute("COMMIT")
            finally:
                self._open_transaction = False
                self._depth.reset(token)

        for callback in list(self._commit_callbacks):
            await callback()

    # ------------------------------------------------------------------ staging
    async def insert_staged(self, message: str) -> int:
        """Store a serialized message and return its row id."""
        async with self._statement() as db:
            async with db.execute("INSERT INTO mail_staging (message) VALUES (?)", (message,)) as cur:
                return int(cur.lastrowid)

    async def list_staged(self) -> list[dict[str, Any]]:
        """Return every staged row in insertion order."""
        async with self._statement() as db:
            async with db.execute("SELECT id, message FROM mail_staging ORDER BY id ASC") as cur:
                rows = await cur.fetchall()
        return [{"id": row[0], "message": row[1]} for row in rows]

    async def delete_staged(self, staging_id: int) -> bool:
        """Delete one staged row. Returns False if it was already gone."""
        async with self._statement() as db:
            async with db.execute("DELETE FROM mail_staging WHERE id = ?", (staging_id,)) as cur:
                return cur.rowcount > 0

    async def count_staged(self) -> int:
        async with self._statement() as db:
            async with db.execute("SELECT COUNT(*) FROM mail_staging") as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # -------------------------------------------------------------------- rates
    async def insert_rate(self, recipient: str, timestamp: int) -> None:
        """Record a delivery to ``recipient`` at ``timestamp``."""
        async with self._statement() as db:
            await db.execute(
                "INSERT INTO email_rates (recipient, message_ts) VALUES (?, ?)",
                (recipient, timestamp),
            )

    async def count_rates_since(self, recipient: str, since_ts: int) -> int:
        """Count deliveries to ``recipient`` with ``message_ts >= since_ts``."""
        async with self._statement() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM email_rates WHERE recipient = ? AND message_ts >= ?",
                (recipient, since_ts),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def prune_rates_before(self, threshold_ts: int) -> int:
        """Delete rate rows older than ``threshold_ts``. Returns rows removed."""
        async with self._statement() as db:
            async with db.execute("DELETE FROM email_rates WHERE message_ts < ?", (threshold_ts,)) as cur:
                return cur.rowcount
