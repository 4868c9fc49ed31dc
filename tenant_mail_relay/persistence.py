"""SQLite backed persistence used by the mail relay.

Every read and write goes through :meth:`Persistence._session`, which holds a
single :class:`asyncio.Lock` for the duration of the statements. The embedded
store is treated as a critical section: it is never entered concurrently and
the lock is never held across network calls.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import ConflictError, PersistenceError

BUSY_TIMEOUT_MS = 5000

STATUS_PENDING = "pending"
STATUS_SENDING = "sending"

SCHEMA = """
CREATE TABLE IF NOT EXISTS email_queue (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'pending',
    from_addr TEXT NOT NULL,
    to_addrs TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    html TEXT,
    created_at INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT
);
CREATE TABLE IF NOT EXISTS email_archive (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_id TEXT NOT NULL,
    from_addr TEXT NOT NULL,
    to_addrs TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    html TEXT,
    sent_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS domains (
    domain TEXT PRIMARY KEY,
    token TEXT NOT NULL UNIQUE,
    created_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queue_status ON email_queue(status, created_at);
CREATE INDEX IF NOT EXISTS idx_archive_queue ON email_archive(queue_id);
CREATE INDEX IF NOT EXISTS idx_domains_token ON domains(token);
"""

_QUEUE_COLUMNS = "id, status, from_addr, to_addrs, subject, body, html, created_at, attempts, last_error"
_ARCHIVE_COLUMNS = "id, queue_id, from_addr, to_addrs, subject, body, html, sent_at"


def now_millis() -> int:
    """Return the current time as milliseconds since epoch."""
    return int(time.time() * 1000)


class Persistence:
    """Helper class responsible for reading and writing relay state."""

    def __init__(self, db_path: str = "relay.db"):
        """Persist data to the given SQLite file.

        A connection is opened per operation, so ``:memory:`` does not keep
        state between calls and is only useful for schema checks.
        """
        self.db_path = db_path or ":memory:"
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiosqlite.Connection]:
        """Enter the store critical section and yield an open connection.

        Statements run inside one transaction which is committed when the
        block exits cleanly and rolled back otherwise. Driver errors are
        converted into :class:`PersistenceError`.
        """
        async with self._lock:
            try:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
                    try:
                        yield db
                    except Exception:
                        await db.rollback()
                        raise
                    await db.commit()
            except aiosqlite.Error as exc:
                raise PersistenceError(f"store error: {exc}") from exc

    async def init_db(self) -> None:
        """Create the database schema when missing."""
        async with self._session() as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.executescript(SCHEMA)

    @staticmethod
    def _decode_message_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        data["from"] = data.pop("from_addr")
        try:
            data["to"] = json.loads(data.pop("to_addrs"))
        except (TypeError, json.JSONDecodeError):
            data["to"] = []
        return data

    # Domains ------------------------------------------------------------------
    async def insert_domain(self, domain: str, token: str, created_at: int) -> None:
        """Store a new domain row, raising :class:`ConflictError` if it exists."""
        async with self._session() as db:
            try:
                await db.execute(
                    "INSERT INTO domains (domain, token, created_at) VALUES (?, ?, ?)",
                    (domain, token, created_at),
                )
            except aiosqlite.IntegrityError as exc:
                raise ConflictError("domain already exists") from exc

    async def list_domains(self) -> List[Dict[str, Any]]:
        """Return every registered domain ordered by name."""
        async with self._session() as db:
            async with db.execute("SELECT domain, created_at FROM domains ORDER BY domain ASC") as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]

    async def delete_domain(self, domain: str) -> bool:
        """Remove a domain row; return ``True`` when something was deleted."""
        async with self._session() as db:
            cursor = await db.execute("DELETE FROM domains WHERE domain = ?", (domain,))
            return cursor.rowcount > 0

    async def domain_for_token(self, token: str) -> Optional[str]:
        """Return the domain a token authorizes, if any."""
        async with self._session() as db:
            async with db.execute("SELECT domain FROM domains WHERE token = ?", (token,)) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    # Config -------------------------------------------------------------------
    async def get_config(self, key: str) -> Optional[str]:
        """Return a persisted configuration value."""
        async with self._session() as db:
            async with db.execute("SELECT value FROM config WHERE key = ?", (key,)) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    async def set_config_values(self, values: Dict[str, str]) -> None:
        """Upsert several configuration values in one transaction."""
        if not values:
            return
        async with self._session() as db:
            for key, value in values.items():
                await db.execute(
                    """
                    INSERT INTO config (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    (key, value),
                )

    # Queue --------------------------------------------------------------------
    async def enqueue_message(self, message: Dict[str, Any]) -> str:
        """Persist a new pending message and return its generated id."""
        msg_id = str(uuid.uuid4())
        async with self._session() as db:
            await db.execute(
                """
                INSERT INTO email_queue (id, status, from_addr, to_addrs, subject, body, html, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    msg_id,
                    STATUS_PENDING,
                    message["from"],
                    json.dumps(list(message["to"])),
                    message["subject"],
                    message["body"],
                    message.get("html"),
                    int(message.get("created_at") or now_millis()),
                ),
            )
        return msg_id

    async def claim_batch(self, limit: int) -> List[Dict[str, Any]]:
        """Select the oldest pending rows and mark them ``sending`` atomically."""
        async with self._session() as db:
            async with db.execute(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM email_queue
                WHERE status = ?
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (STATUS_PENDING, max(0, int(limit))),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
            claimed = [self._decode_message_row(row, cols) for row in rows]
            if claimed:
                ids = [entry["id"] for entry in claimed]
                placeholders = ",".join("?" for _ in ids)
                await db.execute(
                    f"UPDATE email_queue SET status = ? WHERE id IN ({placeholders})",
                    (STATUS_SENDING, *ids),
                )
        for entry in claimed:
            entry["status"] = STATUS_SENDING
        return claimed

    async def resolve_success(self, msg_id: str) -> bool:
        """Delete a delivered message. Call only after it has been archived."""
        async with self._session() as db:
            cursor = await db.execute("DELETE FROM email_queue WHERE id = ?", (msg_id,))
            return cursor.rowcount > 0

    async def resolve_failure(self, msg_id: str, error: str) -> bool:
        """Return a message to ``pending`` and record the failed attempt."""
        async with self._session() as db:
            cursor = await db.execute(
                """
                UPDATE email_queue
                SET status = ?, attempts = attempts + 1, last_error = ?
                WHERE id = ?
                """,
                (STATUS_PENDING, error, msg_id),
            )
            return cursor.rowcount > 0

    async def requeue_stale(self) -> int:
        """Reset every ``sending`` row to ``pending`` and return how many moved."""
        async with self._session() as db:
            cursor = await db.execute(
                "UPDATE email_queue SET status = ? WHERE status = ?",
                (STATUS_PENDING, STATUS_SENDING),
            )
            return cursor.rowcount

    async def count_queue(self) -> int:
        """Return the number of messages still awaiting delivery."""
        async with self._session() as db:
            async with db.execute(
                "SELECT COUNT(*) FROM email_queue WHERE status IN (?, ?)",
                (STATUS_PENDING, STATUS_SENDING),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def list_queue(self) -> List[Dict[str, Any]]:
        """Return queued messages in delivery order, for inspection."""
        async with self._session() as db:
            async with db.execute(
                f"SELECT {_QUEUE_COLUMNS} FROM email_queue ORDER BY created_at ASC, rowid ASC"
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_message_row(row, cols) for row in rows]

    # Archive ------------------------------------------------------------------
    async def archive_message(self, message: Dict[str, Any], *, queue_id: str, sent_at: int) -> int:
        """Append a delivered message to the archive and return its id."""
        async with self._session() as db:
            cursor = await db.execute(
                """
                INSERT INTO email_archive (queue_id, from_addr, to_addrs, subject, body, html, sent_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    queue_id,
                    message["from"],
                    json.dumps(list(message["to"])),
                    message["subject"],
                    message["body"],
                    message.get("html"),
                    int(sent_at),
                ),
            )
            return int(cursor.lastrowid)

    async def count_archive(self) -> int:
        """Return the total number of archived messages."""
        async with self._session() as db:
            async with db.execute("SELECT COUNT(*) FROM email_archive") as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def list_archive(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return archived messages ordered by id (oldest first)."""
        query = f"SELECT {_ARCHIVE_COLUMNS} FROM email_archive ORDER BY id ASC"
        params: Tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)
        async with self._session() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_message_row(row, cols) for row in rows]

    async def cull_archive(self, max_rows: int) -> int:
        """Delete the oldest archive rows above ``max_rows``; return the count removed."""
        ceiling = max(0, int(max_rows))
        async with self._session() as db:
            async with db.execute("SELECT COUNT(*) FROM email_archive") as cur:
                row = await cur.fetchone()
            count = int(row[0] if row else 0)
            if count <= ceiling:
                return 0
            cursor = await db.execute(
                """
                DELETE FROM email_archive
                WHERE id IN (SELECT id FROM email_archive ORDER BY id ASC LIMIT ?)
                """,
                (count - ceiling,),
            )
            return cursor.rowcount
