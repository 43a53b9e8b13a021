"""
SQLite-backed work queue holding one row per target identifier
"""
import asyncio
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from loguru import logger

from file_store import FileManager, write_handoff
from models import IdentifierRecord, IdentifierStatus, RunStats
from validator import normalize_identifier

SCHEMA = """
CREATE TABLE IF NOT EXISTS identifiers (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    identifier  TEXT NOT NULL UNIQUE,
    status      TEXT NOT NULL DEFAULT 'pending',
    has_result  INTEGER NOT NULL DEFAULT 0,
    no_result   INTEGER NOT NULL DEFAULT 0,
    created_at  TEXT,
    updated_at  TEXT
);
CREATE INDEX IF NOT EXISTS idx_identifiers_status ON identifiers(status);
"""


class StoreError(Exception):
    """Base exception for work queue failures"""
    pass


class StoreClosedError(StoreError):
    """Raised for any operation after the store was explicitly closed"""
    pass


class InvalidTransitionError(StoreError, ValueError):
    """Raised for a status/flag combination the queue does not allow"""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkQueueStore:
    """
    Durable identifier queue

    The store opens lazily on first use. Once `close()` has been called every
    operation raises StoreClosedError instead of reopening, so accumulated
    progress is never silently replaced by a fresh database.
    """

    def __init__(self, path: str = "emails.db"):
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._closed = False
        self._lock = threading.Lock()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _connect(self) -> sqlite3.Connection:
        """Return the open connection, opening it once. Caller holds the lock."""
        if self._closed:
            raise StoreClosedError(f"work queue store {self.path} has been closed")
        if self._conn is None:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            try:
                conn = sqlite3.connect(self.path, check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
                conn.executescript(SCHEMA)
            except sqlite3.Error as e:
                logger.error(f"Failed to open work queue store {self.path}: {e}")
                raise StoreError(f"failed to open store: {e}") from e
            self._conn = conn
            logger.info(f"Work queue store opened at {self.path}")
        return self._conn

    async def _run(self, func, *args):
        """Run a blocking store operation in a worker thread"""
        return await asyncio.to_thread(func, *args)

    async def open(self) -> None:
        """Open the store eagerly (otherwise it opens on first use)"""
        def _open():
            with self._lock:
                self._connect()
        await self._run(_open)

    async def load(self, identifiers: Iterable[str], fresh: bool = False) -> int:
        """
        Insert unseen identifiers as pending

        Args:
            identifiers: Identifiers to enqueue; normalized before insert
            fresh: Drop all existing rows first (start of a new run)

        Returns:
            Number of pending identifiers after the load
        """
        normalized = [normalize_identifier(i) for i in identifiers]
        normalized = [i for i in normalized if i]

        def _load():
            with self._lock:
                conn = self._connect()
                with conn:
                    if fresh:
                        conn.execute("DROP TABLE IF EXISTS identifiers")
                        conn.executescript(SCHEMA)
                    now = _now()
                    before = conn.total_changes
                    conn.executemany(
                        "INSERT OR IGNORE INTO identifiers (identifier, status, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?)",
                        [(i, IdentifierStatus.PENDING.value, now, now) for i in normalized],
                    )
                    inserted = conn.total_changes - before
                    pending = conn.execute(
                        "SELECT COUNT(*) FROM identifiers WHERE status = ?",
                        (IdentifierStatus.PENDING.value,),
                    ).fetchone()[0]
                return inserted, pending

        inserted, pending = await self._run(_load)
        logger.info(f"Imported {inserted} new identifiers ({'fresh' if fresh else 'incremental'} load), "
                    f"{pending} pending")
        return pending

    async def get_by_status(self, status: IdentifierStatus) -> List[str]:
        """Return every identifier currently in the given status"""
        status = IdentifierStatus(status)

        def _select():
            with self._lock:
                conn = self._connect()
                rows = conn.execute(
                    "SELECT identifier FROM identifiers WHERE status = ? ORDER BY id",
                    (status.value,),
                ).fetchall()
            return [row[0] for row in rows]

        return await self._run(_select)

    async def get_record(self, identifier: str) -> Optional[IdentifierRecord]:
        """Fetch one row, or None if the identifier is unknown"""
        key = normalize_identifier(identifier)

        def _select():
            with self._lock:
                conn = self._connect()
                return conn.execute(
                    "SELECT identifier, status, has_result, no_result, updated_at "
                    "FROM identifiers WHERE identifier = ?",
                    (key,),
                ).fetchone()

        row = await self._run(_select)
        if row is None:
            return None
        return IdentifierRecord(
            identifier=row[0],
            status=IdentifierStatus(row[1]),
            has_result=bool(row[2]),
            no_result=bool(row[3]),
            updated_at=datetime.fromisoformat(row[4]) if row[4] else None,
        )

    async def update_status(
        self,
        identifier: str,
        status: IdentifierStatus,
        has_result: bool = False,
        no_result: bool = False,
    ) -> bool:
        """
        Move a pending identifier to a terminal status

        Args:
            identifier: Identifier to update
            status: SUCCESS or FAILED
            has_result: Lookup returned usable data
            no_result: Lookup succeeded without usable data

        Returns:
            True if the row transitioned, False if it was unknown or no longer pending

        Raises:
            InvalidTransitionError: For a disallowed status/flag combination
            StoreClosedError: If the store has been closed
        """
        status = IdentifierStatus(status)
        if status == IdentifierStatus.PENDING:
            raise InvalidTransitionError("identifiers return to pending only via reset_failed_to_pending()")
        if has_result and no_result:
            raise InvalidTransitionError("has_result and no_result are mutually exclusive")
        if (has_result or no_result) and status != IdentifierStatus.SUCCESS:
            raise InvalidTransitionError("result flags require status success")
        if status == IdentifierStatus.SUCCESS and not (has_result or no_result):
            raise InvalidTransitionError("success requires exactly one result flag")

        key = normalize_identifier(identifier)

        def _update():
            with self._lock:
                conn = self._connect()
                with conn:
                    cursor = conn.execute(
                        "UPDATE identifiers SET status = ?, has_result = ?, no_result = ?, updated_at = ? "
                        "WHERE identifier = ? AND status = ?",
                        (status.value, int(has_result), int(no_result), _now(),
                         key, IdentifierStatus.PENDING.value),
                    )
                return cursor.rowcount > 0

        changed = await self._run(_update)
        if not changed:
            logger.debug(f"Status update for {key} to {status.value} ignored (not pending)")
        return changed

    async def reset_failed_to_pending(self) -> int:
        """
        Bulk-move every failed identifier back to pending

        Returns:
            Number of identifiers reset
        """
        def _reset():
            with self._lock:
                conn = self._connect()
                with conn:
                    cursor = conn.execute(
                        "UPDATE identifiers SET status = ?, has_result = 0, no_result = 0, updated_at = ? "
                        "WHERE status = ?",
                        (IdentifierStatus.PENDING.value, _now(), IdentifierStatus.FAILED.value),
                    )
                return cursor.rowcount

        count = await self._run(_reset)
        logger.info(f"Reset {count} failed identifiers to pending")
        return count

    async def stats(self) -> RunStats:
        """Counts per status and result flag from a single query"""
        def _stats():
            with self._lock:
                conn = self._connect()
                return conn.execute(
                    "SELECT "
                    "COALESCE(SUM(status = 'pending'), 0), "
                    "COALESCE(SUM(status = 'success'), 0), "
                    "COALESCE(SUM(status = 'failed'), 0), "
                    "COALESCE(SUM(has_result), 0), "
                    "COALESCE(SUM(no_result), 0) "
                    "FROM identifiers"
                ).fetchone()

        row = await self._run(_stats)
        return RunStats(pending=row[0], success=row[1], failed=row[2], has_result=row[3], no_result=row[4])

    async def count_pending(self) -> int:
        return (await self.stats()).pending

    async def export_pending(self, path: str, file_manager: Optional[FileManager] = None) -> int:
        """
        Write all pending identifiers to the hand-off file

        Returns:
            Number of identifiers exported
        """
        pending = await self.get_by_status(IdentifierStatus.PENDING)
        await asyncio.to_thread(write_handoff, path, pending, file_manager)
        return len(pending)

    async def info(self) -> dict:
        """Basic information about the store"""
        def _info():
            with self._lock:
                conn = self._connect()
                total = conn.execute("SELECT COUNT(*) FROM identifiers").fetchone()[0]
            info = {"total_identifiers": total, "db_path": self.path, "is_closed": self._closed}
            if os.path.exists(self.path):
                info["db_file_size"] = os.path.getsize(self.path)
            return info

        return await self._run(_info)

    async def reset(self) -> None:
        """Drop and recreate the identifiers table"""
        def _reset():
            with self._lock:
                conn = self._connect()
                with conn:
                    conn.execute("DROP TABLE IF EXISTS identifiers")
                    conn.executescript(SCHEMA)

        await self._run(_reset)
        logger.warning("Work queue store reset: identifiers table dropped and recreated")

    async def close(self) -> None:
        """Close the store; further operations raise StoreClosedError"""
        def _close():
            with self._lock:
                if self._closed:
                    return False
                self._closed = True
                if self._conn is not None:
                    self._conn.close()
                    self._conn = None
                return True

        if await self._run(_close):
            logger.info("Work queue store closed")
