# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Sensor data writer.

The single gateway between connection handlers and the database. SQLite
allows one writer at a time, so every insert goes through one connection
guarded by a first-come first-served lock.
"""

import logging
import sqlite3
import threading
from typing import Dict, Any, Optional

from ..records import SensorRecord
from .schema import INSERT_SQL
from .sqlite_client import SQLiteClient

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a single record could not be persisted."""
    pass


class StoreUnavailableError(StoreError):
    """Raised when the store can no longer accept any insert."""
    pass


class FairLock:
    """
    Mutual exclusion lock that grants access in arrival order.

    Each caller draws a ticket and sleeps on a condition variable until its
    ticket is served. threading.Lock makes no ordering promise.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._next_ticket = 0
        self._now_serving = 0

    def acquire(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()

    def release(self) -> None:
        with self._cond:
            self._now_serving += 1
            self._cond.notify_all()

    def waiting(self) -> int:
        """Number of callers holding or queued for the lock."""
        with self._cond:
            return self._next_ticket - self._now_serving

    def __enter__(self) -> "FairLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class SensorDataWriter:
    """
    Serialized, transactional writer for sensor records.

    Features:
    - One shared connection, opened lazily on first use
    - FIFO access: concurrent persist() calls run one at a time in arrival order
    - One transaction per record: a failed insert leaves earlier rows untouched
    - Escalates to StoreUnavailableError after repeated consecutive failures
    """

    def __init__(self, client: SQLiteClient, max_consecutive_failures: int = 5):
        """
        Initialize writer.

        Args:
            client: SQLiteClient for the target database
            max_consecutive_failures: Failed inserts in a row before the store
                is considered permanently unavailable
        """
        self.client = client
        self.max_consecutive_failures = max_consecutive_failures

        self._lock = FairLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._closed = False
        self._unavailable_reason: Optional[str] = None
        self._consecutive_failures = 0
        self.stats = {
            'persisted': 0,
            'failed': 0,
        }

    @property
    def available(self) -> bool:
        return not self._closed and self._unavailable_reason is None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = self.client.connect()
        return self._conn

    def _mark_unavailable(self, reason: str) -> None:
        if self._unavailable_reason is None:
            self._unavailable_reason = reason
            logger.critical(f"Store unavailable: {reason}")

    def persist(self, record: SensorRecord) -> int:
        """
        Insert one record in its own transaction.

        Blocks until every earlier caller has finished.

        Args:
            record: Fully decoded sensor record

        Returns:
            Row id assigned to the record

        Raises:
            StoreError: If this insert failed; earlier rows are untouched
            StoreUnavailableError: If no further inserts are possible
        """
        with self._lock:
            if self._closed:
                raise StoreUnavailableError("Store is closed")
            if self._unavailable_reason is not None:
                raise StoreUnavailableError(self._unavailable_reason)

            try:
                conn = self._connection()
                with conn:
                    cursor = conn.execute(INSERT_SQL, record.as_row())
            except sqlite3.IntegrityError as e:
                self.stats['failed'] += 1
                raise StoreError(f"Insert rejected: {e}") from e
            except sqlite3.Error as e:
                self.stats['failed'] += 1
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.max_consecutive_failures:
                    self._mark_unavailable(
                        f"{self._consecutive_failures} consecutive insert failures, last: {e}"
                    )
                    raise StoreUnavailableError(self._unavailable_reason) from e
                raise StoreError(f"Insert failed: {e}") from e

            self._consecutive_failures = 0
            self.stats['persisted'] += 1
            return cursor.lastrowid

    def close(self) -> None:
        """
        Close the shared connection.

        Waits for any in-flight insert. Later persist() calls raise
        StoreUnavailableError. Safe to call more than once.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._conn is not None:
                try:
                    self._conn.close()
                except sqlite3.Error as e:
                    logger.error(f"Error closing database connection: {e}")
                self._conn = None
        logger.info("Sensor data writer closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get writer statistics."""
        return {
            'available': self.available,
            'queued': self._lock.waiting(),
            **self.stats
        }
