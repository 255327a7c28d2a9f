# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
SQLite client for the sensor database.

Owns the database path, applies connection settings and hands out
connections. Writes from connection handlers go through SensorDataWriter,
which keeps a single connection obtained from connect().
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence, Any

logger = logging.getLogger(__name__)


class StoreInitError(Exception):
    """Raised when the database cannot be opened or prepared at startup."""
    pass


class SQLiteClient:
    """
    Thin wrapper around sqlite3 for one database file.

    Settings:
    - WAL journal so short writes do not block concurrent readers
    - synchronous=FULL so every committed row is durable
    - busy timeout so other processes holding the file do not fail writes at once
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        """
        Initialize SQLite client.

        Args:
            db_path: Path to the database file
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = Path(db_path).expanduser()
        self.timeout = timeout

    def exists(self) -> bool:
        """Check whether the database file exists."""
        return self.db_path.exists()

    def connect(self) -> sqlite3.Connection:
        """
        Open a new connection with the standard settings applied.

        The connection may be used from any thread; callers that share it are
        responsible for serializing access.
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout,
            check_same_thread=False,
        )
        conn.execute(f"PRAGMA busy_timeout = {int(self.timeout * 1000)}")
        conn.execute("PRAGMA synchronous = FULL")
        return conn

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a short-lived connection and close it afterwards."""
        conn = self.connect()
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        """Execute a single statement in its own transaction."""
        with self.get_connection() as conn:
            with conn:
                conn.execute(sql, params)

    def initialize_database(self) -> None:
        """
        Create the parent directory and switch the database to WAL mode.

        Raises:
            StoreInitError: If the file cannot be created or opened
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self.get_connection() as conn:
                mode = conn.execute("PRAGMA journal_mode = WAL").fetchone()[0]
            logger.debug(f"Database journal mode: {mode}")
        except (sqlite3.Error, OSError) as e:
            raise StoreInitError(f"Cannot open database {self.db_path}: {e}") from e
