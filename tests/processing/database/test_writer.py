# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Tests for the SQLite client, schema and SensorDataWriter.
"""

import math
import threading

import pytest

from sensorsink.processing.database.schema import (
    COLUMN_NAMES,
    TABLE_NAME,
    create_schema,
    get_columns,
    verify_schema,
)
from sensorsink.processing.database.sqlite_client import SQLiteClient, StoreInitError
from sensorsink.processing.database.writer import (
    FairLock,
    SensorDataWriter,
    StoreError,
    StoreUnavailableError,
)
from sensorsink.processing.decoder import decode_csv_line
from tests.helpers import (
    EXAMPLE_LINE,
    EXAMPLE_MEASUREMENTS,
    count_rows,
    fetch_rows,
    make_line,
    wait_for,
)


class TestSchema:
    """Test table creation and verification."""

    def test_creates_expected_columns(self, sqlite_client):
        """Test the table has the id column plus every record column."""
        assert get_columns(sqlite_client) == ["id"] + COLUMN_NAMES
        assert COLUMN_NAMES[0] == "sessionID"

    def test_create_is_idempotent_and_keeps_rows(self, sqlite_client, writer, db_path):
        """Test creating the schema again keeps existing rows."""
        writer.persist(decode_csv_line(EXAMPLE_LINE))
        create_schema(sqlite_client)
        verify_schema(sqlite_client)
        assert count_rows(db_path) == 1

    def test_verify_missing_table(self, tmp_path):
        """Test verification fails when the table is absent."""
        client = SQLiteClient(str(tmp_path / "empty.db"))
        client.initialize_database()
        with pytest.raises(StoreInitError):
            verify_schema(client)

    def test_verify_incompatible_table(self, tmp_path):
        """Test verification names columns an existing table lacks."""
        client = SQLiteClient(str(tmp_path / "other.db"))
        client.initialize_database()
        client.execute(f"CREATE TABLE {TABLE_NAME} (id INTEGER PRIMARY KEY, sessionID INTEGER)")
        create_schema(client)  # existing table is left alone
        with pytest.raises(StoreInitError) as exc_info:
            verify_schema(client)
        assert "latitude" in str(exc_info.value)

    def test_initialize_creates_parent_directory(self, tmp_path):
        """Test missing parent directories are created."""
        client = SQLiteClient(str(tmp_path / "nested" / "dir" / "data.db"))
        client.initialize_database()
        assert client.exists()

    def test_initialize_fails_on_directory_path(self, tmp_path):
        """Test a directory path raises StoreInitError."""
        client = SQLiteClient(str(tmp_path))
        with pytest.raises(StoreInitError):
            client.initialize_database()


class TestPersist:
    """Test single-record persistence."""

    def test_example_record_persisted(self, writer, db_path):
        """Test the reference sample lands as one row."""
        row_id = writer.persist(decode_csv_line(EXAMPLE_LINE))
        rows = fetch_rows(db_path)
        assert len(rows) == 1
        assert rows[0][0] == row_id
        assert rows[0][1:] == (1, "2023-01-01T12:00:00") + EXAMPLE_MEASUREMENTS

    def test_null_session_stored_as_null(self, writer, db_path):
        """Test no session is stored as NULL."""
        writer.persist(decode_csv_line(make_line(session="None")))
        assert fetch_rows(db_path)[0][1] is None

    def test_values_are_bound_not_interpolated(self, writer, db_path):
        """Test SQL in a field is stored as text."""
        hostile = "x'); DROP TABLE sensor_data; --"
        writer.persist(decode_csv_line(make_line(timestamp=hostile)))
        assert fetch_rows(db_path)[0][2] == hostile

    def test_nan_stored_as_null_and_infinities_as_received(self, writer, db_path):
        """Test SQLite turns NaN into NULL while infinities and huge values persist."""
        values = ["nan", "inf", "-inf", "1e308"] + ["0.5"] * 9
        record = decode_csv_line(",".join(["1", "t"] + values))
        assert math.isnan(record.latitude)

        writer.persist(record)
        row = fetch_rows(db_path)[0]
        assert row[3] is None
        assert row[4] == float("inf")
        assert row[5] == float("-inf")
        assert row[6] == 1e308

    def test_ids_are_assigned_in_order(self, writer, db_path):
        """Test row ids follow insertion order."""
        ids = [writer.persist(decode_csv_line(make_line(base=i))) for i in range(5)]
        assert ids == sorted(ids)
        assert [row[3] for row in fetch_rows(db_path)] == [float(i) for i in range(5)]

    def test_stats(self, writer):
        """Test writer statistics after one insert."""
        writer.persist(decode_csv_line(EXAMPLE_LINE))
        stats = writer.get_stats()
        assert stats['persisted'] == 1
        assert stats['failed'] == 0
        assert stats['available'] is True


class TestConcurrency:
    """Test serialized access from many threads."""

    def test_concurrent_persists_lose_nothing(self, writer, db_path):
        """Test N records from M threads produce exactly N rows."""
        threads_count, per_thread = 8, 25
        errors = []

        def worker(index):
            try:
                for i in range(per_thread):
                    line = make_line(session=str(index), base=float(i))
                    writer.persist(decode_csv_line(line))
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        rows = fetch_rows(db_path)
        assert len(rows) == threads_count * per_thread

        # Per-thread order preserved, no duplicates
        for n in range(threads_count):
            latitudes = [row[3] for row in rows if row[1] == n]
            assert latitudes == [float(i) for i in range(per_thread)]

    def test_fair_lock_serves_in_arrival_order(self):
        """Test FairLock grants the lock in arrival order."""
        lock = FairLock()
        order = []
        lock.acquire()

        threads = []
        for n in range(5):
            def take(n=n):
                with lock:
                    order.append(n)

            t = threading.Thread(target=take)
            t.start()
            threads.append(t)
            # Holder plus every queued thread so far
            assert wait_for(lambda: lock.waiting() == n + 2)

        lock.release()
        for t in threads:
            t.join()

        assert order == [0, 1, 2, 3, 4]


class TestFailures:
    """Test failure reporting and escalation."""

    def test_failed_insert_leaves_prior_rows(self, sqlite_client, db_path):
        """Test a failed insert is reported without touching earlier rows."""
        writer = SensorDataWriter(sqlite_client, max_consecutive_failures=3)
        writer.persist(decode_csv_line(EXAMPLE_LINE))

        # Make further inserts fail
        sqlite_client.execute(f"ALTER TABLE {TABLE_NAME} RENAME TO moved_aside")
        with pytest.raises(StoreError) as exc_info:
            writer.persist(decode_csv_line(EXAMPLE_LINE))
        assert not isinstance(exc_info.value, StoreUnavailableError)
        assert writer.available

        sqlite_client.execute(f"ALTER TABLE moved_aside RENAME TO {TABLE_NAME}")
        writer.persist(decode_csv_line(EXAMPLE_LINE))
        assert count_rows(db_path) == 2
        assert writer.get_stats()['failed'] == 1
        writer.close()

    def test_consecutive_failures_make_store_unavailable(self, sqlite_client):
        """Test repeated failures make the store permanently unavailable."""
        writer = SensorDataWriter(sqlite_client, max_consecutive_failures=2)
        sqlite_client.execute(f"DROP TABLE {TABLE_NAME}")
        record = decode_csv_line(EXAMPLE_LINE)

        with pytest.raises(StoreError):
            writer.persist(record)
        with pytest.raises(StoreUnavailableError):
            writer.persist(record)

        # Recreating the table does not revive the writer
        create_schema(sqlite_client)
        with pytest.raises(StoreUnavailableError):
            writer.persist(record)
        assert not writer.available
        writer.close()

    def test_persist_after_close(self, writer):
        """Test persisting after close raises StoreUnavailableError."""
        writer.close()
        writer.close()
        with pytest.raises(StoreUnavailableError):
            writer.persist(decode_csv_line(EXAMPLE_LINE))
