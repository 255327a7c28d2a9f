# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""Helpers shared by SensorSink tests."""

import sqlite3
import time

from sensorsink.processing.database.schema import TABLE_NAME

EXAMPLE_LINE = "1,2023-01-01T12:00:00,45.0,-122.0,10.0,0.1,0.2,0.3,0.01,0.02,0.03,1.1,1.2,1.3,1.4"

EXAMPLE_MEASUREMENTS = (45.0, -122.0, 10.0, 0.1, 0.2, 0.3, 0.01, 0.02, 0.03, 1.1, 1.2, 1.3, 1.4)


def make_line(session="1", timestamp="2023-01-01T12:00:00", base=0.0):
    """Build a well-formed CSV line with 13 distinct measurements."""
    values = [repr(base + i) for i in range(13)]
    return ",".join([session, timestamp] + values)


def fetch_rows(db_path):
    """Read every persisted row in insertion order."""
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute(f"SELECT * FROM {TABLE_NAME} ORDER BY id").fetchall()
    finally:
        conn.close()


def count_rows(db_path):
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()[0]
    finally:
        conn.close()


def wait_for(predicate, timeout=5.0, interval=0.02):
    """Poll predicate until it returns truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())
