# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Schema for the sensor_data table.

The table is created if absent and never dropped or altered afterwards.
"""

import logging
import sqlite3
from typing import List

from ..records import MEASUREMENT_FIELDS
from .sqlite_client import SQLiteClient, StoreInitError

logger = logging.getLogger(__name__)

TABLE_NAME = "sensor_data"

# Record field -> column name; only the session id is renamed
COLUMN_NAMES: List[str] = ["sessionID", "timestamp"] + list(MEASUREMENT_FIELDS)

CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sessionID INTEGER,
    timestamp TEXT,
    latitude REAL,
    longitude REAL,
    altitude REAL,
    accel_x REAL,
    accel_y REAL,
    accel_z REAL,
    gyro_x REAL,
    gyro_y REAL,
    gyro_z REAL,
    dac_1 REAL,
    dac_2 REAL,
    dac_3 REAL,
    dac_4 REAL
)
"""

INSERT_SQL = (
    f"INSERT INTO {TABLE_NAME} ({', '.join(COLUMN_NAMES)}) "
    f"VALUES ({', '.join('?' for _ in COLUMN_NAMES)})"
)


def create_schema(client: SQLiteClient) -> None:
    """
    Create the sensor_data table if it does not exist.

    Raises:
        StoreInitError: If the statement fails
    """
    try:
        client.execute(CREATE_TABLE_SQL)
    except sqlite3.Error as e:
        raise StoreInitError(f"Failed to create {TABLE_NAME}: {e}") from e
    logger.info(f"Table {TABLE_NAME} ready in {client.db_path}")


def get_columns(client: SQLiteClient) -> List[str]:
    """Return the column names of sensor_data (empty if the table is absent)."""
    with client.get_connection() as conn:
        rows = conn.execute(f"PRAGMA table_info({TABLE_NAME})").fetchall()
    return [row["name"] for row in rows]


def verify_schema(client: SQLiteClient) -> None:
    """
    Check that an existing sensor_data table has every expected column.

    Tables created by other tools may carry extra columns; those are left
    alone. Missing columns are not added.

    Raises:
        StoreInitError: If the table is absent or lacks columns
    """
    try:
        columns = get_columns(client)
    except sqlite3.Error as e:
        raise StoreInitError(f"Cannot inspect {TABLE_NAME}: {e}") from e

    if not columns:
        raise StoreInitError(f"Table {TABLE_NAME} does not exist in {client.db_path}")

    missing = [name for name in ["id"] + COLUMN_NAMES if name not in columns]
    if missing:
        raise StoreInitError(
            f"Table {TABLE_NAME} in {client.db_path} is missing columns: {', '.join(missing)}"
        )
