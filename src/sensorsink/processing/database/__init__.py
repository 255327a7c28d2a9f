# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Database layer: SQLite client, sensor_data schema and the serialized writer.
"""

from .sqlite_client import SQLiteClient, StoreInitError
from .schema import TABLE_NAME, create_schema, verify_schema
from .writer import SensorDataWriter, StoreError, StoreUnavailableError

__all__ = [
    "SQLiteClient",
    "StoreInitError",
    "TABLE_NAME",
    "create_schema",
    "verify_schema",
    "SensorDataWriter",
    "StoreError",
    "StoreUnavailableError",
]
