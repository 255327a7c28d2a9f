# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""Shared fixtures for SensorSink tests."""

import pytest

from sensorsink.processing.database.schema import create_schema
from sensorsink.processing.database.sqlite_client import SQLiteClient
from sensorsink.processing.database.writer import SensorDataWriter


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "received_data.db"


@pytest.fixture
def sqlite_client(db_path):
    client = SQLiteClient(str(db_path))
    client.initialize_database()
    create_schema(client)
    return client


@pytest.fixture
def writer(sqlite_client):
    writer = SensorDataWriter(sqlite_client)
    yield writer
    writer.close()
