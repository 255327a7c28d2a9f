# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Sensor record model.

One record is a single sensor sample with 15 fields, in this wire order:
session id, timestamp, GPS (3), accelerometer (3), gyroscope (3) and
four generic acquisition channels.
"""

import json
from dataclasses import dataclass, astuple
from typing import Optional, Tuple

# Token used on the CSV wire when a sample has no session
NULL_SESSION_TOKEN = "None"

MEASUREMENT_FIELDS: Tuple[str, ...] = (
    "latitude",
    "longitude",
    "altitude",
    "accel_x",
    "accel_y",
    "accel_z",
    "gyro_x",
    "gyro_y",
    "gyro_z",
    "dac_1",
    "dac_2",
    "dac_3",
    "dac_4",
)

FIELD_NAMES: Tuple[str, ...] = ("session_id", "timestamp") + MEASUREMENT_FIELDS

FIELD_COUNT = len(FIELD_NAMES)

# SQLite stores integers as signed 64-bit values
SESSION_ID_MIN = -(2 ** 63)
SESSION_ID_MAX = 2 ** 63 - 1


@dataclass(frozen=True)
class SensorRecord:
    """
    A fully parsed sensor sample.

    Instances are only built once every field has been parsed, so a partially
    populated record never exists. Field order matches FIELD_NAMES.
    """
    session_id: Optional[int]
    timestamp: str
    latitude: float
    longitude: float
    altitude: float
    accel_x: float
    accel_y: float
    accel_z: float
    gyro_x: float
    gyro_y: float
    gyro_z: float
    dac_1: float
    dac_2: float
    dac_3: float
    dac_4: float

    def as_row(self) -> tuple:
        """Return the field values in column order for positional binding."""
        return astuple(self)

    def to_csv_line(self) -> str:
        """
        Serialize back to the CSV wire form (without line terminator).

        Floats use repr() so they parse back to the identical value.
        """
        session = NULL_SESSION_TOKEN if self.session_id is None else str(self.session_id)
        values = [session, self.timestamp]
        values.extend(repr(getattr(self, name)) for name in MEASUREMENT_FIELDS)
        return ",".join(values)

    def to_json_line(self) -> str:
        """Serialize to the JSON object wire form (without line terminator)."""
        return json.dumps(dict(zip(FIELD_NAMES, self.as_row())), separators=(",", ":"))
