# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Record decoder for inbound wire lines.

Turns one line (line terminator already stripped) into a SensorRecord or
raises a DecodeError describing why the line was rejected. Two wire formats
are supported:

- csv:  15 comma-separated fields in FIELD_NAMES order, "None" for no session
- json: one object per line naming the same 15 keys, null for no session

Decoding is pure: it never touches the socket or the store.
"""

import json
import re
from enum import Enum
from typing import Any, List, Optional, Tuple

from .records import (
    FIELD_COUNT,
    FIELD_NAMES,
    MEASUREMENT_FIELDS,
    NULL_SESSION_TOKEN,
    SESSION_ID_MAX,
    SESSION_ID_MIN,
    SensorRecord,
)


class WireFormat(str, Enum):
    """Supported line encodings."""
    CSV = "csv"
    JSON = "json"


class DecodeError(Exception):
    """Base class for lines that cannot be turned into a record."""

    def __init__(self, message: str, line: str):
        super().__init__(message)
        self.line = line


class MalformedLineError(DecodeError):
    """Raised when a line does not have the shape of a record."""

    def __init__(self, line: str, field_count: Optional[int], reason: str = ""):
        self.field_count = field_count
        self.reason = reason or f"expected {FIELD_COUNT} fields, got {field_count}"
        super().__init__(f"Malformed line: {self.reason}", line)


class InvalidFieldError(DecodeError):
    """
    Raised when one or more fields fail to parse.

    Every failing field is listed in wire order as (name, raw_value);
    field_name is the first of them.
    """

    def __init__(self, line: str, invalid_fields: List[Tuple[str, Any]]):
        self.invalid_fields = list(invalid_fields)
        self.field_name = self.invalid_fields[0][0]
        details = ", ".join(f"{name}={value!r}" for name, value in self.invalid_fields)
        super().__init__(f"Invalid field(s): {details}", line)

    @property
    def field_names(self) -> List[str]:
        return [name for name, _ in self.invalid_fields]


_MISSING = object()

# Plain ASCII numbers only; int() and float() would also take "1_000", " 7" and non-ASCII digits
_INT_TOKEN = re.compile(r"[+-]?[0-9]+", re.ASCII)
_FLOAT_TOKEN = re.compile(
    r"[+-]?(?:(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?|inf|infinity|nan)",
    re.ASCII | re.IGNORECASE,
)


def _parse_session_id(value: Any) -> Any:
    """Return the session id, None for no session, or _MISSING if invalid."""
    if value is None or value == NULL_SESSION_TOKEN:
        return None
    if isinstance(value, bool):
        return _MISSING
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _INT_TOKEN.fullmatch(value):
        parsed = int(value)
    else:
        return _MISSING

    if not SESSION_ID_MIN <= parsed <= SESSION_ID_MAX:
        return _MISSING
    return parsed


def _parse_float(value: Any) -> Any:
    """Return value as a float, or _MISSING if it is not numeric."""
    # bool is an int subclass; JSON true/false are not measurements
    if value is None or isinstance(value, bool):
        return _MISSING
    if isinstance(value, str) and not _FLOAT_TOKEN.fullmatch(value):
        return _MISSING
    if isinstance(value, (int, float, str)):
        try:
            return float(value)
        except (ValueError, OverflowError):
            return _MISSING
    return _MISSING


def _build_record(line: str, values: List[Any], timestamp: str) -> SensorRecord:
    """Parse every typed field, collecting all failures before raising."""
    invalid: List[Tuple[str, Any]] = []

    session_id = _parse_session_id(values[0])
    if session_id is _MISSING:
        invalid.append(("session_id", values[0]))

    measurements = []
    for name, raw in zip(MEASUREMENT_FIELDS, values[2:]):
        parsed = _parse_float(raw)
        if parsed is _MISSING:
            invalid.append((name, raw))
        measurements.append(parsed)

    if invalid:
        raise InvalidFieldError(line, invalid)

    return SensorRecord(session_id, timestamp, *measurements)


def decode_csv_line(line: str) -> SensorRecord:
    """
    Decode one comma-separated line.

    Raises:
        MalformedLineError: If the line does not have exactly 15 fields
        InvalidFieldError: If session id or any measurement fails to parse
    """
    fields = line.split(",")
    if len(fields) != FIELD_COUNT:
        raise MalformedLineError(line, len(fields))

    # Timestamp is opaque and copied verbatim
    return _build_record(line, fields, fields[1])


def decode_json_line(line: str) -> SensorRecord:
    """
    Decode one JSON object line.

    Raises:
        MalformedLineError: If the line is not an object with exactly the 15 keys
        InvalidFieldError: If session id or any measurement fails to parse
    """
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedLineError(line, None, f"invalid JSON ({e.msg})") from e

    if not isinstance(payload, dict):
        raise MalformedLineError(line, None, f"expected a JSON object, got {type(payload).__name__}")

    keys = set(payload)
    if keys != set(FIELD_NAMES):
        missing = sorted(set(FIELD_NAMES) - keys)
        unexpected = sorted(keys - set(FIELD_NAMES))
        reason = f"expected {FIELD_COUNT} keys, got {len(keys)}"
        if missing:
            reason += f"; missing {', '.join(missing)}"
        if unexpected:
            reason += f"; unexpected {', '.join(unexpected)}"
        raise MalformedLineError(line, len(keys), reason)

    values = [payload[name] for name in FIELD_NAMES]
    raw_timestamp = values[1]
    timestamp = raw_timestamp if isinstance(raw_timestamp, str) else json.dumps(raw_timestamp)
    return _build_record(line, values, timestamp)


_DECODERS = {
    WireFormat.CSV: decode_csv_line,
    WireFormat.JSON: decode_json_line,
}


def decode_line(line: str, wire_format: WireFormat = WireFormat.CSV) -> SensorRecord:
    """Decode a line using the given wire format."""
    return _DECODERS[WireFormat(wire_format)](line)


class RecordDecoder:
    """Decoder bound to one wire format, shared by all connection handlers."""

    def __init__(self, wire_format: WireFormat = WireFormat.CSV):
        self.wire_format = WireFormat(wire_format)
        self._decode = _DECODERS[self.wire_format]

    def decode(self, line: str) -> SensorRecord:
        return self._decode(line)
