# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Per-connection handler.

Reads newline-terminated records from one accepted socket, decodes them and
hands each record to the shared writer. Failures are contained here: a bad
line or a failed insert is logged and the connection keeps reading.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Any, Optional

from .decoder import DecodeError, RecordDecoder
from .database.writer import SensorDataWriter, StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 300.0  # 5 minutes
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MAX_LINE_BYTES = 64 * 1024
RECV_SIZE = 8192


class ConnectionState(str, Enum):
    """Lifecycle states of a connection handler."""
    READING = "reading"
    IDLE = "idle"
    DECODING = "decoding"
    PERSISTING = "persisting"
    CLOSED_NORMALLY = "closed_normally"
    CLOSED_ON_TIMEOUT = "closed_on_timeout"
    CLOSED_ON_SHUTDOWN = "closed_on_shutdown"
    CLOSED_ON_IO_ERROR = "closed_on_io_error"
    CLOSED_ON_STORE_FAILURE = "closed_on_store_failure"

    @property
    def terminal(self) -> bool:
        return self.value.startswith("closed_")


@dataclass
class ConnectionSession:
    """Runtime state for one socket, owned by its handler."""
    sock: socket.socket
    peer: str
    idle_timeout: float
    last_activity: float = field(default_factory=time.monotonic)
    lines: int = 0
    persisted: int = 0
    decode_errors: int = 0
    store_errors: int = 0

    def touch(self) -> None:
        """Record a complete line, pushing the idle deadline out."""
        self.last_activity = time.monotonic()

    @property
    def deadline(self) -> float:
        return self.last_activity + self.idle_timeout

    def remaining(self) -> float:
        """Seconds left before the idle deadline."""
        return self.deadline - time.monotonic()


class ConnectionHandler:
    """
    Read -> decode -> persist loop for one client.

    The stop event is checked at the top of every read and before every
    line, so shutdown is observed within one poll interval. An insert that
    has already started always completes.
    """

    def __init__(
        self,
        sock: socket.socket,
        peer: str,
        decoder: RecordDecoder,
        writer: SensorDataWriter,
        stop_event: threading.Event,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
        on_store_unavailable: Optional[Callable[[str], None]] = None,
    ):
        """
        Initialize connection handler.

        Args:
            sock: Accepted client socket (handler takes ownership)
            peer: Printable client address for log messages
            decoder: Decoder for the configured wire format
            writer: Shared writer for the sensor database
            stop_event: Set by the server when shutting down
            idle_timeout: Seconds without a complete line before closing
            poll_interval: Longest single wait on the socket
            max_line_bytes: Longest accepted line; longer lines are dropped
            on_store_unavailable: Called once if the store is permanently lost
        """
        self.session = ConnectionSession(sock=sock, peer=peer, idle_timeout=idle_timeout)
        self.decoder = decoder
        self.writer = writer
        self.stop_event = stop_event
        self.poll_interval = poll_interval
        self.max_line_bytes = max_line_bytes
        self.on_store_unavailable = on_store_unavailable
        self.state = ConnectionState.READING

    @property
    def peer(self) -> str:
        return self.session.peer

    def run(self) -> ConnectionState:
        """
        Serve the connection until it reaches a terminal state.

        Returns:
            The terminal ConnectionState
        """
        logger.info(f"Client connected: {self.peer}")
        try:
            self.state = self._serve()
        except Exception as e:
            logger.exception(f"Unexpected error handling client {self.peer}: {e}")
            self.state = ConnectionState.CLOSED_ON_IO_ERROR
        finally:
            self._close_socket()

        s = self.session
        logger.info(
            f"Connection from {self.peer} ended ({self.state.value}): "
            f"{s.lines} lines, {s.persisted} persisted, "
            f"{s.decode_errors} decode errors, {s.store_errors} store errors"
        )
        return self.state

    def abort(self) -> None:
        """Cut the connection off from another thread."""
        try:
            self.session.sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Shutdown of {self.peer} socket failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        s = self.session
        return {
            'peer': self.peer,
            'state': self.state.value,
            'lines': s.lines,
            'persisted': s.persisted,
            'decode_errors': s.decode_errors,
            'store_errors': s.store_errors,
        }

    def _serve(self) -> ConnectionState:
        sock = self.session.sock
        buffer = bytearray()
        # True while skipping the tail of an oversized line
        discarding = False

        while True:
            if self.stop_event.is_set():
                return self._closed_on_shutdown(buffer)

            remaining = self.session.remaining()
            if remaining <= 0:
                logger.info(
                    f"Closing idle connection from {self.peer} "
                    f"(no complete line for {self.session.idle_timeout:g}s)"
                )
                return ConnectionState.CLOSED_ON_TIMEOUT

            self.state = ConnectionState.READING
            try:
                sock.settimeout(min(self.poll_interval, remaining))
                chunk = sock.recv(RECV_SIZE)
            except socket.timeout:
                self.state = ConnectionState.IDLE
                continue
            except OSError as e:
                logger.warning(f"Connection error from {self.peer}: {e}")
                return ConnectionState.CLOSED_ON_IO_ERROR

            if not chunk:
                if self.stop_event.is_set():
                    return self._closed_on_shutdown(buffer)
                # Client closed; an unterminated last line still counts
                if buffer and not discarding:
                    self.session.touch()
                    outcome = self._handle_line(bytes(buffer))
                    if outcome is not None:
                        return outcome
                return ConnectionState.CLOSED_NORMALLY

            buffer.extend(chunk)

            while True:
                newline = buffer.find(b"\n")
                if newline < 0:
                    break
                raw = bytes(buffer[:newline])
                del buffer[:newline + 1]
                self.session.touch()

                if discarding:
                    discarding = False
                    continue

                if self.stop_event.is_set():
                    return self._closed_on_shutdown(buffer, pending=1)

                if len(raw) > self.max_line_bytes:
                    self._drop_oversized_line()
                    continue

                outcome = self._handle_line(raw)
                if outcome is not None:
                    return outcome

            if len(buffer) > self.max_line_bytes:
                if not discarding:
                    self._drop_oversized_line()
                    discarding = True
                buffer.clear()

    def _drop_oversized_line(self) -> None:
        logger.warning(
            f"Dropping oversized line from {self.peer} "
            f"(over {self.max_line_bytes} bytes)"
        )
        self.session.decode_errors += 1

    def _handle_line(self, raw: bytes) -> Optional[ConnectionState]:
        """
        Decode and persist one line.

        Returns:
            A terminal state if the connection must close, otherwise None
        """
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return None

        self.session.lines += 1
        logger.debug(f"Received data from {self.peer}: {line}")

        self.state = ConnectionState.DECODING
        try:
            record = self.decoder.decode(line)
        except DecodeError as e:
            self.session.decode_errors += 1
            logger.warning(f"Dropping record from {self.peer}: {e} | line: {line!r}")
            return None

        self.state = ConnectionState.PERSISTING
        try:
            self.writer.persist(record)
        except StoreUnavailableError as e:
            self.session.store_errors += 1
            logger.critical(f"Store unavailable while handling {self.peer}: {e}")
            if self.on_store_unavailable is not None:
                self.on_store_unavailable(str(e))
            return ConnectionState.CLOSED_ON_STORE_FAILURE
        except StoreError as e:
            self.session.store_errors += 1
            logger.error(f"Database error for record from {self.peer}: {e} | line: {line!r}")
            return None

        self.session.persisted += 1
        return None

    def _closed_on_shutdown(self, buffer: bytearray, pending: int = 0) -> ConnectionState:
        pending += buffer.count(b"\n")
        if pending:
            logger.info(f"Shutdown: discarding {pending} unprocessed line(s) from {self.peer}")
        return ConnectionState.CLOSED_ON_SHUTDOWN

    def _close_socket(self) -> None:
        try:
            self.session.sock.close()
        except OSError as e:
            logger.debug(f"Error closing socket for {self.peer}: {e}")
