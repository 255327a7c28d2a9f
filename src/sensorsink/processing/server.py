# Copyright © 2025 Sierra Labs LLC
# SPDX-License-Identifier: AGPL-3.0-only
# License-Filename: LICENSE

"""
Main server for SensorSink ingestion.

Orchestrates database initialization, the TCP accept loop, one handler
thread per connection, and graceful shutdown.
"""

import logging
import os
import signal
import socket
import sys
import threading
import time
from collections import Counter
from typing import Dict, Any, Optional, Tuple

from ..config import ConfigError, IngestConfig
from .connection_handler import ConnectionHandler
from .database.schema import create_schema, verify_schema
from .database.sqlite_client import SQLiteClient, StoreInitError
from .database.writer import SensorDataWriter
from .decoder import RecordDecoder, WireFormat

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_STORE_UNAVAILABLE = 2
EXIT_FORCED = 130

# Pause after a failed accept() so a persistent error does not spin
ACCEPT_ERROR_BACKOFF = 0.1
# Time given to aborted handlers to notice their socket is gone
ABORT_JOIN_TIMEOUT = 1.0


class BindError(Exception):
    """Raised when the listening socket cannot be bound."""
    pass


class IngestServer:
    """
    TCP ingestion server.

    Manages:
    - SQLite database initialization
    - Listening socket and accept loop
    - One ConnectionHandler thread per client
    - Graceful shutdown: stop accepting, drain handlers, close the store
    """

    def __init__(self, config: Optional[IngestConfig] = None, writer: Optional[SensorDataWriter] = None):
        """
        Initialize ingestion server.

        Args:
            config: Configuration instance (creates default if not provided)
            writer: Pre-built writer (the server opens its own if not provided)
        """
        self.config = config or IngestConfig()
        self.decoder = RecordDecoder(WireFormat(self.config.wire_format))

        self.sqlite_client: Optional[SQLiteClient] = None
        self.writer: Optional[SensorDataWriter] = writer
        self.listener: Optional[socket.socket] = None
        self.running = False

        self._stop_event = threading.Event()
        self._acceptor: Optional[threading.Thread] = None
        self._handlers: Dict[threading.Thread, ConnectionHandler] = {}
        self._handlers_lock = threading.Lock()
        # Reentrant: a signal handler may interrupt stop() on the main thread
        self._listener_lock = threading.RLock()
        self._store_failure: Optional[str] = None
        self._address: Optional[Tuple[str, int]] = None
        self.stats = {
            'accepted': 0,
            'accept_errors': 0,
            'closed': Counter(),
        }

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), available once started."""
        return self._address

    @property
    def shutdown_requested(self) -> bool:
        return self._stop_event.is_set()

    def _initialize_database(self) -> None:
        """Initialize SQLite database, schema and writer."""
        if self.writer is not None:
            return

        logger.info(f"Initializing database: {self.config.db_path}")

        self.sqlite_client = SQLiteClient(self.config.db_path, timeout=self.config.db_timeout)
        self.sqlite_client.initialize_database()
        create_schema(self.sqlite_client)
        verify_schema(self.sqlite_client)

        self.writer = SensorDataWriter(
            self.sqlite_client,
            max_consecutive_failures=self.config.max_consecutive_failures,
        )

        logger.info("Database initialized successfully")

    def _bind(self) -> None:
        """Bind the listening socket."""
        host, port = self.config.host, self.config.port
        try:
            self.listener = socket.create_server((host, port), backlog=self.config.backlog)
        except OSError as e:
            raise BindError(f"Cannot listen on {host}:{port}: {e}") from e

        # accept() wakes up periodically to check for shutdown
        self.listener.settimeout(self.config.accept_poll_interval)
        self._address = self.listener.getsockname()[:2]

    def start(self) -> None:
        """
        Initialize the store, bind and start accepting in the background.

        Raises:
            StoreInitError: If the database cannot be prepared
            BindError: If the listening socket cannot be bound
        """
        if self.running:
            logger.warning("Server already running")
            return

        logger.info("Starting SensorSink ingestion server...")

        self._initialize_database()
        try:
            self._bind()
        except BindError:
            self.writer.close()
            raise

        self.running = True
        self._acceptor = threading.Thread(
            target=self._accept_loop,
            name="ingest-acceptor",
            daemon=True,
        )
        self._acceptor.start()

        host, port = self._address
        logger.info(
            f"Server listening on {host}:{port} "
            f"(format={self.decoder.wire_format.value}, idle timeout={self.config.idle_timeout:g}s)"
        )

    def _accept_loop(self) -> None:
        """Accept connections until shutdown is requested."""
        listener = self.listener
        try:
            while not self._stop_event.is_set():
                try:
                    conn, addr = listener.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    # request_shutdown() closed the listener under us
                    if self._stop_event.is_set():
                        break
                    self.stats['accept_errors'] += 1
                    logger.error(f"Connection error: {e}")
                    self._stop_event.wait(ACCEPT_ERROR_BACKOFF)
                    continue

                self._spawn_handler(conn, addr)
        finally:
            self._close_listener()

    def _spawn_handler(self, conn: socket.socket, addr: Tuple) -> None:
        """Start a handler thread for an accepted connection."""
        peer = f"{addr[0]}:{addr[1]}"
        handler = ConnectionHandler(
            sock=conn,
            peer=peer,
            decoder=self.decoder,
            writer=self.writer,
            stop_event=self._stop_event,
            idle_timeout=self.config.idle_timeout,
            poll_interval=self.config.poll_interval,
            max_line_bytes=self.config.max_line_bytes,
            on_store_unavailable=self._on_store_unavailable,
        )
        thread = threading.Thread(
            target=self._run_handler,
            args=(handler,),
            name=f"ingest-conn-{peer}",
            daemon=True,
        )

        with self._handlers_lock:
            # Clean up completed threads
            for finished in [t for t in self._handlers if not t.is_alive()]:
                del self._handlers[finished]
            self._handlers[thread] = handler
            self.stats['accepted'] += 1

        thread.start()

    def _run_handler(self, handler: ConnectionHandler) -> None:
        state = handler.run()
        with self._handlers_lock:
            self.stats['closed'][state.value] += 1

    def _on_store_unavailable(self, reason: str) -> None:
        with self._handlers_lock:
            if self._store_failure is None:
                self._store_failure = reason
        self.request_shutdown(f"store unavailable ({reason})")

    def _close_listener(self) -> None:
        """Close the listening socket so further connection attempts are refused."""
        with self._listener_lock:
            listener, self.listener = self.listener, None
            if listener is None:
                return
            try:
                listener.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                # Not every platform supports shutdown() on a listening socket
                logger.debug(f"Shutdown of listening socket failed: {e}")
            try:
                listener.close()
            except OSError as e:
                logger.debug(f"Error closing listening socket: {e}")
        logger.info("Stopped accepting connections")

    def request_shutdown(self, reason: str = "shutdown requested") -> None:
        """
        Ask the server to stop. Safe to call from a signal handler.

        The listening socket is closed at once; handlers observe the request
        between reads and stop() does the draining.
        """
        if not self._stop_event.is_set():
            logger.info(f"Shutdown requested: {reason}")
            self._stop_event.set()
        self._close_listener()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown is requested. Returns True if it was."""
        return self._stop_event.wait(timeout)

    def active_connections(self) -> int:
        with self._handlers_lock:
            return sum(1 for t in self._handlers if t.is_alive())

    def stop(self) -> None:
        """Stop the server gracefully."""
        if not self.running:
            return

        self.request_shutdown("server stopping")

        # Listener is already closed; wait for the acceptor to notice
        if self._acceptor is not None:
            self._acceptor.join()

        with self._handlers_lock:
            handlers = list(self._handlers.items())

        live = [(t, h) for t, h in handlers if t.is_alive()]
        if live:
            logger.info(
                f"Server shutting down... waiting up to {self.config.drain_timeout:g}s "
                f"for {len(live)} client connection(s) to finish"
            )

        deadline = time.monotonic() + self.config.drain_timeout
        for thread, _ in live:
            thread.join(max(0.0, deadline - time.monotonic()))

        stragglers = [(t, h) for t, h in live if t.is_alive()]
        if stragglers:
            logger.warning(f"Cutting off {len(stragglers)} connection(s) still active after drain timeout")
            for _, handler in stragglers:
                handler.abort()
            for thread, _ in stragglers:
                thread.join(ABORT_JOIN_TIMEOUT)
            abandoned = [h.peer for t, h in stragglers if t.is_alive()]
            if abandoned:
                logger.error(f"Abandoning unresponsive connection(s): {', '.join(abandoned)}")

        if self.writer is not None:
            self.writer.close()

        self.running = False
        self._log_summary()
        logger.info("Server shutdown complete")

    def serve_forever(self) -> int:
        """
        Run until shutdown is requested, then stop.

        Returns:
            Process exit code

        Raises:
            StoreInitError: If the database cannot be prepared
            BindError: If the listening socket cannot be bound
        """
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        finally:
            self.stop()

        if self._store_failure is not None:
            logger.critical(f"Exiting because the store is unavailable: {self._store_failure}")
            return EXIT_STORE_UNAVAILABLE
        return EXIT_OK

    def get_stats(self) -> Dict[str, Any]:
        """Get server statistics."""
        with self._handlers_lock:
            closed = dict(self.stats['closed'])
        return {
            'running': self.running,
            'address': self._address,
            'active_connections': self.active_connections(),
            'accepted': self.stats['accepted'],
            'accept_errors': self.stats['accept_errors'],
            'closed': closed,
            'writer': self.writer.get_stats() if self.writer else None,
        }

    def _log_summary(self) -> None:
        stats = self.get_stats()
        writer = stats['writer'] or {}
        logger.info(
            f"Served {stats['accepted']} connection(s); "
            f"{writer.get('persisted', 0)} record(s) persisted, {writer.get('failed', 0)} failed"
        )
        for state, count in sorted(stats['closed'].items()):
            logger.debug(f"  {state}: {count}")


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def install_signal_handlers(server: IngestServer) -> None:
    """
    Route SIGINT/SIGTERM to a graceful shutdown.

    A second signal while draining exits immediately.
    """
    def signal_handler(sig, frame):
        if server.shutdown_requested:
            logger.warning("Second shutdown signal received, exiting immediately")
            os._exit(EXIT_FORCED)
        logger.info("Shutdown signal received, closing server gracefully...")
        server.request_shutdown(signal.Signals(sig).name)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def main(config: Optional[IngestConfig] = None) -> int:
    """
    Main entry point.

    Returns:
        Process exit code
    """
    if config is None:
        try:
            config = IngestConfig.load()
        except ConfigError as e:
            setup_logging()
            logger.error(str(e))
            return EXIT_STARTUP_FAILURE

    setup_logging(config.log_level)

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error(f"Configuration error: {problem}")
        return EXIT_STARTUP_FAILURE

    server = IngestServer(config)
    install_signal_handlers(server)

    try:
        return server.serve_forever()
    except (BindError, StoreInitError) as e:
        logger.error(f"Failed to start server: {e}")
        return EXIT_STARTUP_FAILURE


if __name__ == "__main__":
    sys.exit(main())
