"""SQLite connection pool shared by request handlers and the retention sweep."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool."""

    def __init__(self, database: str, max_connections: int = 5, busy_timeout_ms: int = 5000):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        # Connections migrate between worker threads through the pool.
        conn = sqlite3.connect(self.database, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    logger.debug("Created new connection (total: %s)", self._created_connections)
            if connection is None:
                # At the limit; wait for a connection to come back
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            self._release(connection)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block inside one write transaction (BEGIN IMMEDIATE ... COMMIT).

        Rolls back and re-raises on any error.
        """
        with self.get_connection() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.rollback()
                raise
            con.commit()

    def _release(self, connection: sqlite3.Connection) -> None:
        try:
            connection.rollback()
            self._pool.put(connection, block=False)
        except Exception as e:
            logger.error("Error returning connection to pool: %s", e)
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing broken connection failed", exc_info=True)
            with self._lock:
                self._created_connections -= 1

    def close_all(self) -> None:
        """Close every idle connection and reset the pool counters."""
        closed = 0
        while True:
            try:
                connection = self._pool.get(block=False)
            except Empty:
                break
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Closing pooled connection failed", exc_info=True)
            closed += 1
        with self._lock:
            self._created_connections = max(0, self._created_connections - closed)
