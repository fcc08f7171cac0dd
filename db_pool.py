"""Pooled SQLite connections shared by the storage helpers."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe pool; FastAPI runs sync handlers on worker threads."""

    def __init__(self, database: str, max_connections: int = 5):
        self.database = database
        self.max_connections = max_connections
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._all: List[sqlite3.Connection] = []

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection, opening a new one while under the limit."""
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if len(self._all) < self.max_connections:
                    connection = self._create_connection()
                    self._all.append(connection)
                    logger.debug("Opened SQLite connection %d for %s", len(self._all), self.database)
                else:
                    connection = None
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Discarding broken SQLite connection: %s", exc)
                with self._lock:
                    if connection in self._all:
                        self._all.remove(connection)
                try:
                    connection.close()
                except sqlite3.Error:
                    pass

    def close_all(self) -> None:
        """Close every connection the pool has opened."""
        with self._lock:
            connections, self._all = self._all, []
        while True:
            try:
                self._pool.get(block=False)
            except Empty:
                break
        for connection in connections:
            try:
                connection.close()
            except sqlite3.Error as exc:
                logger.warning("Error closing SQLite connection: %s", exc)
