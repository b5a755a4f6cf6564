"""
SQLite database connection and schema management.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from smartcapital.errors import PersistenceError


class Database:
    """SQLite database connection manager shared by all repositories."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        # Repositories are called from scheduler and chat worker threads.
        self.lock = threading.RLock()
        self._transaction_depth = 0
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @property
    def in_transaction(self) -> bool:
        """True while a transaction() block is open."""
        return self._transaction_depth > 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Group several repository writes into one commit.

        Writes made inside the block are committed together when it exits,
        or all rolled back if it raises. Nested blocks join the outer one.

        Raises:
            PersistenceError: If the commit fails
        """
        with self.lock:
            self._transaction_depth += 1
            try:
                yield
            except BaseException:
                self._transaction_depth -= 1
                if self._transaction_depth == 0:
                    self.connection.rollback()
                raise
            self._transaction_depth -= 1
            if self._transaction_depth == 0:
                try:
                    self.connection.commit()
                except sqlite3.Error as e:
                    self.connection.rollback()
                    raise PersistenceError(f"Database commit failed: {e}") from e

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        with self.lock:
            cursor = self.connection.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS conversation_sessions (
                    user_id TEXT PRIMARY KEY,
                    state TEXT NOT NULL DEFAULT 'IDLE',
                    context TEXT NOT NULL DEFAULT '{}',
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS keyword_mappings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    keyword TEXT NOT NULL,
                    category TEXT NOT NULL,
                    subcategory TEXT,
                    usage_count INTEGER NOT NULL DEFAULT 1,
                    UNIQUE (user_id, keyword)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    amount REAL NOT NULL,
                    category TEXT NOT NULL,
                    note TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    name TEXT,
                    quantity REAL NOT NULL,
                    avg_price REAL NOT NULL,
                    UNIQUE (user_id, symbol)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS price_alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    name TEXT,
                    alert_type TEXT NOT NULL,
                    threshold REAL,
                    target_price REAL,
                    direction TEXT,
                    reference_price REAL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_triggered TIMESTAMP,
                    trigger_count INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            # Create indexes for common queries
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_keywords_user ON keyword_mappings(user_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_ledger_user_created
                ON ledger_entries(user_id, created_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alerts_active ON price_alerts(is_active)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)
            """)

            self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self.lock:
            if self._connection:
                self._connection.close()
                self._connection = None
