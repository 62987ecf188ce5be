import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from library_app.errors import BusyError, ValidationError

logger = logging.getLogger(__name__)

# Fixed-width UTC format: stored timestamps compare correctly as TEXT.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Largest value an SQLite INTEGER column can hold.
SQLITE_MAX_INTEGER = 2**63 - 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialize a datetime for storage. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def fits_integer(value: Any) -> bool:
    """True when ``value`` is an int SQLite can store."""
    return isinstance(value, int) and -SQLITE_MAX_INTEGER - 1 <= value <= SQLITE_MAX_INTEGER


class LibraryConnection(sqlite3.Connection):
    """Connection that reports out-of-range integer parameters as ValidationError."""

    def execute(self, sql, parameters=()):
        try:
            return super().execute(sql, parameters)
        except OverflowError as e:
            raise ValidationError("Integer value out of range.") from e


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class Database:
    """SQLite storage shared by the catalog, shelf and borrowing components.

    Connections are opened per operation. Every write runs inside
    ``transaction()``, which starts with ``BEGIN IMMEDIATE`` so the write lock
    is held from the first read of a check-then-write sequence until commit.
    Concurrent writers queue on the lock for at most ``busy_timeout`` seconds,
    after which the write fails with ``BusyError``.
    """

    def __init__(self, db_file: str, busy_timeout: float = 30.0) -> None:
        self.db_file = db_file
        self.busy_timeout = busy_timeout

    def get_db_connection(self) -> sqlite3.Connection:
        """Open a new connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(
            self.db_file,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
            factory=LibraryConnection,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Short-lived connection for reads."""
        conn = self.get_db_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Run a block atomically.

        When ``conn`` already has an open transaction the block joins it and
        the outer owner decides commit or rollback. Otherwise a new connection
        is opened, the write lock taken, and the block committed on success or
        rolled back on any exception.
        """
        if conn is not None and conn.in_transaction:
            yield conn
            return

        own = self.get_db_connection()
        try:
            try:
                own.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                if not _is_lock_error(e):
                    raise
                logger.warning(f"Write lock on {self.db_file} not acquired within {self.busy_timeout}s")
                raise BusyError("The database is busy; try again later.") from e
            try:
                yield own
            except BaseException:
                # SQLite may already have rolled back on its own
                if own.in_transaction:
                    own.execute("ROLLBACK")
                raise
            own.execute("COMMIT")
        finally:
            own.close()

    def create_tables(self) -> None:
        """Create the schema if it does not exist yet."""
        conn = self.get_db_connection()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript("""
                BEGIN;

                CREATE TABLE IF NOT EXISTS shelves (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    category TEXT NOT NULL,
                    capacity INTEGER NOT NULL CHECK(capacity > 0),
                    shelf_number INTEGER NOT NULL,
                    pos_x REAL NOT NULL DEFAULT 0,
                    pos_y REAL NOT NULL DEFAULT 0,
                    last_reorganized TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL CHECK(kind IN ('book', 'journal')),
                    title TEXT NOT NULL,
                    author TEXT,
                    publisher TEXT,
                    isbn TEXT UNIQUE,
                    issn TEXT UNIQUE,
                    genre TEXT,
                    publication_year INTEGER,
                    cover_url TEXT,
                    total_copies INTEGER NOT NULL CHECK(total_copies > 0),
                    available_copies INTEGER NOT NULL
                        CHECK(available_copies >= 0 AND available_copies <= total_copies),
                    shelf_id INTEGER REFERENCES shelves(id),
                    position INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    CHECK((shelf_id IS NULL) = (position IS NULL))
                );

                CREATE TABLE IF NOT EXISTS borrowings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    item_id INTEGER NOT NULL REFERENCES items(id),
                    borrow_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    return_date TEXT,
                    status TEXT NOT NULL CHECK(status IN ('active', 'returned', 'overdue')),
                    CHECK((status = 'returned') = (return_date IS NOT NULL))
                );

                CREATE TABLE IF NOT EXISTS fines (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    borrowing_id INTEGER REFERENCES borrowings(id) ON DELETE SET NULL,
                    amount REAL NOT NULL CHECK(amount > 0),
                    reason TEXT NOT NULL,
                    fine_type TEXT NOT NULL CHECK(fine_type IN ('overdue', 'damage', 'lost', 'other')),
                    overdue_days INTEGER,
                    notes TEXT,
                    status TEXT NOT NULL CHECK(status IN ('unpaid', 'paid')),
                    created_at TEXT NOT NULL,
                    paid_at TEXT,
                    CHECK((status = 'paid') = (paid_at IS NOT NULL))
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_items_shelf_position ON items(shelf_id, position);
                CREATE INDEX IF NOT EXISTS idx_items_title ON items(title);
                CREATE INDEX IF NOT EXISTS idx_items_kind ON items(kind);
                CREATE INDEX IF NOT EXISTS idx_shelves_category ON shelves(category);
                CREATE INDEX IF NOT EXISTS idx_borrowings_item_id ON borrowings(item_id);
                CREATE INDEX IF NOT EXISTS idx_borrowings_user_id ON borrowings(user_id);
                CREATE INDEX IF NOT EXISTS idx_borrowings_status_due ON borrowings(status, due_date);
                CREATE INDEX IF NOT EXISTS idx_fines_user_status ON fines(user_id, status);

                COMMIT;
            """)
        finally:
            conn.close()

    def initialize_database(self) -> None:
        """Create the schema; safe to call on every start."""
        self.create_tables()
        logger.info(f"Database ready at {self.db_file}")
