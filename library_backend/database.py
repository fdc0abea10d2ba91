"""SQLite persistence for the library backend.

``Database`` owns the database file and hands out connections. Changes that
touch more than one record go through ``Database.transaction()``, which holds
the write lock from the first statement (``BEGIN IMMEDIATE``) so a borrowing
and its inventory decrement are committed together or not at all.

Borrowings and reservations reference books and users by id only; SQLite does
not enforce those references.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS books (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT UNIQUE,
        category TEXT NOT NULL DEFAULT 'Other',
        description TEXT,
        publisher TEXT,
        published_date TEXT,
        pages INTEGER,
        total_copies INTEGER NOT NULL DEFAULT 1 CHECK (total_copies >= 0),
        available_copies INTEGER NOT NULL DEFAULT 1
            CHECK (available_copies >= 0 AND available_copies <= total_copies),
        status TEXT NOT NULL DEFAULT 'Available',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'student',
        student_id TEXT,
        department TEXT,
        contact_number TEXT,
        address TEXT,
        fines REAL NOT NULL DEFAULT 0 CHECK (fines >= 0),
        is_active INTEGER NOT NULL DEFAULT 1,
        date_joined TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_tokens (
        token_hash TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL,
        kind TEXT NOT NULL DEFAULT 'session',
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrowings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        book_id INTEGER NOT NULL,
        borrow_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        renewals INTEGER NOT NULL DEFAULT 0 CHECK (renewals >= 0),
        fine_amount REAL NOT NULL DEFAULT 0,
        fine_paid INTEGER NOT NULL DEFAULT 0,
        fine_paid_date TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reservations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL,
        book_id INTEGER NOT NULL,
        reservation_date TEXT NOT NULL,
        expiry_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        notification_sent INTEGER NOT NULL DEFAULT 0,
        fulfillment_date TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)

INDEXES = (
    # One active loan and one pending reservation per (user, book)
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_borrowings_active_pair ON borrowings(user_id, book_id) WHERE status = 'active'",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_reservations_pending_pair ON reservations(user_id, book_id) WHERE status = 'pending'",
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)",
    "CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)",
    "CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)",
    "CREATE INDEX IF NOT EXISTS idx_auth_tokens_user ON auth_tokens(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_borrowings_user ON borrowings(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_borrowings_book_status ON borrowings(book_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_borrowings_due_date ON borrowings(due_date)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_user ON reservations(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_reservations_book_status ON reservations(book_id, status)",
)


class Database:
    """Connection factory and transaction boundary for one SQLite file."""

    def __init__(self, path: str) -> None:
        self.path = path
        self.initialized = False

    def connect(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly in transaction().
        conn = sqlite3.connect(self.path, timeout=10, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        return conn

    @contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Connection for reads that need no transaction."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction, rolling back on any error."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the database file, tables and indexes if they do not exist."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with self.transaction() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
            for statement in INDEXES:
                conn.execute(statement)
        self.initialized = True
        logger.info(f"Database ready at {self.path}")

    def close(self) -> None:
        # Connections are per unit of work; nothing is held between calls.
        self.initialized = False
