import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class Database:
    """SQLite access point shared by all services.

    Connections are opened per operation in autocommit mode; write units go
    through :meth:`transaction`, which takes the database write lock up front
    (``BEGIN IMMEDIATE``) so that concurrent writers are serialized.
    """

    def __init__(self, db_file: str, timeout: float = 30.0) -> None:
        self.db_file = db_file
        self.timeout = timeout

    def connect(self) -> sqlite3.Connection:
        """Open a new connection with row access by column name."""
        conn = sqlite3.connect(
            self.db_file,
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA synchronous = NORMAL;")
        conn.execute("PRAGMA temp_store = MEMORY;")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements as one all-or-nothing unit."""
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the database file, tables and indexes if they are missing."""
        directory = os.path.dirname(os.path.abspath(self.db_file))
        os.makedirs(directory, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL;")
            create_tables(conn)
        logger.info("Database ready at %s", self.db_file)


def create_tables(conn: sqlite3.Connection) -> None:
    """Create the schema if it does not exist yet."""
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT UNIQUE NOT NULL,
            password TEXT NOT NULL,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'MEMBER' CHECK(role IN ('MEMBER', 'ADMIN')),
            is_active INTEGER NOT NULL DEFAULT 1,
            is_verified INTEGER NOT NULL DEFAULT 0,
            deleted_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS authors (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE COLLATE NOCASE,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            isbn TEXT UNIQUE NOT NULL,
            title TEXT NOT NULL,
            total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
            available_copies INTEGER NOT NULL
                CHECK(available_copies >= 0 AND available_copies <= total_copies),
            deleted_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # Book-author and book-category join tables
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_authors (
            book_id TEXT NOT NULL,
            author_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (book_id, author_id),
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
            FOREIGN KEY (author_id) REFERENCES authors(id) ON DELETE CASCADE
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_categories (
            book_id TEXT NOT NULL,
            category_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (book_id, category_id),
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS borrow_records (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            borrow_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            return_date TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            amount REAL NOT NULL CHECK(amount >= 0),
            type TEXT NOT NULL CHECK(type IN ('FINE', 'FINE_PAYMENT', 'DEPOSIT')),
            status TEXT NOT NULL DEFAULT 'PENDING'
                CHECK(status IN ('PENDING', 'COMPLETED', 'FAILED')),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    """)

    # At most one unreturned loan per (user, book)
    cursor.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_borrow_records_active
        ON borrow_records(user_id, book_id) WHERE return_date IS NULL
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_created_at ON users(created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_authors_author_id ON book_authors(author_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_categories_category_id ON book_categories(category_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_user_id ON borrow_records(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_book_id ON borrow_records(book_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_borrow_date ON borrow_records(borrow_date)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrow_records_return_date ON borrow_records(return_date)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user_status ON transactions(user_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_created_at ON transactions(created_at)")
