import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from library_api.exceptions import StoreUnavailable
from library_api.models import format_datetime, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Messages SQLite uses when the busy timeout expires or the file is unreachable
_UNAVAILABLE_MARKERS = ("locked", "busy", "unable to open", "disk i/o")


@contextmanager
def _translate_store_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.OperationalError as exc:
        if any(marker in str(exc).lower() for marker in _UNAVAILABLE_MARKERS):
            raise StoreUnavailable(f"Database unavailable: {exc}") from exc
        raise


class Database:
    """Owns the SQLite file and hands out connections and transactions.

    Connections are opened per operation (no pool); ``timeout`` is SQLite's
    busy timeout, so a writer waiting on another writer gives up after that
    many seconds with ``StoreUnavailable``.
    """

    def __init__(self, db_file: str, timeout: float = 5.0, read_retries: int = 3,
                 retry_backoff: float = 0.1) -> None:
        self.db_file = db_file
        self.timeout = timeout
        self.read_retries = max(1, read_retries)
        self.retry_backoff = retry_backoff

    def connect(self) -> sqlite3.Connection:
        with _translate_store_errors():
            # isolation_level=None: transactions are opened explicitly below
            conn = sqlite3.connect(self.db_file, timeout=self.timeout, isolation_level=None,
                                   check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def reading(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Yield ``conn`` when given, otherwise a short-lived autocommit connection."""
        if conn is not None:
            yield conn
            return
        new_conn = self.connect()
        try:
            with _translate_store_errors():
                yield new_conn
        finally:
            new_conn.close()

    @contextmanager
    def snapshot(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Run several reads against one consistent view of the database.

        A deferred ``BEGIN`` pins the WAL snapshot at the first SELECT, so
        writers committing in between are not seen.  Joins ``conn`` when given.
        """
        if conn is not None:
            yield conn
            return
        new_conn = self.connect()
        try:
            with _translate_store_errors():
                new_conn.execute("BEGIN")
                try:
                    yield new_conn
                finally:
                    if new_conn.in_transaction:
                        new_conn.execute("ROLLBACK")
        finally:
            new_conn.close()

    @contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Run the block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

        When ``conn`` is already inside a transaction the block simply joins
        it; the outermost caller decides between commit and rollback.
        """
        if conn is not None:
            yield conn
            return
        new_conn = self.connect()
        try:
            with _translate_store_errors():
                new_conn.execute("BEGIN IMMEDIATE")
                try:
                    yield new_conn
                except BaseException:
                    if new_conn.in_transaction:
                        new_conn.execute("ROLLBACK")
                    raise
                new_conn.execute("COMMIT")
        finally:
            new_conn.close()

    def read_with_retry(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Retry an idempotent read on ``StoreUnavailable`` with exponential backoff."""
        for attempt in range(self.read_retries):
            try:
                return func(*args, **kwargs)
            except StoreUnavailable:
                if attempt < self.read_retries - 1:
                    wait_time = self.retry_backoff * (2 ** attempt)
                    logger.warning("Store read %s failed, retrying in %.2fs (attempt %d/%d)",
                                   getattr(func, "__name__", func), wait_time, attempt + 1,
                                   self.read_retries)
                    time.sleep(wait_time)
                    continue
                raise
        raise StoreUnavailable("Database unavailable")  # pragma: no cover - loop always returns or raises

    # ------------------------- Schema ------------------------- #
    def create_tables(self) -> None:
        """Create the tables if they do not exist yet."""
        conn = self.connect()
        try:
            with _translate_store_errors():
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS authors (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        biography TEXT NOT NULL DEFAULT '',
                        date_of_birth TEXT,
                        nationality TEXT NOT NULL DEFAULT '',
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS books (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        isbn TEXT NOT NULL UNIQUE,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL DEFAULT '',
                        published_date TEXT,
                        author_id INTEGER NOT NULL REFERENCES authors(id) ON DELETE RESTRICT,
                        total_copies INTEGER NOT NULL CHECK (total_copies >= 0),
                        available_copies INTEGER NOT NULL
                            CHECK (available_copies >= 0 AND available_copies <= total_copies),
                        version INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT
                    );

                    CREATE TABLE IF NOT EXISTS members (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        email TEXT NOT NULL UNIQUE,
                        phone_number TEXT NOT NULL DEFAULT '',
                        membership_number TEXT UNIQUE,
                        membership_date TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS loans (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        book_id INTEGER NOT NULL REFERENCES books(id) ON DELETE RESTRICT,
                        member_id INTEGER NOT NULL REFERENCES members(id) ON DELETE RESTRICT,
                        loan_date TEXT NOT NULL,
                        due_date TEXT NOT NULL,
                        return_date TEXT,
                        late_fee TEXT
                    );

                    CREATE TABLE IF NOT EXISTS users (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        email TEXT NOT NULL UNIQUE,
                        password_hash TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        last_login_at TEXT
                    );

                    CREATE INDEX IF NOT EXISTS idx_books_author_id ON books(author_id);
                    CREATE INDEX IF NOT EXISTS idx_loans_book_open ON loans(book_id, return_date);
                    CREATE INDEX IF NOT EXISTS idx_loans_member_id ON loans(member_id);
                """)
        finally:
            conn.close()

    def seed(self) -> int:
        """Insert the demo authors and books when the catalog is empty.

        Returns the number of books inserted.
        """
        now = format_datetime(utcnow())
        with self.transaction() as conn:
            count = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            if count > 0:
                return 0
            authors = [
                ("J.K.", "Rowling", "British author, best known for the Harry Potter fantasy series.",
                 "1965-07-31T00:00:00+00:00", "British"),
                ("George R.R.", "Martin",
                 "American novelist and short story writer in the fantasy and science fiction genres.",
                 "1948-09-20T00:00:00+00:00", "American"),
            ]
            author_ids = []
            for first, last, bio, born, nationality in authors:
                cursor = conn.execute(
                    "INSERT INTO authors (first_name, last_name, biography, date_of_birth, nationality, created_at)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (first, last, bio, born, nationality, now),
                )
                author_ids.append(cursor.lastrowid)
            books = [
                ("9780439708180", "Harry Potter and the Sorcerer's Stone",
                 "The first book in the Harry Potter series.", "1997-06-26T00:00:00+00:00", author_ids[0], 5),
                ("9780553103540", "A Game of Thrones",
                 "The first book in A Song of Ice and Fire series.", "1996-08-01T00:00:00+00:00", author_ids[1], 3),
            ]
            for isbn, title, description, published, author_id, copies in books:
                conn.execute(
                    "INSERT INTO books (isbn, title, description, published_date, author_id,"
                    " total_copies, available_copies, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (isbn, title, description, published, author_id, copies, copies, now),
                )
        logger.info("Seeded %d books into %s", len(books), self.db_file)
        return len(books)


def initialize_database(db_file: str, timeout: float = 5.0, read_retries: int = 3,
                        retry_backoff: float = 0.1) -> Database:
    """Open the database and make sure the schema is in place."""
    db = Database(db_file, timeout=timeout, read_retries=read_retries, retry_backoff=retry_backoff)
    db.create_tables()
    return db
