import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from .config import settings
from .errors import Conflict

logger = logging.getLogger(__name__)


def ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp so that text comparison in SQL matches time order."""
    return value.isoformat(timespec="microseconds") if value is not None else None


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the circulation store.

    Connections run in autocommit mode; multi-statement work must go through
    ``unit_of_work`` so that it is bracketed by an explicit transaction.
    """
    conn = sqlite3.connect(
        db_file or settings.database_file,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def unit_of_work(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block as one atomic transaction holding the store's write lock.

    ``BEGIN IMMEDIATE`` takes the reserved lock before the first read, so every
    count-then-insert or check-then-transition inside the block is serialized
    against all other writers. Any exception rolls the whole block back.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.IntegrityError as e:
        _rollback(conn)
        logger.warning(f"Unit of work aborted by constraint: {e}")
        raise Conflict(f"Concurrent update rejected: {e}") from e
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the circulation schema if it does not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while one writer holds the lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS categories (
                code TEXT PRIMARY KEY,
                description TEXT,
                max_loans INTEGER CHECK (max_loans IS NULL OR max_loans > 0),
                loan_period_days INTEGER CHECK (loan_period_days IS NULL OR loan_period_days > 0)
            );

            CREATE TABLE IF NOT EXISTS patrons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                category_code TEXT NOT NULL REFERENCES categories(code),
                full_name TEXT NOT NULL,
                membership_expiry TEXT,
                suspended_until TEXT,
                suspension_reason TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS works (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT
            );

            CREATE TABLE IF NOT EXISTS copies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                work_id INTEGER NOT NULL REFERENCES works(id) ON DELETE CASCADE,
                barcode TEXT UNIQUE NOT NULL,
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK (status IN ('available', 'on_loan', 'lost', 'damaged', 'withdrawn')),
                not_for_loan BOOLEAN NOT NULL DEFAULT 0,
                due_date TEXT,
                loan_count INTEGER NOT NULL DEFAULT 0 CHECK (loan_count >= 0),
                renewal_count INTEGER NOT NULL DEFAULT 0 CHECK (renewal_count >= 0),
                last_borrowed TEXT,
                replacement_cost_cents INTEGER CHECK (replacement_cost_cents IS NULL OR replacement_cost_cents >= 0),
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                patron_id INTEGER NOT NULL REFERENCES patrons(id) ON DELETE RESTRICT,
                copy_id INTEGER NOT NULL REFERENCES copies(id) ON DELETE RESTRICT,
                start_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                renewal_count INTEGER NOT NULL DEFAULT 0 CHECK (renewal_count >= 0),
                last_renewed TEXT,
                CHECK (due_date >= start_date)
            );

            CREATE TABLE IF NOT EXISTS holds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                patron_id INTEGER NOT NULL REFERENCES patrons(id) ON DELETE RESTRICT,
                work_id INTEGER NOT NULL REFERENCES works(id) ON DELETE CASCADE,
                copy_id INTEGER REFERENCES copies(id) ON DELETE CASCADE,
                placed_at TEXT NOT NULL,
                priority INTEGER NOT NULL CHECK (priority > 0),
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'ready-for-pickup', 'fulfilled', 'cancelled', 'expired')),
                ready_since TEXT,
                ready_copy_id INTEGER REFERENCES copies(id) ON DELETE SET NULL,
                closed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS ledger_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                patron_id INTEGER NOT NULL REFERENCES patrons(id) ON DELETE RESTRICT,
                copy_id INTEGER REFERENCES copies(id) ON DELETE SET NULL,
                loan_id INTEGER REFERENCES loans(id) ON DELETE SET NULL,
                entry_type TEXT NOT NULL,
                charged_cents INTEGER NOT NULL CHECK (charged_cents >= 0),
                outstanding_cents INTEGER NOT NULL
                    CHECK (outstanding_cents >= 0 AND outstanding_cents <= charged_cents),
                status TEXT NOT NULL CHECK (status IN ('open', 'partial', 'paid', 'waived')),
                description TEXT,
                payment_type TEXT,
                related_entry_id INTEGER REFERENCES ledger_entries(id),
                recorded_by INTEGER,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS system_preferences (
                variable TEXT PRIMARY KEY,
                value TEXT,
                explanation TEXT,
                updated_at TEXT
            );

            -- A copy can be referenced by at most one open loan
            CREATE UNIQUE INDEX IF NOT EXISTS uq_loans_open_copy
                ON loans(copy_id) WHERE return_date IS NULL;
            -- Active holds on a work never share a priority
            CREATE UNIQUE INDEX IF NOT EXISTS uq_holds_active_priority
                ON holds(work_id, priority) WHERE status IN ('pending', 'ready-for-pickup');
            -- One active hold per patron per work
            CREATE UNIQUE INDEX IF NOT EXISTS uq_holds_active_patron
                ON holds(patron_id, work_id) WHERE status IN ('pending', 'ready-for-pickup');

            CREATE INDEX IF NOT EXISTS idx_copies_work_id ON copies(work_id);
            CREATE INDEX IF NOT EXISTS idx_loans_patron_open ON loans(patron_id) WHERE return_date IS NULL;
            CREATE INDEX IF NOT EXISTS idx_loans_start_date ON loans(start_date);
            CREATE INDEX IF NOT EXISTS idx_holds_work_status ON holds(work_id, status, priority);
            CREATE INDEX IF NOT EXISTS idx_ledger_patron ON ledger_entries(patron_id);
        """)
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Circulation store ready at {db_file or settings.database_file}")
