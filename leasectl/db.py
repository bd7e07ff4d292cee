import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import DEFAULT_CONFIG, db_path
from .errors import StoreUnavailable, ValidationError

log = logging.getLogger(__name__)

BUSY_TIMEOUT_SECONDS = 30.0

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    token_hash TEXT NOT NULL,
    token_salt TEXT NOT NULL,
    disabled INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_seen_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    created_at TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    locked_at TEXT,
    started_at TEXT,
    finished_at TEXT,
    heartbeat_at TEXT,
    lease_expires_at TEXT,
    attempt INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    locked_by_agent_id INTEGER REFERENCES agents(id),
    last_agent_id INTEGER REFERENCES agents(id),
    result TEXT,
    last_error TEXT,
    CHECK (status IN ('queued', 'running', 'succeeded', 'failed'))
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_scheduled ON jobs(status, scheduled_at, id);
CREATE INDEX IF NOT EXISTS idx_jobs_status_lease ON jobs(status, lease_expires_at);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are explicit via `transaction()`."""
    target = path or db_path()
    try:
        conn = sqlite3.connect(
            target,
            timeout=BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.executescript(SCHEMA)
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Cannot open job store at {target}: {e}") from e
    return conn


def init_db(path: Optional[str] = None) -> None:
    conn = connect_db(path)
    try:
        with transaction(conn):
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the block inside `BEGIN IMMEDIATE`; commit on success, roll back on any error.

    IMMEDIATE takes the write lock up front, so two transactions can never both
    read a row as `queued` and then both move it to `running`.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Cannot start transaction: {e}") from e
    try:
        yield conn
        conn.execute("COMMIT")
    except sqlite3.IntegrityError as e:
        # e.g. an agent id that does not exist
        _rollback(conn)
        raise ValidationError(f"Constraint violated: {e}") from e
    except sqlite3.Error as e:
        _rollback(conn)
        raise StoreUnavailable(f"Job store error: {e}") from e
    except BaseException:
        _rollback(conn)
        raise


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            log.warning("Rollback failed", exc_info=True)


@contextmanager
def store_errors() -> Iterator[None]:
    """Map sqlite errors raised by reads outside `transaction()` to StoreUnavailable."""
    try:
        yield
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Job store error: {e}") from e


def database_file(conn: sqlite3.Connection) -> Optional[str]:
    """Path of the main database behind `conn`; None for in-memory databases."""
    with store_errors():
        for row in conn.execute("PRAGMA database_list").fetchall():
            if row[1] == "main":
                return row[2] or None
    return None
