import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, default_db_path
from .errors import StorageError

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    next_run_at TEXT,
    last_error TEXT,
    executed_at TEXT,
    terminal INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at, id);
CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

BUSY_TIMEOUT_SECONDS = 30


def connect_db(path: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection with the schema in place. One connection per thread."""
    try:
        conn = sqlite3.connect(path or default_db_path(), timeout=BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
    except sqlite3.Error as e:
        raise StorageError(f"Could not open job store: {e}") from e
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    try:
        with conn:
            # seed defaults
            for k, v in DEFAULT_CONFIG.items():
                conn.execute(
                    "INSERT OR IGNORE INTO config(key, value) VALUES(?,?)", (k, v)
                )
    except sqlite3.Error as e:
        raise StorageError(f"Could not initialise job store: {e}") from e
    finally:
        conn.close()
