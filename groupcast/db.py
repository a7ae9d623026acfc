import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG, db_path_from_env

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance TEXT NOT NULL,
    message TEXT NOT NULL,
    targeting TEXT NOT NULL,
    due_at TEXT NOT NULL,
    status TEXT NOT NULL,
    mention_everyone INTEGER NOT NULL DEFAULT 0,
    batch_id TEXT,
    chunk_index INTEGER,
    total_chunks INTEGER,
    recurrence TEXT,
    parent_id INTEGER,
    result_summary TEXT,
    sent_at TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_due ON jobs(status, due_at);
CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs(batch_id);

CREATE TABLE IF NOT EXISTS job_failures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id INTEGER NOT NULL REFERENCES jobs(id),
    recipient_id TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_failures_job ON job_failures(job_id);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def connect_db(path: Optional[str] = None, timeout: float = 10.0):
    # One connection per thread; sqlite serialises writers and waits up to `timeout`.
    conn = sqlite3.connect(path or db_path_from_env(), timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
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
    finally:
        conn.close()
