"""
SQLite persistence for the confidential record store.
Four mappings (records, revealed, decryption requests, campaigns) plus the
notification log. The record id counter is the AUTOINCREMENT sequence.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator
from .config import DB_PATH, ensure_db_directory

REQUIRED_TABLES = ['records', 'revealed', 'decryption_requests', 'campaigns', 'notifications']


@contextmanager
def get_db(db_path: str = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or DB_PATH, timeout=30)
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: str = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # AUTOINCREMENT guarantees ids are never reused
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                encrypted_value TEXT NOT NULL,
                encrypted_flag TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL,
                brand TEXT NOT NULL DEFAULT '',
                owner TEXT,
                status TEXT NOT NULL DEFAULT 'active',  -- active, redeemed, expired
                closed_at TIMESTAMP
            )
        ''')
        _migrate_record_metadata(cursor)

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS revealed (
                record_id INTEGER PRIMARY KEY REFERENCES records(id),
                value INTEGER NOT NULL DEFAULT 0,
                flag BOOLEAN NOT NULL DEFAULT FALSE,
                revealed BOOLEAN NOT NULL DEFAULT FALSE,
                revealed_at TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS decryption_requests (
                request_id TEXT PRIMARY KEY,
                record_id INTEGER NOT NULL REFERENCES records(id),
                status TEXT NOT NULL DEFAULT 'pending',  -- pending, resolved, superseded, failed, expired
                requested_at TIMESTAMP NOT NULL,
                resolved_at TIMESTAMP
            )
        ''')

        # rowid order is the registration order of campaign names
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS campaigns (
                name TEXT PRIMARY KEY,
                encrypted_total TEXT NOT NULL,
                contributions INTEGER NOT NULL DEFAULT 1,
                registered_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                record_id INTEGER NOT NULL,
                ts TIMESTAMP NOT NULL,
                payload TEXT
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_records_status ON records(status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_requests_record_status ON decryption_requests(record_id, status)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_notifications_record_id ON notifications(record_id, id)')

        conn.commit()


RECORD_METADATA_COLUMNS = [
    ("brand", "TEXT NOT NULL DEFAULT ''"),
    ("owner", "TEXT"),
    ("status", "TEXT NOT NULL DEFAULT 'active'"),
    ("closed_at", "TIMESTAMP"),
]


def _migrate_record_metadata(cursor: sqlite3.Cursor):
    """Add brand/owner/status columns to record tables created before they existed."""
    cursor.execute("PRAGMA table_info(records)")
    columns = [col[1] for col in cursor.fetchall()]
    for name, definition in RECORD_METADATA_COLUMNS:
        if name not in columns:
            cursor.execute(f"ALTER TABLE records ADD COLUMN {name} {definition}")


def health_check(db_path: str = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [table[0] for table in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False
