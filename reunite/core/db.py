"""
SQLite persistence for embeddings, cases, consent, the audit ledger and alert state.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional

from . import config


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or config.DB_PATH, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=FULL")
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables."""
    config.ensure_db_directory(db_path)

    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # Encrypted biometric vectors; rows are never updated
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS embeddings (
                id TEXT PRIMARY KEY,
                subject_case_id TEXT NOT NULL,
                model_version TEXT NOT NULL,
                created_at TEXT NOT NULL,
                encryption_key_ref TEXT NOT NULL,
                dimension INTEGER NOT NULL,
                ciphertext BLOB NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_embeddings_case ON embeddings(subject_case_id, created_at DESC)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_embeddings_created ON embeddings(created_at DESC)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS cases (
                case_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                subject_is_minor BOOLEAN DEFAULT FALSE,
                last_seen_lat REAL,
                last_seen_lon REAL,
                last_seen_at TEXT,
                demographic_bucket TEXT,
                published BOOLEAN DEFAULT FALSE
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS consent (
                case_id TEXT PRIMARY KEY,
                subject_is_minor BOOLEAN NOT NULL,
                guardian_approved BOOLEAN DEFAULT FALSE,
                police_approval_ref TEXT,
                court_order_ref TEXT,
                updated_at TEXT NOT NULL
            )
        ''')

        # Append-only, hash-chained
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_ledger (
                event_id INTEGER PRIMARY KEY,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                resource_ref TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                payload TEXT NOT NULL,
                prior_event_hash TEXT NOT NULL,
                event_hash TEXT NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_resource ON audit_ledger(resource_ref)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_ledger(timestamp)')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_checkpoints (
                checkpoint_id INTEGER PRIMARY KEY AUTOINCREMENT,
                last_event_id INTEGER NOT NULL,
                last_event_hash TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS subscribers (
                subscriber_id TEXT PRIMARY KEY,
                lat REAL NOT NULL,
                lon REAL NOT NULL,
                channel TEXT NOT NULL DEFAULT 'push',
                low_bandwidth BOOLEAN DEFAULT FALSE
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS disaster_regions (
                region_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                min_lat REAL NOT NULL,
                min_lon REAL NOT NULL,
                max_lat REAL NOT NULL,
                max_lon REAL NOT NULL,
                declared_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS alert_zones (
                zone_id TEXT PRIMARY KEY,
                case_id TEXT NOT NULL,
                center_lat REAL NOT NULL,
                center_lon REAL NOT NULL,
                radius_meters REAL NOT NULL,
                mode TEXT NOT NULL,
                region_id TEXT,
                status TEXT NOT NULL,
                recipient_count INTEGER DEFAULT 0,
                unresolved TEXT DEFAULT '[]',
                dispatched_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS alert_suppression (
                subscriber_id TEXT NOT NULL,
                case_id TEXT NOT NULL,
                last_alerted_at TEXT NOT NULL,
                PRIMARY KEY (subscriber_id, case_id)
            )
        ''')

        conn.commit()


def health_check(db_path: Optional[str] = None) -> bool:
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            required_tables = ['embeddings', 'cases', 'consent', 'audit_ledger', 'subscribers', 'alert_zones']
            return all(table in table_names for table in required_tables)
    except sqlite3.Error:
        return False
