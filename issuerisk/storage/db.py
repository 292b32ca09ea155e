"""SQLite database setup and schema management."""

from __future__ import annotations

import sqlite3
from pathlib import Path

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS risk_profiles (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repository TEXT NOT NULL COLLATE NOCASE,
    issue_number INTEGER NOT NULL,
    risk_level TEXT NOT NULL,
    risk_score REAL NOT NULL,
    metrics TEXT NOT NULL,
    evidence TEXT NOT NULL,
    drivers TEXT NOT NULL,
    lookback_days INTEGER NOT NULL,
    label_filters TEXT NOT NULL,
    calculated_at TEXT NOT NULL,
    keywords TEXT,
    issue_title TEXT NOT NULL DEFAULT '',
    issue_summary TEXT NOT NULL DEFAULT '',
    issue_labels TEXT NOT NULL DEFAULT '[]',
    issue_state TEXT NOT NULL DEFAULT '',
    change_summary TEXT NOT NULL DEFAULT '',
    file_changes TEXT NOT NULL DEFAULT '[]',
    comment_id INTEGER,
    UNIQUE(repository, issue_number)
);

CREATE TABLE IF NOT EXISTS risk_profile_keywords (
    repository TEXT NOT NULL COLLATE NOCASE,
    issue_number INTEGER NOT NULL,
    keyword TEXT NOT NULL,
    PRIMARY KEY (repository, issue_number, keyword)
);

CREATE INDEX IF NOT EXISTS idx_risk_profiles_repo_issue ON risk_profiles(repository, issue_number);
CREATE INDEX IF NOT EXISTS idx_risk_profiles_state ON risk_profiles(repository, issue_state);
CREATE INDEX IF NOT EXISTS idx_risk_keywords_keyword ON risk_profile_keywords(repository, keyword);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Create or open a SQLite database with the issuerisk schema."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)
    conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
    conn.commit()

    return conn
