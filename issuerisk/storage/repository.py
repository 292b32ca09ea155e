"""Durable storage for risk profiles, one row per (repository, issue)."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict
from pathlib import Path

from issuerisk.engine.models import (
    KeywordCoverage,
    RiskEvidence,
    RiskFileChange,
    RiskMetrics,
    RiskProfile,
)
from issuerisk.storage.db import get_connection

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the risk profile database cannot be read or written."""


class RiskStore:
    """Data access layer for the issuerisk SQLite database.

    The connection is opened lazily by initialize(); every public method calls
    it, so callers never need to.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        if self._conn is not None:
            return
        try:
            self._conn = get_connection(self._db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Could not open risk database at {self._db_path}: {e}") from e

    def dispose(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.commit()
            self._conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Could not close risk database: {e}") from e
        finally:
            self._conn = None

    def save_profile(self, profile: RiskProfile) -> None:
        """Insert or update the profile for (repository, issue_number)."""
        conn = self._connection()
        keywords = profile.keywords
        try:
            conn.execute(
                """INSERT INTO risk_profiles (
                    repository, issue_number, risk_level, risk_score, metrics, evidence,
                    drivers, lookback_days, label_filters, calculated_at, keywords,
                    issue_title, issue_summary, issue_labels, issue_state, change_summary,
                    file_changes, comment_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(repository, issue_number) DO UPDATE SET
                    repository = excluded.repository,
                    risk_level = excluded.risk_level,
                    risk_score = excluded.risk_score,
                    metrics = excluded.metrics,
                    evidence = excluded.evidence,
                    drivers = excluded.drivers,
                    lookback_days = excluded.lookback_days,
                    label_filters = excluded.label_filters,
                    calculated_at = excluded.calculated_at,
                    keywords = excluded.keywords,
                    issue_title = excluded.issue_title,
                    issue_summary = excluded.issue_summary,
                    issue_labels = excluded.issue_labels,
                    issue_state = excluded.issue_state,
                    change_summary = excluded.change_summary,
                    file_changes = excluded.file_changes,
                    comment_id = excluded.comment_id""",
                (
                    profile.repository,
                    profile.issue_number,
                    profile.risk_level,
                    float(profile.risk_score),
                    json.dumps(asdict(profile.metrics)),
                    json.dumps([asdict(item) for item in profile.evidence]),
                    json.dumps(profile.drivers),
                    profile.lookback_days,
                    json.dumps(profile.label_filters),
                    profile.calculated_at,
                    json.dumps(keywords) if keywords is not None else None,
                    profile.issue_title,
                    profile.issue_summary,
                    json.dumps(profile.issue_labels),
                    profile.issue_state,
                    profile.change_summary,
                    json.dumps([asdict(item) for item in profile.file_changes]),
                    profile.comment_id,
                ),
            )

            # Rebuild the keyword index for this profile
            conn.execute(
                "DELETE FROM risk_profile_keywords WHERE repository = ? AND issue_number = ?",
                (profile.repository, profile.issue_number),
            )
            for keyword in keywords or []:
                conn.execute(
                    """INSERT OR IGNORE INTO risk_profile_keywords (repository, issue_number, keyword)
                    VALUES (?, ?, ?)""",
                    (profile.repository, profile.issue_number, keyword.lower()),
                )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(
                f"Could not save risk profile for {profile.repository}#{profile.issue_number}: {e}"
            ) from e

    def get_profile(self, repository: str, issue_number: int) -> RiskProfile | None:
        rows = self._query(
            "SELECT * FROM risk_profiles WHERE repository = ? AND issue_number = ? LIMIT 1",
            (repository, issue_number),
        )
        return self._row_to_profile(rows[0]) if rows else None

    def get_profiles(self, repository: str, issue_numbers: list[int]) -> list[RiskProfile]:
        if not issue_numbers:
            return []
        placeholders = ", ".join("?" for _ in issue_numbers)
        rows = self._query(
            f"""SELECT * FROM risk_profiles
            WHERE repository = ? AND issue_number IN ({placeholders})
            ORDER BY issue_number""",
            (repository, *issue_numbers),
        )
        return [self._row_to_profile(row) for row in rows]

    def get_all_profiles(self, repository: str) -> list[RiskProfile]:
        rows = self._query(
            "SELECT * FROM risk_profiles WHERE repository = ? ORDER BY issue_number",
            (repository,),
        )
        return [self._row_to_profile(row) for row in rows]

    def get_closed_issues_without_keywords(self, repository: str, limit: int = 100) -> list[RiskProfile]:
        rows = self._query(
            """SELECT * FROM risk_profiles
            WHERE repository = ? AND issue_state = 'closed'
              AND (keywords IS NULL OR keywords = '' OR keywords = '[]')
            ORDER BY calculated_at DESC
            LIMIT ?""",
            (repository, limit),
        )
        return [self._row_to_profile(row) for row in rows]

    def search_by_keywords(self, repository: str, keywords: list[str], limit: int = 10) -> list[RiskProfile]:
        """Profiles sharing at least one keyword, most shared keywords first."""
        terms = sorted({k.strip().lower() for k in keywords if k and k.strip()})
        if not terms:
            return []
        placeholders = ", ".join("?" for _ in terms)
        rows = self._query(
            f"""SELECT p.*, COUNT(k.keyword) AS match_count
            FROM risk_profiles p
            JOIN risk_profile_keywords k
              ON k.repository = p.repository AND k.issue_number = p.issue_number
            WHERE p.repository = ? AND k.keyword IN ({placeholders})
            GROUP BY p.id
            ORDER BY match_count DESC, p.risk_score DESC, p.issue_number
            LIMIT ?""",
            (repository, *terms, limit),
        )
        return [self._row_to_profile(row) for row in rows]

    def get_keyword_coverage(self, repository: str) -> KeywordCoverage:
        rows = self._query(
            """SELECT COUNT(*) AS total,
                SUM(CASE WHEN keywords IS NOT NULL AND keywords != '' AND keywords != '[]'
                    THEN 1 ELSE 0 END) AS with_keywords
            FROM risk_profiles WHERE repository = ?""",
            (repository,),
        )
        total = rows[0]["total"] or 0
        with_keywords = rows[0]["with_keywords"] or 0
        coverage = round(with_keywords / total * 100, 1) if total else 0.0
        return KeywordCoverage(total=total, with_keywords=with_keywords, coverage_pct=coverage)

    def _connection(self) -> sqlite3.Connection:
        self.initialize()
        if self._conn is None:
            raise StorageError(f"Risk database at {self._db_path} is not open")
        return self._conn

    def _query(self, sql: str, params: tuple) -> list[sqlite3.Row]:
        conn = self._connection()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Risk database query failed: {e}") from e

    def _row_to_profile(self, row: sqlite3.Row) -> RiskProfile:
        """Convert a database row into a RiskProfile."""
        d = dict(row)
        keywords = _load_json(d.get("keywords"), None)
        return RiskProfile(
            repository=d["repository"],
            issue_number=int(d["issue_number"]),
            risk_level=d["risk_level"],
            risk_score=float(d["risk_score"]),
            calculated_at=d["calculated_at"],
            lookback_days=int(d["lookback_days"]),
            label_filters=_load_json(d.get("label_filters"), []),
            metrics=RiskMetrics.from_dict(_load_json(d.get("metrics"), {})),
            evidence=[RiskEvidence.from_dict(item) for item in _load_json(d.get("evidence"), [])],
            drivers=_load_json(d.get("drivers"), []),
            issue_title=d.get("issue_title") or "",
            issue_summary=d.get("issue_summary") or "",
            issue_labels=_load_json(d.get("issue_labels"), []),
            issue_state=d.get("issue_state") or "",
            change_summary=d.get("change_summary") or "",
            file_changes=[RiskFileChange.from_dict(item) for item in _load_json(d.get("file_changes"), [])],
            keywords=keywords if keywords else None,
            comment_id=d.get("comment_id"),
        )


def _load_json(value, fallback):
    if not value:
        return fallback
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse stored risk payload: {str(value)[:80]}")
        return fallback
