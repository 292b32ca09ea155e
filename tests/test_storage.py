"""Tests for issuerisk.storage — risk profile persistence."""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from pathlib import Path

import pytest

from issuerisk.engine.models import RiskProfile
from issuerisk.storage.db import get_connection
from issuerisk.storage.repository import RiskStore, StorageError


class TestInitialize:
    def test_creates_schema(self, db_path: Path):
        store = RiskStore(db_path)
        store.initialize()
        store.dispose()

        conn = get_connection(db_path)
        tables = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        conn.close()
        assert "risk_profiles" in tables
        assert "risk_profile_keywords" in tables

    def test_initialize_is_idempotent(self, store: RiskStore):
        store.initialize()
        store.initialize()
        assert store.get_all_profiles("acme/webapp") == []

    def test_uses_wal_mode(self, db_path: Path):
        conn = get_connection(db_path)
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        conn.close()
        assert mode == "wal"

    def test_reopens_lazily_after_dispose(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(sample_profile)
        store.dispose()
        assert store.get_profile("acme/webapp", 42) is not None

    def test_unopened_connection_raises_storage_error(self, db_path: Path, monkeypatch):
        store = RiskStore(db_path)
        monkeypatch.setattr(store, "initialize", lambda: None)
        with pytest.raises(StorageError, match="not open"):
            store.get_profile("acme/webapp", 42)


class TestSaveProfile:
    def test_round_trip(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(sample_profile)
        loaded = store.get_profile("acme/webapp", 42)
        assert loaded == sample_profile

    def test_structured_fields_keep_order(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(sample_profile)
        loaded = store.get_profile("acme/webapp", 42)
        assert [e.label for e in loaded.evidence] == ["PR #10", "PR #11"]
        assert loaded.drivers == sample_profile.drivers
        assert loaded.keywords == sample_profile.keywords
        assert loaded.file_changes[0].references == ["PR #10", "PR #11"]

    def test_score_is_stored_as_real(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(replace(sample_profile, risk_score=72.5))
        assert store.get_profile("acme/webapp", 42).risk_score == 72.5

    def test_upsert_replaces(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(sample_profile)
        store.save_profile(replace(sample_profile, risk_level="low", risk_score=15, keywords=["caching-layer"]))

        profiles = store.get_all_profiles("acme/webapp")
        assert len(profiles) == 1
        assert profiles[0].risk_level == "low"
        assert profiles[0].keywords == ["caching-layer"]

    def test_repository_match_is_case_insensitive(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(sample_profile)
        assert store.get_profile("ACME/WebApp", 42) is not None
        store.save_profile(replace(sample_profile, repository="Acme/Webapp"))
        assert len(store.get_all_profiles("acme/webapp")) == 1

    def test_empty_keywords_load_as_none(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(replace(sample_profile, keywords=[]))
        assert store.get_profile("acme/webapp", 42).keywords is None

    def test_missing_profile(self, store: RiskStore):
        assert store.get_profile("acme/webapp", 999) is None

    def test_write_failure_raises_storage_error(self, db_path: Path, sample_profile: RiskProfile):
        store = RiskStore(db_path)
        store.initialize()
        store._conn.execute("DROP TABLE risk_profile_keywords")
        with pytest.raises(StorageError):
            store.save_profile(sample_profile)
        store.dispose()

    def test_open_failure_raises_storage_error(self, tmp_path: Path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        with pytest.raises(StorageError):
            RiskStore(blocker / "risk.db").initialize()


class TestQueries:
    def test_get_profiles_filters_by_number(self, store: RiskStore, sample_profile: RiskProfile):
        for number in (1, 2, 3):
            store.save_profile(replace(sample_profile, issue_number=number))
        profiles = store.get_profiles("acme/webapp", [3, 1, 99])
        assert [p.issue_number for p in profiles] == [1, 3]

    def test_get_profiles_empty_request(self, store: RiskStore):
        assert store.get_profiles("acme/webapp", []) == []

    def test_closed_issues_without_keywords(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(replace(sample_profile, issue_number=1, issue_state="closed", keywords=None))
        store.save_profile(replace(sample_profile, issue_number=2, issue_state="open", keywords=None))
        store.save_profile(replace(sample_profile, issue_number=3, issue_state="closed"))

        profiles = store.get_closed_issues_without_keywords("acme/webapp", limit=10)
        assert [p.issue_number for p in profiles] == [1]

    def test_search_by_keywords_ranks_by_shared_count(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(replace(sample_profile, issue_number=1, keywords=["redis", "caching"], risk_score=20))
        store.save_profile(replace(sample_profile, issue_number=2, keywords=["redis", "session"], risk_score=80))
        store.save_profile(replace(sample_profile, issue_number=3, keywords=["billing", "invoices"]))

        results = store.search_by_keywords("acme/webapp", ["Redis", "session"])
        assert [p.issue_number for p in results] == [2, 1]

    def test_search_with_no_keywords(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(sample_profile)
        assert store.search_by_keywords("acme/webapp", ["", "  "]) == []

    def test_keyword_coverage(self, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(replace(sample_profile, issue_number=1))
        store.save_profile(replace(sample_profile, issue_number=2))
        store.save_profile(replace(sample_profile, issue_number=3, keywords=None))

        coverage = store.get_keyword_coverage("acme/webapp")
        assert coverage.total == 3
        assert coverage.with_keywords == 2
        assert coverage.coverage_pct == 66.7

    def test_keyword_coverage_empty_repository(self, store: RiskStore):
        coverage = store.get_keyword_coverage("acme/empty")
        assert coverage.total == 0
        assert coverage.coverage_pct == 0.0

    def test_corrupt_json_falls_back(self, db_path: Path, store: RiskStore, sample_profile: RiskProfile):
        store.save_profile(sample_profile)
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE risk_profiles SET drivers = 'not json' WHERE issue_number = 42")
        conn.commit()
        conn.close()

        assert store.get_profile("acme/webapp", 42).drivers == []
