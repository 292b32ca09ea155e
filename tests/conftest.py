"""Shared test fixtures for issuerisk."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from issuerisk.config import Config
from issuerisk.engine.models import RiskEvidence, RiskFileChange, RiskMetrics, RiskProfile
from issuerisk.github.fetcher import (
    ChangeDetail,
    CommitRiskData,
    FileStat,
    IssueDetail,
    IssueRiskSnapshot,
    IssueSummary,
    PullRequestRiskData,
)
from issuerisk.storage.repository import RiskStore

REPO = "acme/webapp"
NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingTelemetry:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict, dict]] = []

    def track_event(self, name, properties=None, measurements=None) -> None:
        self.events.append((name, properties or {}, measurements or {}))

    def names(self) -> list[str]:
        return [name for name, _, _ in self.events]


class FakeRiskSource:
    """In-memory stand-in for the GitHub fetcher."""

    def __init__(self) -> None:
        self.snapshots: dict[int, IssueRiskSnapshot] = {}
        self.details: dict[int, IssueDetail] = {}
        self.change_details: dict[str, ChangeDetail] = {}  # "pr:<n>" or commit sha
        self.snapshot_errors: dict[int, Exception] = {}
        self.failing_sources: set[str] = set()
        self.comment_error: Exception | None = None
        self.upserts: list[tuple[int, str, int | None]] = []
        self.next_comment_id = 9000

    def get_issue_risk_snapshot(self, repository: str, issue_number: int) -> IssueRiskSnapshot:
        if issue_number in self.snapshot_errors:
            raise self.snapshot_errors[issue_number]
        return self.snapshots.get(issue_number, IssueRiskSnapshot(issue_number=issue_number))

    def get_issue_details(self, repository: str, issue_number: int) -> IssueDetail:
        if issue_number in self.details:
            return self.details[issue_number]
        return IssueDetail(
            number=issue_number,
            title=f"Issue {issue_number}",
            body="",
            url=f"https://github.com/{repository}/issues/{issue_number}",
            state="open",
        )

    def get_pull_request_backfill_detail(self, repository: str, pull_number: int) -> ChangeDetail:
        key = f"pr:{pull_number}"
        if key in self.failing_sources:
            raise RuntimeError(f"diff unavailable for {key}")
        return self.change_details.get(key, ChangeDetail())

    def get_commit_backfill_detail(self, repository: str, sha: str) -> ChangeDetail:
        if sha in self.failing_sources:
            raise RuntimeError(f"diff unavailable for {sha}")
        return self.change_details.get(sha, ChangeDetail())

    def upsert_issue_comment(
        self, repository: str, issue_number: int, body: str, comment_id: int | None = None
    ) -> int | None:
        if self.comment_error:
            raise self.comment_error
        self.upserts.append((issue_number, body, comment_id))
        if comment_id:
            return comment_id
        self.next_comment_id += 1
        return self.next_comment_id


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "test.db"


@pytest.fixture
def store(db_path: Path) -> RiskStore:
    risk_store = RiskStore(db_path)
    risk_store.initialize()
    yield risk_store
    risk_store.dispose()


@pytest.fixture
def settings() -> Config:
    return Config(github_token="ghp_test", repo=REPO)


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def github() -> FakeRiskSource:
    return FakeRiskSource()


@pytest.fixture
def risky_pull_requests() -> list[PullRequestRiskData]:
    """Two merged PRs: 30 files, 1200 changed lines, 22 friction signals."""
    return [
        PullRequestRiskData(
            number=10,
            title="Rework session middleware",
            url=f"https://github.com/{REPO}/pull/10",
            state="closed",
            merged_at="2026-01-10T09:00:00+00:00",
            additions=500,
            deletions=100,
            changed_files=20,
            review_comments=10,
            comments=2,
            review_states={"CHANGES_REQUESTED": 2},
        ),
        PullRequestRiskData(
            number=11,
            title="Fix token refresh race",
            url=f"https://github.com/{REPO}/pull/11",
            state="closed",
            merged_at="2026-01-08T09:00:00+00:00",
            additions=400,
            deletions=200,
            changed_files=10,
            review_comments=4,
            comments=2,
        ),
    ]


@pytest.fixture
def direct_commits() -> list[CommitRiskData]:
    return [
        CommitRiskData(
            sha="abc1234def5678",
            message="Hotfix cache invalidation",
            url=f"https://github.com/{REPO}/commit/abc1234def5678",
            additions=300,
            deletions=50,
            changed_files=4,
            committed_at="2026-01-12T10:00:00+00:00",
        ),
        CommitRiskData(
            sha="fed9876cba54321",
            message="Tune cache TTL",
            url=f"https://github.com/{REPO}/commit/fed9876cba54321",
            additions=20,
            deletions=5,
            changed_files=1,
            committed_at="2026-01-11T10:00:00+00:00",
        ),
    ]


@pytest.fixture
def pr_file_changes() -> dict[str, ChangeDetail]:
    return {
        "pr:10": ChangeDetail(files=[
            FileStat(path="src/auth/session.py", additions=300, deletions=60),
            FileStat(path="src/auth/middleware.py", additions=200, deletions=40),
        ]),
        "pr:11": ChangeDetail(files=[
            FileStat(path="src/auth/session.py", additions=100, deletions=100),
            FileStat(path="src/auth/tokens.py", additions=300, deletions=100),
        ]),
    }


@pytest.fixture
def issue_summary() -> IssueSummary:
    return IssueSummary(
        number=42,
        title="Sessions expire too early",
        url=f"https://github.com/{REPO}/issues/42",
        state="open",
        updated_at=(NOW - timedelta(hours=1)).isoformat(),
        labels=["bug", "auth"],
    )


@pytest.fixture
def issue_detail() -> IssueDetail:
    return IssueDetail(
        number=42,
        title="Sessions expire too early",
        body="Users are logged out after a few minutes.\nThe session TTL is compared in the wrong unit.",
        url=f"https://github.com/{REPO}/issues/42",
        state="open",
        labels=["bug", "auth"],
        author="octocat",
    )


@pytest.fixture
def sample_profile() -> RiskProfile:
    return RiskProfile(
        repository=REPO,
        issue_number=42,
        risk_level="high",
        risk_score=90,
        calculated_at=NOW.isoformat(),
        lookback_days=180,
        label_filters=[],
        metrics=RiskMetrics(
            pr_count=2,
            files_touched=30,
            total_additions=900,
            total_deletions=300,
            change_volume=1200,
            review_comment_count=26,
            pr_review_comment_count=14,
            pr_discussion_comment_count=4,
            pr_change_request_count=4,
        ),
        evidence=[
            RiskEvidence(
                label="PR #10",
                detail="20 files · +500/-100 · 10 review comments",
                url=f"https://github.com/{REPO}/pull/10",
                pr_summary="Rework session middleware",
                pr_number=10,
            ),
            RiskEvidence(
                label="PR #11",
                detail="10 files · +400/-200 · 4 review comments",
                url=f"https://github.com/{REPO}/pull/11",
                pr_summary="Fix token refresh race",
                pr_number=11,
            ),
        ],
        drivers=[
            "2 pull requests were required for similar work.",
            "30 files touched across linked pull requests.",
            "1200 lines changed recently.",
            "High review friction with 26 comments or change requests.",
        ],
        issue_title="Sessions expire too early",
        issue_summary="Users are logged out after a few minutes.",
        issue_labels=["bug", "auth"],
        issue_state="open",
        change_summary="2 PRs merged. 30 files touched (+900/-300)",
        file_changes=[
            RiskFileChange(
                path="src/auth/session.py",
                additions=400,
                deletions=160,
                change_volume=560,
                references=["PR #10", "PR #11"],
            ),
        ],
        keywords=["authentication", "session-timeout", "middleware", "redis", "token-refresh"],
        comment_id=777,
    )
