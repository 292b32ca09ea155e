"""Core data models for the risk intelligence engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Literal

RiskLevel = Literal["low", "medium", "high"]
RiskStatus = Literal["pending", "ready", "error", "skipped"]

RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high")


@dataclass
class RiskMetrics:
    pr_count: int = 0
    files_touched: int = 0
    total_additions: int = 0
    total_deletions: int = 0
    change_volume: int = 0
    review_comment_count: int = 0  # weighted review friction
    pr_review_comment_count: int = 0
    pr_discussion_comment_count: int = 0
    pr_change_request_count: int = 0
    direct_commit_count: int = 0
    direct_commit_additions: int = 0
    direct_commit_deletions: int = 0
    direct_commit_change_volume: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> RiskMetrics:
        known = {name: int(data[name]) for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)


@dataclass
class RiskEvidence:
    label: str  # "PR #12" or "Commit abc1234"
    detail: str | None = None
    url: str | None = None
    pr_summary: str | None = None  # PR title or commit message
    pr_number: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> RiskEvidence:
        return cls(
            label=str(data.get("label", "")),
            detail=data.get("detail"),
            url=data.get("url"),
            pr_summary=data.get("pr_summary"),
            pr_number=data.get("pr_number"),
        )


@dataclass
class RiskFileChange:
    path: str
    additions: int = 0
    deletions: int = 0
    change_volume: int = 0
    references: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> RiskFileChange:
        return cls(
            path=str(data.get("path", "")),
            additions=int(data.get("additions", 0)),
            deletions=int(data.get("deletions", 0)),
            change_volume=int(data.get("change_volume", 0)),
            references=list(data.get("references", [])),
        )


@dataclass
class RiskProfile:
    repository: str  # "owner/repo"
    issue_number: int
    risk_level: str  # "low" | "medium" | "high"
    risk_score: float
    calculated_at: str  # ISO-8601
    lookback_days: int
    label_filters: list[str] = field(default_factory=list)
    metrics: RiskMetrics = field(default_factory=RiskMetrics)
    evidence: list[RiskEvidence] = field(default_factory=list)
    drivers: list[str] = field(default_factory=list)
    issue_title: str = ""
    issue_summary: str = ""
    issue_labels: list[str] = field(default_factory=list)
    issue_state: str = ""  # "open" | "closed" | "" when unknown
    change_summary: str = ""
    file_changes: list[RiskFileChange] = field(default_factory=list)
    keywords: list[str] | None = None
    comment_id: int | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RiskSummary:
    status: str  # "pending" | "ready" | "error" | "skipped"
    message: str | None = None
    risk_level: str | None = None
    risk_score: float | None = None
    calculated_at: str | None = None
    top_drivers: list[str] = field(default_factory=list)
    metrics: dict[str, int] | None = None
    keywords: list[str] | None = None
    stale: bool = False

    @classmethod
    def pending(cls) -> RiskSummary:
        return cls(status="pending", message="Collecting historical risk signals...")

    @classmethod
    def from_profile(cls, profile: RiskProfile, stale: bool) -> RiskSummary:
        m = profile.metrics
        return cls(
            status="ready",
            risk_level=profile.risk_level,
            risk_score=profile.risk_score,
            calculated_at=profile.calculated_at,
            top_drivers=list(profile.drivers[:3]),
            metrics={
                "pr_count": m.pr_count,
                "files_touched": m.files_touched,
                "change_volume": m.change_volume,
                "review_comment_count": m.review_comment_count,
                "direct_commit_count": m.direct_commit_count,
                "pr_review_comment_count": m.pr_review_comment_count,
                "pr_discussion_comment_count": m.pr_discussion_comment_count,
                "pr_change_request_count": m.pr_change_request_count,
            },
            keywords=list(profile.keywords[:8]) if profile.keywords else None,
            stale=stale,
        )


@dataclass
class RiskTask:
    repository: str
    issue_number: int
    lookback_days: int
    label_filters: list[str] = field(default_factory=list)
    updated_at: str | None = None
    force: bool = False


@dataclass
class RiskUpdateEvent:
    repository: str
    issue_number: int
    summary: RiskSummary
    profile: RiskProfile | None = None


@dataclass
class SimilarIssue:
    repository: str
    issue_number: int
    risk_level: str
    risk_score: float
    keywords: list[str]
    overlap_score: float
    shared_keywords: list[str]
    calculated_at: str
    issue_title: str = ""
    issue_summary: str = ""
    issue_labels: list[str] = field(default_factory=list)


@dataclass
class KeywordCoverage:
    total: int
    with_keywords: int
    coverage_pct: float


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are assumed to be UTC."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
