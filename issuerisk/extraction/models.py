"""Data models for keyword extraction and backfill."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class KeywordContext:
    """Everything the heuristic keyword builder may mine for topical terms."""

    issue_title: str
    issue_body: str = ""
    labels: list[str] = field(default_factory=list)
    evidence_summaries: list[str] = field(default_factory=list)
    file_paths: list[str] = field(default_factory=list)
    change_summary: str = ""
    repository: str = ""  # slug tokens are treated as noise


@dataclass
class KeywordExtractionResult:
    keywords: list[str]
    tokens_used: int = 0


@dataclass
class BackfillError:
    issue_number: int
    message: str


@dataclass
class BackfillProgress:
    total_issues: int
    started_at: str
    mode: str = "missing"  # "missing" | "all"
    processed_issues: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped_count: int = 0
    current_issue: int | None = None
    status: str = "running"  # "running" | "completed" | "failed" | "cancelled"
    completed_at: str | None = None
    tokens_used: int = 0
    errors: list[BackfillError] = field(default_factory=list)
