"""Merges file-level diff stats from several PRs or commits into one ranking."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from issuerisk.engine.models import RiskFileChange
from issuerisk.github.fetcher import CommitRiskData, PullRequestRiskData, RiskDataSource
from issuerisk.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

MAX_SOURCES = 3
MAX_FILES_PER_SOURCE = 50
MAX_FILES = 50
MAX_REFERENCES_PER_FILE = 5


@dataclass
class _FileTotals:
    additions: int = 0
    deletions: int = 0
    references: list[str] = field(default_factory=list)


def collect_file_changes(
    source: RiskDataSource,
    repository: str,
    pull_requests: list[PullRequestRiskData],
    commits: list[CommitRiskData],
    telemetry: TelemetrySink,
) -> list[RiskFileChange]:
    """Aggregate the diffs of the 3 most recent PRs, or commits when there are no PRs.

    A source whose diff cannot be fetched is reported and skipped; the
    remaining sources still contribute.
    """
    aggregated: dict[str, _FileTotals] = {}

    def record(path: str, additions: int, deletions: int, reference: str) -> None:
        normalized = (path or "").strip()
        if not normalized:
            return
        totals = aggregated.setdefault(normalized, _FileTotals())
        totals.additions += additions
        totals.deletions += deletions
        if reference not in totals.references:
            totals.references.append(reference)

    if pull_requests:
        for pr in pull_requests[:MAX_SOURCES]:
            reference = f"PR #{pr.number}"
            try:
                detail = source.get_pull_request_backfill_detail(repository, pr.number)
            except Exception as e:  # non-fatal: partial aggregation proceeds
                _report_failure(telemetry, repository, reference, "pull_request", e)
                continue
            for item in detail.files[:MAX_FILES_PER_SOURCE]:
                record(item.path, item.additions or 0, item.deletions or 0, reference)
    else:
        for commit in commits[:MAX_SOURCES]:
            reference = commit.sha[:7]
            try:
                detail = source.get_commit_backfill_detail(repository, commit.sha)
            except Exception as e:  # non-fatal: partial aggregation proceeds
                _report_failure(telemetry, repository, reference, "commit", e)
                continue
            for item in detail.files[:MAX_FILES_PER_SOURCE]:
                record(item.path, item.additions or 0, item.deletions or 0, reference)

    changes = [
        RiskFileChange(
            path=path,
            additions=totals.additions,
            deletions=totals.deletions,
            change_volume=totals.additions + totals.deletions,
            references=totals.references[:MAX_REFERENCES_PER_FILE],
        )
        for path, totals in aggregated.items()
    ]
    # Stable sort keeps first-seen order among equal volumes
    changes.sort(key=lambda change: change.change_volume, reverse=True)
    return changes[:MAX_FILES]


def _report_failure(
    telemetry: TelemetrySink, repository: str, reference: str, kind: str, error: Exception
) -> None:
    logger.warning(f"Could not collect file changes for {reference} in {repository}: {error}")
    telemetry.track_event(
        "risk.fileCollectionFailed",
        {"repository": repository, "reference": reference, "source": kind, "message": str(error)},
    )
