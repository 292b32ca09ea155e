"""Risk scoring: change history -> metrics -> score, level and drivers.

Score = change-set score (max 40) + file-scope score (max 20)
        + churn score (max 20) + review-friction score (max 20), clamped to 0-100.

    change-set     = min(40, 15 * (prs + direct commits))
    file scope     = min(20, 5 * floor(files touched / 5))
    churn          = min(20, 5 * floor(lines changed / 200))
    review friction = min(20, 5 * floor(friction signals / 5))

Pull requests are the unit of change: when an issue has any, direct commits
are ignored entirely.
"""

from __future__ import annotations

from issuerisk.engine.models import RiskEvidence, RiskFileChange, RiskMetrics
from issuerisk.github.fetcher import CommitRiskData, PullRequestRiskData

HIGH_RISK_THRESHOLD = 70
MEDIUM_RISK_THRESHOLD = 40
MAX_DRIVERS = 5
MAX_EVIDENCE = 5
ISSUE_SUMMARY_LIMIT = 320


def compute_metrics(
    pull_requests: list[PullRequestRiskData], commits: list[CommitRiskData]
) -> RiskMetrics:
    metrics = RiskMetrics()

    for pr in pull_requests:
        review_comments = pr.review_comments or 0
        discussion_comments = pr.comments or 0
        change_requests = pr.review_states.get("CHANGES_REQUESTED", 0)

        metrics.pr_count += 1
        metrics.files_touched += pr.changed_files or 0
        metrics.total_additions += pr.additions or 0
        metrics.total_deletions += pr.deletions or 0
        metrics.change_volume += (pr.additions or 0) + (pr.deletions or 0)
        metrics.pr_review_comment_count += review_comments
        metrics.pr_discussion_comment_count += discussion_comments
        metrics.pr_change_request_count += change_requests
        metrics.review_comment_count += review_comments + discussion_comments + change_requests * 2

    if not pull_requests:
        for commit in commits:
            additions = commit.additions or 0
            deletions = commit.deletions or 0
            metrics.direct_commit_count += 1
            metrics.files_touched += commit.changed_files or 0
            metrics.direct_commit_additions += additions
            metrics.direct_commit_deletions += deletions
            metrics.direct_commit_change_volume += additions + deletions
            metrics.total_additions += additions
            metrics.total_deletions += deletions
            metrics.change_volume += additions + deletions

    return metrics


def calculate_risk_score(metrics: RiskMetrics) -> int:
    change_sets = metrics.pr_count + metrics.direct_commit_count
    change_set_score = min(40, change_sets * 15)
    file_score = min(20, (metrics.files_touched // 5) * 5)
    churn_score = min(20, (metrics.change_volume // 200) * 5)
    review_score = min(20, (metrics.review_comment_count // 5) * 5)
    score = change_set_score + file_score + churn_score + review_score
    return min(100, max(0, score))


def score_to_level(score: float) -> str:
    if score >= HIGH_RISK_THRESHOLD:
        return "high"
    if score >= MEDIUM_RISK_THRESHOLD:
        return "medium"
    return "low"


def identify_drivers(metrics: RiskMetrics) -> list[str]:
    """Explain an elevated score, one sentence per rule, in rule order."""
    drivers: list[str] = []
    if metrics.pr_count > 1:
        drivers.append(f"{metrics.pr_count} pull requests were required for similar work.")
    if metrics.direct_commit_count > 0 and metrics.pr_count == 0:
        drivers.append(f"{metrics.direct_commit_count} direct commits linked to this issue.")
    if metrics.files_touched >= 25:
        scope = "pull requests" if metrics.pr_count > 0 else "direct commits"
        drivers.append(f"{metrics.files_touched} files touched across linked {scope}.")
    if metrics.change_volume >= 1000:
        drivers.append(f"{metrics.change_volume} lines changed recently.")
    if metrics.review_comment_count >= 15:
        drivers.append(
            f"High review friction with {metrics.review_comment_count} comments or change requests."
        )
    if metrics.direct_commit_change_volume >= 600 and metrics.pr_count == 0:
        drivers.append(f"{metrics.direct_commit_change_volume} lines changed across direct commits.")
    return drivers[:MAX_DRIVERS]


def build_evidence(
    pull_requests: list[PullRequestRiskData], commits: list[CommitRiskData]
) -> list[RiskEvidence]:
    if pull_requests:
        return [
            RiskEvidence(
                label=f"PR #{pr.number}",
                detail=(
                    f"{pr.changed_files or 0} files · +{pr.additions or 0}/-{pr.deletions or 0}"
                    f" · {pr.review_comments or 0} review comments"
                ),
                url=pr.url or None,
                pr_summary=pr.title or None,
                pr_number=pr.number,
            )
            for pr in pull_requests[:MAX_EVIDENCE]
        ]
    return [
        RiskEvidence(
            label=f"Commit {commit.sha[:7]}",
            detail=f"{commit.changed_files or 0} files · +{commit.additions or 0}/-{commit.deletions or 0}",
            url=commit.url or None,
            pr_summary=commit.message or None,
        )
        for commit in commits[:MAX_EVIDENCE]
    ]


def build_issue_summary(body: str | None) -> str:
    """First two non-empty lines of the issue body, at most 320 characters."""
    normalized = (body or "").replace("\r", "")
    lines = [line.strip() for line in normalized.split("\n") if line.strip()]
    summary = (" ".join(lines[:2]) or normalized[:ISSUE_SUMMARY_LIMIT]).strip()
    if len(summary) > ISSUE_SUMMARY_LIMIT:
        return summary[: ISSUE_SUMMARY_LIMIT - 3] + "..."
    return summary


def build_change_summary(
    metrics: RiskMetrics, evidence: list[RiskEvidence], file_changes: list[RiskFileChange]
) -> str:
    parts: list[str] = []
    if metrics.pr_count > 0:
        parts.append(f"{metrics.pr_count} PR{'' if metrics.pr_count == 1 else 's'} merged")
    if metrics.direct_commit_count > 0:
        count = metrics.direct_commit_count
        parts.append(f"{count} direct commit{'' if count == 1 else 's'}")
    if metrics.files_touched > 0:
        parts.append(
            f"{metrics.files_touched} files touched (+{metrics.total_additions}/-{metrics.total_deletions})"
        )
    if file_changes:
        parts.append(f"Focus areas: {', '.join(f.path for f in file_changes[:3])}")
    headline = next((item.pr_summary for item in evidence if item.pr_summary), None)
    if headline:
        parts.append(f"Recent work: {headline}")
    elif evidence and evidence[0].detail:
        parts.append(f"Recent work: {evidence[0].detail}")
    return ". ".join(parts)
