"""Fetches issue history (linked PRs, commits, comments) from GitHub.

Every PyGithub object is narrowed into one of the dataclasses below before it
leaves this module, so scoring and aggregation never see raw API payloads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from github.GithubException import GithubException, UnknownObjectException
from github.Commit import Commit
from github.Issue import Issue
from github.IssueComment import IssueComment as GhIssueComment
from github.PullRequest import PullRequest

from issuerisk.github.client import GitHubClient

logger = logging.getLogger(__name__)

MAX_ISSUE_COMMENTS = 100
MAX_LINKED_PULL_REQUESTS = 10
MAX_LINKED_COMMITS = 10
MAX_FILES_PER_SOURCE = 50


@dataclass
class IssueSummary:
    """Lightweight issue row used to prime the engine."""

    number: int
    title: str
    url: str
    state: str  # "open" | "closed"
    updated_at: str  # ISO format
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    milestone: str | None = None


@dataclass
class IssueComment:
    id: int
    body: str
    author: str = ""
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class IssueDetail:
    number: int
    title: str
    body: str
    url: str
    state: str
    labels: list[str] = field(default_factory=list)
    author: str = ""
    created_at: str | None = None
    updated_at: str | None = None
    comments: list[IssueComment] = field(default_factory=list)


@dataclass
class PullRequestRiskData:
    number: int
    title: str
    url: str
    state: str
    merged_at: str | None = None
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    commits: int = 0
    review_comments: int = 0
    comments: int = 0
    review_states: dict[str, int] = field(default_factory=dict)  # e.g. {"CHANGES_REQUESTED": 2}
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class CommitRiskData:
    sha: str
    message: str
    url: str
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    committed_at: str | None = None


@dataclass
class IssueRiskSnapshot:
    issue_number: int
    pull_requests: list[PullRequestRiskData] = field(default_factory=list)
    commits: list[CommitRiskData] = field(default_factory=list)


@dataclass
class FileStat:
    path: str
    additions: int = 0
    deletions: int = 0


@dataclass
class ChangeDetail:
    """File-level diff listing for one PR or commit."""

    files: list[FileStat] = field(default_factory=list)


class RiskDataSource(Protocol):
    """What the risk engine needs from the code-hosting platform."""

    def get_issue_risk_snapshot(self, repository: str, issue_number: int) -> IssueRiskSnapshot: ...

    def get_issue_details(self, repository: str, issue_number: int) -> IssueDetail: ...

    def get_pull_request_backfill_detail(self, repository: str, pull_number: int) -> ChangeDetail: ...

    def get_commit_backfill_detail(self, repository: str, sha: str) -> ChangeDetail: ...

    def upsert_issue_comment(
        self, repository: str, issue_number: int, body: str, comment_id: int | None = None
    ) -> int | None: ...


class RiskFetcher:
    """PyGithub-backed implementation of RiskDataSource."""

    def __init__(self, client: GitHubClient) -> None:
        self._client = client

    def list_issues(self, repository: str, state: str = "all", limit: int = 100) -> list[IssueSummary]:
        """List issues (not PRs) ordered by most recently updated."""
        repo = self._client.get_repo(repository)
        results: list[IssueSummary] = []
        for issue in repo.get_issues(state=state, sort="updated", direction="desc"):
            if len(results) >= limit:
                break
            if issue.pull_request is not None:
                continue
            results.append(issue_to_summary(issue))
        return results

    def get_issue_summary(self, repository: str, issue_number: int) -> IssueSummary:
        return issue_to_summary(self._client.get_repo(repository).get_issue(issue_number))

    def get_issue_risk_snapshot(self, repository: str, issue_number: int) -> IssueRiskSnapshot:
        """Collect the PRs and commits linked to an issue through its timeline."""
        repo = self._client.get_repo(repository)
        issue = repo.get_issue(issue_number)

        pr_numbers: list[int] = []
        shas: list[str] = []
        for event in issue.get_timeline():
            if event.event == "cross-referenced":
                number = _linked_pull_number(event, repository)
                if number is not None and number not in pr_numbers:
                    pr_numbers.append(number)
            elif event.event in ("referenced", "closed") and event.commit_id:
                if event.commit_id not in shas:
                    shas.append(event.commit_id)

        pull_requests: list[PullRequestRiskData] = []
        for number in pr_numbers[:MAX_LINKED_PULL_REQUESTS]:
            try:
                pr = repo.get_pull(number)
            except UnknownObjectException:
                continue
            if pr.state == "closed" and not pr.merged:
                continue  # abandoned PRs never changed the code
            pull_requests.append(pull_request_to_risk_data(pr))

        commits: list[CommitRiskData] = []
        for sha in shas[:MAX_LINKED_COMMITS]:
            try:
                commits.append(commit_to_risk_data(repo.get_commit(sha)))
            except UnknownObjectException:
                logger.warning(f"Commit {sha[:7]} referenced by #{issue_number} no longer exists")

        pull_requests.sort(key=lambda pr: pr.merged_at or pr.updated_at or "", reverse=True)
        commits.sort(key=lambda commit: commit.committed_at or "", reverse=True)
        return IssueRiskSnapshot(issue_number=issue_number, pull_requests=pull_requests, commits=commits)

    def get_issue_details(self, repository: str, issue_number: int) -> IssueDetail:
        repo = self._client.get_repo(repository)
        issue = repo.get_issue(issue_number)
        comments: list[IssueComment] = []
        try:
            for comment in issue.get_comments():
                if len(comments) >= MAX_ISSUE_COMMENTS:
                    break
                comments.append(comment_to_issue_comment(comment))
        except GithubException as e:
            logger.warning(f"Could not load comments for #{issue_number}: {e}")
        return issue_to_detail(issue, comments)

    def get_pull_request_backfill_detail(self, repository: str, pull_number: int) -> ChangeDetail:
        pr = self._client.get_repo(repository).get_pull(pull_number)
        files: list[FileStat] = []
        for item in pr.get_files():
            if len(files) >= MAX_FILES_PER_SOURCE:
                break
            files.append(FileStat(path=item.filename, additions=item.additions or 0, deletions=item.deletions or 0))
        return ChangeDetail(files=files)

    def get_commit_backfill_detail(self, repository: str, sha: str) -> ChangeDetail:
        commit = self._client.get_repo(repository).get_commit(sha)
        files = [
            FileStat(path=item.filename, additions=item.additions or 0, deletions=item.deletions or 0)
            for item in list(commit.files)[:MAX_FILES_PER_SOURCE]
        ]
        return ChangeDetail(files=files)

    def upsert_issue_comment(
        self, repository: str, issue_number: int, body: str, comment_id: int | None = None
    ) -> int | None:
        """Edit the comment in place when it still exists, otherwise post a new one."""
        issue = self._client.get_repo(repository).get_issue(issue_number)
        if comment_id:
            try:
                existing = issue.get_comment(comment_id)
                existing.edit(body)
                return existing.id
            except UnknownObjectException:
                logger.warning(f"Risk comment {comment_id} on #{issue_number} is gone, posting a new one")
        created = issue.create_comment(body)
        return created.id


def issue_to_summary(issue: Issue) -> IssueSummary:
    return IssueSummary(
        number=issue.number,
        title=issue.title or "",
        url=issue.html_url or "",
        state=issue.state or "open",
        updated_at=_iso(issue.updated_at) or "",
        labels=[label.name for label in issue.labels if label.name],
        assignees=[user.login for user in issue.assignees if user and user.login],
        milestone=issue.milestone.title if issue.milestone else None,
    )


def issue_to_detail(issue: Issue, comments: list[IssueComment]) -> IssueDetail:
    return IssueDetail(
        number=issue.number,
        title=issue.title or "",
        body=issue.body or "",
        url=issue.html_url or "",
        state=issue.state or "open",
        labels=[label.name for label in issue.labels if label.name],
        author=issue.user.login if issue.user else "",
        created_at=_iso(issue.created_at),
        updated_at=_iso(issue.updated_at),
        comments=comments,
    )


def comment_to_issue_comment(comment: GhIssueComment) -> IssueComment:
    return IssueComment(
        id=comment.id,
        body=comment.body or "",
        author=comment.user.login if comment.user else "",
        created_at=_iso(comment.created_at),
        updated_at=_iso(comment.updated_at),
    )


def pull_request_to_risk_data(pr: PullRequest) -> PullRequestRiskData:
    review_states: dict[str, int] = {}
    try:
        for review in pr.get_reviews():
            if review.state:
                review_states[review.state] = review_states.get(review.state, 0) + 1
    except GithubException as e:
        logger.warning(f"Could not load reviews for PR #{pr.number}: {e}")

    return PullRequestRiskData(
        number=pr.number,
        title=pr.title or "",
        url=pr.html_url or "",
        state=pr.state or "",
        merged_at=_iso(pr.merged_at),
        additions=pr.additions or 0,
        deletions=pr.deletions or 0,
        changed_files=pr.changed_files or 0,
        commits=pr.commits or 0,
        review_comments=pr.review_comments or 0,
        comments=pr.comments or 0,
        review_states=review_states,
        created_at=_iso(pr.created_at),
        updated_at=_iso(pr.updated_at),
    )


def commit_to_risk_data(commit: Commit) -> CommitRiskData:
    stats = commit.stats
    author = commit.commit.author
    return CommitRiskData(
        sha=commit.sha,
        message=(commit.commit.message or "").split("\n")[0],
        url=commit.html_url or "",
        additions=(stats.additions or 0) if stats else 0,
        deletions=(stats.deletions or 0) if stats else 0,
        changed_files=len(list(commit.files)),
        committed_at=_iso(author.date) if author else None,
    )


def _linked_pull_number(event, repository: str) -> int | None:
    """Return the PR number of a cross-reference from a PR in the same repository."""
    source = getattr(event, "source", None)
    linked = getattr(source, "issue", None) if source else None
    if linked is None or linked.pull_request is None:
        return None
    if f"/{repository.lower()}/pull/" not in (linked.html_url or "").lower():
        return None
    return linked.number


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
