"""Keyword backfill: refresh keywords on stored profiles with Claude.

Mode "missing" covers closed issues whose profile has no keywords yet; mode
"all" re-extracts for every stored profile. A run stops cleanly once the token
budget is spent. When extraction fails for an issue, heuristic keywords are
stored instead so the profile is never left without coverage.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace

from issuerisk.engine.models import RiskProfile, utcnow
from issuerisk.engine.scheduler import KeywordSource
from issuerisk.extraction.coverage import ensure_keyword_coverage
from issuerisk.extraction.models import BackfillError, BackfillProgress, KeywordContext
from issuerisk.github.fetcher import IssueDetail, RiskDataSource
from issuerisk.storage.repository import RiskStore
from issuerisk.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

DEFAULT_MISSING_BATCH_SIZE = 50
DEFAULT_DELAY = 0.5  # seconds between extraction calls
DEFAULT_MAX_TOKENS_PER_RUN = 200_000


class KeywordBackfill:
    def __init__(
        self,
        store: RiskStore,
        github: RiskDataSource,
        extractor: KeywordSource,
        telemetry: TelemetrySink,
    ) -> None:
        self._store = store
        self._github = github
        self._extractor = extractor
        self._telemetry = telemetry
        self._cancelled = False
        self._progress: BackfillProgress | None = None

    def backfill_keywords(
        self,
        repository: str,
        batch_size: int | None = None,
        delay: float = DEFAULT_DELAY,
        max_tokens_per_run: int = DEFAULT_MAX_TOKENS_PER_RUN,
        mode: str = "missing",
        on_progress: Callable[[BackfillProgress], None] | None = None,
    ) -> BackfillProgress:
        if mode not in ("missing", "all"):
            raise ValueError(f"Unknown backfill mode: {mode}")
        self._cancelled = False
        self._store.initialize()

        if mode == "all":
            profiles = self._store.get_all_profiles(repository)
            if batch_size and batch_size > 0:
                profiles = profiles[:batch_size]
        else:
            limit = batch_size if batch_size and batch_size > 0 else DEFAULT_MISSING_BATCH_SIZE
            profiles = self._store.get_closed_issues_without_keywords(repository, limit)

        progress = BackfillProgress(
            total_issues=len(profiles), started_at=utcnow().isoformat(), mode=mode
        )
        self._progress = progress

        def emit() -> None:
            if on_progress:
                on_progress(replace(progress, errors=list(progress.errors)))

        emit()
        logger.info(f"Backfilling keywords for {len(profiles)} issues in {repository} (mode={mode})")
        self._telemetry.track_event(
            "keywords.backfillStarted",
            {"repository": repository, "totalIssues": str(progress.total_issues), "mode": mode},
        )

        for profile in profiles:
            if self._cancelled:
                progress.status = "cancelled"
                break
            if progress.tokens_used >= max_tokens_per_run:
                remaining = progress.total_issues - progress.processed_issues
                logger.info(f"Token budget reached after {progress.tokens_used} tokens, {remaining} issues left")
                self._telemetry.track_event(
                    "keywords.backfillTokenLimitReached",
                    {
                        "repository": repository,
                        "tokensUsed": str(progress.tokens_used),
                        "remaining": str(remaining),
                        "mode": mode,
                    },
                )
                break

            progress.current_issue = profile.issue_number
            emit()
            self._process_profile(repository, profile, progress, delay)
            progress.processed_issues += 1
            emit()

        if progress.status == "running":
            progress.status = "completed"
        progress.completed_at = utcnow().isoformat()
        progress.current_issue = None
        emit()

        logger.info(
            f"Keyword backfill {progress.status}: {progress.success_count} updated, "
            f"{progress.failure_count} failed, {progress.skipped_count} skipped"
        )
        self._telemetry.track_event(
            "keywords.backfillCompleted",
            {
                "repository": repository,
                "status": progress.status,
                "successCount": str(progress.success_count),
                "failureCount": str(progress.failure_count),
                "mode": mode,
            },
            {"tokensUsed": float(progress.tokens_used)},
        )
        return progress

    def cancel(self) -> None:
        """Stop after the issue currently being processed."""
        self._cancelled = True

    def get_progress(self) -> BackfillProgress | None:
        return replace(self._progress) if self._progress else None

    def _process_profile(
        self, repository: str, profile: RiskProfile, progress: BackfillProgress, delay: float
    ) -> None:
        issue: IssueDetail | None = None
        try:
            issue = self._github.get_issue_details(repository, profile.issue_number)
            if issue.state != "closed":
                progress.skipped_count += 1
                return

            result = self._extractor.extract_keywords(issue.title, issue.body, issue.number)
            profile.keywords = ensure_keyword_coverage(result.keywords, build_keyword_context(profile, issue))
            profile.issue_state = issue.state
            self._store.save_profile(profile)
            progress.success_count += 1
            progress.tokens_used += result.tokens_used

            if delay > 0:
                time.sleep(delay)
        except Exception as e:
            logger.warning(f"Keyword backfill failed for {repository}#{profile.issue_number}: {e}")
            progress.failure_count += 1
            progress.errors.append(BackfillError(issue_number=profile.issue_number, message=str(e)))
            self._telemetry.track_event(
                "keywords.backfillIssueFailed",
                {"repository": repository, "issue": str(profile.issue_number), "message": str(e)},
            )
            profile.keywords = ensure_keyword_coverage(None, build_keyword_context(profile, issue))
            self._store.save_profile(profile)


def build_keyword_context(profile: RiskProfile, issue: IssueDetail | None = None) -> KeywordContext:
    """Keyword context from a stored profile, refreshed with live issue data when available."""
    labels = list(dict.fromkeys([*profile.issue_labels, *(issue.labels if issue else [])]))
    return KeywordContext(
        issue_title=issue.title if issue else profile.issue_title,
        issue_body=issue.body if issue else profile.issue_summary,
        labels=[label for label in labels if label],
        evidence_summaries=[item.pr_summary or item.detail or item.label for item in profile.evidence],
        file_paths=[change.path for change in profile.file_changes],
        change_summary=profile.change_summary,
        repository=profile.repository,
    )
