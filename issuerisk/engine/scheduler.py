"""Hydration scheduler: decides which issues need fresh risk data and computes it.

Issues move through pending -> ready | skipped | error. Work is queued in a
single deque and drained by one consumer task, one issue at a time, with a
fixed pause between issues to smooth request bursts against GitHub. The
blocking collaborators (PyGithub, Anthropic) run in worker threads; the store,
cache and event bus are only touched from the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from issuerisk.engine.aggregation import collect_file_changes
from issuerisk.engine.cache import RiskCache
from issuerisk.engine.comment import (
    ParsedRiskComment,
    find_latest_risk_comment,
    parse_risk_comment,
    render_risk_comment,
)
from issuerisk.engine.events import EventBus, Listener, Subscription
from issuerisk.engine.models import (
    KeywordCoverage,
    RiskProfile,
    RiskSummary,
    RiskTask,
    RiskUpdateEvent,
    parse_timestamp,
    utcnow,
)
from issuerisk.engine.scoring import (
    build_change_summary,
    build_evidence,
    build_issue_summary,
    calculate_risk_score,
    compute_metrics,
    identify_drivers,
    score_to_level,
)
from issuerisk.extraction.coverage import ensure_keyword_coverage
from issuerisk.extraction.models import KeywordContext, KeywordExtractionResult
from issuerisk.github.fetcher import IssueDetail, IssueRiskSnapshot, IssueSummary, RiskDataSource
from issuerisk.storage.repository import RiskStore
from issuerisk.telemetry import TelemetrySink

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(hours=6)
DEFAULT_HYDRATION_DELAY = 0.75  # seconds between queued issues
NO_HISTORY_MESSAGE = (
    "No linked pull requests or commits found. Risk analysis requires recent change history."
)
LABEL_FILTER_MESSAGE = "Filtered by label preferences."


class HydrationTimeoutError(Exception):
    """Raised when the hydration queue does not drain within the allotted time."""


class RiskSettings(Protocol):
    def get_lookback_days(self) -> int: ...

    def get_label_filters(self) -> list[str]: ...

    def should_publish_comments(self) -> bool: ...


class KeywordSource(Protocol):
    def extract_keywords(
        self, title: str, body: str, issue_number: int | None = None
    ) -> KeywordExtractionResult: ...


class RiskIntelligenceService:
    """Keeps risk profiles for a repository's issues computed and fresh.

    Usage (inside a running event loop):
        service = RiskIntelligenceService(store, fetcher, config, EventLog())
        summaries = await service.prime_issues("owner/repo", issues)
        await service.wait_for_idle()
    """

    def __init__(
        self,
        store: RiskStore,
        github: RiskDataSource,
        settings: RiskSettings,
        telemetry: TelemetrySink,
        keyword_extractor: KeywordSource | None = None,
        *,
        cache: RiskCache | None = None,
        events: EventBus | None = None,
        hydration_delay: float = DEFAULT_HYDRATION_DELAY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._github = github
        self._settings = settings
        self._telemetry = telemetry
        self._keyword_extractor = keyword_extractor
        self._cache = cache or RiskCache()
        self._events = events or EventBus()
        self._hydration_delay = hydration_delay
        self._clock = clock

        self._queue: deque[RiskTask] = deque()
        self._queued_keys: set[str] = set()
        self._worker: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._disposed = False

    @property
    def cache(self) -> RiskCache:
        return self._cache

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def prime_issues(self, repository: str, issues: list[IssueSummary]) -> dict[int, RiskSummary]:
        """Return an immediate summary per issue and queue the ones needing fresh data."""
        if self._disposed:
            return {}
        lookback_days = self._settings.get_lookback_days()
        label_filters = self._settings.get_label_filters()
        now = self._clock()

        self._store.initialize()
        unique = dedupe_issues(issues)
        stored = self._store.get_profiles(repository, [issue.number for issue in unique])
        profiles_by_number = {profile.issue_number: profile for profile in stored}

        summaries: dict[int, RiskSummary] = {}
        for issue in unique:
            profile = profiles_by_number.get(issue.number)
            skip_reason = should_skip(issue, lookback_days, label_filters, now)
            if skip_reason:
                summary = RiskSummary(status="skipped", message=skip_reason)
                hydrate = False
            elif profile is None:
                summary = RiskSummary.pending()
                hydrate = True
            else:
                stale = is_stale(issue, profile, lookback_days, label_filters, now)
                summary = RiskSummary.from_profile(profile, stale)
                self._cache.put_profile(profile)
                hydrate = stale

            summaries[issue.number] = summary
            self._cache.put_summary(repository, issue.number, summary)
            if hydrate:
                self._enqueue(RiskTask(
                    repository=repository,
                    issue_number=issue.number,
                    lookback_days=lookback_days,
                    label_filters=list(label_filters),
                    updated_at=issue.updated_at,
                ))

        self._ensure_worker(repository)
        return summaries

    def queue_hydration(self, repository: str, issues: list[IssueSummary], force: bool = False) -> None:
        """Queue issues for recomputation regardless of staleness.

        Must be called from the event loop. With force=True a new comment is
        posted instead of editing the existing one.
        """
        if not issues:
            return
        lookback_days = self._settings.get_lookback_days()
        label_filters = self._settings.get_label_filters()
        for issue in dedupe_issues(issues):
            self._set_summary(repository, issue.number, RiskSummary.pending())
            self._enqueue(RiskTask(
                repository=repository,
                issue_number=issue.number,
                lookback_days=lookback_days,
                label_filters=list(label_filters),
                updated_at=issue.updated_at,
                force=force,
            ))
        self._ensure_worker(repository)

    def get_summary(self, repository: str, issue_number: int) -> RiskSummary | None:
        return self._cache.get_summary(repository, issue_number)

    def get_profile(self, repository: str, issue_number: int) -> RiskProfile | None:
        cached = self._cache.get_profile(repository, issue_number)
        if cached:
            return cached
        if self._disposed:
            return None
        stored = self._store.get_profile(repository, issue_number)
        if stored:
            self._cache.put_profile(stored)
        return stored

    def get_keyword_coverage(self, repository: str) -> KeywordCoverage:
        if self._disposed:
            return KeywordCoverage(total=0, with_keywords=0, coverage_pct=0.0)
        return self._store.get_keyword_coverage(repository)

    def get_profile_count(self, repository: str) -> int:
        return self.get_keyword_coverage(repository).total

    def find_issues_missing_profiles(self, repository: str, issues: list[IssueSummary]) -> list[IssueSummary]:
        if self._disposed or not issues:
            return []
        unique = dedupe_issues(issues)
        existing = {p.issue_number for p in self._store.get_profiles(repository, [i.number for i in unique])}
        return [issue for issue in unique if issue.number not in existing]

    async def hydrate_profiles_from_github(
        self, repository: str, issues: list[IssueSummary], limit: int | None = None
    ) -> int:
        """Rebuild missing local profiles by parsing the risk comments on GitHub.

        Nothing is recomputed: an issue without a parseable risk comment is
        left alone. Returns the number of profiles restored.
        """
        if self._disposed or not issues:
            return 0
        unique = dedupe_issues(issues)
        if limit is not None and limit > 0:
            unique = unique[:limit]
        existing = {p.issue_number for p in self._store.get_profiles(repository, [i.number for i in unique])}

        hydrated = 0
        for issue in unique:
            if issue.number in existing:
                continue
            properties = {"repository": repository, "issue": str(issue.number)}
            try:
                detail = await asyncio.to_thread(self._github.get_issue_details, repository, issue.number)
                if self._disposed:
                    break
                comment = find_latest_risk_comment(detail.comments)
                if comment is None:
                    continue
                parsed = parse_risk_comment(comment.body)
                if parsed is None:
                    logger.warning(f"Ignoring unparseable risk comment on {repository}#{issue.number}")
                    self._telemetry.track_event("risk.hydrate.parseSkipped", properties)
                    continue

                profile = self._profile_from_comment(repository, detail, parsed, comment.id)
                self._store.save_profile(profile)
                self._cache.put_profile(profile)
                self._set_summary(repository, issue.number, RiskSummary.from_profile(profile, False), profile)
                hydrated += 1
                self._telemetry.track_event("risk.hydrate.saved", properties)
            except Exception as e:
                logger.warning(f"Could not restore risk profile for {repository}#{issue.number}: {e}")
                self._telemetry.track_event("risk.hydrate.failed", {**properties, "message": str(e)})

        logger.info(f"Restored {hydrated} risk profiles for {repository} from GitHub comments")
        return hydrated

    def subscribe(self, listener: Listener) -> Subscription:
        return self._events.subscribe(listener)

    async def wait_for_idle(self, timeout: float = 10.0) -> None:
        if self._disposed or self._idle.is_set():
            return
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise HydrationTimeoutError(
                f"Timed out after {timeout}s waiting for risk hydration queue."
            ) from e

    def clear_cache(self) -> None:
        self._cache.clear()

    def dispose(self) -> None:
        """Drop queued work, detach listeners and close the store.

        A task already talking to GitHub is not cancelled; its result is
        discarded when it returns.
        """
        if self._disposed:
            return
        self._disposed = True
        self._queue.clear()
        self._queued_keys.clear()
        self._events.clear()
        self._store.dispose()
        self._idle.set()

    # Queue

    def _enqueue(self, task: RiskTask) -> None:
        if self._disposed:
            return
        key = _task_key(task.repository, task.issue_number)
        if key in self._queued_keys:
            if task.force:
                for queued in self._queue:
                    if _task_key(queued.repository, queued.issue_number) == key:
                        queued.force = True
            return
        self._queue.append(task)
        self._queued_keys.add(key)

    def _ensure_worker(self, repository: str) -> None:
        if self._disposed or not self._queue:
            return
        if self._worker is not None and not self._worker.done():
            return
        self._idle.clear()
        self._worker = asyncio.get_running_loop().create_task(self._process_queue())
        self._worker.add_done_callback(lambda worker: self._on_worker_done(worker, repository))

    def _on_worker_done(self, worker: asyncio.Task, repository: str) -> None:
        if worker.cancelled():
            return
        error = worker.exception()
        if error is not None:
            logger.error(f"Risk hydration queue stopped for {repository}: {error}")
            self._telemetry.track_event(
                "risk.queue.processFailed", {"repository": repository, "message": str(error)}
            )

    async def _process_queue(self) -> None:
        try:
            while not self._disposed and self._queue:
                task = self._queue.popleft()
                self._queued_keys.discard(_task_key(task.repository, task.issue_number))
                await self._run_task(task)
                if self._queue and not self._disposed:
                    await asyncio.sleep(self._hydration_delay)
        finally:
            self._worker = None
            self._idle.set()

    # Task processing

    async def _run_task(self, task: RiskTask) -> None:
        if self._disposed:
            return
        repository, number = task.repository, task.issue_number
        properties = {"repository": repository, "issue": str(number)}
        self._set_summary(repository, number, RiskSummary.pending())

        try:
            snapshot = await asyncio.to_thread(self._github.get_issue_risk_snapshot, repository, number)
            if self._disposed:
                return
            previous = self._store.get_profile(repository, number)
            if not snapshot.pull_requests and not snapshot.commits:
                logger.info(f"No change history for {repository}#{number}, skipping")
                self._set_summary(repository, number, RiskSummary(status="skipped", message=NO_HISTORY_MESSAGE))
                self._telemetry.track_event("risk.skippedNoHistory", properties)
                return

            detail = await asyncio.to_thread(self._github.get_issue_details, repository, number)
            if self._disposed:
                return
            existing_comment = find_latest_risk_comment(detail.comments)
            parsed = parse_risk_comment(existing_comment.body) if existing_comment else None

            comment_id = None
            if not task.force:
                if previous is not None and previous.comment_id is not None:
                    comment_id = previous.comment_id
                elif existing_comment is not None:
                    comment_id = existing_comment.id

            profile = await self._build_profile(
                task,
                snapshot,
                detail,
                previous=previous,
                parsed_comment=parsed,
                comment_id=comment_id,
                allow_keyword_extraction=previous is None and existing_comment is None,
            )
            if self._disposed:
                return

            if self._settings.should_publish_comments():
                await self._publish_comment(profile)
                if self._disposed:
                    return

            self._store.save_profile(profile)
            self._cache.put_profile(profile)
            summary = RiskSummary.from_profile(profile, False)
            self._set_summary(repository, number, summary, profile)
            logger.info(
                f"Risk for {repository}#{number}: {profile.risk_level} ({profile.risk_score:g})"
            )
            self._telemetry.track_event(
                "risk.hydrationComplete",
                {**properties, "level": profile.risk_level},
                {"riskScore": float(profile.risk_score)} if profile.risk_score else None,
            )
        except Exception as e:
            if self._disposed:
                return
            logger.error(f"Risk hydration failed for {repository}#{number}: {e}")
            self._set_summary(repository, number, RiskSummary(status="error", message=str(e)))
            self._telemetry.track_event("risk.hydrationFailed", {**properties, "message": str(e)})

    async def _build_profile(
        self,
        task: RiskTask,
        snapshot: IssueRiskSnapshot,
        issue: IssueDetail,
        *,
        previous: RiskProfile | None,
        parsed_comment: ParsedRiskComment | None,
        comment_id: int | None,
        allow_keyword_extraction: bool,
    ) -> RiskProfile:
        pull_requests = snapshot.pull_requests
        commits = snapshot.commits
        metrics = compute_metrics(pull_requests, commits)
        risk_score = calculate_risk_score(metrics)
        evidence = build_evidence(pull_requests, commits)
        file_changes = await asyncio.to_thread(
            collect_file_changes, self._github, task.repository, pull_requests, commits, self._telemetry
        )
        change_summary = build_change_summary(metrics, evidence, file_changes)
        context = KeywordContext(
            issue_title=issue.title,
            issue_body=issue.body,
            labels=list(issue.labels),
            evidence_summaries=[item.pr_summary or item.detail or item.label for item in evidence],
            file_paths=[change.path for change in file_changes],
            change_summary=change_summary,
            repository=task.repository,
        )

        keywords = previous.keywords if previous and previous.keywords else None
        if keywords is None and parsed_comment is not None:
            keywords = parsed_comment.keywords
        if self._keyword_extractor is not None and allow_keyword_extraction:
            extracted = await self._try_extract_keywords(task, issue, context)
            if extracted:
                keywords = extracted
        covered = ensure_keyword_coverage(keywords, context)

        return RiskProfile(
            repository=task.repository,
            issue_number=task.issue_number,
            risk_level=score_to_level(risk_score),
            risk_score=risk_score,
            calculated_at=self._clock().isoformat(),
            lookback_days=task.lookback_days,
            label_filters=list(task.label_filters),
            metrics=metrics,
            evidence=evidence,
            drivers=identify_drivers(metrics),
            issue_title=issue.title,
            issue_summary=build_issue_summary(issue.body),
            issue_labels=list(issue.labels),
            issue_state=issue.state,
            change_summary=change_summary,
            file_changes=file_changes,
            keywords=covered or None,
            comment_id=comment_id,
        )

    async def _try_extract_keywords(
        self, task: RiskTask, issue: IssueDetail, context: KeywordContext
    ) -> list[str] | None:
        try:
            result = await asyncio.to_thread(
                self._keyword_extractor.extract_keywords, issue.title, issue.body, task.issue_number
            )
        except Exception as e:
            logger.warning(
                f"Keyword extraction failed for {task.repository}#{task.issue_number}, "
                f"using heuristics: {e}"
            )
            self._telemetry.track_event(
                "risk.keywordExtractionFailed",
                {"repository": task.repository, "issue": str(task.issue_number), "message": str(e)},
            )
            return None
        return ensure_keyword_coverage(result.keywords, context)

    async def _publish_comment(self, profile: RiskProfile) -> None:
        """Create or update the risk comment; failures leave the profile unpublished."""
        try:
            posted_id = await asyncio.to_thread(
                self._github.upsert_issue_comment,
                profile.repository,
                profile.issue_number,
                render_risk_comment(profile),
                profile.comment_id,
            )
        except Exception as e:
            logger.warning(
                f"Could not publish risk comment on {profile.repository}#{profile.issue_number}: {e}"
            )
            self._telemetry.track_event(
                "risk.commentFailed",
                {"repository": profile.repository, "issue": str(profile.issue_number), "message": str(e)},
            )
            return
        if posted_id:
            profile.comment_id = posted_id

    def _profile_from_comment(
        self, repository: str, detail: IssueDetail, parsed: ParsedRiskComment, comment_id: int
    ) -> RiskProfile:
        return RiskProfile(
            repository=repository,
            issue_number=detail.number,
            risk_level=parsed.risk_level,
            risk_score=parsed.risk_score,
            calculated_at=parsed.calculated_at or self._clock().isoformat(),
            lookback_days=parsed.lookback_days or self._settings.get_lookback_days(),
            label_filters=self._settings.get_label_filters(),
            metrics=parsed.metrics,
            evidence=parsed.evidence,
            drivers=parsed.drivers,
            issue_title=detail.title,
            issue_summary=build_issue_summary(detail.body),
            issue_labels=list(detail.labels),
            issue_state=detail.state,
            keywords=parsed.keywords,
            comment_id=comment_id,
        )

    def _set_summary(
        self,
        repository: str,
        issue_number: int,
        summary: RiskSummary,
        profile: RiskProfile | None = None,
    ) -> None:
        self._cache.put_summary(repository, issue_number, summary)
        self._events.publish(RiskUpdateEvent(repository, issue_number, summary, profile))


def should_skip(
    issue: IssueSummary, lookback_days: int, label_filters: list[str], now: datetime
) -> str | None:
    """Reason an open issue is excluded by configuration, or None.

    Closed issues are never skipped: their history is complete.
    """
    if issue.state == "closed":
        return None
    updated_at = parse_timestamp(issue.updated_at)
    if updated_at is not None and now - updated_at > timedelta(days=lookback_days):
        return f"Outside lookback window ({lookback_days}d)."
    if label_filters:
        labels = [label.lower() for label in issue.labels]
        if not any(wanted in label for wanted in label_filters for label in labels):
            return LABEL_FILTER_MESSAGE
    return None


def is_stale(
    issue: IssueSummary,
    profile: RiskProfile,
    lookback_days: int,
    label_filters: list[str],
    now: datetime,
) -> bool:
    if profile.lookback_days != lookback_days:
        return True
    if not same_filters(profile.label_filters, label_filters):
        return True
    calculated_at = parse_timestamp(profile.calculated_at)
    if calculated_at is None:
        return True
    updated_at = parse_timestamp(issue.updated_at)
    if updated_at is not None and updated_at > calculated_at:
        return True
    # Closed issues don't change again
    if issue.state == "closed":
        return False
    return now - calculated_at > CACHE_TTL


def same_filters(a: list[str], b: list[str]) -> bool:
    if len(a) != len(b):
        return False
    return sorted(item.lower() for item in a) == sorted(item.lower() for item in b)


def dedupe_issues(issues: list[IssueSummary]) -> list[IssueSummary]:
    """One entry per issue number, keeping the most recently updated; newest first."""
    by_number: dict[int, IssueSummary] = {}
    for issue in issues:
        existing = by_number.get(issue.number)
        if existing is None or _updated_epoch(issue) > _updated_epoch(existing):
            by_number[issue.number] = issue
    return sorted(by_number.values(), key=_updated_epoch, reverse=True)


def _updated_epoch(issue: IssueSummary) -> float:
    parsed = parse_timestamp(issue.updated_at)
    return parsed.timestamp() if parsed else 0.0


def _task_key(repository: str, issue_number: int) -> str:
    return f"{repository.lower()}#{issue_number}"
