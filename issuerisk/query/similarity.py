"""Related-issue lookup by keyword overlap (Jaccard similarity)."""

from __future__ import annotations

import logging

from issuerisk.engine.models import RiskProfile, SimilarIssue
from issuerisk.storage.repository import RiskStore

logger = logging.getLogger(__name__)


class SimilarityMatcher:
    """Ranks stored profiles of one repository against a set of keywords."""

    def __init__(self, store: RiskStore) -> None:
        self._store = store

    def find_similar(
        self,
        repository: str,
        keywords: list[str],
        exclude_issue_number: int | None = None,
        limit: int = 5,
    ) -> list[SimilarIssue]:
        """Return up to `limit` profiles sharing keywords, best overlap first.

        An empty keyword list returns nothing rather than matching everything.
        Ties are broken by risk score (descending) then issue number.
        """
        query = {keyword.strip().lower() for keyword in keywords if keyword and keyword.strip()}
        if not query or limit <= 0:
            return []

        scored: list[SimilarIssue] = []
        for profile in self._store.get_all_profiles(repository):
            if exclude_issue_number is not None and profile.issue_number == exclude_issue_number:
                continue
            if not profile.keywords:
                continue
            score, shared = jaccard_similarity(query, profile.keywords)
            if score <= 0:
                continue
            scored.append(_to_similar_issue(profile, score, shared))

        scored.sort(key=lambda item: (-item.overlap_score, -item.risk_score, item.issue_number))
        logger.debug(f"Found {len(scored)} keyword matches in {repository} for {sorted(query)}")
        return scored[:limit]


def jaccard_similarity(a: set[str] | list[str], b: set[str] | list[str]) -> tuple[float, list[str]]:
    """|A ∩ B| / |A ∪ B| over lower-cased sets, plus the shared keywords (sorted)."""
    left = {item.lower() for item in a}
    right = {item.lower() for item in b}
    union = left | right
    if not union:
        return 0.0, []
    shared = left & right
    return len(shared) / len(union), sorted(shared)


def _to_similar_issue(profile: RiskProfile, score: float, shared: list[str]) -> SimilarIssue:
    return SimilarIssue(
        repository=profile.repository,
        issue_number=profile.issue_number,
        risk_level=profile.risk_level,
        risk_score=profile.risk_score,
        keywords=list(profile.keywords or []),
        overlap_score=score,
        shared_keywords=shared,
        calculated_at=profile.calculated_at,
        issue_title=profile.issue_title,
        issue_summary=profile.issue_summary,
        issue_labels=list(profile.issue_labels),
    )
