"""In-memory summaries and profiles, keyed by lower-cased repository slug."""

from __future__ import annotations

from copy import deepcopy

from issuerisk.engine.models import RiskProfile, RiskSummary


class RiskCache:
    """Latest known summary and profile per issue.

    Owned by the scheduler, which is the only writer. Entries are deep-copied
    in both directions so callers never share nested lists with cached state.
    """

    def __init__(self) -> None:
        self._summaries: dict[str, dict[int, RiskSummary]] = {}
        self._profiles: dict[str, dict[int, RiskProfile]] = {}

    def get_summary(self, repository: str, issue_number: int) -> RiskSummary | None:
        return deepcopy(self._summaries.get(_key(repository), {}).get(issue_number))

    def put_summary(self, repository: str, issue_number: int, summary: RiskSummary) -> None:
        self._summaries.setdefault(_key(repository), {})[issue_number] = deepcopy(summary)

    def get_profile(self, repository: str, issue_number: int) -> RiskProfile | None:
        return deepcopy(self._profiles.get(_key(repository), {}).get(issue_number))

    def put_profile(self, profile: RiskProfile) -> None:
        self._profiles.setdefault(_key(profile.repository), {})[profile.issue_number] = deepcopy(profile)

    def clear(self, repository: str | None = None) -> None:
        if repository is None:
            self._summaries.clear()
            self._profiles.clear()
            return
        self._summaries.pop(_key(repository), None)
        self._profiles.pop(_key(repository), None)


def _key(repository: str) -> str:
    return repository.lower()
