"""Configuration loading for issuerisk.

Config sources (in priority order):
1. Explicit arguments passed to functions
2. Environment variables (ISSUERISK_GITHUB_TOKEN, etc.)
3. .env file in current directory
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DEFAULT_DB_PATH = Path("issuerisk.db")
DEFAULT_LOOKBACK_DAYS = 180
MIN_LOOKBACK_DAYS = 30
MAX_LOOKBACK_DAYS = 365

_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class Config:
    github_token: str = ""
    repo: str = ""  # "owner/repo"
    anthropic_api_key: str = ""
    db_path: Path = DEFAULT_DB_PATH
    lookback_days: int | None = None
    label_filters: list[str] = field(default_factory=list)
    publish_comments: bool | None = None

    @classmethod
    def load(cls) -> Config:
        return cls(
            github_token=os.getenv("ISSUERISK_GITHUB_TOKEN", ""),
            repo=os.getenv("ISSUERISK_REPO", ""),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            db_path=Path(os.getenv("ISSUERISK_DB_PATH", str(DEFAULT_DB_PATH))),
            lookback_days=_parse_int(os.getenv("ISSUERISK_LOOKBACK_DAYS")),
            label_filters=_split_list(os.getenv("ISSUERISK_LABEL_FILTERS", "")),
            publish_comments=_parse_bool(os.getenv("ISSUERISK_PUBLISH_COMMENTS")),
        )

    def validate(self) -> list[str]:
        """Return a list of missing config issues.

        The Anthropic key is optional: without it keywords come from heuristics.
        """
        issues = []
        if not self.github_token:
            issues.append("GitHub token not set (ISSUERISK_GITHUB_TOKEN)")
        if not self.repo:
            issues.append("Repository not set (ISSUERISK_REPO)")
        return issues

    def get_lookback_days(self) -> int:
        """Lookback window in days, clamped to 30-365 (180 when unset or invalid)."""
        configured = self.lookback_days
        if isinstance(configured, int) and not isinstance(configured, bool) and configured > 0:
            return min(MAX_LOOKBACK_DAYS, max(MIN_LOOKBACK_DAYS, configured))
        return DEFAULT_LOOKBACK_DAYS

    def get_label_filters(self) -> list[str]:
        return [label.strip().lower() for label in self.label_filters if label and label.strip()]

    def should_publish_comments(self) -> bool:
        return self.publish_comments is not False


def _parse_int(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def _parse_bool(value: str | None) -> bool | None:
    if value is None or not value.strip():
        return None
    return value.strip().lower() not in _FALSE_VALUES


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]
