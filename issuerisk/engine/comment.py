"""Markdown codec for the risk comment mirrored onto each GitHub issue.

The comment doubles as a backup of the profile: if the local database is lost,
profiles are rebuilt by parsing these comments. Renderer and parser therefore
share one grammar, versioned through the sentinel tag on the first line:

    <!-- issuerisk:risk-intelligence v1 -->
    ### Risk Intelligence
    **High risk** · Score 90

    _Last updated: 2026-01-31 14:05 UTC_

    **Key metrics:**
    - 2 linked pull requests
    - 0 direct commits
    - 30 files touched
    - 1200 lines changed
    - 26 review friction signals

    **Top drivers:**
    - 2 pull requests were required for similar work.

    **Evidence:**
    - [PR #10](https://github.com/o/r/pull/10) — 30 files · +800/-200 · 12 review comments

    **Keywords:**
    - auth-session

    _Analyzed 180 days of history_

A comment carrying the sentinel but not the header line is not ours to trust
and parses to None; no partial profile is ever synthesized from it.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from issuerisk.engine.models import RiskEvidence, RiskMetrics, RiskProfile, parse_timestamp
from issuerisk.github.fetcher import IssueComment

GRAMMAR_VERSION = 1
COMMENT_TAG_PREFIX = "<!-- issuerisk:risk-intelligence"
COMMENT_TAG = f"{COMMENT_TAG_PREFIX} v{GRAMMAR_VERSION} -->"
COMMENT_HEADING = "### Risk Intelligence"
NO_DRIVERS_LINE = "No significant risk drivers identified."
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M UTC"

HEADER_PATTERN = re.compile(
    r"\*\*(low|medium|high)\s+risk\*\*\s*·\s*Score\s+([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE
)
LAST_UPDATED_PATTERN = re.compile(r"_Last updated:\s*([^_]+)_", re.IGNORECASE)
LOOKBACK_PATTERN = re.compile(r"_Analyzed\s+([0-9]+)\s+days of history_", re.IGNORECASE)
METRIC_PATTERNS: dict[str, re.Pattern[str]] = {
    "pr_count": re.compile(r"^-\s*([0-9]+)\s+linked pull requests?$", re.IGNORECASE | re.MULTILINE),
    "direct_commit_count": re.compile(r"^-\s*([0-9]+)\s+direct commits?$", re.IGNORECASE | re.MULTILINE),
    "files_touched": re.compile(r"^-\s*([0-9]+)\s+files?\s+touched$", re.IGNORECASE | re.MULTILINE),
    "change_volume": re.compile(r"^-\s*([0-9]+)\s+lines?\s+changed$", re.IGNORECASE | re.MULTILINE),
    "review_comment_count": re.compile(
        r"^-\s*([0-9]+)\s+review friction signals?$", re.IGNORECASE | re.MULTILINE
    ),
}
LINK_EVIDENCE_PATTERN = re.compile(r"^\[(.+?)\]\((.+?)\)(?:\s*—\s*(.+))?$")
PLAIN_EVIDENCE_PATTERN = re.compile(r"^([^—]+?)(?:\s*—\s*(.+))?$")
PR_NUMBER_PATTERN = re.compile(r"PR\s+#([0-9]+)", re.IGNORECASE)


@dataclass
class ParsedRiskComment:
    risk_level: str
    risk_score: float
    metrics: RiskMetrics
    evidence: list[RiskEvidence] = field(default_factory=list)
    drivers: list[str] = field(default_factory=list)
    keywords: list[str] | None = None
    lookback_days: int | None = None
    calculated_at: str | None = None


def is_risk_comment(body: str | None) -> bool:
    return isinstance(body, str) and COMMENT_TAG_PREFIX in body


def render_risk_comment(profile: RiskProfile) -> str:
    m = profile.metrics
    level_label = profile.risk_level.capitalize()

    metric_lines = [
        f"- {m.pr_count} linked pull request{_plural(m.pr_count)}",
        f"- {m.direct_commit_count} direct commit{_plural(m.direct_commit_count)}",
        f"- {m.files_touched} file{_plural(m.files_touched)} touched",
        f"- {m.change_volume} line{_plural(m.change_volume)} changed",
        f"- {m.review_comment_count} review friction signal{_plural(m.review_comment_count)}",
    ]

    driver_lines = [f"- {driver}" for driver in profile.drivers] or [f"- {NO_DRIVERS_LINE}"]

    evidence_lines = []
    for item in profile.evidence[:5]:
        link = f"[{item.label}]({item.url})" if item.url else item.label
        detail = f" — {item.detail}" if item.detail else ""
        evidence_lines.append(f"- {link}{detail}")

    keyword_lines: list[str] = []
    unique_keywords = list(dict.fromkeys(k.strip() for k in profile.keywords or [] if k.strip()))
    if unique_keywords:
        keyword_lines.append("**Keywords:**")
        keyword_lines.extend(f"- {keyword}" for keyword in unique_keywords)

    return "\n".join([
        COMMENT_TAG,
        COMMENT_HEADING,
        f"**{level_label} risk** · Score {_round_half_up(profile.risk_score)}",
        "",
        f"_Last updated: {_format_timestamp(profile.calculated_at)}_",
        "",
        "**Key metrics:**",
        *metric_lines,
        "",
        "**Top drivers:**",
        *driver_lines,
        "",
        "**Evidence:**",
        *evidence_lines,
        "",
        *keyword_lines,
        "",
        f"_Analyzed {profile.lookback_days} days of history_",
    ])


def parse_risk_comment(body: str | None) -> ParsedRiskComment | None:
    if not is_risk_comment(body):
        return None
    normalized = body.replace("\r", "")
    header = HEADER_PATTERN.search(normalized)
    if not header:
        return None

    calculated_at = None
    updated = LAST_UPDATED_PATTERN.search(normalized)
    if updated:
        timestamp = _parse_rendered_timestamp(updated.group(1))
        if timestamp:
            calculated_at = timestamp.isoformat()
    lookback = LOOKBACK_PATTERN.search(normalized)

    metrics = RiskMetrics()
    for name, pattern in METRIC_PATTERNS.items():
        match = pattern.search(normalized)
        if match:
            setattr(metrics, name, int(match.group(1)))

    drivers: list[str] = []
    evidence: list[RiskEvidence] = []
    keywords: list[str] | None = None
    section = "none"  # none | drivers | evidence | keywords
    for line in (raw.strip() for raw in normalized.split("\n")):
        if not line:
            continue
        if section == "keywords":
            if line.startswith("- "):
                keyword = line[2:].strip()
                if keyword and keyword not in keywords:
                    keywords.append(keyword)
                continue
            section = "none"
        if line.startswith("**Top drivers:**"):
            section = "drivers"
        elif line.startswith("**Evidence:**"):
            section = "evidence"
        elif line.startswith("**Keywords:**"):
            inline = line[len("**Keywords:**"):].strip()
            if inline:
                keywords = [k.strip() for k in inline.split(",") if k.strip()]
                section = "none"
            else:
                keywords = keywords or []
                section = "keywords"
        elif line.startswith("**"):
            section = "none"
        elif section == "drivers" and line.startswith("- "):
            driver = line[2:].strip()
            if driver and driver != NO_DRIVERS_LINE:
                drivers.append(driver)
        elif section == "evidence" and line.startswith("- "):
            item = parse_evidence_line(line)
            if item:
                evidence.append(item)

    return ParsedRiskComment(
        risk_level=header.group(1).lower(),
        risk_score=float(header.group(2)),
        metrics=metrics,
        evidence=evidence,
        drivers=drivers,
        keywords=keywords or None,
        lookback_days=int(lookback.group(1)) if lookback else None,
        calculated_at=calculated_at,
    )


def parse_evidence_line(line: str) -> RiskEvidence | None:
    """Split "- [label](url) — detail" (link and detail optional) into evidence."""
    text = re.sub(r"^-\s*", "", line.strip())
    label = url = detail = None
    link = LINK_EVIDENCE_PATTERN.match(text)
    if link:
        label, url, detail = link.group(1), link.group(2), link.group(3)
    else:
        plain = PLAIN_EVIDENCE_PATTERN.match(text)
        if plain:
            label, detail = plain.group(1), plain.group(2)
    label = label.strip() if label else ""
    if not label:
        return None

    pr_number = None
    number = PR_NUMBER_PATTERN.search(label)
    if number:
        pr_number = int(number.group(1))
    return RiskEvidence(
        label=label,
        detail=detail.strip() if detail else None,
        url=url.strip() if url else None,
        pr_number=pr_number,
    )


def find_latest_risk_comment(comments: list[IssueComment]) -> IssueComment | None:
    """Newest sentinel-tagged comment by updated/created time, then highest id."""
    matches = [c for c in comments if is_risk_comment(c.body)]
    if not matches:
        return None

    def sort_key(comment: IssueComment) -> tuple[float, int]:
        stamp = parse_timestamp(comment.updated_at or comment.created_at)
        return (stamp.timestamp() if stamp else 0.0, comment.id or 0)

    return max(matches, key=sort_key)


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _format_timestamp(value: str) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        return "unknown"
    return parsed.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _parse_rendered_timestamp(value: str) -> datetime | None:
    text = value.strip()
    try:
        return datetime.strptime(text, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return parse_timestamp(text)
