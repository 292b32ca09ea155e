"""Tests for issuerisk.engine.comment — render and parse of the risk comment."""

from __future__ import annotations

from dataclasses import replace

from issuerisk.engine.comment import (
    COMMENT_HEADING,
    COMMENT_TAG,
    find_latest_risk_comment,
    is_risk_comment,
    parse_evidence_line,
    parse_risk_comment,
    render_risk_comment,
)
from issuerisk.engine.models import RiskEvidence, RiskMetrics, RiskProfile
from issuerisk.github.fetcher import IssueComment


class TestRenderRiskComment:
    def test_layout(self, sample_profile: RiskProfile):
        body = render_risk_comment(sample_profile)
        lines = body.split("\n")

        assert lines[0] == COMMENT_TAG
        assert lines[1] == COMMENT_HEADING
        assert lines[2] == "**High risk** · Score 90"
        assert "_Last updated: 2026-01-15 12:00 UTC_" in lines
        assert "- 2 linked pull requests" in lines
        assert "- 0 direct commits" in lines
        assert "- 30 files touched" in lines
        assert "- 1200 lines changed" in lines
        assert "- 26 review friction signals" in lines
        assert (
            "- [PR #10](https://github.com/acme/webapp/pull/10) — 20 files · +500/-100 · 10 review comments"
            in lines
        )
        assert "**Keywords:**" in lines
        assert lines[-1] == "_Analyzed 180 days of history_"

    def test_singular_metric_labels(self, sample_profile: RiskProfile):
        profile = replace(
            sample_profile,
            metrics=RiskMetrics(pr_count=1, direct_commit_count=1, files_touched=1, change_volume=1, review_comment_count=1),
        )
        body = render_risk_comment(profile)
        assert "- 1 linked pull request\n" in body
        assert "- 1 direct commit\n" in body
        assert "- 1 file touched\n" in body
        assert "- 1 line changed\n" in body
        assert "- 1 review friction signal\n" in body

    def test_score_rounds_half_up(self, sample_profile: RiskProfile):
        body = render_risk_comment(replace(sample_profile, risk_level="high", risk_score=72.5))
        assert "**High risk** · Score 73" in body

    def test_no_drivers_placeholder(self, sample_profile: RiskProfile):
        body = render_risk_comment(replace(sample_profile, drivers=[]))
        assert "- No significant risk drivers identified." in body

    def test_keywords_section_omitted_when_empty(self, sample_profile: RiskProfile):
        assert "**Keywords:**" not in render_risk_comment(replace(sample_profile, keywords=None))

    def test_evidence_capped_at_five(self, sample_profile: RiskProfile):
        evidence = [RiskEvidence(label=f"PR #{n}", url=f"https://x/{n}") for n in range(8)]
        body = render_risk_comment(replace(sample_profile, evidence=evidence))
        assert "PR #4" in body
        assert "PR #5" not in body

    def test_unparseable_timestamp(self, sample_profile: RiskProfile):
        body = render_risk_comment(replace(sample_profile, calculated_at="not a date"))
        assert "_Last updated: unknown_" in body


class TestParseRiskComment:
    def test_round_trip(self, sample_profile: RiskProfile):
        parsed = parse_risk_comment(render_risk_comment(sample_profile))

        assert parsed.risk_level == "high"
        assert parsed.risk_score == 90.0
        assert parsed.metrics.pr_count == 2
        assert parsed.metrics.direct_commit_count == 0
        assert parsed.metrics.files_touched == 30
        assert parsed.metrics.change_volume == 1200
        assert parsed.metrics.review_comment_count == 26
        assert parsed.drivers == sample_profile.drivers
        assert parsed.keywords == sample_profile.keywords
        assert parsed.lookback_days == 180
        assert parsed.calculated_at == "2026-01-15T12:00:00+00:00"
        assert [(e.label, e.url, e.detail, e.pr_number) for e in parsed.evidence] == [
            (e.label, e.url, e.detail, e.pr_number) for e in sample_profile.evidence
        ]

    def test_placeholder_driver_is_not_a_driver(self, sample_profile: RiskProfile):
        parsed = parse_risk_comment(render_risk_comment(replace(sample_profile, drivers=[])))
        assert parsed.drivers == []

    def test_requires_sentinel(self, sample_profile: RiskProfile):
        body = render_risk_comment(sample_profile).replace(COMMENT_TAG + "\n", "")
        assert parse_risk_comment(body) is None
        assert parse_risk_comment(None) is None

    def test_unknown_level_is_rejected(self):
        body = f"{COMMENT_TAG}\n{COMMENT_HEADING}\n**Critical risk** · Score 99\n"
        assert parse_risk_comment(body) is None

    def test_missing_header_is_rejected(self):
        assert parse_risk_comment(f"{COMMENT_TAG}\n{COMMENT_HEADING}\nSomething else entirely") is None

    def test_inline_keywords(self):
        body = "\n".join([
            COMMENT_TAG,
            "**Medium risk** · Score 45.5",
            "**Keywords:** redis, caching , ttl",
        ])
        parsed = parse_risk_comment(body)
        assert parsed.risk_level == "medium"
        assert parsed.risk_score == 45.5
        assert parsed.keywords == ["redis", "caching", "ttl"]

    def test_minimal_comment_defaults(self):
        parsed = parse_risk_comment(f"{COMMENT_TAG}\n**LOW RISK** · Score 10")
        assert parsed.risk_level == "low"
        assert parsed.metrics == RiskMetrics()
        assert parsed.keywords is None
        assert parsed.lookback_days is None
        assert parsed.calculated_at is None

    def test_windows_line_endings(self, sample_profile: RiskProfile):
        body = render_risk_comment(sample_profile).replace("\n", "\r\n")
        parsed = parse_risk_comment(body)
        assert parsed.metrics.files_touched == 30
        assert parsed.keywords == sample_profile.keywords

    def test_older_grammar_version_still_detected(self):
        body = "<!-- issuerisk:risk-intelligence v0 -->\n**High risk** · Score 80"
        assert is_risk_comment(body)
        assert parse_risk_comment(body).risk_score == 80.0


class TestParseEvidenceLine:
    def test_link_with_detail(self):
        item = parse_evidence_line("- [PR #12](https://github.com/o/r/pull/12) — 3 files · +10/-2")
        assert item == RiskEvidence(
            label="PR #12", detail="3 files · +10/-2", url="https://github.com/o/r/pull/12", pr_number=12
        )

    def test_plain_label_with_detail(self):
        item = parse_evidence_line("- Commit abc1234 — 4 files · +300/-50")
        assert item.label == "Commit abc1234"
        assert item.detail == "4 files · +300/-50"
        assert item.url is None
        assert item.pr_number is None

    def test_label_only(self):
        item = parse_evidence_line("- PR #5")
        assert item.label == "PR #5"
        assert item.detail is None
        assert item.pr_number == 5

    def test_empty_line(self):
        assert parse_evidence_line("- ") is None


class TestFindLatestRiskComment:
    def test_newest_tagged_comment_wins(self):
        comments = [
            IssueComment(id=1, body=f"{COMMENT_TAG}\nold", created_at="2026-01-01T00:00:00Z"),
            IssueComment(id=2, body="unrelated", created_at="2026-01-05T00:00:00Z"),
            IssueComment(
                id=3,
                body=f"{COMMENT_TAG}\nnew",
                created_at="2025-12-01T00:00:00Z",
                updated_at="2026-01-03T00:00:00Z",
            ),
        ]
        assert find_latest_risk_comment(comments).id == 3

    def test_ties_break_by_highest_id(self):
        comments = [
            IssueComment(id=5, body=COMMENT_TAG, created_at="2026-01-01T00:00:00Z"),
            IssueComment(id=9, body=COMMENT_TAG, created_at="2026-01-01T00:00:00Z"),
        ]
        assert find_latest_risk_comment(comments).id == 9

    def test_no_tagged_comments(self):
        assert find_latest_risk_comment([IssueComment(id=1, body="hello")]) is None
        assert find_latest_risk_comment([]) is None
