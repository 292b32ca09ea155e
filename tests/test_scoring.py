"""Tests for issuerisk.engine.scoring."""

from __future__ import annotations

import pytest

from issuerisk.engine.models import RiskEvidence, RiskFileChange, RiskMetrics
from issuerisk.engine.scoring import (
    build_change_summary,
    build_evidence,
    build_issue_summary,
    calculate_risk_score,
    compute_metrics,
    identify_drivers,
    score_to_level,
)
from issuerisk.github.fetcher import CommitRiskData, PullRequestRiskData


class TestComputeMetrics:
    def test_sums_pull_requests(self, risky_pull_requests: list[PullRequestRiskData]):
        metrics = compute_metrics(risky_pull_requests, [])
        assert metrics.pr_count == 2
        assert metrics.files_touched == 30
        assert metrics.total_additions == 900
        assert metrics.total_deletions == 300
        assert metrics.change_volume == 1200
        assert metrics.pr_review_comment_count == 14
        assert metrics.pr_discussion_comment_count == 4
        assert metrics.pr_change_request_count == 2

    def test_change_requests_weigh_double(self, risky_pull_requests: list[PullRequestRiskData]):
        metrics = compute_metrics(risky_pull_requests, [])
        # 14 review comments + 4 discussion comments + 2 change requests * 2
        assert metrics.review_comment_count == 22

    def test_commits_ignored_when_prs_exist(
        self, risky_pull_requests: list[PullRequestRiskData], direct_commits: list[CommitRiskData]
    ):
        metrics = compute_metrics(risky_pull_requests, direct_commits)
        assert metrics.direct_commit_count == 0
        assert metrics.direct_commit_change_volume == 0
        assert metrics.change_volume == 1200

    def test_direct_commits_only(self, direct_commits: list[CommitRiskData]):
        metrics = compute_metrics([], direct_commits)
        assert metrics.pr_count == 0
        assert metrics.direct_commit_count == 2
        assert metrics.files_touched == 5
        assert metrics.direct_commit_additions == 320
        assert metrics.direct_commit_deletions == 55
        assert metrics.direct_commit_change_volume == 375
        assert metrics.change_volume == 375
        assert metrics.review_comment_count == 0

    def test_empty_history(self):
        assert compute_metrics([], []) == RiskMetrics()


class TestCalculateRiskScore:
    def test_documented_example(self):
        metrics = RiskMetrics(pr_count=2, files_touched=30, change_volume=1200, review_comment_count=26)
        # sub-scores 30 + 20 + 20 + 20
        assert calculate_risk_score(metrics) == 90
        assert score_to_level(90) == "high"

    def test_zero_metrics(self):
        assert calculate_risk_score(RiskMetrics()) == 0

    def test_clamped_at_100(self):
        metrics = RiskMetrics(
            pr_count=10, direct_commit_count=10, files_touched=500, change_volume=50_000, review_comment_count=300
        )
        assert calculate_risk_score(metrics) == 100

    def test_sub_scores_use_floor_buckets(self):
        assert calculate_risk_score(RiskMetrics(files_touched=9)) == 5
        assert calculate_risk_score(RiskMetrics(change_volume=399)) == 5
        assert calculate_risk_score(RiskMetrics(review_comment_count=4)) == 0

    @pytest.mark.parametrize("field", ["pr_count", "files_touched", "change_volume", "review_comment_count"])
    def test_non_decreasing_in_each_input(self, field: str):
        base = RiskMetrics(pr_count=1, files_touched=7, change_volume=350, review_comment_count=6)
        previous = calculate_risk_score(base)
        for step in range(1, 60):
            value = getattr(base, field) + step * 13
            score = calculate_risk_score(RiskMetrics(**{**base.__dict__, field: value}))
            assert 0 <= score <= 100
            assert score >= previous
            previous = score


class TestScoreToLevel:
    def test_thresholds(self):
        assert score_to_level(0) == "low"
        assert score_to_level(39) == "low"
        assert score_to_level(40) == "medium"
        assert score_to_level(69.9) == "medium"
        assert score_to_level(70) == "high"


class TestIdentifyDrivers:
    def test_high_risk_drivers_in_rule_order(self):
        metrics = RiskMetrics(pr_count=2, files_touched=30, change_volume=1200, review_comment_count=26)
        assert identify_drivers(metrics) == [
            "2 pull requests were required for similar work.",
            "30 files touched across linked pull requests.",
            "1200 lines changed recently.",
            "High review friction with 26 comments or change requests.",
        ]

    def test_direct_commit_drivers(self):
        metrics = RiskMetrics(
            direct_commit_count=3, files_touched=25, change_volume=700, direct_commit_change_volume=700
        )
        assert identify_drivers(metrics) == [
            "3 direct commits linked to this issue.",
            "25 files touched across linked direct commits.",
            "700 lines changed across direct commits.",
        ]

    def test_single_small_pr_has_no_drivers(self):
        assert identify_drivers(RiskMetrics(pr_count=1, files_touched=3, change_volume=40)) == []

    def test_capped_at_five(self):
        metrics = RiskMetrics(
            pr_count=0,
            direct_commit_count=4,
            files_touched=40,
            change_volume=3000,
            review_comment_count=20,
            direct_commit_change_volume=3000,
        )
        assert len(identify_drivers(metrics)) == 5


class TestBuildEvidence:
    def test_pull_request_evidence(self, risky_pull_requests: list[PullRequestRiskData]):
        evidence = build_evidence(risky_pull_requests, [])
        assert evidence[0].label == "PR #10"
        assert evidence[0].detail == "20 files · +500/-100 · 10 review comments"
        assert evidence[0].pr_number == 10
        assert evidence[0].pr_summary == "Rework session middleware"

    def test_commit_evidence_when_no_prs(self, direct_commits: list[CommitRiskData]):
        evidence = build_evidence([], direct_commits)
        assert evidence[0].label == "Commit abc1234"
        assert evidence[0].detail == "4 files · +300/-50"
        assert evidence[0].pr_number is None

    def test_capped_at_five(self, risky_pull_requests: list[PullRequestRiskData]):
        many = [risky_pull_requests[0]] * 8
        assert len(build_evidence(many, [])) == 5


class TestSummaries:
    def test_issue_summary_takes_first_two_lines(self):
        body = "\n\nFirst line.\r\n\nSecond line.\nThird line."
        assert build_issue_summary(body) == "First line. Second line."

    def test_issue_summary_truncates(self):
        summary = build_issue_summary("x" * 500)
        assert len(summary) == 320
        assert summary.endswith("...")

    def test_issue_summary_empty_body(self):
        assert build_issue_summary(None) == ""

    def test_change_summary(self):
        metrics = RiskMetrics(pr_count=1, files_touched=3, total_additions=40, total_deletions=2)
        evidence = [RiskEvidence(label="PR #5", detail="3 files", pr_summary="Add retry to uploader")]
        changes = [RiskFileChange(path="uploader/retry.py"), RiskFileChange(path="uploader/client.py")]
        assert build_change_summary(metrics, evidence, changes) == (
            "1 PR merged. 3 files touched (+40/-2). "
            "Focus areas: uploader/retry.py, uploader/client.py. "
            "Recent work: Add retry to uploader"
        )
