# Unit tests for the score aggregation using pytest.

from __future__ import annotations

import pytest

from safe_audit.models import AuditIssue
from safe_audit.scoring import (
    calculate_scores,
    grade_for,
    issue_impact,
    prioritize_issues,
    summarize,
    top_recommendations,
)


def _issue(category, severity, rule="r"):
    return AuditIssue(category=category, severity=severity, rule=rule, message="m", suggestion="s")


@pytest.mark.parametrize(
    "score, grade",
    [(100, "A"), (90, "A"), (89, "B"), (80, "B"), (70, "C"), (60, "D"), (50, "E"), (49, "F"), (0, "F")],
)
def test_grade_bands(score, grade):
    assert grade_for(score) == grade


def test_weighted_overall():
    scores = calculate_scores(80, 70, 50)
    # 0.4 * 80 + 0.4 * 70 + 0.2 * 50 = 70
    assert scores.overall == 70
    assert scores.grade == "C"
    assert (scores.seo, scores.performance, scores.nextjs) == (80, 70, 50)


def test_nextjs_weight_dropped_when_not_applicable():
    scores = calculate_scores(80, 70, 0, nextjs_applicable=False)
    # (0.4 * 80 + 0.4 * 70) / 0.8 = 75
    assert scores.overall == 75
    assert scores.grade == "C"


def test_summary_mentions_strengths_and_weaknesses():
    scores = calculate_scores(85, 40, 90)
    text = summarize(scores, 1)
    assert text.startswith(f"Overall Score: {scores.overall}/100 (Grade: {scores.grade}). ")
    assert "Strengths: SEO, Next.js practices." in text
    assert "Areas for improvement: Performance." in text
    assert text.endswith("Found 1 issue.")


def test_summary_skips_nextjs_when_not_applicable():
    scores = calculate_scores(85, 85, 10, nextjs_applicable=False)
    text = summarize(scores, 3, nextjs_applicable=False)
    assert "Next.js" not in text
    assert text.endswith("Found 3 issues.")


def test_prioritize_by_severity_then_category_stable():
    issues = [
        _issue("nextjs", "low", "a"),
        _issue("performance", "critical", "b"),
        _issue("seo", "high", "c"),
        _issue("seo", "critical", "d"),
        _issue("seo", "high", "e"),
    ]
    assert [i.rule for i in prioritize_issues(issues)] == ["d", "b", "c", "e", "a"]
    assert [i.rule for i in top_recommendations(issues, 2)] == ["d", "b"]


def test_issue_impact():
    assert issue_impact(_issue("seo", "critical")) == pytest.approx(0.4)
    assert issue_impact(_issue("nextjs", "low")) == pytest.approx(0.02)
