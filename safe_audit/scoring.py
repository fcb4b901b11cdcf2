# Combines per-category scores into the overall score, grade and summary.

from __future__ import annotations

from typing import List, Optional

from safe_audit.models import AuditIssue, AuditScores, Grade

CATEGORY_WEIGHTS = {"seo": 0.4, "performance": 0.4, "nextjs": 0.2}
SEVERITY_WEIGHTS = {"critical": 1.0, "high": 0.7, "medium": 0.4, "low": 0.1}
SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
CATEGORY_ORDER = {"seo": 0, "performance": 1, "nextjs": 2}


def grade_for(score: int) -> Grade:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    if score >= 50:
        return "E"
    return "F"


def calculate_scores(seo: int, performance: int, nextjs: int, *, nextjs_applicable: bool = True) -> AuditScores:
    """
    Weighted average of the category scores. When the page is not a Next.js
    site its weight is dropped and the remaining weights renormalized.
    """
    weights = dict(CATEGORY_WEIGHTS)
    if not nextjs_applicable:
        weights["nextjs"] = 0.0

    weight_sum = sum(weights.values())
    raw = seo * weights["seo"] + performance * weights["performance"] + nextjs * weights["nextjs"]
    overall = int(round(raw / weight_sum)) if weight_sum > 0 else 0

    return AuditScores(overall=overall, seo=seo, performance=performance, nextjs=nextjs, grade=grade_for(overall))


def summarize(scores: AuditScores, total_issues: int, *, nextjs_applicable: bool = True) -> str:
    strengths: List[str] = []
    weaknesses: List[str] = []

    categories = [("SEO", scores.seo), ("Performance", scores.performance)]
    if nextjs_applicable:
        categories.append(("Next.js practices", scores.nextjs))
    for label, value in categories:
        if value >= 80:
            strengths.append(label)
        elif value < 60:
            weaknesses.append(label)

    summary = f"Overall Score: {scores.overall}/100 (Grade: {scores.grade}). "
    if strengths:
        summary += f"Strengths: {', '.join(strengths)}. "
    if weaknesses:
        summary += f"Areas for improvement: {', '.join(weaknesses)}. "
    summary += f"Found {total_issues} issue{'' if total_issues == 1 else 's'}."
    return summary


def prioritize_issues(issues: List[AuditIssue], limit: Optional[int] = None) -> List[AuditIssue]:
    # Stable: issues of equal rank keep their discovery order.
    ordered = sorted(issues, key=lambda i: (SEVERITY_ORDER[i.severity], CATEGORY_ORDER[i.category]))
    return ordered[:limit] if limit else ordered


def top_recommendations(issues: List[AuditIssue], limit: int = 5) -> List[AuditIssue]:
    return prioritize_issues(issues, limit)


def issue_impact(issue: AuditIssue) -> float:
    """0..1: severity weight times category weight."""
    return SEVERITY_WEIGHTS[issue.severity] * CATEGORY_WEIGHTS[issue.category]
