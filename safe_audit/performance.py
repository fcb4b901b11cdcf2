# safe_audit/performance.py
"""
Performance analysis through the PageSpeed Insights API.

Without an API key, or when the API misbehaves, a placeholder result is
returned so the audit still completes; the placeholder says so in its single
issue.

Config keys consumed:
  - performance.pagespeed_api_key: str | None
  - performance.pagespeed_url: str
  - performance.timeout: float (seconds)
  - performance.strategy: "mobile" | "desktop"
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from safe_audit.models import AuditIssue, PerformanceMetrics, PerformanceResult, Severity

log = logging.getLogger(__name__)

PLACEHOLDER_SCORE = 75

# Lighthouse audits surfaced as issues when their score is below 0.9.
LIGHTHOUSE_AUDITS = (
    ("render-blocking-resources", "high"),
    ("unminified-css", "medium"),
    ("unminified-javascript", "medium"),
    ("unused-css-rules", "low"),
    ("modern-image-formats", "medium"),
    ("uses-webp-images", "low"),
    ("offscreen-images", "medium"),
    ("unused-javascript", "medium"),
)


def default_performance_result(reason: str) -> PerformanceResult:
    return PerformanceResult(
        score=PLACEHOLDER_SCORE,
        issues=[
            AuditIssue(
                category="performance",
                severity="medium",
                rule="performance-check-skipped",
                message=f"Performance audit: {reason}",
                suggestion="Performance metrics are optional. For production, "
                "integrate Google PageSpeed Insights API.",
            )
        ],
        metrics=PerformanceMetrics(lcp_ms=2400, cls_score=0.08, ttfb_ms=600, speed_index=3400),
    )


def quick_performance_result() -> PerformanceResult:
    """Stand-in used by quick audits, which never call PageSpeed."""
    return PerformanceResult(
        score=PLACEHOLDER_SCORE,
        issues=[
            AuditIssue(
                category="performance",
                severity="low",
                rule="performance-not-checked",
                message="Full performance audit not run in quick mode",
                suggestion="Run full audit to check performance metrics",
            )
        ],
        metrics=PerformanceMetrics(),
    )


def _numeric(audits: Dict[str, Any], key: str) -> Optional[float]:
    value = (audits.get(key) or {}).get("numericValue")
    return float(value) if isinstance(value, (int, float)) else None


def _issue(severity: Severity, rule: str, message: str, suggestion: str, value: Optional[float] = None) -> AuditIssue:
    return AuditIssue(
        category="performance", severity=severity, rule=rule, message=message, suggestion=suggestion, value=value
    )


def interpret_lighthouse(lighthouse: Dict[str, Any]) -> PerformanceResult:
    """Turns a Lighthouse report (``lighthouseResult``) into score, issues and metrics."""
    audits = lighthouse.get("audits") or {}
    metrics = PerformanceMetrics(
        lcp_ms=_numeric(audits, "largest-contentful-paint"),
        cls_score=_numeric(audits, "cumulative-layout-shift"),
        ttfb_ms=_numeric(audits, "server-response-time"),
        speed_index=_numeric(audits, "speed-index"),
    )
    issues: List[AuditIssue] = []

    lcp = metrics.lcp_ms or 0
    if lcp > 4000:
        issues.append(_issue("critical", "poor-lcp", f"LCP is {lcp / 1000:.1f}s (target: < 2.5s)",
                             "Optimize images, reduce JavaScript, or implement lazy loading", lcp))
    elif lcp > 2500:
        issues.append(_issue("high", "slow-lcp", f"LCP is {lcp / 1000:.1f}s (target: < 2.5s)",
                             "Optimize largest images and reduce render-blocking resources", lcp))

    cls = metrics.cls_score or 0
    if cls > 0.25:
        issues.append(_issue("high", "poor-cls", f"CLS is {cls:.3f} (target: < 0.1)",
                             "Reserve space for images/videos, avoid inserting content above existing content", cls))
    elif cls > 0.1:
        issues.append(_issue("medium", "high-cls", f"CLS is {cls:.3f} (target: < 0.1)",
                             "Use CSS to prevent layout shifts or add explicit dimensions to elements", cls))

    speed_index = metrics.speed_index or 0
    if speed_index > 5000:
        issues.append(_issue("high", "slow-speed-index", f"Speed Index is {speed_index / 1000:.1f}s",
                             "Reduce JavaScript, optimize images, or use a CDN", speed_index))

    for key, severity in LIGHTHOUSE_AUDITS:
        audit = audits.get(key)
        if audit and audit.get("score") and audit["score"] < 0.9:
            issues.append(_issue(severity, key, audit.get("title") or key,
                                 audit.get("description") or f"Improve {key}"))

    category_score = ((lighthouse.get("categories") or {}).get("performance") or {}).get("score")
    if not isinstance(category_score, (int, float)) or not category_score:
        category_score = 0.5
    return PerformanceResult(score=round(category_score * 100), issues=issues, metrics=metrics)


async def analyze_performance(
    url: str,
    config: Dict[str, Any],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PerformanceResult:
    perf_cfg = config.get("performance", {})
    api_key = perf_cfg.get("pagespeed_api_key")
    if not api_key:
        log.warning("PageSpeed Insights API key not configured; using placeholder performance result.")
        return default_performance_result("PageSpeed Insights API key not configured")

    params = {
        "url": url,
        "key": api_key,
        "category": "performance",
        "strategy": perf_cfg.get("strategy", "mobile"),
    }
    endpoint = perf_cfg.get("pagespeed_url", "https://www.googleapis.com/pagespeedonline/v5/runPagespeed")
    timeout = float(perf_cfg.get("timeout", 30.0))

    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.get(endpoint, params=params)
    except httpx.TimeoutException:
        log.warning("PageSpeed Insights timed out for %s", url)
        return default_performance_result("PageSpeed Insights API timeout")
    except httpx.HTTPError as e:
        log.warning("PageSpeed Insights request failed for %s: %s", url, e)
        return default_performance_result("PageSpeed Insights API request failed")

    if not resp.is_success:
        log.warning("PageSpeed Insights API failed: %d", resp.status_code)
        return default_performance_result("PageSpeed Insights API returned an error")

    try:
        data = resp.json()
    except ValueError:
        data = None
    lighthouse = data.get("lighthouseResult") if isinstance(data, dict) else None
    if not isinstance(lighthouse, dict):
        return default_performance_result("Failed to get Lighthouse report from PageSpeed Insights")

    return interpret_lighthouse(lighthouse)
