# safe_audit/ui.py
# Presentation-only utilities for CLI output.
from __future__ import annotations

from typing import IO, Iterable

from safe_audit.models import AuditIssue, AuditReport, Rejection, TargetUrl, TechTag


def _writeln(text: str = "", *, file: IO[str]) -> None:
    file.write(text + "\n")


def render_audit_header(url: str, quick: bool, *, file: IO[str]) -> None:
    mode = "quick audit" if quick else "full audit"
    _writeln(f"Auditing {url} ({mode})...", file=file)


def render_scores(report: AuditReport, *, file: IO[str]) -> None:
    s = report.scores
    _writeln(f"\nScore: {s.overall}/100 (Grade: {s.grade})", file=file)
    _writeln(f"  SEO:         {s.seo}", file=file)
    _writeln(f"  Performance: {s.performance}", file=file)
    label = "Next.js:" if report.metadata.nextjs.detected else "Next.js (n/a):"
    _writeln(f"  {label:<13}{s.nextjs}", file=file)
    _writeln(f"\n{report.summary}", file=file)


def render_issues_section(issues: Iterable[AuditIssue], *, file: IO[str]) -> None:
    items = list(issues)
    if not items:
        return
    _writeln("\n--- Issues ---", file=file)
    for issue in items:
        sev = issue.severity.upper()
        _writeln(f"- [{sev:<8}] {issue.category}/{issue.rule}: {issue.message}", file=file)
        _writeln(f"    -> {issue.suggestion}", file=file)


def render_tech_section(tags: Iterable[TechTag], *, file: IO[str]) -> None:
    items = list(tags)
    if not items:
        return
    _writeln("\n--- Detected Technology ---", file=file)
    for tag in items:
        evidence = f" ({tag.evidence})" if tag.evidence else ""
        _writeln(f"- {tag.name} [{tag.category}, {tag.confidence}]{evidence}", file=file)


def render_rejection(rejection: Rejection, *, file: IO[str]) -> None:
    _writeln(f"\nRejected ({rejection.kind}): {rejection.error}", file=file)
    if rejection.retry_after_seconds is not None:
        _writeln(
            f"Try again in {rejection.retry_after_seconds}s "
            f"(limit {rejection.limit}, remaining {rejection.remaining}).",
            file=file,
        )


def render_url_check(target: TargetUrl, *, file: IO[str]) -> None:
    _writeln(f"OK: {target.url}", file=file)
