# safe_audit/seo.py
# On-page SEO checks over fetched HTML. Pure function: HTML in, score and issues out.

from __future__ import annotations

from typing import List, Optional

from bs4 import BeautifulSoup, Tag

from safe_audit.models import AuditIssue, SeoMetadata, SeoResult, Severity

TITLE_MIN, TITLE_MAX = 30, 60
DESCRIPTION_MIN, DESCRIPTION_MAX = 120, 160


def _issue(severity: Severity, rule: str, message: str, suggestion: str, count: Optional[int] = None) -> AuditIssue:
    return AuditIssue(
        category="seo",
        severity=severity,
        rule=rule,
        message=message,
        suggestion=suggestion,
        count=count,
    )


def _meta_content(soup: BeautifulSoup, **attrs: str) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if not isinstance(tag, Tag):
        return None
    content = tag.get("content")
    if isinstance(content, list):
        content = " ".join(content)
    return content.strip() if content else None


def _link_href(soup: BeautifulSoup, rel: str) -> Optional[str]:
    for tag in soup.find_all("link", href=True):
        rels = tag.get("rel") or []
        if isinstance(rels, str):
            rels = rels.split()
        if rel in (r.lower() for r in rels):
            return str(tag["href"]).strip() or None
    return None


def analyze_seo(html: str, base_url: str = "") -> SeoResult:
    """
    Scores a page from 100 down. Each rule that fails adds an issue and a
    fixed deduction; the score never goes below zero.
    """
    soup = BeautifulSoup(html, "html.parser")
    issues: List[AuditIssue] = []
    score = 100

    # Title
    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    if not title:
        issues.append(_issue("critical", "missing-title", "Page title is missing",
                             "Add a descriptive title (30-60 characters)"))
        score -= 10
    elif len(title) < TITLE_MIN:
        issues.append(_issue("high", "short-title", f"Title is too short ({len(title)} characters)",
                             "Use 30-60 characters for better search results"))
        score -= 5
    elif len(title) > TITLE_MAX:
        issues.append(_issue("low", "long-title", f"Title is too long ({len(title)} characters)",
                             "Keep titles under 60 characters to avoid truncation"))
        score -= 2

    # Meta description
    description = _meta_content(soup, name="description")
    if not description:
        issues.append(_issue("critical", "missing-description", "Meta description is missing",
                             "Add a meta description (120-160 characters)"))
        score -= 10
    elif len(description) < DESCRIPTION_MIN:
        issues.append(_issue("medium", "short-description",
                             f"Description is too short ({len(description)} characters)",
                             "Expand to 120-160 characters for better search snippets"))
        score -= 3
    elif len(description) > DESCRIPTION_MAX:
        issues.append(_issue("low", "long-description",
                             f"Description is too long ({len(description)} characters)",
                             "Keep descriptions under 160 characters to avoid truncation"))
        score -= 2

    canonical = _link_href(soup, "canonical")
    if not canonical:
        issues.append(_issue("high", "missing-canonical", "Canonical tag is missing",
                             "Add a canonical link to prevent duplicate content issues"))
        score -= 8

    viewport = _meta_content(soup, name="viewport")
    if not viewport:
        issues.append(_issue("high", "missing-viewport", "Viewport meta tag is missing",
                             'Add <meta name="viewport" content="width=device-width, initial-scale=1">'))
        score -= 8
    elif "width=device-width" not in viewport.replace(" ", ""):
        issues.append(_issue("high", "invalid-viewport", "Viewport does not include width=device-width",
                             "Set viewport to: width=device-width, initial-scale=1"))
        score -= 5

    # OpenGraph
    for prop, rule, label, hint in (
        ("og:title", "missing-og-title", "title", "Add og:title meta tag for better social media sharing"),
        ("og:description", "missing-og-description", "description",
         "Add og:description meta tag for better social media sharing"),
        ("og:image", "missing-og-image", "image", "Add og:image meta tag (1200x630px recommended)"),
    ):
        if not _meta_content(soup, property=prop):
            issues.append(_issue("medium", rule, f"OpenGraph {label} tag is missing", hint))
            score -= 3

    # Headings
    h1_count = len(soup.find_all("h1"))
    if h1_count == 0:
        issues.append(_issue("high", "missing-h1", "Page has no H1 heading",
                             "Add exactly one H1 heading that describes the page content"))
        score -= 8
    elif h1_count > 1:
        issues.append(_issue("medium", "multiple-h1", f"Page has {h1_count} H1 headings",
                             "Use only one H1 heading per page"))
        score -= 5

    missing_alt = sum(1 for img in soup.find_all("img") if not img.get("alt"))
    if missing_alt:
        issues.append(_issue("medium", "missing-alt-text", f"{missing_alt} images missing alt text",
                             "Add descriptive alt text to all images for accessibility and SEO",
                             count=missing_alt))
        score -= min(5, missing_alt * 2)

    robots = (_meta_content(soup, name="robots") or "").lower()
    if "noindex" in robots:
        issues.append(_issue("critical", "noindex", "Page has noindex meta tag",
                             "Remove noindex tag if you want this page to be searchable"))
        score -= 10

    if not soup.find("script", attrs={"type": "application/ld+json"}):
        issues.append(_issue("low", "missing-structured-data", "No structured data (JSON-LD) found",
                             "Add JSON-LD structured data for better rich snippets"))
        score -= 2

    html_tag = soup.find("html")
    lang = html_tag.get("lang") if isinstance(html_tag, Tag) else None
    if not lang:
        issues.append(_issue("low", "missing-lang", "HTML element missing lang attribute",
                             'Add lang attribute: <html lang="en">'))
        score -= 2

    return SeoResult(
        score=max(0, score),
        issues=issues,
        metadata=SeoMetadata(
            title=title or None,
            description=description or None,
            canonical=canonical,
            viewport=viewport or None,
            lang=str(lang) if lang else None,
        ),
    )
