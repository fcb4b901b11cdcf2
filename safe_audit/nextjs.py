# safe_audit/nextjs.py
from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import urlparse

import tldextract
from bs4 import BeautifulSoup, Tag

from safe_audit.models import AuditIssue, NextjsChecks, NextjsResult

log = logging.getLogger(__name__)

# Bundled public-suffix snapshot only; analyzers never touch the network.
_extract = tldextract.TLDExtract(suffix_list_urls=())

# Registrable domains whose scripts are worth moving behind next/script.
THIRD_PARTY_SCRIPT_DOMAINS = {
    "google-analytics.com",
    "googletagmanager.com",
    "googlesyndication.com",
    "doubleclick.net",
    "facebook.net",
    "facebook.com",
    "hotjar.com",
    "segment.com",
    "intercom.io",
    "hubspot.com",
}


def registrable_domain(url_or_host: str) -> str:
    """
    eTLD+1 for a URL or bare host; falls back to the host minus a leading
    'www.' when the suffix is unknown.
    """
    host = urlparse(url_or_host).hostname if "//" in url_or_host else url_or_host
    host = (host or "").lower()
    ext = _extract(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host[4:] if host.startswith("www.") else host


def _attr(tag: Tag, name: str) -> str:
    value = tag.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return (value or "").strip()


def _rels(tag: Tag) -> List[str]:
    rels = tag.get("rel") or []
    if isinstance(rels, str):
        rels = rels.split()
    return [r.lower() for r in rels]


def detect_nextjs(soup: BeautifulSoup, html: str) -> bool:
    if soup.find("script", id="__NEXT_DATA__"):
        return True
    if soup.find("img", attrs={"data-nimg": True}):
        return True
    if "/_next/static/" in html or "self.__next_f" in html:
        return True
    generator = soup.find("meta", attrs={"name": "generator"})
    return isinstance(generator, Tag) and "next.js" in _attr(generator, "content").lower()


def _issue(severity, rule: str, message: str, suggestion: str, count: Optional[int] = None) -> AuditIssue:
    return AuditIssue(
        category="nextjs", severity=severity, rule=rule, message=message, suggestion=suggestion, count=count
    )


def analyze_nextjs(html: str, page_url: str = "") -> NextjsResult:
    """
    Next.js best-practice checks. ``checks.detected`` tells the scorer whether
    the category applies at all; the other checks run regardless.
    """
    soup = BeautifulSoup(html, "html.parser")
    issues: List[AuditIssue] = []
    score = 100
    checks = NextjsChecks(detected=detect_nextjs(soup, html))

    images = soup.find_all("img")
    if soup.find("img", attrs={"data-nimg": True}):
        checks.uses_next_image = True
    elif images:
        issues.append(_issue("high", "unoptimized-images", "Images are not using next/image optimization",
                             "Replace <img> tags with next/image for automatic optimization"))
        score -= 8

    links = soup.find_all("link", href=True)
    if any("preconnect" in _rels(l) and "fonts" in _attr(l, "href") for l in links):
        checks.uses_next_font = True
    elif any("fonts.googleapis" in _attr(l, "href") for l in links):
        issues.append(_issue("medium", "unoptimized-fonts", "External fonts not using next/font optimization",
                             "Use next/font to automatically optimize font loading"))
        score -= 5

    if len(soup.find_all("meta", attrs={"property": True})) + len(soup.find_all("meta", attrs={"name": True})) > 5:
        checks.uses_metadata_api = True

    if images and not any(img.get("srcset") for img in images):
        issues.append(_issue("medium", "missing-responsive-images", "Images are not responsive (missing srcset)",
                             "Use next/image or add srcset attributes for responsive images"))
        score -= 4

    stylesheets = [l for l in links if "stylesheet" in _rels(l) and _attr(l, "media") in ("", "all")]
    if len(stylesheets) > 2:
        issues.append(_issue("low", "multiple-stylesheets", f"Page loads {len(stylesheets)} stylesheets",
                             "Consider consolidating stylesheets and using CSS-in-JS (like Tailwind or CSS Modules)",
                             count=len(stylesheets)))
        score -= 2

    scripts = soup.find_all("script", src=True)
    blocking = [
        s for s in scripts
        if not s.has_attr("async")
        and not s.has_attr("defer")
        and _attr(s, "type") != "module"
        and not s.has_attr("data-nscript")  # managed by next/script
        and "/_next/" not in _attr(s, "src")
        and _attr(s, "src")
    ]
    if blocking:
        issues.append(_issue("high", "blocking-scripts", f"{len(blocking)} blocking scripts found",
                             "Add async or defer attributes to non-critical scripts, or move them to "
                             "next/script with strategy prop", count=len(blocking)))
        score -= 6

    site_domain = registrable_domain(page_url) if page_url else ""
    third_party = 0
    for s in scripts:
        src = _attr(s, "src")
        if "//" not in src:
            continue
        domain = registrable_domain(src)
        if domain and domain != site_domain and domain in THIRD_PARTY_SCRIPT_DOMAINS:
            third_party += 1
    if third_party:
        issues.append(_issue("medium", "unoptimized-third-party", f"{third_party} third-party scripts found",
                             "Use next/script component with appropriate strategy (afterInteractive, lazyOnload, etc.)",
                             count=third_party))
        score -= 3

    if any("vercel" in _attr(s, "src") or "vitals" in _attr(s, "src") for s in scripts):
        checks.uses_metadata_api = True

    log.debug("Next.js analysis: detected=%s score=%d issues=%d", checks.detected, score, len(issues))
    return NextjsResult(score=max(0, score), issues=issues, checks=checks)


def nextjs_recommendations(checks: NextjsChecks) -> List[str]:
    recommendations = []
    if not checks.uses_next_image:
        recommendations.append("Migrate image tags to next/image for better performance")
    if not checks.uses_next_font:
        recommendations.append("Use next/font for optimized font loading")
    if not checks.uses_metadata_api:
        recommendations.append("Use Metadata API (generateMetadata) for dynamic meta tags in Next.js 13+")
    if not recommendations:
        recommendations.append("Great job! You are following Next.js best practices.")
    return recommendations
