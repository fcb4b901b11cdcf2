# safe_audit/tech.py
"""
Technology-stack fingerprinting.

Evidence comes from the fetched markup and the curated response headers and,
for deep audits, from what the headless render observed: JS globals, cookie
names and the URLs of requests the page made. Signals are advisory; they never
influence scores.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from safe_audit.models import Confidence, RenderedResult, TechCategory, TechStackResult, TechTag

log = logging.getLogger(__name__)

_RANK = {"high": 3, "medium": 2, "low": 1}

MAX_NETWORK_REQUESTS = 500
MAX_COOKIES = 200


@dataclass(frozen=True)
class Rule:
    name: str
    category: TechCategory
    confidence: Confidence
    needles: Tuple[str, ...]


# Matched (lowercased) against script/link sources plus observed request URLs.
ASSET_RULES = (
    Rule("Next.js", "framework", "high", ("/_next/static/",)),
    Rule("Nuxt", "framework", "high", ("/_nuxt/",)),
    Rule("Astro", "framework", "high", ("/_astro/",)),
    Rule("SvelteKit", "framework", "high", ("/_app/immutable/",)),
    Rule("React", "library", "high", ("unpkg.com/react", "cdn.jsdelivr.net/npm/react", "react-dom.production.min.js")),
    Rule("Preact", "library", "high", ("unpkg.com/preact", "cdn.jsdelivr.net/npm/preact", "preact.min.js")),
    Rule("Tailwind CSS", "library", "medium", ("cdn.tailwindcss.com", "tailwind.min.css")),
    Rule("Bootstrap", "library", "medium", ("bootstrap.min.css", "bootstrap.min.js", "bootstrap.bundle")),
    Rule("jQuery", "library", "medium", ("jquery.min.js", "jquery-", "code.jquery.com")),
    Rule("Alpine.js", "library", "medium", ("alpinejs",)),
    Rule("htmx", "library", "medium", ("htmx.org", "htmx.min.js")),
    Rule("WordPress", "cms", "high", ("/wp-content/", "/wp-includes/")),
    Rule("Drupal", "cms", "medium", ("/sites/default/files/", "/core/misc/drupal")),
    Rule("Shopify", "ecommerce", "high", ("cdn.shopify.com",)),
    Rule("Wix", "cms", "high", ("static.wixstatic.com", "static.parastorage.com")),
    Rule("Squarespace", "cms", "high", ("static1.squarespace.com", "assets.squarespace.com")),
    Rule("Webflow", "cms", "high", ("assets.website-files.com", "webflow.js")),
    Rule("Google Tag Manager", "analytics", "high", ("googletagmanager.com/gtm.js",)),
    Rule("Google Analytics", "analytics", "high", ("google-analytics.com", "googletagmanager.com/gtag/js")),
    Rule("Plausible", "analytics", "high", ("plausible.io/js",)),
    Rule("Segment", "analytics", "high", ("cdn.segment.com",)),
    Rule("Hotjar", "analytics", "high", ("static.hotjar.com",)),
    Rule("Matomo", "analytics", "medium", ("matomo.js", "piwik.js")),
    Rule("Fathom", "analytics", "high", ("cdn.usefathom.com",)),
    Rule("Microsoft Clarity", "analytics", "high", ("clarity.ms",)),
    Rule("Meta Pixel", "analytics", "high", ("connect.facebook.net",)),
    Rule("HubSpot", "other", "high", ("js.hs-scripts.com", "js.hsforms.net")),
    Rule("Intercom", "other", "high", ("widget.intercom.io",)),
    Rule("Sentry", "other", "high", ("browser.sentry-cdn.com",)),
    Rule("Vercel", "hosting", "medium", ("/_vercel/",)),
    Rule("Cloudflare", "cdn", "medium", ("cdnjs.cloudflare.com", "/cdn-cgi/")),
)

# Matched (lowercased) against the raw markup.
HTML_RULES = (
    Rule("Next.js", "framework", "medium", ("__next_data__",)),
    Rule("Nuxt", "framework", "high", ("__nuxt__",)),
    Rule("Gatsby", "framework", "high", ('id="___gatsby"',)),
    Rule("SvelteKit", "framework", "high", ("data-sveltekit-",)),
    Rule("Remix", "framework", "high", ("__remixcontext",)),
    Rule("Angular", "framework", "high", ("ng-version=",)),
    Rule("React", "library", "medium", ("data-reactroot",)),
    Rule("Shopify", "ecommerce", "high", ("shopify.theme",)),
    Rule("WooCommerce", "ecommerce", "high", ("woocommerce",)),
    Rule("Magento", "ecommerce", "medium", ("mage/cookies", "x-magento-init")),
)

# Meta generator substrings.
GENERATOR_RULES = (
    Rule("WordPress", "cms", "high", ("wordpress",)),
    Rule("Drupal", "cms", "high", ("drupal",)),
    Rule("Joomla", "cms", "high", ("joomla",)),
    Rule("Ghost", "cms", "high", ("ghost",)),
    Rule("TYPO3", "cms", "high", ("typo3",)),
    Rule("Wix", "cms", "high", ("wix.com",)),
    Rule("Squarespace", "cms", "high", ("squarespace",)),
    Rule("Webflow", "cms", "high", ("webflow",)),
    Rule("Hugo", "framework", "high", ("hugo",)),
    Rule("Jekyll", "framework", "high", ("jekyll",)),
    Rule("Astro", "framework", "high", ("astro",)),
    Rule("Next.js", "framework", "high", ("next.js",)),
)

# Header name -> rule when the header is present at all.
HEADER_PRESENCE_RULES = {
    "x-vercel-id": Rule("Vercel", "hosting", "high", ()),
    "x-vercel-cache": Rule("Vercel", "hosting", "high", ()),
    "x-nf-request-id": Rule("Netlify", "hosting", "high", ()),
    "cf-ray": Rule("Cloudflare", "cdn", "high", ()),
    "x-amz-cf-id": Rule("Amazon CloudFront", "cdn", "high", ()),
    "x-served-by": Rule("Fastly", "cdn", "medium", ()),
    "x-shopify-stage": Rule("Shopify", "ecommerce", "high", ()),
    "x-drupal-cache": Rule("Drupal", "cms", "high", ()),
    "x-nextjs-cache": Rule("Next.js", "framework", "high", ()),
}

# Substrings of the server / x-powered-by values.
SERVER_RULES = (
    Rule("Nginx", "server", "high", ("nginx",)),
    Rule("Apache", "server", "high", ("apache",)),
    Rule("Microsoft IIS", "server", "high", ("microsoft-iis",)),
    Rule("LiteSpeed", "server", "high", ("litespeed",)),
    Rule("Caddy", "server", "high", ("caddy",)),
    Rule("Cloudflare", "cdn", "high", ("cloudflare",)),
    Rule("Vercel", "hosting", "high", ("vercel",)),
    Rule("Netlify", "hosting", "high", ("netlify",)),
    Rule("Next.js", "framework", "high", ("next.js",)),
    Rule("Express", "framework", "high", ("express",)),
    Rule("PHP", "language", "high", ("php",)),
    Rule("ASP.NET", "framework", "high", ("asp.net",)),
)

# Cookie name prefixes (deep mode only).
COOKIE_RULES = (
    Rule("Google Analytics", "analytics", "medium", ("_ga",)),
    Rule("Meta Pixel", "analytics", "medium", ("_fbp",)),
    Rule("Hotjar", "analytics", "medium", ("_hj",)),
    Rule("HubSpot", "other", "medium", ("hubspotutk", "__hstc")),
    Rule("Shopify", "ecommerce", "medium", ("_shopify_",)),
    Rule("WordPress", "cms", "medium", ("wordpress_", "wp-settings")),
    Rule("PHP", "language", "medium", ("phpsessid",)),
    Rule("Cloudflare", "cdn", "medium", ("__cf_bm", "cf_clearance")),
)

# Keys produced by the render's JS signal probe (deep mode only).
JS_SIGNAL_RULES = {
    "hasReact": Rule("React", "library", "high", ()),
    "hasNextData": Rule("Next.js", "framework", "high", ()),
    "hasNuxt": Rule("Nuxt", "framework", "high", ()),
    "hasVue": Rule("Vue", "framework", "high", ()),
    "hasAngular": Rule("Angular", "framework", "high", ()),
    "hasSvelte": Rule("Svelte", "framework", "medium", ()),
    "hasShopify": Rule("Shopify", "ecommerce", "high", ()),
    "hasMagento": Rule("Magento", "ecommerce", "high", ()),
    "hasBigCommerce": Rule("BigCommerce", "ecommerce", "high", ()),
    "hasWordPress": Rule("WordPress", "cms", "high", ()),
    "hasDrupal": Rule("Drupal", "cms", "high", ()),
    "hasGtag": Rule("Google Analytics", "analytics", "high", ()),
    "hasDataLayer": Rule("Google Tag Manager", "analytics", "medium", ()),
    "hasMatomo": Rule("Matomo", "analytics", "high", ()),
    "hasPostHog": Rule("PostHog", "analytics", "high", ()),
    "hasMixpanel": Rule("Mixpanel", "analytics", "high", ()),
    "hasAmplitude": Rule("Amplitude", "analytics", "high", ()),
    "hasHeap": Rule("Heap", "analytics", "high", ()),
}


class _TagSet:
    """Name-keyed tags; a repeat sighting may only raise confidence."""

    def __init__(self) -> None:
        self._tags: Dict[str, TechTag] = {}

    def add(self, rule: Rule, evidence: str) -> None:
        key = rule.name.lower()
        existing = self._tags.get(key)
        if existing is None:
            self._tags[key] = TechTag(rule.name, rule.category, rule.confidence, evidence)
        elif _RANK[rule.confidence] > _RANK[existing.confidence]:
            existing.confidence = rule.confidence
            existing.evidence = evidence

    def sorted(self) -> List[TechTag]:
        return sorted(self._tags.values(), key=lambda t: (-_RANK[t.confidence], t.category, t.name.lower()))


def _first_hit(haystack: str, needles: Iterable[str]) -> Optional[str]:
    for needle in needles:
        if needle in haystack:
            return needle
    return None


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def analyze_tech_stack(
    html: str,
    headers: Optional[Mapping[str, str]] = None,
    *,
    nextjs_detected: bool = False,
    rendered: Optional[RenderedResult] = None,
) -> TechStackResult:
    soup = BeautifulSoup(html, "html.parser")
    lower_html = html.lower()
    effective: Dict[str, str] = {k.lower().strip(): v for k, v in (headers or {}).items() if k.strip()}
    if rendered is not None:
        effective.update({k.lower(): v for k, v in rendered.main_response_headers.items()})

    tags = _TagSet()

    if nextjs_detected:
        tags.add(Rule("Next.js", "framework", "high", ()), "nextjs-detector")

    sources = []
    for tag in soup.find_all(["script", "link"]):
        if isinstance(tag, Tag):
            src = tag.get("src") or tag.get("href")
            if isinstance(src, str) and src.strip():
                sources.append(src.strip())
    if rendered is not None:
        sources.extend(rendered.captured_request_urls[:MAX_NETWORK_REQUESTS])
    asset_src = "\n".join(sources).lower()

    for rule in ASSET_RULES:
        hit = _first_hit(asset_src, rule.needles)
        if hit:
            tags.add(rule, hit)

    for rule in HTML_RULES:
        hit = _first_hit(lower_html, rule.needles)
        if hit:
            tags.add(rule, hit)

    generator_tag = soup.find("meta", attrs={"name": "generator"})
    generator = _clean(generator_tag.get("content")) if isinstance(generator_tag, Tag) else None
    generator = generator or _clean(effective.get("x-generator"))
    if generator:
        for rule in GENERATOR_RULES:
            if _first_hit(generator.lower(), rule.needles):
                tags.add(rule, "meta generator")

    for name, rule in HEADER_PRESENCE_RULES.items():
        if name in effective:
            tags.add(rule, f"header {name}")

    server = _clean(effective.get("server"))
    powered_by = _clean(effective.get("x-powered-by"))
    for header_name, value in (("server", server), ("x-powered-by", powered_by)):
        if not value:
            continue
        for rule in SERVER_RULES:
            if _first_hit(value.lower(), rule.needles):
                tags.add(rule, f"header {header_name}")

    if rendered is not None:
        for cookie in rendered.cookie_names[:MAX_COOKIES]:
            lowered = cookie.lower()
            for rule in COOKIE_RULES:
                if any(lowered.startswith(p) for p in rule.needles):
                    tags.add(rule, f"cookie {cookie}")
        for key, present in rendered.js_signals.items():
            rule = JS_SIGNAL_RULES.get(key)
            if rule is not None and present:
                tags.add(rule, f"js {key}")

    result = TechStackResult(tags=tags.sorted(), generator=generator, server=server, powered_by=powered_by)
    log.debug("Tech stack: %s", ", ".join(t.name for t in result.tags) or "(none)")
    return result
