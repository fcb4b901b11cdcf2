# safe_audit/api.py
# The primary, programmer-facing API for the library.

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import httpx

from safe_audit.admission import AdmissionController
from safe_audit.config import load_config, merge_overrides
from safe_audit.dns_safety import DnsSafetyResolver, Resolver
from safe_audit.errors import AuditError, RateLimitedError, RenderError
from safe_audit.fetcher import PlainFetcher
from safe_audit.models import (
    AuditIssue,
    AuditMetadata,
    AuditReport,
    AuditRequest,
    FetchResult,
    PerformanceResult,
    Rejection,
    RenderedResult,
    TargetUrl,
)
from safe_audit.nextjs import analyze_nextjs
from safe_audit.performance import analyze_performance, quick_performance_result
from safe_audit.rate_limit import CLIENT_IP_HEADERS, RateLimiter, client_key
from safe_audit.rendering import RenderingFetcher, render_error_is_fatal
from safe_audit.scoring import calculate_scores, prioritize_issues, summarize
from safe_audit.seo import analyze_seo
from safe_audit.tech import analyze_tech_stack
from safe_audit.url_validator import UrlValidator

log = logging.getLogger(__name__)

GENERIC_FAILURE = "Audit execution failed"

AuditOutcome = Union[AuditReport, Rejection]


class AuditService:
    """
    Owns the process-wide safety state (DNS cache, admission slots, rate-limit
    windows) and runs audits against it. Build one per process; tests build
    isolated instances with injected collaborators.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        *,
        dns_resolver: Optional[DnsSafetyResolver] = None,
        resolver: Optional[Resolver] = None,
        rate_limiter: Optional[RateLimiter] = None,
        admission: Optional[AdmissionController] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        performance_transport: Optional[httpx.AsyncBaseTransport] = None,
        playwright_factory: Optional[Callable[[], Any]] = None,
    ):
        self.config = config if config is not None else load_config()
        self.dns_resolver = dns_resolver or DnsSafetyResolver.from_config(self.config, resolver)
        self.validator = UrlValidator(self.dns_resolver)
        self.rate_limiter = rate_limiter or RateLimiter.from_config(self.config)
        self.admission = admission or AdmissionController(
            int(self.config.get("admission", {}).get("max_concurrent", 2))
        )
        self._transport = transport
        self._performance_transport = performance_transport
        renderer_kwargs = {"playwright_factory": playwright_factory} if playwright_factory else {}
        self.renderer = RenderingFetcher(self.dns_resolver, self.config, **renderer_kwargs)

    async def start_audit(
        self,
        request: AuditRequest,
        client_headers: Optional[Mapping[str, str]] = None,
        remote_addr: Optional[str] = None,
    ) -> AuditOutcome:
        """
        Runs one audit end to end. Never raises for expected failures: any
        refusal comes back as a Rejection carrying a sanitized message.
        """
        try:
            return await self._run(request, client_headers or {}, remote_addr)
        except RateLimitedError as e:
            d = e.decision
            return Rejection(
                error=e.public_message,
                kind=e.kind,
                limit=d.limit,
                remaining=d.remaining,
                reset_at=d.reset_at,
                retry_after_seconds=d.retry_after_seconds,
            )
        except AuditError as e:
            log.warning("Audit of %r rejected: [%s] %s", request.url, e.kind, e)
            return Rejection(error=e.public_message, kind=e.kind)
        except Exception as e:
            log.error("Unexpected failure auditing %r: %s", request.url, e, exc_info=True)
            return Rejection(error=GENERIC_FAILURE, kind="internal-error")

    async def check_url(self, raw: str) -> TargetUrl:
        """Validation only: normalize and vet a URL without fetching it."""
        return await self.validator.validate(raw)

    # ---- Pipeline ------------------------------------------------------------

    async def _run(
        self, request: AuditRequest, client_headers: Mapping[str, str], remote_addr: Optional[str]
    ) -> AuditOutcome:
        rl_cfg = self.config.get("rate_limit", {})
        key = client_key(
            client_headers,
            remote_addr,
            ua_chars=int(rl_cfg.get("user_agent_chars", 200)),
            ip_headers=rl_cfg.get("client_ip_headers") or CLIENT_IP_HEADERS,
        )
        decision = await self.rate_limiter.check(key)
        if not decision.allowed:
            raise RateLimitedError(decision)

        log.info("Step 1: Validating %r.", request.url)
        target = await self.validator.validate(request.url)

        # The slot covers only the expensive network/browser work.
        log.info("Step 2: Waiting for an admission slot (%d in flight).", self.admission.in_flight)
        async with self.admission.slot():
            fetched = await self._fetch(target)
            if not fetched.success:
                return Rejection(
                    error=fetched.error or "Failed to fetch URL",
                    kind=fetched.error_kind or "fetch-failed",
                )
            rendered = await self._render(target) if request.deep_tech_detect else None

        log.info("Step 3: Analyzing %s (%d characters).", fetched.final_url, len(fetched.html))
        return await self._analyze(request, fetched, rendered)

    async def _fetch(self, target: TargetUrl) -> FetchResult:
        async with PlainFetcher(self.validator, self.config, transport=self._transport) as fetcher:
            return await fetcher.validate_fetch(target)

    async def _render(self, target: TargetUrl) -> Optional[RenderedResult]:
        try:
            return await self.renderer.render_and_capture(target)
        except RenderError as e:
            if render_error_is_fatal(e):
                raise
            log.warning("Rendering failed for %s, continuing with plain HTML: %s", target.url, e)
            return None

    async def _analyze(
        self, request: AuditRequest, fetched: FetchResult, rendered: Optional[RenderedResult]
    ) -> AuditReport:
        url = fetched.final_url
        seo = analyze_seo(fetched.html, url)
        nextjs = analyze_nextjs(fetched.html, url)
        nextjs_applicable = nextjs.checks.detected

        tech = analyze_tech_stack(
            rendered.html if rendered is not None else fetched.html,
            fetched.headers,
            nextjs_detected=nextjs_applicable,
            rendered=rendered,
        )

        performance: PerformanceResult
        if request.full_audit:
            performance = await analyze_performance(url, self.config, transport=self._performance_transport)
        else:
            performance = quick_performance_result()

        issues: List[AuditIssue] = [*seo.issues, *nextjs.issues, *performance.issues]
        scores = calculate_scores(
            seo.score, performance.score, nextjs.score, nextjs_applicable=nextjs_applicable
        )
        log.info("Audit complete for %s: %d/100 (Grade: %s)", url, scores.overall, scores.grade)

        return AuditReport(
            url=url,
            scores=scores,
            issues=prioritize_issues(issues),
            total_issues=len(issues),
            critical_issues=sum(1 for i in issues if i.severity == "critical"),
            summary=summarize(scores, len(issues), nextjs_applicable=nextjs_applicable),
            metadata=AuditMetadata(
                seo=seo.metadata,
                nextjs=nextjs.checks,
                tech=tech,
                performance=performance.metrics if request.full_audit else None,
            ),
            checked_at=datetime.now(timezone.utc).isoformat(),
            is_quick_audit=not request.full_audit,
        )


async def run_audit(
    url: str,
    *,
    quick: bool = False,
    deep_tech: bool = False,
    config_overrides: Optional[Mapping[str, Any]] = None,
) -> AuditOutcome:
    """
    One-shot convenience wrapper: loads config, builds a fresh AuditService,
    and audits ``url`` on behalf of the local user.

    Args:
        url: The URL (or bare domain) to audit.
        quick: Skip the PageSpeed performance audit.
        deep_tech: Also render the page in a headless browser for tech detection.
        config_overrides: Nested dict deep-merged over the loaded config.

    Returns:
        An AuditReport, or a Rejection explaining why the audit did not run.
    """
    log.info("Starting new audit for: %s", url)
    config = load_config()
    if config_overrides:
        config = merge_overrides(config, config_overrides)
        log.info("Applied config overrides: %s", sorted(config_overrides))
    service = AuditService(config)
    return await service.start_audit(
        AuditRequest(url=url, full_audit=not quick, deep_tech_detect=deep_tech),
        remote_addr="127.0.0.1",
    )


async def check_url(url: str, config_overrides: Optional[Mapping[str, Any]] = None) -> Union[TargetUrl, Rejection]:
    """Validate ``url`` without fetching it."""
    config = load_config()
    if config_overrides:
        config = merge_overrides(config, config_overrides)
    service = AuditService(config)
    try:
        return await service.check_url(url)
    except AuditError as e:
        return Rejection(error=e.public_message, kind=e.kind)
