# Defines the data structures passed between the safety layer, the fetchers,
# the analyzers and the orchestrator.

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

# Type definitions for clarity.
VerdictReason = Literal[
    "loopback",
    "rfc1918",
    "link-local",
    "unique-local",
    "unspecified",
    "suffix-blocklisted",
    "resolution-failed",
    "malformed",
    "public",
]
RateLimitProvider = Literal["redis", "memory", "disabled"]
Category = Literal["seo", "performance", "nextjs"]
Severity = Literal["critical", "high", "medium", "low"]
Grade = Literal["A", "B", "C", "D", "E", "F"]
TechCategory = Literal[
    "framework",
    "cms",
    "ecommerce",
    "analytics",
    "hosting",
    "cdn",
    "server",
    "language",
    "library",
    "other",
]
Confidence = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class AddressVerdict:
    """Outcome of classifying a literal IP address or hostname."""

    is_private: bool
    reason: VerdictReason


@dataclass(frozen=True)
class TargetUrl:
    """
    A validated, absolute http(s) URL.

    Only the URL validator creates these; the host passed the DNS safety
    check at the time of creation.
    """

    scheme: str
    host: str
    port: Optional[int]
    path: str
    query: str
    url: str

    def __str__(self) -> str:
        return self.url


@dataclass
class FetchResult:
    """The outcome of one plain HTTP fetch attempt."""

    success: bool
    html: str = ""
    final_url: str = ""
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class RenderedResult:
    """What a headless-browser render captured from the page."""

    html: str
    final_url: str
    main_response_headers: Dict[str, str] = field(default_factory=dict)
    cookie_names: List[str] = field(default_factory=list)
    captured_request_urls: List[str] = field(default_factory=list)
    js_signals: Dict[str, bool] = field(default_factory=dict)
    timed_out: bool = False


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds
    provider: RateLimitProvider
    retry_after_seconds: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class AuditRequest:
    """Inbound "start audit" payload."""

    url: str
    full_audit: bool = True
    deep_tech_detect: bool = False


@dataclass
class AuditIssue:
    category: Category
    severity: Severity
    rule: str
    message: str
    suggestion: str
    count: Optional[int] = None
    value: Optional[float] = None


@dataclass
class SeoMetadata:
    title: Optional[str] = None
    description: Optional[str] = None
    canonical: Optional[str] = None
    viewport: Optional[str] = None
    lang: Optional[str] = None


@dataclass
class SeoResult:
    score: int
    issues: List[AuditIssue]
    metadata: SeoMetadata


@dataclass
class NextjsChecks:
    detected: bool = False
    uses_next_image: bool = False
    uses_next_font: bool = False
    uses_metadata_api: bool = False
    has_server_components: bool = False


@dataclass
class NextjsResult:
    score: int
    issues: List[AuditIssue]
    checks: NextjsChecks


@dataclass
class PerformanceMetrics:
    lcp_ms: Optional[float] = None
    cls_score: Optional[float] = None
    ttfb_ms: Optional[float] = None
    speed_index: Optional[float] = None


@dataclass
class PerformanceResult:
    score: int
    issues: List[AuditIssue]
    metrics: PerformanceMetrics


@dataclass
class TechTag:
    name: str
    category: TechCategory
    confidence: Confidence
    evidence: Optional[str] = None


@dataclass
class TechStackResult:
    tags: List[TechTag] = field(default_factory=list)
    generator: Optional[str] = None
    server: Optional[str] = None
    powered_by: Optional[str] = None


@dataclass
class AuditScores:
    overall: int
    seo: int
    performance: int
    nextjs: int
    grade: Grade


@dataclass
class AuditMetadata:
    seo: SeoMetadata
    nextjs: NextjsChecks
    tech: TechStackResult
    performance: Optional[PerformanceMetrics] = None


@dataclass
class AuditReport:
    """The final result of a completed audit."""

    url: str
    scores: AuditScores
    issues: List[AuditIssue]
    total_issues: int
    critical_issues: int
    summary: str
    metadata: AuditMetadata
    checked_at: str  # ISO 8601 format
    is_quick_audit: bool = False


@dataclass
class Rejection:
    """Structured refusal returned instead of a report."""

    error: str
    kind: str
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    retry_after_seconds: Optional[int] = None
