# safe_audit/errors.py
"""
Error taxonomy.

Every error carries a short ``kind`` tag and a ``public_message`` that is safe
to show to the person who submitted the URL. The exception's own ``str()`` may
hold operator detail and only goes to logs.
"""
from __future__ import annotations

from typing import Optional

from safe_audit.models import RateLimitDecision

UNSAFE_TARGET_MESSAGE = "Cannot access private or local addresses"


class AuditError(Exception):
    kind = "audit-error"
    public_message = "Audit execution failed"

    def __init__(self, detail: str = "", public_message: Optional[str] = None):
        super().__init__(detail or self.public_message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(AuditError):
    kind = "invalid-url"
    public_message = "Invalid URL format"


class UnsafeTargetError(AuditError):
    # Same message regardless of cause so callers cannot learn why a host was blocked.
    kind = "private-address"
    public_message = UNSAFE_TARGET_MESSAGE

    def __init__(self, detail: str = ""):
        super().__init__(detail, public_message=UNSAFE_TARGET_MESSAGE)


class RateLimitedError(AuditError):
    kind = "rate-limited"
    public_message = "Rate limit exceeded"

    def __init__(self, decision: RateLimitDecision):
        super().__init__(
            f"rate limited ({decision.provider})",
            public_message=decision.reason or self.public_message,
        )
        self.decision = decision


class FetchError(AuditError):
    kind = "fetch-failed"
    public_message = "Failed to fetch URL"


class FetchTimeoutError(FetchError):
    kind = "timeout"
    public_message = "Request timeout"


class FetchTooLargeError(FetchError):
    kind = "too-large"
    public_message = "HTML file too large (max 5MB)"


class FetchNonHtmlError(FetchError):
    kind = "non-html"
    public_message = "Response is not HTML content"


class HttpStatusError(FetchError):
    kind = "http-error"

    def __init__(self, status: int, reason: str = ""):
        message = f"HTTP {status}: {reason}" if reason else f"HTTP {status}"
        super().__init__(message, public_message=message)
        self.status = status


class NetworkError(FetchError):
    kind = "network-error"
    public_message = "Network error"


class EmptyHtmlError(FetchError):
    kind = "empty-html"
    public_message = "Invalid or empty HTML response"


class RenderError(AuditError):
    kind = "render-failed"
    public_message = "Rendered fetch failed"


class RenderTimeoutError(RenderError):
    kind = "render-timeout"
    public_message = "Rendered fetch timed out"


class RenderUnsafeRedirectError(RenderError):
    kind = "render-unsafe-redirect"
    public_message = "Navigation redirected to a private address"
