# safe_audit/url_validator.py
"""
Turns a user-supplied string into a vetted, absolute http(s) TargetUrl.

Order of checks:
1. Normalize: trim, prefix ``https://`` onto bare domains, parse.
2. Reject anything that is not http/https, has no host, or carries credentials.
3. Literal address classification of the host (cheap, no DNS).
4. DNS safety resolution of the host (authoritative).

Both 3 and 4 must pass. Every host-safety failure raises the same
UnsafeTargetError so callers learn nothing about why a host was refused.
"""
from __future__ import annotations

import logging
import re
from urllib.parse import SplitResult, urlsplit, urlunsplit

from safe_audit.address import classify, normalize_host
from safe_audit.dns_safety import DnsSafetyResolver
from safe_audit.errors import UnsafeTargetError, ValidationError
from safe_audit.models import TargetUrl

log = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}
DEFAULT_PORTS = {"http": 80, "https": 443}

# "ftp://x", "javascript:alert(1)", "file:/etc/passwd". A colon followed by a
# digit is a port ("example.com:8080"), not a scheme.
_HAS_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:(?!\d)")


def _encode_host(host: str) -> str:
    """Lowercase and IDNA-encode a hostname; IP literals pass through."""
    host = normalize_host(host)
    if ":" in host:  # IPv6 literal
        return host
    try:
        return host.encode("idna").decode("ascii")
    except UnicodeError as e:
        raise ValidationError(f"Hostname cannot be IDNA-encoded: {host!r}") from e


def normalize_http_url(raw: str) -> TargetUrl:
    """
    Pure syntactic normalization. Raises ValidationError for anything that is
    not a well-formed absolute http(s) URL. Does not judge host safety.
    """
    text = (raw or "").strip()
    if not text:
        raise ValidationError("URL is required", public_message="URL is required")

    if not _HAS_SCHEME.match(text) or text.startswith("//"):
        text = "https://" + text.lstrip("/")

    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError as e:
        raise ValidationError(f"Unparseable URL {raw!r}: {e}") from e

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ValidationError(
            f"Disallowed scheme {scheme!r}",
            public_message="Only HTTP and HTTPS protocols are supported",
        )
    if parts.username is not None or parts.password is not None:
        raise ValidationError(
            "Credentials in URL",
            public_message="URLs containing credentials are not supported",
        )
    if not parts.hostname:
        raise ValidationError(f"No host in {raw!r}")

    host = _encode_host(parts.hostname)
    netloc_host = f"[{host}]" if ":" in host else host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc_host}:{port}"
    else:
        port = None
        netloc = netloc_host

    path = parts.path or "/"
    url = urlunsplit(SplitResult(scheme, netloc, path, parts.query, ""))
    return TargetUrl(
        scheme=scheme, host=host, port=port, path=path, query=parts.query, url=url
    )


class UrlValidator:
    """Combines syntactic normalization with literal and DNS host checks."""

    def __init__(self, dns_resolver: DnsSafetyResolver):
        self.dns_resolver = dns_resolver

    async def validate(self, raw: str) -> TargetUrl:
        """
        Returns a TargetUrl or raises ValidationError / UnsafeTargetError.
        """
        target = normalize_http_url(raw)

        verdict = classify(target.host)
        if verdict.is_private:
            log.warning("Rejected %s: literal host is %s", target.url, verdict.reason)
            raise UnsafeTargetError(f"literal {verdict.reason}: {target.host}")

        resolved = await self.dns_resolver.verdict(target.host)
        if resolved.is_private:
            log.warning("Rejected %s: DNS safety check failed (%s)", target.url, resolved.reason)
            raise UnsafeTargetError(f"dns {resolved.reason}: {target.host}")

        log.debug("Validated %s", target.url)
        return target

    async def is_url_safe(self, url: str) -> bool:
        """Boolean form used to re-check redirect hops and final URLs."""
        try:
            await self.validate(url)
        except (ValidationError, UnsafeTargetError):
            return False
        return True
