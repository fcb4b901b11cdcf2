# safe_audit/fetcher.py
"""
HTTPX-based plain fetcher.

Responsibilities:
- One bounded GET against a pre-vetted TargetUrl.
- Fixed overall deadline, descriptive user agent, Accept/Accept-Language.
- Refuse non-HTML content before the body is read.
- Stream the body into a bounded buffer and abort once it passes the limit.
- Hand back only a curated subset of response headers.
- Optionally (default on) re-check every redirect hop and the final URL with
  the same literal + DNS checks the URL validator uses.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from safe_audit.address import classify
from safe_audit.errors import (
    AuditError,
    EmptyHtmlError,
    FetchNonHtmlError,
    FetchTimeoutError,
    FetchTooLargeError,
    HttpStatusError,
    NetworkError,
    UnsafeTargetError,
)
from safe_audit.models import FetchResult, TargetUrl
from safe_audit.url_validator import UrlValidator

log = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


def is_html_content_type(content_type: str) -> bool:
    ctype = (content_type or "").lower()
    return any(t in ctype for t in HTML_CONTENT_TYPES)


def curate_headers(headers: Any, allowed: List[str]) -> Dict[str, str]:
    """Keep only allow-listed headers, keyed in lowercase."""
    out: Dict[str, str] = {}
    for name in allowed:
        value = headers.get(name)
        if value:
            out[name.lower()] = value
    return out


class PlainFetcher:
    """
    Use as an async context manager; the underlying httpx client lives for the
    duration of the ``async with`` block.

    Config keys consumed:
      - user_agent, accept, accept_language, curated_headers
      - fetch.timeout, fetch.max_content_bytes, fetch.max_redirects,
        fetch.min_html_length, fetch.revalidate_redirects
    """

    def __init__(
        self,
        validator: UrlValidator,
        config: Dict[str, Any],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        fetch_cfg = config.get("fetch", {})
        self.validator = validator
        self.config = config
        self.timeout = float(fetch_cfg.get("timeout", 15.0))
        self.max_bytes = int(fetch_cfg.get("max_content_bytes", 5 * 1024 * 1024))
        self.max_redirects = int(fetch_cfg.get("max_redirects", 5))
        self.min_html_length = int(fetch_cfg.get("min_html_length", 100))
        self.revalidate_redirects = bool(fetch_cfg.get("revalidate_redirects", True))
        self.curated = list(config.get("curated_headers", []))
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "PlainFetcher":
        headers = {
            "User-Agent": self.config.get("user_agent", ""),
            "Accept": self.config.get("accept", "text/html"),
            "Accept-Language": self.config.get("accept_language", "en-US,en;q=0.5"),
        }
        event_hooks = {"request": [self._check_request]} if self.revalidate_redirects else {}
        self._client = httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=self.max_redirects,
            timeout=self.timeout,
            headers=headers,
            event_hooks=event_hooks,
            transport=self._transport,
            trust_env=False,
        )
        log.debug("httpx session initialized.")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        log.debug("httpx session closed.")

    async def _check_request(self, request: httpx.Request) -> None:
        """Runs before every request the client sends, redirect hops included."""
        host = request.url.host
        if classify(host).is_private:
            raise UnsafeTargetError(f"redirect hop to literal private host {host}")
        if not await self.validator.dns_resolver.is_hostname_safe(host):
            raise UnsafeTargetError(f"redirect hop to DNS-unsafe host {host}")

    # ---- Public API ----------------------------------------------------------

    async def fetch(self, target: TargetUrl) -> FetchResult:
        """
        Fetch ``target``. Never raises for expected failures; the error and
        its kind are reported on the FetchResult instead.
        """
        try:
            return await asyncio.wait_for(self._fetch(target), timeout=self.timeout)
        except asyncio.TimeoutError:
            err: AuditError = FetchTimeoutError(
                f"deadline exceeded for {target.url}",
                public_message=f"Request timeout (exceeded {self.timeout:g} seconds)",
            )
        except AuditError as e:
            err = e

        log.warning("Fetch failed for %s: [%s] %s", target.url, err.kind, err)
        return FetchResult(
            success=False,
            final_url=target.url,
            status_code=getattr(err, "status", None),
            error=err.public_message,
            error_kind=err.kind,
        )

    async def validate_fetch(self, target: TargetUrl) -> FetchResult:
        """Fetch, then insist the body looks like a real HTML document."""
        result = await self.fetch(target)
        if not result.success:
            return result
        if len(result.html) < self.min_html_length:
            err = EmptyHtmlError(f"{len(result.html)} characters from {target.url}")
            log.warning("Fetch for %s returned too little HTML.", target.url)
            return FetchResult(
                success=False,
                final_url=result.final_url,
                status_code=result.status_code,
                headers=result.headers,
                error=err.public_message,
                error_kind=err.kind,
            )
        return result

    # ---- Internals -----------------------------------------------------------

    async def _fetch(self, target: TargetUrl) -> FetchResult:
        if self._client is None:
            raise RuntimeError("PlainFetcher must be used as an async context manager")

        try:
            async with self._client.stream("GET", target.url) as resp:
                final_url = str(resp.url)
                if self.revalidate_redirects and final_url != target.url:
                    log.info("Redirected: %s -> %s", target.url, final_url)
                    if not await self.validator.is_url_safe(final_url):
                        raise UnsafeTargetError(f"final URL {final_url} is unsafe")

                if not resp.is_success:
                    log.warning("Non-2xx response for %s: %d", final_url, resp.status_code)
                    raise HttpStatusError(resp.status_code, resp.reason_phrase)

                ctype = resp.headers.get("content-type", "")
                if not is_html_content_type(ctype):
                    raise FetchNonHtmlError(f"content-type {ctype!r} at {final_url}")

                body = await self._read_bounded(resp)
                html = _decode(body, resp.charset_encoding)

                return FetchResult(
                    success=True,
                    html=html,
                    final_url=final_url,
                    status_code=resp.status_code,
                    headers=curate_headers(resp.headers, self.curated),
                )
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(
                str(e),
                public_message=f"Request timeout (exceeded {self.timeout:g} seconds)",
            ) from e
        except httpx.TooManyRedirects as e:
            raise NetworkError(str(e), public_message="Network error: too many redirects") from e
        except httpx.RequestError as e:
            detail = str(e) or type(e).__name__
            raise NetworkError(detail, public_message=f"Network error: {detail}") from e

    async def _read_bounded(self, resp: httpx.Response) -> bytes:
        declared = resp.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            raise FetchTooLargeError(f"declared content-length {declared}")

        buf = bytearray()
        async for chunk in resp.aiter_bytes():
            if len(buf) + len(chunk) > self.max_bytes:
                raise FetchTooLargeError(
                    f"body exceeded {self.max_bytes} bytes after {len(buf)} bytes"
                )
            buf.extend(chunk)
        return bytes(buf)


def _decode(body: bytes, charset: Optional[str]) -> str:
    try:
        return body.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")
