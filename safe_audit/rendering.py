# safe_audit/rendering.py
"""
Playwright-based rendering fetcher.

Goals:
- One isolated headless Chromium per call, torn down on every exit path.
- Intercept every request of the browser context before navigation starts
  and re-run the address and DNS safety checks on it. Requests are fetched
  without following redirects; a redirect whose Location is unsafe is
  aborted, a safe one is handed back to the browser and routed again.
  Popups share the context routes. WebSockets are routed separately and
  closed unless their host is safe.
- Block images, media and fonts (speed only).
- Wait for an early paint condition rather than network idle; long-lived
  connections can keep a page from ever going idle.
- Re-validate the final URL after navigation, even when navigation timed out.
- Collect advisory JS signals, cookie names and requested URLs for the tech
  analyzer.

Config keys consumed:
  - user_agent: str
  - curated_headers: list[str]
  - render.timeout: float (seconds)
  - render.settle_seconds: float
  - render.wait_until: "commit" | "domcontentloaded" | "load"
  - render.max_captured_requests: int
  - render.blocked_resource_types: list[str]
  - render.min_html_length: int
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urljoin, urlsplit

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Route, WebSocketRoute
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from safe_audit.address import classify
from safe_audit.dns_safety import DnsSafetyResolver
from safe_audit.errors import RenderError, RenderTimeoutError, RenderUnsafeRedirectError
from safe_audit.fetcher import curate_headers
from safe_audit.models import RenderedResult, TargetUrl

log = logging.getLogger(__name__)

# Schemes that never leave the browser process.
LOCAL_SCHEMES = {"blob", "data", "about"}
NETWORK_SCHEMES = {"http", "https"}
WEBSOCKET_SCHEMES = {"ws": "http", "wss": "https"}

# Each entry evaluates to a boolean in the page.
JS_SIGNALS_SCRIPT = """
() => {
  const w = window;
  const has = (fn) => { try { return !!fn(); } catch (e) { return false; } };
  return {
    hasReact: has(() => w.__REACT_DEVTOOLS_GLOBAL_HOOK__ || document.querySelector('[data-reactroot]')),
    hasNextData: has(() => w.__NEXT_DATA__ || w.next),
    hasNuxt: has(() => w.__NUXT__ || w.$nuxt),
    hasVue: has(() => w.Vue || w.__VUE__),
    hasAngular: has(() => w.ng || document.querySelector('[ng-version]')),
    hasSvelte: has(() => document.querySelector('[class*="svelte-"]')),
    hasShopify: has(() => w.Shopify),
    hasMagento: has(() => w.Mage),
    hasBigCommerce: has(() => w.BCData),
    hasWordPress: has(() => w.wp || w.wpApiSettings),
    hasDrupal: has(() => w.Drupal),
    hasGtag: has(() => typeof w.gtag === 'function'),
    hasDataLayer: has(() => Array.isArray(w.dataLayer)),
    hasMatomo: has(() => w._paq),
    hasPostHog: has(() => w.posthog),
    hasMixpanel: has(() => w.mixpanel),
    hasAmplitude: has(() => w.amplitude),
    hasHeap: has(() => w.heap),
  };
}
"""


class RequestGuard:
    """
    Per-render interception callbacks. ``handle`` is installed with
    ``context.route("**/*", ...)`` and ``handle_web_socket`` with
    ``context.route_web_socket("**/*", ...)``, both before the first page opens.

    HTTP(S) requests are fetched here with redirects disabled, so every hop of a
    redirect chain comes back through ``handle`` as its own request.
    """

    def __init__(
        self,
        dns_resolver: DnsSafetyResolver,
        *,
        max_captured: int = 300,
        blocked_resource_types: Iterable[str] = ("image", "media", "font"),
    ):
        self.dns_resolver = dns_resolver
        self.max_captured = max_captured
        self.blocked_resource_types = set(blocked_resource_types)
        self.captured_urls: List[str] = []
        self.blocked_unsafe: List[str] = []
        self.blocked_navigation = False
        self.allowed = 0
        self.blocked_by_type = 0

    def _capture(self, url: str) -> None:
        if len(self.captured_urls) < self.max_captured:
            self.captured_urls.append(url)

    def _block(self, request: Any, url: str) -> None:
        self.blocked_unsafe.append(url)
        if _is_navigation(request):
            self.blocked_navigation = True
        log.warning("Blocked unsafe browser request: %s", url)

    async def handle(self, route: Route) -> None:
        request = route.request
        try:
            url = request.url
            self._capture(url)

            if request.resource_type in self.blocked_resource_types:
                self.blocked_by_type += 1
                await route.abort()
                return

            if not await self.is_request_safe(url):
                self._block(request, url)
                await route.abort("blockedbyclient")
                return

            if urlsplit(url).scheme.lower() not in NETWORK_SCHEMES:
                self.allowed += 1
                await route.continue_()
                return

            try:
                response = await route.fetch(max_redirects=0)
            except PlaywrightError as e:
                log.info("Upstream request failed for %s: %s", url, e)
                await route.abort("failed")
                return

            location = response.headers.get("location") if 300 <= response.status < 400 else None
            if location:
                next_url = urljoin(url, location)
                if not await self.is_request_safe(next_url):
                    self._block(request, next_url)
                    await route.abort("blockedbyclient")
                    return
                log.debug("Redirect %s -> %s", url, next_url)

            self.allowed += 1
            await route.fulfill(response=response)
        except Exception as e:  # any failure in the pipeline blocks the request
            log.warning("Request guard error, aborting request: %s", e)
            try:
                await route.abort("blockedbyclient")
            except PlaywrightError:
                log.debug("Route was already handled.")

    async def handle_web_socket(self, ws: WebSocketRoute) -> None:
        """A routed socket stays disconnected until ``connect_to_server``; only safe hosts get that call."""
        url = ws.url
        self._capture(url)
        try:
            safe = await self.is_request_safe(_websocket_as_http(url))
        except Exception as e:  # same fail-closed rule as handle()
            log.warning("WebSocket guard error for %s: %s", url, e)
            safe = False

        if safe:
            self.allowed += 1
            ws.connect_to_server()
            return

        self.blocked_unsafe.append(url)
        log.warning("Blocked unsafe WebSocket: %s", url)
        try:
            await ws.close(reason="blocked by client")
        except PlaywrightError:
            log.debug("WebSocket was already closed.")

    async def is_request_safe(self, url: str) -> bool:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme == "file":
            return False
        if scheme in LOCAL_SCHEMES:
            return True
        if scheme not in NETWORK_SCHEMES:
            return False

        host = parts.hostname or ""
        if classify(host).is_private:
            return False
        return await self.dns_resolver.is_hostname_safe(host)


def _websocket_as_http(url: str) -> str:
    parts = urlsplit(url)
    scheme = WEBSOCKET_SCHEMES.get(parts.scheme.lower())
    if scheme is None:
        return url
    return parts._replace(scheme=scheme).geturl()


def _is_navigation(request: Any) -> bool:
    """True for top-level (main frame) navigations only; iframes don't count."""
    try:
        return bool(request.is_navigation_request()) and request.frame.parent_frame is None
    except PlaywrightError:
        return False


class RenderingFetcher:
    """Renders a vetted URL in a throwaway headless browser."""

    def __init__(
        self,
        dns_resolver: DnsSafetyResolver,
        config: Dict[str, Any],
        *,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        render_cfg = config.get("render", {})
        self.dns_resolver = dns_resolver
        self.user_agent = config.get("user_agent", "")
        self.curated = list(config.get("curated_headers", []))
        self.timeout_ms = int(float(render_cfg.get("timeout", 30.0)) * 1000)
        self.settle_ms = int(float(render_cfg.get("settle_seconds", 1.0)) * 1000)
        self.wait_until = render_cfg.get("wait_until", "domcontentloaded")
        self.max_captured = int(render_cfg.get("max_captured_requests", 300))
        self.blocked_types = list(
            render_cfg.get("blocked_resource_types", ["image", "media", "font"])
        )
        self.min_html_length = int(render_cfg.get("min_html_length", 50))
        self._playwright_factory = playwright_factory

    async def _is_final_url_safe(self, url: str) -> bool:
        parts = urlsplit(url)
        if parts.scheme.lower() not in NETWORK_SCHEMES:
            # about:blank and chrome-error:// pages mean navigation never landed.
            return parts.scheme.lower() in LOCAL_SCHEMES
        host = parts.hostname or ""
        if classify(host).is_private:
            return False
        return await self.dns_resolver.is_hostname_safe(host)

    async def render_and_capture(self, target: TargetUrl) -> RenderedResult:
        guard = RequestGuard(
            self.dns_resolver,
            max_captured=self.max_captured,
            blocked_resource_types=self.blocked_types,
        )
        log.info("Starting headless browser session for %s", target.url)
        try:
            async with self._playwright_factory() as playwright:
                try:
                    browser = await playwright.chromium.launch(headless=True)
                except PlaywrightError as e:
                    raise RenderError(f"browser launch failed: {e}") from e
                try:
                    return await self._render(browser, target, guard)
                finally:
                    log.info(
                        "Closing headless browser (allowed=%d, blocked_type=%d, blocked_unsafe=%d).",
                        guard.allowed,
                        guard.blocked_by_type,
                        len(guard.blocked_unsafe),
                    )
                    try:
                        await browser.close()
                    except PlaywrightError as e:
                        log.warning("Browser close failed: %s", e)
        except PlaywrightError as e:
            # Driver start-up and teardown.
            raise RenderError(f"browser session failed: {e}") from e

    async def _render(self, browser: Any, target: TargetUrl, guard: RequestGuard) -> RenderedResult:
        try:
            # Service workers can fetch outside route interception.
            context = await browser.new_context(user_agent=self.user_agent, service_workers="block")
            await context.route("**/*", guard.handle)
            await context.route_web_socket("**/*", guard.handle_web_socket)
            page = await context.new_page()
            page.set_default_timeout(self.timeout_ms)
        except PlaywrightError as e:
            raise RenderError(f"browser setup failed: {e}") from e

        response = None
        timed_out = False
        try:
            response = await page.goto(
                target.url, wait_until=self.wait_until, timeout=self.timeout_ms
            )
        except PlaywrightTimeoutError:
            timed_out = True
            log.warning("Navigation timed out for %s; keeping what was captured.", target.url)
        except PlaywrightError as e:
            if guard.blocked_navigation:
                raise RenderUnsafeRedirectError(f"navigation to unsafe host blocked: {e}") from e
            raise RenderError(f"navigation failed for {target.url}: {e}") from e

        if not timed_out and self.settle_ms > 0:
            try:
                await page.wait_for_timeout(self.settle_ms)
            except PlaywrightError as e:
                if guard.blocked_navigation:
                    raise RenderUnsafeRedirectError(f"navigation to unsafe host blocked: {e}") from e
                raise RenderError(f"page closed while settling: {e}") from e

        final_url = page.url or target.url
        if not await self._is_final_url_safe(final_url):
            log.warning("Rendered navigation for %s ended on unsafe %s", target.url, final_url)
            raise RenderUnsafeRedirectError(f"final URL {final_url} is unsafe")
        if final_url != target.url:
            log.info("Navigation redirected: %s -> %s", target.url, final_url)

        try:
            html = await page.content()
        except PlaywrightError as e:
            log.warning("Could not read rendered content for %s: %s", target.url, e)
            html = ""

        if not html or len(html) < self.min_html_length:
            if timed_out:
                raise RenderTimeoutError(f"timed out with {len(html or '')} characters of HTML")
            raise RenderError("Rendered HTML was empty", public_message="Rendered HTML was empty")

        js_signals = await self._collect_js_signals(page)
        cookie_names = await self._collect_cookie_names(context)
        headers: Dict[str, str] = {}
        if response is not None:
            headers = curate_headers(response.headers, self.curated)

        return RenderedResult(
            html=html,
            final_url=final_url,
            main_response_headers=headers,
            cookie_names=cookie_names,
            captured_request_urls=list(guard.captured_urls),
            js_signals=js_signals,
            timed_out=timed_out,
        )

    async def _collect_js_signals(self, page: Any) -> Dict[str, bool]:
        try:
            raw = await page.evaluate(JS_SIGNALS_SCRIPT)
        except PlaywrightError as e:
            log.debug("JS signal probe failed: %s", e)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): bool(v) for k, v in raw.items()}

    async def _collect_cookie_names(self, context: Any) -> List[str]:
        try:
            cookies = await context.cookies()
        except PlaywrightError as e:
            log.debug("Cookie read failed: %s", e)
            return []
        return sorted({c.get("name", "") for c in cookies if c.get("name")})


def render_error_is_fatal(error: Optional[Exception]) -> bool:
    """Unsafe redirects are always fatal; other render failures degrade."""
    return isinstance(error, RenderUnsafeRedirectError)
