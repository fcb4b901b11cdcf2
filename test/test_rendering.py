# test/test_rendering.py
from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from safe_audit.config import DEFAULT_CONFIG
from safe_audit.dns_safety import DnsSafetyResolver
from safe_audit.errors import RenderError, RenderTimeoutError, RenderUnsafeRedirectError
from safe_audit.rendering import RenderingFetcher, RequestGuard, render_error_is_fatal
from safe_audit.url_validator import normalize_http_url

HTML = "<html><head><title>Rendered</title></head><body>" + "y" * 200 + "</body></html>"

DNS = {
    "example.com": ["93.184.216.34"],
    "cdn.example.net": ["151.101.1.1"],
    "rebind.example": ["93.184.216.34", "127.0.0.1"],
}


def _dns(calls=None) -> DnsSafetyResolver:
    async def resolver(hostname):
        if calls is not None:
            calls.append(hostname)
        if hostname == "explode.example":
            raise RuntimeError("resolver bug")
        return DNS.get(hostname, [])

    return DnsSafetyResolver(resolver)


# ---------- fake Playwright objects ----------

class FakeRequest:
    def __init__(self, url, resource_type="document", navigation=False, parent_frame=None):
        self.url = url
        self.resource_type = resource_type
        self._navigation = navigation
        self.frame = SimpleNamespace(parent_frame=parent_frame)

    def is_navigation_request(self):
        return self._navigation


class FakeRoute:
    def __init__(self, request, status=200, headers=None, fetch_error=None):
        self.request = request
        self.action = None
        self.fetch_kwargs = None
        self._response = SimpleNamespace(status=status, headers=headers or {})
        self._fetch_error = fetch_error

    async def abort(self, error_code=None):
        self.action = ("abort", error_code)

    async def continue_(self):
        self.action = ("continue", None)

    async def fetch(self, **kwargs):
        self.fetch_kwargs = kwargs
        if self._fetch_error is not None:
            raise self._fetch_error
        return self._response

    async def fulfill(self, response=None):
        assert response is self._response
        self.action = ("fulfill", response.status)


class FakeWebSocketRoute:
    def __init__(self, url):
        self.url = url
        self.connected = False
        self.closed = False

    def connect_to_server(self):
        self.connected = True
        return self

    async def close(self, code=None, reason=None):
        self.closed = True


def _handle(guard: RequestGuard, url: str, *, status=200, headers=None, fetch_error=None, **kwargs) -> FakeRoute:
    route = FakeRoute(FakeRequest(url, **kwargs), status=status, headers=headers, fetch_error=fetch_error)
    asyncio.run(guard.handle(route))
    return route


def _handle_web_socket(guard: RequestGuard, url: str) -> FakeWebSocketRoute:
    ws = FakeWebSocketRoute(url)
    asyncio.run(guard.handle_web_socket(ws))
    return ws


# ---------- RequestGuard ----------

def test_guard_fetches_public_request_without_following_redirects():
    guard = RequestGuard(_dns())
    route = _handle(guard, "https://example.com/app.js", resource_type="script")
    assert route.fetch_kwargs == {"max_redirects": 0}
    assert route.action == ("fulfill", 200)
    assert guard.allowed == 1


@pytest.mark.parametrize(
    "url",
    [
        "http://127.0.0.1/",
        "http://169.254.169.254/latest/meta-data/",
        "http://[::1]:3000/",
        "http://localhost:8080/",
        "http://db.internal/",
        "https://rebind.example/",  # one private address in the answer
        "https://unknown.example/",  # resolves to nothing
        "file:///etc/passwd",
        "ftp://example.com/",
        "chrome://settings",
    ],
)
def test_guard_blocks_unsafe_requests(url):
    guard = RequestGuard(_dns())
    route = _handle(guard, url, resource_type="fetch")
    assert route.action == ("abort", "blockedbyclient")
    assert guard.blocked_unsafe == [url]


@pytest.mark.parametrize("url", ["data:text/css,body{}", "blob:https://example.com/uuid", "about:blank"])
def test_guard_allows_local_schemes(url):
    calls: list[str] = []
    guard = RequestGuard(_dns(calls))
    route = _handle(guard, url, resource_type="other")
    assert route.action == ("continue", None)
    assert calls == []


@pytest.mark.parametrize("resource_type", ["image", "media", "font"])
def test_guard_blocks_heavy_resource_types_without_dns(resource_type):
    calls: list[str] = []
    guard = RequestGuard(_dns(calls))
    route = _handle(guard, "https://cdn.example.net/asset", resource_type=resource_type)
    assert route.action == ("abort", None)
    assert guard.blocked_by_type == 1
    assert calls == []


def test_guard_literal_check_runs_before_dns():
    calls: list[str] = []
    guard = RequestGuard(_dns(calls))
    _handle(guard, "http://10.1.2.3/")
    assert calls == []


def test_guard_fails_closed_on_internal_error():
    guard = RequestGuard(_dns())
    route = _handle(guard, "https://explode.example/")
    assert route.action == ("abort", "blockedbyclient")


def test_guard_flags_only_main_frame_navigation():
    guard = RequestGuard(_dns())
    _handle(guard, "http://127.0.0.1/frame", navigation=True, parent_frame=object())
    assert guard.blocked_navigation is False
    _handle(guard, "http://127.0.0.1/", navigation=True)
    assert guard.blocked_navigation is True


def test_guard_caps_captured_urls():
    guard = RequestGuard(_dns(), max_captured=3)
    for i in range(5):
        _handle(guard, f"https://example.com/{i}.js", resource_type="script")
    assert guard.captured_urls == [f"https://example.com/{i}.js" for i in range(3)]
    assert guard.allowed == 5


@pytest.mark.parametrize(
    "location, resource_type",
    [
        ("http://169.254.169.254/latest/meta-data/", "script"),
        ("http://127.0.0.1:6379/", "sub_frame"),
        ("https://rebind.example/next", "fetch"),
    ],
)
def test_guard_aborts_redirect_to_unsafe_location(location, resource_type):
    guard = RequestGuard(_dns())
    route = _handle(
        guard, "https://example.com/r", resource_type=resource_type, status=302, headers={"location": location}
    )
    assert route.action == ("abort", "blockedbyclient")
    assert guard.blocked_unsafe == [location]
    assert guard.allowed == 0


def test_guard_main_frame_redirect_to_unsafe_location_flags_navigation():
    guard = RequestGuard(_dns())
    route = _handle(guard, "https://example.com/", status=301, headers={"location": "http://10.0.0.5/"}, navigation=True)
    assert route.action == ("abort", "blockedbyclient")
    assert guard.blocked_navigation is True


def test_guard_hands_safe_redirect_back_to_browser():
    calls: list[str] = []
    guard = RequestGuard(_dns(calls))
    route = _handle(guard, "https://example.com/old", status=307, headers={"location": "https://cdn.example.net/new"})
    assert route.action == ("fulfill", 307)
    assert calls == ["example.com", "cdn.example.net"]


def test_guard_resolves_relative_redirect_against_request_url():
    guard = RequestGuard(_dns())
    route = _handle(guard, "https://example.com/a/b", status=302, headers={"location": "../c"})
    assert route.action == ("fulfill", 302)
    assert guard.blocked_unsafe == []


def test_guard_aborts_when_upstream_fetch_fails():
    guard = RequestGuard(_dns())
    route = _handle(guard, "https://example.com/", fetch_error=PlaywrightError("net::ERR_CONNECTION_RESET"))
    assert route.action == ("abort", "failed")
    assert guard.allowed == 0


@pytest.mark.parametrize(
    "url",
    [
        "ws://127.0.0.1:9222/devtools/browser",
        "wss://rebind.example/socket",
        "ws://10.0.0.8/",
        "ftp://example.com/",
    ],
)
def test_guard_closes_unsafe_websocket(url):
    guard = RequestGuard(_dns())
    ws = _handle_web_socket(guard, url)
    assert ws.closed is True
    assert ws.connected is False
    assert guard.blocked_unsafe == [url]


def test_guard_connects_public_websocket():
    guard = RequestGuard(_dns())
    ws = _handle_web_socket(guard, "wss://example.com/live")
    assert ws.connected is True
    assert ws.closed is False
    assert guard.captured_urls == ["wss://example.com/live"]


def test_guard_websocket_fails_closed_on_internal_error():
    guard = RequestGuard(_dns())
    ws = _handle_web_socket(guard, "wss://explode.example/")
    assert ws.closed is True


# ---------- RenderingFetcher ----------

class FakePage:
    def __init__(self, scenario, context):
        self.scenario = scenario
        self.context = context
        self.url = "about:blank"
        self.default_timeout = None
        self.settled = []

    def set_default_timeout(self, ms):
        self.default_timeout = ms

    async def goto(self, url, wait_until=None, timeout=None):
        handler = self.context.routes.get("**/*")
        assert handler is not None, "interception must be installed before navigation"
        self.scenario.setdefault("goto_kwargs", {"wait_until": wait_until, "timeout": timeout})
        responses = self.scenario.get("responses", {})
        routes = []
        for sub_url, rtype, nav in self.scenario.get("requests", [(url, "document", True)]):
            status, headers = responses.get(sub_url, (200, {}))
            route = FakeRoute(FakeRequest(sub_url, resource_type=rtype, navigation=nav), status, headers)
            await handler(route)
            routes.append(route)
        self.scenario["routes"] = routes
        self.url = self.scenario.get("final_url", url)
        error = self.scenario.get("goto_error")
        if error is not None:
            raise error
        return SimpleNamespace(headers=self.scenario.get("headers", {}))

    async def wait_for_timeout(self, ms):
        error = self.scenario.get("settle_error")
        if error is not None:
            raise error
        self.settled.append(ms)

    async def content(self):
        return self.scenario.get("html", HTML)

    async def evaluate(self, script):
        return self.scenario.get("js", {"hasReact": 1, "hasGtag": 0})


class FakeContext:
    def __init__(self, scenario, kwargs):
        self.scenario = scenario
        self.kwargs = kwargs
        self.routes = {}
        self.web_socket_routes = {}
        self.page = None

    async def route(self, pattern, handler):
        self.routes[pattern] = handler

    async def route_web_socket(self, pattern, handler):
        self.web_socket_routes[pattern] = handler

    async def new_page(self):
        assert self.routes and self.web_socket_routes, "routes must be installed before the first page"
        self.page = FakePage(self.scenario, self)
        return self.page

    async def cookies(self):
        return self.scenario.get("cookies", [])


class FakeBrowser:
    def __init__(self, scenario):
        self.scenario = scenario
        self.closed = False
        self.context = None

    async def new_context(self, **kwargs):
        if self.scenario.get("new_context_error"):
            raise self.scenario["new_context_error"]
        self.context = FakeContext(self.scenario, kwargs)
        return self.context

    async def close(self):
        self.closed = True


def _factory(scenario):
    browser = FakeBrowser(scenario)

    async def launch(headless=True):
        if scenario.get("launch_error"):
            raise scenario["launch_error"]
        scenario["headless"] = headless
        return browser

    @asynccontextmanager
    async def factory():
        if scenario.get("driver_error"):
            raise scenario["driver_error"]
        yield SimpleNamespace(chromium=SimpleNamespace(launch=launch))

    return factory, browser


def _render(scenario, url="https://example.com/"):
    factory, browser = _factory(scenario)
    fetcher = RenderingFetcher(_dns(), copy.deepcopy(DEFAULT_CONFIG), playwright_factory=factory)
    try:
        return asyncio.run(fetcher.render_and_capture(normalize_http_url(url))), browser
    finally:
        scenario["browser"] = browser


def test_render_success_collects_evidence_and_tears_down():
    scenario = {
        "requests": [
            ("https://example.com/", "document", True),
            ("https://cdn.example.net/app.js", "script", False),
            ("https://cdn.example.net/hero.png", "image", False),
        ],
        "headers": {"server": "nginx", "set-cookie": "a=b", "content-type": "text/html"},
        "cookies": [{"name": "_ga"}, {"name": "session"}, {"name": "_ga"}],
    }
    result, browser = _render(scenario)

    assert browser.closed is True
    assert scenario["headless"] is True
    assert browser.context.kwargs["service_workers"] == "block"
    assert "SafeAudit" in browser.context.kwargs["user_agent"]
    assert scenario["goto_kwargs"] == {"wait_until": "domcontentloaded", "timeout": 30000}
    assert browser.context.page.settled == [1000]

    assert result.html == HTML
    assert result.final_url == "https://example.com/"
    assert result.main_response_headers == {"content-type": "text/html", "server": "nginx"}
    assert result.cookie_names == ["_ga", "session"]
    assert result.captured_request_urls == [u for u, _, _ in scenario["requests"]]
    assert result.js_signals == {"hasReact": True, "hasGtag": False}
    assert result.timed_out is False
    assert [r.action[0] for r in scenario["routes"]] == ["fulfill", "fulfill", "abort"]
    assert set(browser.context.routes) == {"**/*"}
    assert set(browser.context.web_socket_routes) == {"**/*"}


def test_render_final_url_unsafe_is_fatal_and_browser_closed():
    scenario = {"final_url": "http://127.0.0.1/after-js-redirect"}
    with pytest.raises(RenderUnsafeRedirectError):
        _render(scenario)
    assert scenario["browser"].closed is True


def test_render_final_url_rechecked_even_after_timeout():
    scenario = {
        "final_url": "https://rebind.example/",
        "goto_error": PlaywrightTimeoutError("Timeout 30000ms exceeded."),
    }
    with pytest.raises(RenderUnsafeRedirectError):
        _render(scenario)
    assert scenario["browser"].closed is True


def test_render_timeout_with_content_degrades_to_success():
    scenario = {"goto_error": PlaywrightTimeoutError("Timeout 30000ms exceeded.")}
    result, browser = _render(scenario)
    assert result.timed_out is True
    assert result.html == HTML
    assert browser.context.page.settled == []


def test_render_timeout_without_content_fails():
    scenario = {"goto_error": PlaywrightTimeoutError("Timeout"), "html": "<html></html>"}
    with pytest.raises(RenderTimeoutError):
        _render(scenario)


def test_render_empty_html_fails():
    with pytest.raises(RenderError) as excinfo:
        _render({"html": ""})
    assert excinfo.value.public_message == "Rendered HTML was empty"
    assert not render_error_is_fatal(excinfo.value)


def test_blocked_main_navigation_reports_unsafe_redirect():
    scenario = {
        "requests": [
            ("https://example.com/", "document", True),
            ("http://10.0.0.1/", "document", True),
        ],
        "goto_error": PlaywrightError("net::ERR_BLOCKED_BY_CLIENT"),
    }
    with pytest.raises(RenderUnsafeRedirectError) as excinfo:
        _render(scenario)
    assert render_error_is_fatal(excinfo.value)
    assert scenario["browser"].closed is True


def test_navigation_error_is_non_fatal_render_error():
    scenario = {"goto_error": PlaywrightError("net::ERR_NAME_NOT_RESOLVED")}
    with pytest.raises(RenderError) as excinfo:
        _render(scenario)
    assert not render_error_is_fatal(excinfo.value)


def test_browser_launch_failure_is_render_error():
    scenario = {"launch_error": PlaywrightError("Executable doesn't exist")}
    with pytest.raises(RenderError):
        _render(scenario)


def test_redirect_hop_to_metadata_address_is_blocked_during_render():
    scenario = {
        "requests": [
            ("https://example.com/", "document", True),
            ("https://cdn.example.net/widget.js", "script", False),
        ],
        "responses": {"https://cdn.example.net/widget.js": (302, {"location": "http://169.254.169.254/"})},
    }
    result, _ = _render(scenario)
    assert [r.action for r in scenario["routes"]] == [("fulfill", 200), ("abort", "blockedbyclient")]
    assert result.captured_request_urls == ["https://example.com/", "https://cdn.example.net/widget.js"]


def test_main_document_redirect_to_private_host_is_fatal():
    scenario = {
        "responses": {"https://example.com/": (302, {"location": "http://192.168.1.1/admin"})},
        "goto_error": PlaywrightError("net::ERR_BLOCKED_BY_CLIENT"),
    }
    with pytest.raises(RenderUnsafeRedirectError):
        _render(scenario)
    assert scenario["routes"][0].action == ("abort", "blockedbyclient")
    assert scenario["browser"].closed is True


def test_new_context_failure_is_render_error_and_browser_closed():
    scenario = {"new_context_error": PlaywrightError("Target page, context or browser has been closed")}
    with pytest.raises(RenderError) as excinfo:
        _render(scenario)
    assert not render_error_is_fatal(excinfo.value)
    assert scenario["browser"].closed is True


def test_settle_failure_is_render_error():
    scenario = {"settle_error": PlaywrightError("Target page, context or browser has been closed")}
    with pytest.raises(RenderError) as excinfo:
        _render(scenario)
    assert not render_error_is_fatal(excinfo.value)
    assert scenario["browser"].closed is True


def test_driver_start_failure_is_render_error():
    scenario = {"driver_error": PlaywrightError("Playwright driver exited")}
    with pytest.raises(RenderError):
        _render(scenario)
    assert scenario["browser"].closed is False
