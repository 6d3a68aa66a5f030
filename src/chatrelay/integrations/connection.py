"""Browser/page acquisition state machine.

``ConnectionOrchestrator.acquire_context()`` is the only entry point the
engine uses. It loops through browser attach, target-page discovery and
page validation until it holds a live page, waiting out any
infrastructure failure with capped exponential backoff. It never raises.

State flow::

    INIT -> DETECTING_ENV -> WAITING_FOR_BROWSER -> CONNECTING_BROWSER
         (-> RETRY_BROWSER -> CONNECTING_BROWSER)* -> BROWSER_READY
         -> WAITING_FOR_PAGE -> PAGE_SELECTED -> VALIDATING_PAGE
         -> PAGE_VALIDATED | PAGE_INVALID -> READY

``BROWSER_LOST`` is entered from any browser-dependent state when the
browser disconnects.
"""
from __future__ import annotations

import logging
import platform
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

import httpx
from playwright.sync_api import Browser, Error as PlaywrightError, Page, Playwright, sync_playwright

logger = logging.getLogger("chatrelay.connection")


class ConnState(str, Enum):
    INIT = "INIT"
    DETECTING_ENV = "DETECTING_ENV"
    WAITING_FOR_BROWSER = "WAITING_FOR_BROWSER"
    CONNECTING_BROWSER = "CONNECTING_BROWSER"
    RETRY_BROWSER = "RETRY_BROWSER"
    BROWSER_READY = "BROWSER_READY"
    BROWSER_LOST = "BROWSER_LOST"
    WAITING_FOR_PAGE = "WAITING_FOR_PAGE"
    PAGE_SELECTED = "PAGE_SELECTED"
    VALIDATING_PAGE = "VALIDATING_PAGE"
    PAGE_VALIDATED = "PAGE_VALIDATED"
    PAGE_INVALID = "PAGE_INVALID"
    READY = "READY"


class IssueType(str, Enum):
    BROWSER_NOT_STARTED = "BROWSER_NOT_STARTED"
    BROWSER_DISCONNECTED = "BROWSER_DISCONNECTED"
    PAGE_NOT_FOUND = "PAGE_NOT_FOUND"
    PAGE_CLOSED_BY_USER = "PAGE_CLOSED_BY_USER"
    PAGE_INVALID = "PAGE_INVALID"


STATE_CHANGED = "state_changed"
SESSION_OPENED = "session_opened"
SESSION_CLOSED = "session_closed"

Event = Tuple[str, Dict[str, Any]]
Observer = Callable[[str, Dict[str, Any]], None]


def transition(current: ConnState, target: ConnState, **meta: Any) -> Tuple[ConnState, List[Event]]:
    """Pure transition: re-entering the current state emits nothing."""
    if current == target:
        return current, []
    return target, [(STATE_CHANGED, {"from": current.value, "to": target.value, **meta})]


def backoff_delay(retry_count: int, base: float, maximum: float) -> float:
    """Capped exponential delay for the *retry_count*-th consecutive retry."""
    if retry_count <= 0:
        return 0.0
    return min(maximum, base * (1.5 ** (retry_count - 1)))


class BrowserLostError(RuntimeError):
    pass


@dataclass
class AcquiredContext:
    browser: Browser
    page: Page
    session_id: str


@dataclass
class ConnectionOptions:
    ports: List[int] = field(default_factory=lambda: [9222])
    allowed_domains: List[str] = field(default_factory=lambda: ["chatgpt.com", "gemini.google.com"])
    page_selection_policy: str = "FIRST"
    connection_strategies: List[str] = field(default_factory=lambda: ["BROWSER_URL", "WS_ENDPOINT"])
    retry_delay_seconds: float = 3.0
    max_retry_delay_seconds: float = 15.0
    page_scan_interval_seconds: float = 4.0
    state_history_size: int = 50

    @classmethod
    def from_settings(cls, settings: Any) -> "ConnectionOptions":
        return cls(
            ports=list(settings.debug_ports),
            allowed_domains=list(settings.allowed_domains),
            page_selection_policy=settings.page_selection_policy,
            connection_strategies=list(settings.connection_strategies),
            retry_delay_seconds=settings.retry_delay_seconds,
            max_retry_delay_seconds=settings.max_retry_delay_seconds,
            page_scan_interval_seconds=settings.page_scan_interval_seconds,
            state_history_size=settings.state_history_size,
        )


# ── Attach strategies ────────────────────────────────────────

class Connector(Protocol):
    def connect_browser_url(self, port: int) -> Browser: ...

    def connect_ws_endpoint(self, port: int) -> Browser: ...


class CdpConnector:
    """Attaches Playwright to an already-running Chromium over CDP."""

    def __init__(self, connect_timeout_ms: int = 10_000, discovery_timeout: float = 1.0) -> None:
        self.connect_timeout_ms = connect_timeout_ms
        self.discovery_timeout = discovery_timeout
        self._playwright: Optional[Playwright] = None

    def _chromium(self):
        if self._playwright is None:
            self._playwright = sync_playwright().start()
        return self._playwright.chromium

    def connect_browser_url(self, port: int) -> Browser:
        return self._chromium().connect_over_cdp(f"http://127.0.0.1:{port}", timeout=self.connect_timeout_ms)

    def connect_ws_endpoint(self, port: int) -> Browser:
        resp = httpx.get(f"http://127.0.0.1:{port}/json/version", timeout=self.discovery_timeout)
        resp.raise_for_status()
        ws_url = resp.json().get("webSocketDebuggerUrl")
        if not ws_url:
            raise ConnectionError(f"No webSocketDebuggerUrl advertised on port {port}")
        return self._chromium().connect_over_cdp(ws_url, timeout=self.connect_timeout_ms)

    def close(self) -> None:
        if self._playwright is not None:
            try:
                self._playwright.stop()
            except PlaywrightError as exc:
                logger.debug("Playwright stop failed: %s", exc)
            self._playwright = None


# ── Orchestrator ─────────────────────────────────────────────

class ConnectionOrchestrator:
    def __init__(
        self,
        options: Optional[ConnectionOptions] = None,
        connector: Optional[Connector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.options = options or ConnectionOptions()
        self.connector: Connector = connector or CdpConnector()
        self._sleep = sleep
        self.state = ConnState.INIT
        self.env: Optional[str] = None
        self.browser: Optional[Browser] = None
        self.page: Optional[Page] = None
        self.session_id: Optional[str] = None
        self.retry_count = 0
        self.last_issue: Optional[Dict[str, Any]] = None
        self.history: Deque[Dict[str, Any]] = deque(maxlen=self.options.state_history_size)
        self._observers: List[Observer] = []
        self._wired_browser: Optional[Browser] = None
        self._wired_page: Optional[Page] = None

    # ── Observability ────────────────────────────────────────

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register *observer*; returns a callable that unsubscribes it."""
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: Observer) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def _emit(self, events: List[Event]) -> None:
        for name, payload in events:
            for observer in list(self._observers):
                try:
                    observer(name, payload)
                except Exception:  # noqa: BLE001
                    logger.exception("Connection observer failed on %s", name)

    def set_state(self, target: ConnState, **meta: Any) -> None:
        new_state, events = transition(self.state, target, **meta)
        if not events:
            return
        self.state = new_state
        self.history.append({
            "state": new_state.value,
            "meta": meta,
            "ts": datetime.now(timezone.utc).isoformat(),
        })
        logger.info("Connection state: %s %s", new_state.value, meta or "")
        self._emit(events)

    def _issue(self, issue: IssueType, message: str) -> None:
        self.last_issue = {
            "type": issue.value,
            "message": message,
            "ts": datetime.now(timezone.utc).isoformat(),
        }

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "env": self.env,
            "browser_connected": self._browser_connected(),
            "page_url": self._page_url(),
            "session_id": self.session_id,
            "retry_count": self.retry_count,
            "last_issue": self.last_issue,
        }

    # ── Event wiring ─────────────────────────────────────────

    def _wire_browser(self, browser: Browser) -> None:
        if self._wired_browser is browser:
            return
        self._unwire_browser()
        browser.on("disconnected", self._on_disconnected)
        self._wired_browser = browser

    def _unwire_browser(self) -> None:
        if self._wired_browser is not None:
            try:
                self._wired_browser.remove_listener("disconnected", self._on_disconnected)
            except (PlaywrightError, ValueError, KeyError):
                pass
            self._wired_browser = None

    def _wire_page(self, page: Page) -> None:
        if self._wired_page is page:
            return
        self._unwire_page()
        page.on("close", self._on_page_closed)
        self._wired_page = page

    def _unwire_page(self) -> None:
        if self._wired_page is not None:
            try:
                self._wired_page.remove_listener("close", self._on_page_closed)
            except (PlaywrightError, ValueError, KeyError):
                pass
            self._wired_page = None

    def _on_disconnected(self, *_args: Any) -> None:
        self._issue(IssueType.BROWSER_DISCONNECTED, "Browser disconnected")
        self.cleanup()
        self.set_state(ConnState.BROWSER_LOST)

    def _on_page_closed(self, page: Any = None) -> None:
        if page is not None and page is not self.page:
            return
        self._issue(IssueType.PAGE_CLOSED_BY_USER, "Target page closed")
        self._unwire_page()
        self._close_session()
        self.page = None
        self.set_state(ConnState.WAITING_FOR_PAGE)

    def _close_session(self) -> None:
        if self.session_id is None:
            return
        session_id, self.session_id = self.session_id, None
        self._emit([(SESSION_CLOSED, {"session_id": session_id})])

    def cleanup(self) -> None:
        """Drop all handles and event wiring. Does not close the browser."""
        self._unwire_page()
        self._unwire_browser()
        self._close_session()
        self.browser = None
        self.page = None

    def teardown(self) -> None:
        """Disconnect from the browser and forget everything."""
        browser = self.browser
        self.cleanup()
        if browser is not None:
            try:
                browser.close()
            except PlaywrightError as exc:
                logger.debug("Browser close during teardown failed: %s", exc)
        self.set_state(ConnState.INIT)

    # ── Phases ───────────────────────────────────────────────

    def detect_environment(self) -> str:
        self.set_state(ConnState.DETECTING_ENV)
        system = platform.system().lower()
        self.env = "windows" if system == "windows" else "mac" if system == "darwin" else "linux"
        return self.env

    def _browser_connected(self) -> bool:
        try:
            return bool(self.browser is not None and self.browser.is_connected())
        except PlaywrightError:
            return False

    def _page_url(self) -> Optional[str]:
        try:
            return self.page.url if self.page is not None and not self.page.is_closed() else None
        except PlaywrightError:
            return None

    def _try_strategy(self, strategy: str) -> Optional[Browser]:
        for port in self.options.ports:
            try:
                if strategy == "BROWSER_URL":
                    return self.connector.connect_browser_url(port)
                if strategy == "WS_ENDPOINT":
                    return self.connector.connect_ws_endpoint(port)
                logger.warning("Unknown connection strategy %s", strategy)
                return None
            except (PlaywrightError, httpx.HTTPError, OSError, ValueError) as exc:
                logger.debug("Attach via %s on port %s failed: %s", strategy, port, exc)
        return None

    def ensure_browser(self) -> Browser:
        self.set_state(ConnState.WAITING_FOR_BROWSER)
        if self._browser_connected():
            self.set_state(ConnState.BROWSER_READY)
            return self.browser  # type: ignore[return-value]

        self.cleanup()
        while True:
            self.set_state(ConnState.CONNECTING_BROWSER)
            browser: Optional[Browser] = None
            for strategy in self.options.connection_strategies:
                browser = self._try_strategy(strategy)
                if browser is not None:
                    break
            if browser is not None:
                self.browser = browser
                self._wire_browser(browser)
                self.retry_count = 0
                self.set_state(ConnState.BROWSER_READY)
                return browser

            self.retry_count += 1
            self._issue(IssueType.BROWSER_NOT_STARTED, f"No debuggable browser on ports {self.options.ports}")
            self.set_state(ConnState.RETRY_BROWSER, retry=self.retry_count)
            self._sleep(backoff_delay(
                self.retry_count,
                self.options.retry_delay_seconds,
                self.options.max_retry_delay_seconds,
            ))

    def scan_for_target_page(self) -> Optional[Page]:
        assert self.browser is not None
        candidates: List[Page] = []
        for context in self.browser.contexts:
            for page in context.pages:
                url = page.url or ""
                if url and url != "about:blank" and any(d in url for d in self.options.allowed_domains):
                    candidates.append(page)
        if not candidates:
            return None
        return candidates[-1] if self.options.page_selection_policy == "MOST_RECENT" else candidates[0]

    def ensure_page(self) -> Page:
        self.set_state(ConnState.WAITING_FOR_PAGE)
        if self.page is not None and not self.page.is_closed():
            self.set_state(ConnState.PAGE_SELECTED)
            return self.page

        while True:
            if not self._browser_connected():
                self.set_state(ConnState.BROWSER_LOST)
                raise BrowserLostError("Browser lost during page scan")
            try:
                page = self.scan_for_target_page()
            except PlaywrightError as exc:
                logger.debug("Page scan failed: %s", exc)
                self._sleep(1.0)
                continue
            if page is not None:
                if page is not self.page:
                    self._close_session()
                    self.session_id = uuid.uuid4().hex[:12]
                    self._emit([(SESSION_OPENED, {"session_id": self.session_id, "url": page.url})])
                self.page = page
                self._wire_page(page)
                self.set_state(ConnState.PAGE_SELECTED, url=page.url)
                return page
            self._issue(IssueType.PAGE_NOT_FOUND, "Waiting for a target tab")
            self._sleep(self.options.page_scan_interval_seconds)

    def validate_page(self, page: Page) -> bool:
        self.set_state(ConnState.VALIDATING_PAGE)
        try:
            if page is None or page.is_closed():
                raise PlaywrightError("Page closed")
            try:
                page.bring_to_front()
            except PlaywrightError:
                pass
        except PlaywrightError as exc:
            self._issue(IssueType.PAGE_INVALID, str(exc))
            self._unwire_page()
            self._close_session()
            self.page = None
            self.set_state(ConnState.PAGE_INVALID)
            return False
        self.set_state(ConnState.PAGE_VALIDATED, url=page.url)
        return True

    # ── Public API ───────────────────────────────────────────

    def acquire_context(self) -> AcquiredContext:
        """Block until a validated target page is available. Never raises."""
        self.detect_environment()
        while True:
            try:
                self.ensure_browser()
                page = self.ensure_page()
                if self.validate_page(page):
                    self.set_state(ConnState.READY)
                    return AcquiredContext(self.browser, self.page, self.session_id)  # type: ignore[arg-type]
            except BrowserLostError as exc:
                logger.warning("Recovery cycle: %s", exc)
                self.cleanup()
                self._sleep(1.0)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Recovery cycle after unexpected error: %s", exc)
                self._sleep(1.0)

    def close(self) -> None:
        self.cleanup()
        close = getattr(self.connector, "close", None)
        if callable(close):
            close()
