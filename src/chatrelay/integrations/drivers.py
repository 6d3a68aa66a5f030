"""Per-target page drivers.

A driver knows how to talk to one chat product through a live page:
prepare a clean conversation, deliver a prompt, and wait for the answer.
Drivers are cached per browser session in :class:`DriverRegistry` and
disposed explicitly when the session closes.
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from playwright.sync_api import Error as PlaywrightError, Page

from chatrelay.core.adaptive import AdaptiveTimeouts
from chatrelay.core.models import TaskSpec
from chatrelay.core.rules import RulesFile
from chatrelay.core.vocabulary import Vocabulary, normalize_lang
from chatrelay.integrations.completion import CompletionWatcher
from chatrelay.integrations.errors import (
    CompletionError,
    PromptDeliveryError,
    TargetClosedError,
    UnknownTargetError,
)
from chatrelay.integrations.human_input import HumanInput, SelectorDiscovery
from chatrelay.integrations.page_probe import PageProbe

logger = logging.getLogger("chatrelay.drivers")

STATE_CHANGE = "state_change"
SEND_ATTEMPTS = 3
# Above either threshold the prompt is inserted in one go instead of typed
ATOMIC_FILL_LAG_MS = 250.0
ATOMIC_FILL_CHARS = 2000
ECHO_RATIO = 0.8
KEEPALIVE_SECONDS = 25.0

DriverObserver = Callable[[str, Dict[str, Any]], None]


class DriverState(str, Enum):
    IDLE = "IDLE"
    PREPARING = "PREPARING"
    TYPING = "TYPING"
    WAITING = "WAITING"
    STALLED = "STALLED"


@dataclass
class DriverConfig:
    default_model: str = "gpt-5"
    ui_language: str = "en"
    human_typing: bool = True
    stable_cycles: int = 3
    stability_interval_seconds: float = 1.5
    task_timeout_seconds: float = 1800.0

    @classmethod
    def from_settings(cls, settings: Any) -> "DriverConfig":
        return cls(
            default_model=settings.default_model,
            ui_language=settings.ui_language,
            human_typing=settings.human_typing,
            stable_cycles=settings.stable_cycles,
            stability_interval_seconds=settings.stability_interval_seconds,
            task_timeout_seconds=settings.task_timeout_seconds,
        )


class TargetDriver:
    """Base class: state tracking, observers and the shared collaborators."""

    name = "base"
    domain = ""
    continue_command = "continue"
    response_selector = ""

    def __init__(
        self,
        page: Page,
        *,
        config: Optional[DriverConfig] = None,
        adaptive: Optional[AdaptiveTimeouts] = None,
        vocabulary: Optional[Vocabulary] = None,
        rules_file: Optional[RulesFile] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.page = page
        self.config = config or DriverConfig()
        self.adaptive = adaptive or AdaptiveTimeouts()
        self.vocabulary = vocabulary or Vocabulary()
        self.probe = PageProbe(page)
        self.human = HumanInput(page, sleep=sleep)
        self.discovery = SelectorDiscovery(page, rules_file)
        self._sleep = sleep
        self._clock = clock
        self._state = DriverState.IDLE
        self._observers: List[DriverObserver] = []
        self._last_keepalive = clock()

    @property
    def state(self) -> DriverState:
        return self._state

    def subscribe(self, observer: DriverObserver) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: DriverObserver) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            pass

    def set_state(self, state: DriverState) -> None:
        if state == self._state:
            return
        payload = {"driver": self.name, "from": self._state.value, "to": state.value}
        self._state = state
        for observer in list(self._observers):
            try:
                observer(STATE_CHANGE, payload)
            except Exception:  # noqa: BLE001
                logger.exception("Driver observer failed")

    def dispose(self) -> None:
        self._observers.clear()
        self.discovery.forget()
        self._state = DriverState.IDLE

    def _assert_page_alive(self) -> None:
        if self.page.is_closed():
            raise TargetClosedError("Target page closed")

    # Target-specific operations

    def validate_page(self) -> bool:
        raise NotImplementedError

    def capture_state(self) -> int:
        raise NotImplementedError

    def prepare_context(self, spec: TaskSpec) -> None:
        raise NotImplementedError

    def send_prompt(self, text: str, task_id: Optional[str] = None) -> None:
        raise NotImplementedError

    def wait_for_completion(
        self,
        start_count: int = 0,
        task_id: Optional[str] = None,
        hard_cap_seconds: Optional[float] = None,
    ) -> str:
        raise NotImplementedError


class ChatGPTDriver(TargetDriver):
    name = "chatgpt"
    domain = "chatgpt.com"
    response_selector = "div[data-message-author-role='assistant']"

    def _response_selector(self) -> str:
        return self.discovery.find_response_region() or self.response_selector

    def validate_page(self) -> bool:
        try:
            return self.domain in (self.page.url or "")
        except PlaywrightError:
            return False

    def capture_state(self) -> int:
        """Number of assistant messages already on the page."""
        try:
            return self.probe.response_count(self._response_selector())
        except TargetClosedError:
            raise
        except PlaywrightError as exc:
            logger.debug("Capture state failed: %s", exc)
            return 0

    def prepare_context(self, spec: TaskSpec) -> None:
        """Open a fresh chat with the requested model unless history must be kept."""
        self.set_state(DriverState.PREPARING)
        self._assert_page_alive()
        model = spec.model or self.config.default_model
        target_url = f"https://{self.domain}/?model={model}"
        current = self.page.url or ""
        in_conversation = "/c/" in current
        wrong_model = f"model={model}" not in current

        if spec.config.reset_context or wrong_model or (in_conversation and not spec.config.require_history):
            logger.info("[%s] Opening new chat with model %s", self.name, model)
            self.page.goto(target_url, wait_until="domcontentloaded", timeout=30_000)
            self.discovery.forget()
            self._sleep(3.0)
        self.set_state(DriverState.IDLE)

    # ── Prompt delivery ──────────────────────────────────────

    def _wait_if_busy(self) -> None:
        timeout_s = self.adaptive.get_timeout(self.name, 0, "INITIAL") / 1000.0
        deadline = self._clock() + timeout_s
        while self._clock() < deadline:
            self._assert_page_alive()
            now = self._clock()
            if now - self._last_keepalive > KEEPALIVE_SECONDS + random.uniform(0, 10):
                self.human.wake_up_move()
                self._last_keepalive = now
            if not self.probe.is_busy() and self.probe.load_status() == "IDLE":
                return
            self._sleep(1.0)
        logger.warning("[%s] Page still busy after %.0fs, sending anyway", self.name, timeout_s)

    def _clear_input(self, selector: str) -> None:
        self.page.locator(selector).first.focus()
        self.page.keyboard.press("ControlOrMeta+A")
        self.page.keyboard.press("Backspace")

    def _deliver(self, text: str, task_id: Optional[str]) -> None:
        self._assert_page_alive()
        try:
            self.page.bring_to_front()
        except PlaywrightError:
            pass

        language = normalize_lang(self.probe.language() or self.config.ui_language)
        selector = self.discovery.find_input(self.vocabulary.get_terms("input_placeholders", language))
        if not selector:
            raise PromptDeliveryError("INPUT_NOT_FOUND")
        locator = self.page.locator(selector).first
        if not locator.is_editable():
            raise PromptDeliveryError("ELEMENT_NOT_INTERACTABLE")

        self._clear_input(selector)
        lag = self.probe.event_loop_lag_ms()
        self.set_state(DriverState.TYPING)

        if not self.config.human_typing or lag > ATOMIC_FILL_LAG_MS or len(text) > ATOMIC_FILL_CHARS:
            logger.info("[%s] Atomic fill for task %s (lag %.0fms, %d chars)", self.name, task_id, lag, len(text))
            locator.fill(text)
        else:
            self.human.click(selector)
            self.human.type(text)
            echoed = "".join((self.probe.input_text(selector) or "").split())
            if len(echoed) < len("".join(text.split())) * ECHO_RATIO:
                raise PromptDeliveryError("INPUT_ECHO_FAILED")

        locator.focus()
        self.page.keyboard.press("Enter")
        self._sleep(1.2)

        if (self.probe.input_text(selector) or "").strip():
            send = self.discovery.find_send_control(selector)
            if send:
                logger.info("[%s] Enter did not submit, clicking send control", self.name)
                self.human.click(send)

    def send_prompt(self, text: str, task_id: Optional[str] = None) -> None:
        self._wait_if_busy()
        for attempt in range(1, SEND_ATTEMPTS + 1):
            try:
                self._deliver(text, task_id)
                self.set_state(DriverState.IDLE)
                return
            except (PlaywrightError, PromptDeliveryError) as exc:
                logger.warning("[%s] Send attempt %d/%d failed: %s", self.name, attempt, SEND_ATTEMPTS, exc)
                self.discovery.forget()
                self.set_state(DriverState.IDLE)
                if attempt < SEND_ATTEMPTS:
                    self._sleep(2.0)
        raise PromptDeliveryError(f"EXECUTION_FAIL: input blocked after {SEND_ATTEMPTS} attempts")

    # ── Completion ───────────────────────────────────────────

    def wait_for_completion(
        self,
        start_count: int = 0,
        task_id: Optional[str] = None,
        hard_cap_seconds: Optional[float] = None,
    ) -> str:
        self.set_state(DriverState.WAITING)
        watcher = CompletionWatcher(
            self.probe,
            target=self.name,
            response_selector=self._response_selector(),
            adaptive=self.adaptive,
            vocabulary=self.vocabulary,
            stable_cycles=self.config.stable_cycles,
            interval=self.config.stability_interval_seconds,
            hard_cap_seconds=hard_cap_seconds or self.config.task_timeout_seconds,
            task_id=task_id,
            sleep=self._sleep,
            clock=self._clock,
        )
        try:
            text = watcher.wait_for_completion(start_count)
        except CompletionError:
            self.set_state(DriverState.STALLED)
            raise
        self.set_state(DriverState.IDLE)
        return text


DRIVER_CLASSES: Dict[str, Type[TargetDriver]] = {
    ChatGPTDriver.name: ChatGPTDriver,
}


class DriverRegistry:
    """Drivers keyed by browser session id, then by target name."""

    def __init__(
        self,
        *,
        config: Optional[DriverConfig] = None,
        adaptive: Optional[AdaptiveTimeouts] = None,
        vocabulary: Optional[Vocabulary] = None,
        rules_file: Optional[RulesFile] = None,
        classes: Optional[Dict[str, Type[TargetDriver]]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or DriverConfig()
        self.adaptive = adaptive
        self.vocabulary = vocabulary
        self.rules_file = rules_file
        self.classes = dict(classes or DRIVER_CLASSES)
        self._sleep = sleep
        self._sessions: Dict[str, Dict[str, TargetDriver]] = {}

    def get(self, target: str, session_id: str, page: Page) -> TargetDriver:
        key = (target or "chatgpt").lower()
        drivers = self._sessions.setdefault(session_id, {})
        driver = drivers.get(key)
        if driver is not None and driver.page is page:
            return driver
        if driver is not None:
            driver.dispose()

        cls = self.classes.get(key)
        if cls is None:
            available = ", ".join(sorted(self.classes)) or "none"
            raise UnknownTargetError(f"No driver for target '{key}'. Available: [{available}]")
        driver = cls(
            page,
            config=self.config,
            adaptive=self.adaptive,
            vocabulary=self.vocabulary,
            rules_file=self.rules_file,
            sleep=self._sleep,
        )
        drivers[key] = driver
        logger.info("Driver %s created for session %s", key, session_id)
        return driver

    def dispose(self, session_id: str) -> int:
        drivers = self._sessions.pop(session_id, {})
        for driver in drivers.values():
            driver.dispose()
        if drivers:
            logger.info("Disposed %d driver(s) for session %s", len(drivers), session_id)
        return len(drivers)

    def dispose_all(self) -> None:
        for session_id in list(self._sessions):
            self.dispose(session_id)

    def session_ids(self) -> List[str]:
        return list(self._sessions)
