"""Human-paced input and selector discovery for chat pages."""
from __future__ import annotations

import logging
import random
import time
from typing import Callable, List, Optional, Sequence

from playwright.sync_api import Error as PlaywrightError, Page

from chatrelay.core.rules import DEFAULT_SELECTORS, RulesFile

logger = logging.getLogger("chatrelay.human_input")

# QWERTY neighbours used to simulate a mistyped key
KEY_NEIGHBORS = {
    "a": "qsxz", "b": "vghn", "c": "xdfv", "d": "serfc", "e": "wsdr",
    "f": "drtgv", "g": "ftyhb", "h": "gyujn", "i": "ujko", "j": "huikm",
    "k": "jiol", "l": "kop", "m": "njk", "n": "bhjm", "o": "iklp",
    "p": "ol", "q": "wa", "r": "edft", "s": "awzx", "t": "rfgy",
    "u": "yhji", "v": "cfgb", "w": "qase", "x": "zsdc", "y": "tghu",
    "z": "asx",
}
TYPO_RATE = 0.02
PUNCTUATION = ".,\n?!"


class HumanInput:
    def __init__(
        self,
        page: Page,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.page = page
        self._sleep = sleep
        self._rng = rng or random.Random()

    def _pause(self, low: float, high: float) -> None:
        self._sleep(self._rng.uniform(low, high))

    def type(self, text: str) -> None:
        """Type *text* key by key with jittered delays and corrected typos."""
        keyboard = self.page.keyboard
        for i, char in enumerate(text):
            neighbors = KEY_NEIGHBORS.get(char.lower())
            if i > 0 and neighbors and self._rng.random() < TYPO_RATE:
                keyboard.type(self._rng.choice(neighbors))
                self._pause(0.1, 0.3)
                keyboard.press("Backspace")
                self._pause(0.05, 0.15)

            if char == "\n":
                # Enter would submit the prompt
                keyboard.press("Shift+Enter")
            else:
                keyboard.type(char)

            delay = self._rng.uniform(0.03, 0.09)
            if char in PUNCTUATION:
                delay += 0.15
            elif char.isupper():
                delay += 0.05
            self._sleep(delay)

            if i and i % 50 == 0 and self._rng.random() < 0.1:
                self._sleep(0.6)

    def click(self, selector: str) -> None:
        """Move to the element's centre and click, falling back to a native click."""
        locator = self.page.locator(selector).first
        try:
            locator.scroll_into_view_if_needed(timeout=5000)
            self._pause(0.2, 0.5)
            box = locator.bounding_box()
            if box is None:
                raise PlaywrightError(f"{selector} has no bounding box")
            x = box["x"] + box["width"] / 2 + self._rng.uniform(-3, 3)
            y = box["y"] + box["height"] / 2 + self._rng.uniform(-3, 3)
            self.page.mouse.move(x, y, steps=self._rng.randint(8, 20))
            self._pause(0.05, 0.15)
            self.page.mouse.click(x, y)
        except PlaywrightError as exc:
            logger.warning("Humanized click on %s failed, using native click: %s", selector, exc)
            self.page.click(selector, timeout=5000)

    def wake_up_move(self) -> None:
        try:
            self.page.mouse.move(self._rng.uniform(0, 500), self._rng.uniform(0, 500), steps=5)
        except PlaywrightError as exc:
            logger.debug("Wake-up move failed: %s", exc)


# Heuristic fallback when no configured selector matches: tags the best
# candidate with a data attribute and returns a selector for it.
_FIND_INPUT = r"""
({ terms, marker }) => {
  const visible = (el) => {
    const r = el.getBoundingClientRect();
    return r.width > 0 && r.height > 0 && el.offsetParent !== null;
  };
  const candidates = Array.from(document.querySelectorAll(
    'textarea, div[contenteditable="true"], [role="textbox"]'
  )).filter(visible);
  const score = (el) => {
    let s = 0;
    if (el.getBoundingClientRect().top > window.innerHeight * 0.4) s += 100;
    const label = (el.getAttribute('placeholder') || el.getAttribute('aria-label') || '').toLowerCase();
    if (terms.some((t) => label.includes(t))) s += 150;
    return s;
  };
  const best = candidates.sort((a, b) => score(b) - score(a))[0];
  if (!best) return null;
  document.querySelectorAll('[' + marker + ']').forEach((e) => e.removeAttribute(marker));
  best.setAttribute(marker, '1');
  return '[' + marker + ']';
}
"""

_FIND_SEND = r"""
({ inputSelector, marker }) => {
  const input = document.querySelector(inputSelector);
  if (!input) return null;
  const ir = input.getBoundingClientRect();
  const buttons = Array.from(document.querySelectorAll('button, [role="button"]'))
    .filter((b) => !b.disabled && b.offsetParent !== null);
  const score = (b) => {
    const r = b.getBoundingClientRect();
    let s = 0;
    if (r.left >= ir.left && Math.abs(r.top - ir.top) < 120) s += 80;
    const label = (b.getAttribute('aria-label') || b.innerText || '').toLowerCase();
    if (label.includes('send') || label.includes('enviar')) s += 150;
    return s;
  };
  const best = buttons.sort((a, b) => score(b) - score(a))[0];
  if (!best || score(best) === 0) return null;
  document.querySelectorAll('[' + marker + ']').forEach((e) => e.removeAttribute(marker));
  best.setAttribute(marker, '1');
  return '[' + marker + ']';
}
"""

INPUT_MARKER = "data-chatrelay-input"
SEND_MARKER = "data-chatrelay-send"


class SelectorDiscovery:
    """Resolve the chat input, send control and response region selectors.

    Candidates from the rules file are tried first, in order; the first
    visible match wins and is cached until :meth:`forget` is called.
    """

    def __init__(self, page: Page, rules_file: Optional[RulesFile] = None) -> None:
        self.page = page
        self.rules_file = rules_file
        self._cache: dict[str, str] = {}

    def forget(self) -> None:
        self._cache.clear()

    def _candidates(self, name: str) -> List[str]:
        if self.rules_file is None:
            return list(DEFAULT_SELECTORS.get(name, []))
        return self.rules_file.load().candidates(name)

    def _first_visible(self, selectors: Sequence[str]) -> Optional[str]:
        for selector in selectors:
            try:
                if self.page.locator(selector).first.is_visible():
                    return selector
            except PlaywrightError as exc:
                logger.debug("Selector %s unusable: %s", selector, exc)
        return None

    def _cached(self, name: str) -> Optional[str]:
        selector = self._cache.get(name)
        if selector and self._first_visible([selector]):
            return selector
        self._cache.pop(name, None)
        return None

    def find_input(self, placeholder_terms: Sequence[str] = ()) -> Optional[str]:
        selector = self._cached("input_box") or self._first_visible(self._candidates("input_box"))
        if selector is None:
            try:
                selector = self.page.evaluate(_FIND_INPUT, {"terms": list(placeholder_terms), "marker": INPUT_MARKER})
            except PlaywrightError as exc:
                logger.debug("Input heuristic failed: %s", exc)
        if selector:
            self._cache["input_box"] = selector
        return selector

    def find_send_control(self, input_selector: Optional[str] = None) -> Optional[str]:
        selector = self._cached("send_button") or self._first_visible(self._candidates("send_button"))
        if selector is None and input_selector:
            try:
                selector = self.page.evaluate(_FIND_SEND, {"inputSelector": input_selector, "marker": SEND_MARKER})
            except PlaywrightError as exc:
                logger.debug("Send control heuristic failed: %s", exc)
        if selector:
            self._cache["send_button"] = selector
        return selector

    def find_response_region(self) -> str:
        """The response selector never depends on visibility (a new chat has none yet)."""
        candidates = self._candidates("response_region")
        for selector in candidates:
            try:
                if self.page.locator(selector).count() > 0:
                    return selector
            except PlaywrightError:
                continue
        return candidates[0] if candidates else DEFAULT_SELECTORS["response_region"][0]
