"""In-page queries.

Every query is a constant script evaluated with structured arguments via
Playwright's ``page.evaluate``; nothing is built by string concatenation.
A page that has gone away surfaces as :class:`TargetClosedError`.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from playwright.sync_api import Error as PlaywrightError, Page

from chatrelay.integrations.errors import TargetClosedError

logger = logging.getLogger("chatrelay.page_probe")

# Lag reported when the probe itself cannot run (treated as frozen)
UNMEASURABLE_LAG_MS = 1000.0

_WATCHDOG_GAP = r"""
() => {
  if (!window.__chatrelayWatchdog) {
    window.__chatrelayLastChange = Date.now();
    window.__chatrelayWatchdog = new MutationObserver(() => { window.__chatrelayLastChange = Date.now(); });
    window.__chatrelayWatchdog.observe(document.body, { childList: true, subtree: true, characterData: true });
  }
  return Date.now() - window.__chatrelayLastChange;
}
"""

_WATCHDOG_RESET = r"""
() => { window.__chatrelayLastChange = Date.now(); return true; }
"""

_RESPONSE_TEXTS = r"""
(selector) => Array.from(document.querySelectorAll(selector)).map(n => n.innerText || '')
"""

_RESPONSE_COUNT = r"""
(selector) => document.querySelectorAll(selector).length
"""

_SCAN_PAGE = r"""
({ errors, closers, limitPatterns, exclude, full }) => {
  const visible = (el) => !!el && el.offsetParent !== null;
  const captcha = document.querySelector(
    '#challenge-running, #challenge-form, #cf-challenge-running, ' +
    'iframe[src*="challenges.cloudflare.com"], iframe[src*="recaptcha"], iframe[src*="hcaptcha"]'
  );
  if (captcha) return 'CAPTCHA';

  const excluded = exclude ? Array.from(document.querySelectorAll(exclude)) : [];
  let text = document.body ? (document.body.innerText || '') : '';
  for (const node of excluded) {
    const t = node.innerText;
    if (t) text = text.split(t).join(' ');
  }
  text = text.toLowerCase();

  if (text.includes('verify you are human')) return 'CAPTCHA';
  if (visible(document.querySelector('input[type="password"]'))) return 'LOGIN_REQUIRED';
  if (limitPatterns.some((p) => text.includes(p))) return 'LIMIT_REACHED';
  if (!full) return null;

  if (errors.some((t) => text.includes(t))) return 'GENERIC_ERROR_TEXT';

  const isErrorColor = (c) => {
    const m = (c || '').match(/\d+/g);
    if (!m || m.length < 3) return false;
    const [r, g, b] = m.map(Number);
    if (m.length >= 4 && Number(m[3]) === 0) return false;
    return (r > 150 && g < 100 && b < 100) || (r > 200 && g > 100 && g < 200 && b < 100);
  };
  for (const el of document.querySelectorAll('body *')) {
    if (el.children.length > 0) continue;
    if (excluded.some((x) => x.contains(el))) continue;
    if ((el.innerText || '').trim().length < 5 || !visible(el)) continue;
    const style = window.getComputedStyle(el);
    if (isErrorColor(style.color) || isErrorColor(style.backgroundColor)) return 'GENERIC_ERROR_VISUAL';
  }

  const buttons = Array.from(document.querySelectorAll('button, [role="button"]'));
  const closer = buttons.find((b) => {
    const label = (b.innerText || b.getAttribute('aria-label') || '').trim().toLowerCase();
    return label && closers.some((c) => label === c || label.includes(c)) && visible(b);
  });
  const stop = document.querySelector('[aria-label*="Stop"], [data-testid="stop-button"], [title*="Stop"]');
  if (closer && !stop) return 'FINISHED_ABRUPTLY';
  return null;
}
"""

_LOAD_STATUS = r"""
() => {
  const loaders = document.querySelectorAll('[role="progressbar"], .spinner, .loading, svg.animate-spin');
  const shown = (el) => {
    const s = window.getComputedStyle(el);
    return s.display !== 'none' && s.visibility !== 'hidden' && s.opacity !== '0';
  };
  if (Array.from(loaders).some(shown)) return 'BUSY_SPINNER';
  const entries = performance.getEntriesByType('resource');
  if (entries.length > 0) {
    const last = entries[entries.length - 1];
    if (performance.now() - last.responseEnd < 500) return 'BUSY_NETWORK';
  }
  return 'IDLE';
}
"""

_EVENT_LOOP_LAG = r"""
async () => {
  const start = performance.now();
  await new Promise((r) => setTimeout(r, 0));
  return performance.now() - start;
}
"""

_LANGUAGE = r"""
() => document.documentElement.lang || navigator.language || 'en'
"""

_IS_BUSY = r"""
() => !!(document.querySelector('[aria-label*="Stop"], [data-testid="stop-button"]') ||
         document.querySelector('[aria-busy="true"]'))
"""

_INPUT_TEXT = r"""
(selector) => {
  const el = document.querySelector(selector);
  if (!el) return null;
  return (el.value !== undefined ? el.value : el.innerText) || '';
}
"""

_SANITIZED_DOM = r"""
() => {
  const clone = document.documentElement.cloneNode(true);
  clone.querySelectorAll('script, style, svg, path, noscript').forEach((e) => e.remove());
  return clone.outerHTML;
}
"""

class PageProbe:
    def __init__(self, page: Page) -> None:
        self.page = page

    def _eval(self, script: str, arg: Any = None) -> Any:
        if self.page.is_closed():
            raise TargetClosedError("Target page closed")
        try:
            return self.page.evaluate(script, arg)
        except PlaywrightError as exc:
            if "closed" in str(exc).lower():
                raise TargetClosedError(str(exc)) from exc
            raise

    # ── Mutation watchdog ────────────────────────────────────

    def mutation_gap_ms(self) -> float:
        """Ms since the last DOM mutation, measured by the page's own clock.

        Installs the observer on first use (and again after navigation).
        """
        return float(self._eval(_WATCHDOG_GAP) or 0)

    def reset_watchdog(self) -> None:
        self._eval(_WATCHDOG_RESET)

    # ── Response region ──────────────────────────────────────

    def response_texts(self, selector: str) -> List[str]:
        return list(self._eval(_RESPONSE_TEXTS, selector) or [])

    def response_count(self, selector: str) -> int:
        return int(self._eval(_RESPONSE_COUNT, selector) or 0)

    def input_text(self, selector: str) -> Optional[str]:
        return self._eval(_INPUT_TEXT, selector)

    # ── Diagnostics ──────────────────────────────────────────

    def scan_page(
        self,
        *,
        errors: Sequence[str] = (),
        closers: Sequence[str] = (),
        limit_patterns: Sequence[str] = (),
        exclude_selector: str = "",
        full: bool = False,
    ) -> Optional[str]:
        return self._eval(_SCAN_PAGE, {
            "errors": [t.lower() for t in errors],
            "closers": [t.lower() for t in closers],
            "limitPatterns": [t.lower() for t in limit_patterns],
            "exclude": exclude_selector,
            "full": full,
        })

    def load_status(self) -> str:
        try:
            return str(self._eval(_LOAD_STATUS))
        except TargetClosedError:
            raise
        except PlaywrightError as exc:
            logger.debug("Load status probe failed: %s", exc)
            return "UNKNOWN"

    def event_loop_lag_ms(self) -> float:
        try:
            return float(self._eval(_EVENT_LOOP_LAG))
        except TargetClosedError:
            raise
        except PlaywrightError as exc:
            logger.debug("Lag probe failed: %s", exc)
            return UNMEASURABLE_LAG_MS

    def language(self) -> str:
        try:
            return str(self._eval(_LANGUAGE) or "en")
        except TargetClosedError:
            raise
        except PlaywrightError:
            return "en"

    def is_busy(self) -> bool:
        return bool(self._eval(_IS_BUSY))

    def sanitized_dom(self) -> str:
        return str(self._eval(_SANITIZED_DOM) or "")
