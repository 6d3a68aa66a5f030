"""Differential diagnosis of a silent page.

A long mutation gap is not necessarily a failure: the model may still be
thinking, or the UI may be loading. :func:`diagnose_stall` walks the
possible causes in fixed priority order and returns the first match.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from chatrelay.core.vocabulary import Vocabulary
from chatrelay.integrations.errors import (
    CaptchaDetectedError,
    CompletionError,
    LimitReachedError,
    LoginRequiredError,
    StallDetectedError,
)
from chatrelay.integrations.page_probe import PageProbe

logger = logging.getLogger("chatrelay.triage")

FROZEN_LAG_MS = 1000.0


class Diagnosis(str, Enum):
    CAPTCHA = "CAPTCHA"
    LOGIN_REQUIRED = "LOGIN_REQUIRED"
    LIMIT_REACHED = "LIMIT_REACHED"
    GENERIC_ERROR_TEXT = "GENERIC_ERROR_TEXT"
    GENERIC_ERROR_VISUAL = "GENERIC_ERROR_VISUAL"
    FINISHED_ABRUPTLY = "FINISHED_ABRUPTLY"
    THINKING = "THINKING"
    LOADING = "LOADING"
    BROWSER_FROZEN = "BROWSER_FROZEN"
    UNKNOWN = "UNKNOWN"


HARD_BLOCKERS = {Diagnosis.CAPTCHA, Diagnosis.LOGIN_REQUIRED, Diagnosis.LIMIT_REACHED}
STILL_WORKING = {Diagnosis.THINKING, Diagnosis.LOADING}


def _page_verdict(
    probe: PageProbe,
    vocabulary: Vocabulary,
    language: str,
    exclude_selector: str,
    full: bool,
) -> Optional[Diagnosis]:
    raw = probe.scan_page(
        errors=vocabulary.get_terms("error_indicators", language) if full else (),
        closers=vocabulary.get_terms("close_actions", language) if full else (),
        limit_patterns=vocabulary.get_terms("limit_indicators", language),
        exclude_selector=exclude_selector,
        full=full,
    )
    if not raw:
        return None
    try:
        return Diagnosis(raw)
    except ValueError:
        logger.warning("Page scan returned unknown verdict %r", raw)
        return None


def scan_hard_blockers(
    probe: PageProbe, vocabulary: Vocabulary, language: str = "en", exclude_selector: str = ""
) -> Optional[Diagnosis]:
    """Cheap per-cycle check for captcha, login wall or usage limit."""
    return _page_verdict(probe, vocabulary, language, exclude_selector, full=False)


def diagnose_stall(
    probe: PageProbe,
    vocabulary: Vocabulary,
    language: str = "en",
    exclude_selector: str = "",
    frozen_lag_ms: float = FROZEN_LAG_MS,
) -> Diagnosis:
    verdict = _page_verdict(probe, vocabulary, language, exclude_selector, full=True)
    if verdict is not None:
        return verdict

    status = probe.load_status()
    if status == "BUSY_NETWORK":
        return Diagnosis.THINKING
    if status == "BUSY_SPINNER":
        return Diagnosis.LOADING

    lag = probe.event_loop_lag_ms()
    if lag > frozen_lag_ms:
        logger.warning("Page event loop lag %.0fms, tab considered frozen", lag)
        return Diagnosis.BROWSER_FROZEN

    return Diagnosis.UNKNOWN


def error_for(diagnosis: Diagnosis, detail: Optional[str] = None) -> CompletionError:
    """Typed failure for a terminal diagnosis."""
    if diagnosis == Diagnosis.LIMIT_REACHED:
        return LimitReachedError(detail)
    if diagnosis == Diagnosis.CAPTCHA:
        return CaptchaDetectedError(detail)
    if diagnosis == Diagnosis.LOGIN_REQUIRED:
        return LoginRequiredError(detail)
    return StallDetectedError(diagnosis.value, detail)
