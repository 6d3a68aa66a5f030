"""Response completion detection.

There is no reliable "done" signal in a chat UI, so completion is
inferred: the new response text is polled every ``interval`` seconds and
declared complete once it has stayed identical for ``stable_cycles``
consecutive polls. Independently, the in-page mutation watchdog reports
how long the DOM has been silent; when that gap exceeds the adaptive
timeout the page is triaged before anything is declared stalled.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from playwright.sync_api import Error as PlaywrightError

from chatrelay.core.adaptive import AdaptiveTimeouts
from chatrelay.core.logging_config import log_metric
from chatrelay.core.vocabulary import Vocabulary
from chatrelay.integrations.errors import StallDetectedError
from chatrelay.integrations.page_probe import PageProbe
from chatrelay.integrations.triage import STILL_WORKING, diagnose_stall, error_for, scan_hard_blockers

logger = logging.getLogger("chatrelay.completion")


class CompletionWatcher:
    def __init__(
        self,
        probe: PageProbe,
        *,
        target: str,
        response_selector: str,
        adaptive: AdaptiveTimeouts,
        vocabulary: Vocabulary,
        stable_cycles: int = 3,
        interval: float = 1.5,
        hard_cap_seconds: float = 1800.0,
        task_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.probe = probe
        self.target = target
        self.response_selector = response_selector
        self.adaptive = adaptive
        self.vocabulary = vocabulary
        self.stable_cycles = stable_cycles
        self.interval = interval
        self.hard_cap_seconds = hard_cap_seconds
        self.task_id = task_id
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def _transient(what: str, fallback: Any, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except PlaywrightError as exc:
            # Navigation or re-render; closed pages raise TargetClosedError instead
            logger.debug("%s failed: %s", what, exc)
            return fallback

    def wait_for_completion(self, start_count: int = 0) -> str:
        """Return the text of the responses after *start_count* once stable.

        Raises a :class:`CompletionError` subclass on a hard blocker, a
        diagnosed stall, or when ``hard_cap_seconds`` elapses.
        """
        started = self._clock()
        language = self.probe.language()
        last_text = ""
        stable = 0
        first_text_at: Optional[float] = None
        last_growth = started
        rescues = 0

        while True:
            now = self._clock()
            if now - started > self.hard_cap_seconds:
                raise StallDetectedError("TIMEOUT", f"no stable response after {self.hard_cap_seconds:.0f}s")

            blocker = self._transient(
                "Blocker scan", None,
                scan_hard_blockers, self.probe, self.vocabulary, language, self.response_selector,
            )
            if blocker is not None:
                logger.error("Task %s blocked by %s", self.task_id, blocker.value)
                raise error_for(blocker)

            texts = self._transient("Response extraction", [], self.probe.response_texts, self.response_selector)
            current = "\n\n".join(texts[start_count:]).strip()

            if current and first_text_at is None:
                first_text_at = now
                self.adaptive.record_sample(self.target, "ttft", (now - started) * 1000)
                log_metric("ttft_ms", task_id=self.task_id, target=self.target, value=(now - started) * 1000)

            if current and current == last_text:
                stable += 1
            else:
                if last_text and len(current) > len(last_text):
                    self.adaptive.record_sample(self.target, "gap", (now - last_growth) * 1000)
                last_growth = now
                stable = 0
                last_text = current

            if stable >= self.stable_cycles:
                self.adaptive.record_sample(self.target, "success", 0)
                log_metric(
                    "completion_ms",
                    task_id=self.task_id,
                    target=self.target,
                    value=(now - started) * 1000,
                    chars=len(current),
                    rescues=rescues,
                )
                return current

            # A failed read means the page just re-rendered, which is activity
            gap = self._transient("Mutation gap read", 0.0, self.probe.mutation_gap_ms)
            phase = "STREAM" if current else "INITIAL"
            timeout = self.adaptive.get_timeout(self.target, len(texts), phase)
            if gap > timeout:
                diagnosis = diagnose_stall(self.probe, self.vocabulary, language, self.response_selector)
                if diagnosis in STILL_WORKING:
                    rescues += 1
                    logger.info(
                        "Task %s silent for %.0fms but %s; resetting watchdog",
                        self.task_id, gap, diagnosis.value,
                    )
                    self.probe.reset_watchdog()
                else:
                    logger.error(
                        "Task %s stalled after %.0fms of silence (timeout %dms): %s",
                        self.task_id, gap, timeout, diagnosis.value,
                    )
                    raise error_for(diagnosis, f"silent for {gap:.0f}ms")

            self._sleep(self.interval)

