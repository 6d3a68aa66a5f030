"""Tests for completion detection and stall triage with a scripted page."""
from __future__ import annotations

import pytest
from playwright.sync_api import Error as PlaywrightError

from chatrelay.core.adaptive import AdaptiveTimeouts
from chatrelay.core.vocabulary import Vocabulary
from chatrelay.integrations.completion import CompletionWatcher
from chatrelay.integrations.errors import (
    CaptchaDetectedError,
    LimitReachedError,
    StallDetectedError,
    TargetClosedError,
)
from chatrelay.integrations.triage import Diagnosis, diagnose_stall


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeProbe:
    """Scripted stand-in for PageProbe.

    ``texts`` and ``gaps`` are consumed one entry per poll; the last entry
    repeats once the script runs out.
    """

    def __init__(self, texts=None, gaps=None, load="IDLE", lag=5.0, blocker=None, full_verdict=None):
        self.texts = list(texts or [[]])
        self.gaps = list(gaps or [0.0])
        self.load = load
        self.lag = lag
        self.blocker = blocker
        self.full_verdict = full_verdict
        self.resets = 0
        self.scans = []
        self._text_calls = 0
        self._gap_calls = 0

    @staticmethod
    def _pick(script, index):
        return script[min(index, len(script) - 1)]

    def language(self):
        return "en-US"

    def response_texts(self, selector):
        value = self._pick(self.texts, self._text_calls)
        self._text_calls += 1
        return value(self._text_calls) if callable(value) else list(value)

    def mutation_gap_ms(self):
        value = self._pick(self.gaps, self._gap_calls)
        self._gap_calls += 1
        return value

    def reset_watchdog(self):
        self.resets += 1

    def scan_page(self, *, errors=(), closers=(), limit_patterns=(), exclude_selector="", full=False):
        self.scans.append({"full": full, "limit_patterns": list(limit_patterns), "exclude": exclude_selector})
        if self.blocker:
            return self.blocker
        return self.full_verdict if full else None

    def load_status(self):
        return self.load

    def event_loop_lag_ms(self):
        return self.lag


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adaptive():
    return AdaptiveTimeouts()


def _watcher(probe, clock, adaptive, **kwargs):
    kwargs.setdefault("stable_cycles", 3)
    kwargs.setdefault("interval", 1.5)
    return CompletionWatcher(
        probe,
        target="chatgpt",
        response_selector="div.answer",
        adaptive=adaptive,
        vocabulary=Vocabulary(),
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


# ── Stability ────────────────────────────────────────────────

class TestStability:
    def test_returns_once_text_is_stable(self, clock, adaptive):
        probe = FakeProbe(texts=[["Hel"], ["Hello"], ["Hello world."]])
        text = _watcher(probe, clock, adaptive).wait_for_completion()
        assert text == "Hello world."
        # 3 changing polls then 3 identical ones
        assert probe._text_calls == 6

    def test_only_new_responses_are_returned(self, clock, adaptive):
        probe = FakeProbe(texts=[["old answer", "fresh answer"]])
        assert _watcher(probe, clock, adaptive).wait_for_completion(start_count=1) == "fresh answer"

    def test_multiple_new_responses_are_joined(self, clock, adaptive):
        probe = FakeProbe(texts=[["old", "part one", "part two"]])
        assert _watcher(probe, clock, adaptive).wait_for_completion(start_count=1) == "part one\n\npart two"

    def test_records_samples(self, clock, adaptive):
        probe = FakeProbe(texts=[[], ["a"], ["ab"], ["ab"]])
        _watcher(probe, clock, adaptive).wait_for_completion()
        profile = adaptive.state.targets["chatgpt"]
        assert profile.success_count == 1
        assert profile.ttft.count == 1
        assert profile.stream.count == 1


# ── Hard blockers ────────────────────────────────────────────

class TestHardBlockers:
    def test_limit_fails_fast(self, clock, adaptive):
        probe = FakeProbe(texts=[["partial"]], blocker="LIMIT_REACHED")
        with pytest.raises(LimitReachedError) as exc:
            _watcher(probe, clock, adaptive).wait_for_completion()
        assert str(exc.value) == "LIMIT_REACHED"
        assert clock.now == 0

    def test_captcha(self, clock, adaptive):
        probe = FakeProbe(blocker="CAPTCHA")
        with pytest.raises(CaptchaDetectedError):
            _watcher(probe, clock, adaptive).wait_for_completion()

    def test_limit_scan_excludes_response_region(self, clock, adaptive):
        probe = FakeProbe(texts=[["done."]])
        _watcher(probe, clock, adaptive).wait_for_completion()
        assert probe.scans[0]["exclude"] == "div.answer"
        assert probe.scans[0]["full"] is False
        assert "rate limit exceeded" in probe.scans[0]["limit_patterns"]


# ── Stall triage ─────────────────────────────────────────────

class TestStall:
    def test_frozen_mutation_clock_raises_stall(self, clock, adaptive):
        probe = FakeProbe(texts=[[]], gaps=[400_000.0])
        with pytest.raises(StallDetectedError) as exc:
            _watcher(probe, clock, adaptive).wait_for_completion()
        assert exc.value.diagnosis == "UNKNOWN"
        assert exc.value.code == "STALL_DETECTED:UNKNOWN"
        assert exc.value.infra is False

    def test_network_activity_resets_watchdog(self, clock, adaptive):
        probe = FakeProbe(
            texts=[[], [], ["answer"]],
            gaps=[400_000.0, 0.0],
            load="BUSY_NETWORK",
        )
        assert _watcher(probe, clock, adaptive).wait_for_completion() == "answer"
        assert probe.resets == 1

    def test_frozen_tab_is_infra(self, clock, adaptive):
        probe = FakeProbe(gaps=[400_000.0], lag=5_000.0)
        with pytest.raises(StallDetectedError) as exc:
            _watcher(probe, clock, adaptive).wait_for_completion()
        assert exc.value.diagnosis == "BROWSER_FROZEN"
        assert exc.value.infra is True

    def test_error_text_diagnosis(self, clock, adaptive):
        probe = FakeProbe(gaps=[400_000.0], full_verdict="GENERIC_ERROR_TEXT")
        with pytest.raises(StallDetectedError) as exc:
            _watcher(probe, clock, adaptive).wait_for_completion()
        assert exc.value.diagnosis == "GENERIC_ERROR_TEXT"

    def test_short_gap_is_tolerated(self, clock, adaptive):
        probe = FakeProbe(texts=[[], [], ["late answer"]], gaps=[5_000.0])
        assert _watcher(probe, clock, adaptive).wait_for_completion() == "late answer"

    def test_hard_cap(self, clock, adaptive):
        probe = FakeProbe(texts=[lambda n: ["x" * n]])
        with pytest.raises(StallDetectedError) as exc:
            _watcher(probe, clock, adaptive, hard_cap_seconds=10).wait_for_completion()
        assert exc.value.diagnosis == "TIMEOUT"


class TestDiagnoseStall:
    def test_priority_order(self):
        vocab = Vocabulary()
        assert diagnose_stall(FakeProbe(full_verdict="CAPTCHA", load="BUSY_NETWORK"), vocab) == Diagnosis.CAPTCHA
        assert diagnose_stall(FakeProbe(load="BUSY_NETWORK", lag=9_000), vocab) == Diagnosis.THINKING
        assert diagnose_stall(FakeProbe(load="BUSY_SPINNER"), vocab) == Diagnosis.LOADING
        assert diagnose_stall(FakeProbe(lag=9_000), vocab) == Diagnosis.BROWSER_FROZEN
        assert diagnose_stall(FakeProbe(), vocab) == Diagnosis.UNKNOWN

    def test_unknown_verdict_is_ignored(self):
        assert diagnose_stall(FakeProbe(full_verdict="SOMETHING_NEW"), Vocabulary()) == Diagnosis.UNKNOWN


# ── Transient page errors ────────────────────────────────────

class FlakyProbe(FakeProbe):
    """Raises once from each poll-time read, as a mid-navigation page does."""

    def __init__(self, error=None, **kwargs):
        super().__init__(**kwargs)
        self.error = error or PlaywrightError("Execution context was destroyed")
        self.failed = set()

    def _fail_once(self, name):
        if name not in self.failed:
            self.failed.add(name)
            raise self.error

    def scan_page(self, **kwargs):
        if not kwargs.get("full"):
            self._fail_once("scan")
        return super().scan_page(**kwargs)

    def response_texts(self, selector):
        self._fail_once("texts")
        return super().response_texts(selector)

    def mutation_gap_ms(self):
        self._fail_once("gap")
        return super().mutation_gap_ms()


class TestTransientErrors:
    def test_rerender_during_polling_is_survived(self, clock, adaptive):
        probe = FlakyProbe(texts=[["answer"]])
        assert _watcher(probe, clock, adaptive).wait_for_completion() == "answer"
        assert probe.failed == {"scan", "texts", "gap"}

    def test_failed_gap_read_does_not_trigger_triage(self, clock, adaptive):
        probe = FlakyProbe(texts=[["answer"]], gaps=[0.0])
        _watcher(probe, clock, adaptive).wait_for_completion()
        assert all(scan["full"] is False for scan in probe.scans)

    def test_closed_page_still_propagates(self, clock, adaptive):
        probe = FlakyProbe(error=TargetClosedError("Target page closed"))
        with pytest.raises(TargetClosedError):
            _watcher(probe, clock, adaptive).wait_for_completion()
