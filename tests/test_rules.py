"""Tests for hot-reloaded selector rules, the control switch and settings."""
from __future__ import annotations

import json
import os

import pytest

from chatrelay.core.config import Settings
from chatrelay.core.control import PAUSED, RUN, ControlFile
from chatrelay.core.rules import DEFAULT_SELECTORS, Rules, RulesFile


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _write_rules(path: str, selectors: dict, mtime: float) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        json.dump({"_meta": {"version": 2}, "selectors": selectors}, handle)
    os.utime(path, (mtime, mtime))


# ── Rules ────────────────────────────────────────────────────

class TestRulesFile:
    def test_missing_file_is_created_with_defaults(self, tmp_path):
        path = tmp_path / "dynamic_rules.json"
        rules = RulesFile(str(path)).load()
        assert rules.candidates("input_box") == DEFAULT_SELECTORS["input_box"]
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["_meta"]["created_by"] == "system_init"

    def test_reload_on_mtime_change(self, tmp_path):
        path = str(tmp_path / "dynamic_rules.json")
        clock = FakeClock()
        _write_rules(path, {"input_box": ["#first"]}, 1_000)
        rules_file = RulesFile(path, check_interval=2.0, clock=clock)
        assert rules_file.load().candidates("input_box") == ["#first"]

        _write_rules(path, {"input_box": ["#second"]}, 2_000)
        # Within the check interval the cached rules are served
        clock.now += 1
        assert rules_file.load().candidates("input_box") == ["#first"]
        clock.now += 2
        assert rules_file.load().candidates("input_box") == ["#second"]

    def test_broken_edit_keeps_last_good_rules(self, tmp_path):
        path = str(tmp_path / "dynamic_rules.json")
        clock = FakeClock()
        _write_rules(path, {"input_box": ["#good"]}, 1_000)
        rules_file = RulesFile(path, clock=clock)
        rules_file.load()

        with open(path, "w", encoding="utf-8") as handle:
            handle.write("{ oops")
        os.utime(path, (3_000, 3_000))
        clock.now += 10
        assert rules_file.load().candidates("input_box") == ["#good"]

    def test_overrides(self):
        rules = Rules.model_validate({"behavior_overrides": {"typing_speed": "fast"}})
        assert rules.override("typing_speed") == "fast"
        assert rules.override("missing", 3) == 3
        assert rules.candidates("unknown") == []


# ── Control switch ───────────────────────────────────────────

class TestControlFile:
    def test_missing_means_run(self, tmp_path):
        assert ControlFile(str(tmp_path / "control.json")).state() == RUN

    def test_pause_and_resume(self, tmp_path):
        control = ControlFile(str(tmp_path / "control.json"))
        control.set_state("paused")
        assert control.is_paused()
        control.set_state(RUN)
        assert not control.is_paused()

    def test_legacy_key(self, tmp_path):
        path = tmp_path / "control.json"
        path.write_text(json.dumps({"estado": "PAUSED"}), encoding="utf-8")
        assert ControlFile(str(path)).state() == PAUSED

    def test_unreadable_means_run(self, tmp_path):
        path = tmp_path / "control.json"
        path.write_text("PAUSED?", encoding="utf-8")
        assert ControlFile(str(path)).state() == RUN

    def test_invalid_state(self, tmp_path):
        with pytest.raises(ValueError):
            ControlFile(str(tmp_path / "control.json")).set_state("SLEEP")


# ── Settings ─────────────────────────────────────────────────

class TestSettings:
    def test_defaults_follow_data_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CHATRELAY_DATA_DIR", str(tmp_path))
        monkeypatch.delenv("CHATRELAY_LOG_DIR", raising=False)
        monkeypatch.delenv("CHATRELAY_QUEUE_DIR", raising=False)
        settings = Settings.from_env()
        assert settings.queue_dir == str(tmp_path / "queue")
        assert settings.log_dir == str(tmp_path / "logs")
        assert settings.crash_dir == str(tmp_path / "logs" / "crash_reports")

    def test_lists_and_flags(self, monkeypatch):
        monkeypatch.setenv("CHATRELAY_DEBUG_PORTS", "9222, 9223")
        monkeypatch.setenv("CHATRELAY_CONNECTION_STRATEGIES", "ws_endpoint")
        monkeypatch.setenv("CHATRELAY_HUMAN_TYPING", "no")
        monkeypatch.setenv("CHATRELAY_PAGE_SELECTION_POLICY", "most_recent")
        settings = Settings.from_env()
        assert settings.debug_ports == [9222, 9223]
        assert settings.connection_strategies == ["WS_ENDPOINT"]
        assert settings.human_typing is False
        assert settings.page_selection_policy == "MOST_RECENT"
