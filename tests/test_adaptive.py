"""Tests for the learned completion timeouts."""
from __future__ import annotations

import json

from chatrelay.core.adaptive import (
    MAX_TIMEOUT_MS,
    MIN_INITIAL_TIMEOUT_MS,
    MIN_STREAM_TIMEOUT_MS,
    PERSIST_EVERY,
    AdaptiveTimeouts,
    Stats,
    TargetProfile,
)


class TestTimeouts:
    def test_unseen_target_initial(self):
        # 20000 + 3 * 10000 + log2(2) * 2000
        assert AdaptiveTimeouts().get_timeout("chatgpt", 0, "INITIAL") == 52_000

    def test_stream_floor(self):
        assert AdaptiveTimeouts().get_timeout("chatgpt", 0, "STREAM") == MIN_STREAM_TIMEOUT_MS

    def test_initial_floor(self):
        adaptive = AdaptiveTimeouts()
        adaptive.state.targets["fast"] = TargetProfile(ttft=Stats(avg=100, var=0))
        assert adaptive.get_timeout("fast", 0, "INITIAL") == MIN_INITIAL_TIMEOUT_MS

    def test_ceiling(self):
        adaptive = AdaptiveTimeouts()
        adaptive.state.targets["slow"] = TargetProfile(ttft=Stats(avg=500_000, var=0))
        assert adaptive.get_timeout("slow", 0, "INITIAL") == MAX_TIMEOUT_MS

    def test_longer_conversations_get_more_time(self):
        adaptive = AdaptiveTimeouts()
        assert adaptive.get_timeout("chatgpt", 30, "INITIAL") > adaptive.get_timeout("chatgpt", 0, "INITIAL")


class TestSamples:
    def test_samples_move_the_mean(self):
        adaptive = AdaptiveTimeouts()
        adaptive.record_sample("ChatGPT", "ttft", 5_000)
        profile = adaptive.state.targets["chatgpt"]
        assert profile.ttft.count == 1
        assert profile.ttft.avg < 15_000

    def test_invalid_samples_ignored(self):
        adaptive = AdaptiveTimeouts()
        adaptive.record_sample("chatgpt", "ttft", -1)
        adaptive.record_sample("chatgpt", "ttft", float("nan"))
        adaptive.record_sample("chatgpt", "bogus", 10)
        assert "chatgpt" not in adaptive.state.targets or adaptive.state.targets["chatgpt"].ttft.count == 0

    def test_outlier_rejected_after_warmup(self):
        adaptive = AdaptiveTimeouts()
        for _ in range(12):
            adaptive.record_sample("chatgpt", "gap", 1_000)
        stream = adaptive.state.targets["chatgpt"].stream
        before = stream.count
        adaptive.record_sample("chatgpt", "gap", 1_000_000)
        assert stream.count == before

    def test_heartbeat_goes_to_infra(self):
        adaptive = AdaptiveTimeouts()
        adaptive.record_sample("chatgpt", "heartbeat", 100)
        assert adaptive.state.infra.count == 1
        assert adaptive.state.targets == {}

    def test_success_counter(self):
        adaptive = AdaptiveTimeouts()
        adaptive.record_sample("chatgpt", "success", 0)
        adaptive.record_sample("chatgpt", "success", 0)
        assert adaptive.state.targets["chatgpt"].success_count == 2


class TestPersistence:
    def test_periodic_persist_and_reload(self, tmp_path):
        path = str(tmp_path / "adaptive_state.json")
        adaptive = AdaptiveTimeouts(path)
        for _ in range(PERSIST_EVERY):
            adaptive.record_sample("chatgpt", "echo", 1_500)
        with open(path, encoding="utf-8") as handle:
            assert json.load(handle)["targets"]["chatgpt"]["echo"]["count"] == PERSIST_EVERY

        reloaded = AdaptiveTimeouts(path)
        assert reloaded.state.targets["chatgpt"].echo.count == PERSIST_EVERY

    def test_flush(self, tmp_path):
        path = tmp_path / "adaptive_state.json"
        adaptive = AdaptiveTimeouts(str(path))
        adaptive.record_sample("chatgpt", "ttft", 9_000)
        adaptive.flush()
        assert path.exists()

    def test_corrupt_state_resets(self, tmp_path):
        path = tmp_path / "adaptive_state.json"
        path.write_text('{"targets": {"chatgpt": {"ttft": {"avg": -5, "var": 1}}}}', encoding="utf-8")
        assert AdaptiveTimeouts(str(path)).state.targets == {}
