"""Learned timeouts for the completion watcher.

Each target keeps an exponentially-weighted mean and variance for three
latency kinds: time-to-first-token (``ttft``), gap between streamed
mutations (``gap``) and prompt echo (``echo``). ``heartbeat`` samples go
to a shared infrastructure profile.

    timeout = mean + 3σ + log2(messages + 2) * 2000   (ms)

clamped to [30 s, 300 s] for the initial phase and [10 s, 300 s]
otherwise.
"""
from __future__ import annotations

import json
import logging
import math
import threading
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from chatrelay.core.atomic import write_json_atomic

logger = logging.getLogger("chatrelay.adaptive")

WARMUP_SAMPLES = 20
WARMUP_ALPHA = 0.4
STEADY_ALPHA = 0.15
OUTLIER_SIGMAS = 6
OUTLIER_MIN_SAMPLES = 10
PERSIST_EVERY = 20

MAX_TIMEOUT_MS = 300_000
MIN_INITIAL_TIMEOUT_MS = 30_000
MIN_STREAM_TIMEOUT_MS = 10_000

INITIAL_PHASES = {"INITIAL", "TTFT"}


class Stats(BaseModel):
    avg: float = Field(ge=0)
    var: float = Field(ge=0)
    count: int = Field(default=0, ge=0)

    @classmethod
    def seeded(cls, initial_avg: float) -> "Stats":
        return cls(avg=initial_avg, var=(initial_avg / 2) ** 2, count=0)

    def update(self, value: float) -> bool:
        """Fold one sample in. Returns False if it was rejected as an outlier."""
        std_dev = math.sqrt(self.var)
        if self.count > OUTLIER_MIN_SAMPLES and value > self.avg + OUTLIER_SIGMAS * std_dev:
            return False
        alpha = WARMUP_ALPHA if self.count < WARMUP_SAMPLES else STEADY_ALPHA
        diff = value - self.avg
        self.avg = self.avg + alpha * diff
        self.var = (1 - alpha) * (self.var + alpha * diff * diff)
        self.count += 1
        return True


class TargetProfile(BaseModel):
    ttft: Stats = Field(default_factory=lambda: Stats.seeded(15_000))
    stream: Stats = Field(default_factory=lambda: Stats.seeded(500))
    echo: Stats = Field(default_factory=lambda: Stats.seeded(2_000))
    success_count: int = 0


class AdaptiveState(BaseModel):
    targets: Dict[str, TargetProfile] = Field(default_factory=dict)
    infra: Stats = Field(default_factory=lambda: Stats.seeded(200))


# Used for targets that have no samples yet
_UNSEEN_TTFT = Stats.seeded(20_000)
_UNSEEN_STREAM = Stats.seeded(1_000)


class AdaptiveTimeouts:
    def __init__(self, state_path: Optional[str] = None) -> None:
        self.state_path = state_path
        self._lock = threading.Lock()
        self._pending = 0
        self.state = self._load()

    def _load(self) -> AdaptiveState:
        if not self.state_path:
            return AdaptiveState()
        try:
            with open(self.state_path, "r", encoding="utf-8") as handle:
                state = AdaptiveState.model_validate(json.load(handle))
        except FileNotFoundError:
            return AdaptiveState()
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Resetting timeout baseline: %s", exc)
            return AdaptiveState()
        logger.info("Loaded adaptive timeout state for %d target(s)", len(state.targets))
        return state

    def get_timeout(self, target: str = "generic", message_count: int = 0, phase: str = "STREAM") -> int:
        phase = phase.upper()
        with self._lock:
            profile = self.state.targets.get(target.lower())
            if phase in INITIAL_PHASES:
                stats = profile.ttft if profile else _UNSEEN_TTFT
            else:
                stats = profile.stream if profile else _UNSEEN_STREAM
            std_dev = math.sqrt(stats.var)
            total = stats.avg + 3 * std_dev + math.log2(max(message_count, 0) + 2) * 2000
        floor = MIN_INITIAL_TIMEOUT_MS if phase == "INITIAL" else MIN_STREAM_TIMEOUT_MS
        return int(round(min(MAX_TIMEOUT_MS, max(floor, total))))

    def record_sample(self, target: str, kind: str, ms: float) -> None:
        if ms is None or not isinstance(ms, (int, float)) or math.isnan(ms) or ms < 0:
            return
        with self._lock:
            if kind == "heartbeat":
                stats = self.state.infra
            else:
                profile = self.state.targets.setdefault(target.lower(), TargetProfile())
                if kind == "ttft":
                    stats = profile.ttft
                elif kind == "gap":
                    stats = profile.stream
                elif kind == "echo":
                    stats = profile.echo
                elif kind == "success":
                    profile.success_count += 1
                    stats = None
                else:
                    logger.debug("Ignoring unknown sample kind %s", kind)
                    return
            if stats is not None and not stats.update(float(ms)):
                logger.warning("Outlier rejected (%s/%s): %.0fms (mean %.0fms)", target, kind, ms, stats.avg)
                return
            self._pending += 1
            if self._pending >= PERSIST_EVERY:
                self._pending = 0
                self._persist_locked()

    def flush(self) -> None:
        with self._lock:
            self._pending = 0
            self._persist_locked()

    def _persist_locked(self) -> None:
        if not self.state_path:
            return
        try:
            write_json_atomic(self.state_path, self.state.model_dump(mode="json"))
        except OSError as exc:
            logger.warning("Could not persist adaptive state: %s", exc)
