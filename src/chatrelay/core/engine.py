"""The task engine: one control loop, one task at a time.

Per task::

    acquire lock -> mark RUNNING -> prepare session -> resolve references
    -> send -> collect (append, maybe continue) -> validate
    -> DONE | FAILED -> release lock

Every exception inside a task attempt ends as a FAILED record and a
released lock. Errors outside that boundary are logged and the loop
resumes after a short pause.
"""
from __future__ import annotations

import logging
import os
import random
import re
import socket
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from playwright.sync_api import Error as PlaywrightError

from chatrelay.core.adaptive import AdaptiveTimeouts
from chatrelay.core.config import Settings
from chatrelay.core.context import ContextResolver
from chatrelay.core.control import ControlFile
from chatrelay.core.locks import LockManager
from chatrelay.core.logging_config import log_metric
from chatrelay.core.models import Task, TaskStatus
from chatrelay.core.rules import RulesFile
from chatrelay.core.scheduler import Scheduler
from chatrelay.core.store import TaskStore
from chatrelay.core.validator import validate_output
from chatrelay.core.vocabulary import Vocabulary, normalize_lang
from chatrelay.integrations.connection import (
    SESSION_CLOSED,
    AcquiredContext,
    ConnectionOptions,
    ConnectionOrchestrator,
)
from chatrelay.integrations.drivers import DriverConfig, DriverRegistry, TargetDriver
from chatrelay.integrations.errors import (
    CaptchaDetectedError,
    CompletionError,
    LimitReachedError,
    LoginRequiredError,
    PromptDeliveryError,
)
from chatrelay.integrations.forensics import capture_crash_dump
from chatrelay.integrations.process_control import find_listener_pid, kill_process_tree

logger = logging.getLogger("chatrelay.engine")

FATAL_PAUSE_SECONDS = 10.0
LOCK_BUSY_SECONDS = 2.0
MAX_COOLDOWN_SECONDS = 300.0
HEARTBEAT_SECONDS = 60.0
NATURAL_END_MAX_CHARS = 1000
PREVIEW_CHARS = 200

_TERMINAL_PUNCTUATION = re.compile(r"[.!?]$")
# Failures that must not be papered over by keeping partial output
_ABORTING = (LimitReachedError, CaptchaDetectedError, LoginRequiredError)


class OutputRejectedError(RuntimeError):
    pass


def compose_prompt(user_message: str, system_message: str = "") -> str:
    if system_message and system_message.strip():
        return f"[SYSTEM]\n{system_message.strip()}\n[END]\n\n{user_message}"
    return user_message


def is_natural_end(chunk: str) -> bool:
    """Short chunks ending a sentence or a code block need no continuation."""
    stripped = chunk.strip()
    if len(chunk) >= NATURAL_END_MAX_CHARS:
        return False
    return bool(_TERMINAL_PUNCTUATION.search(stripped)) or stripped.endswith("```") or stripped.endswith("}")


def is_infra_error(exc: BaseException) -> bool:
    return isinstance(exc, CompletionError) and exc.infra


class Engine:
    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[TaskStore] = None,
        locks: Optional[LockManager] = None,
        control: Optional[ControlFile] = None,
        orchestrator: Optional[ConnectionOrchestrator] = None,
        registry: Optional[DriverRegistry] = None,
        vocabulary: Optional[Vocabulary] = None,
        adaptive: Optional[AdaptiveTimeouts] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        rng: Optional[random.Random] = None,
        crash_dump: Callable[..., Optional[str]] = capture_crash_dump,
        kill_tree: Callable[[int], bool] = kill_process_tree,
    ) -> None:
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep or self._interruptible_sleep
        self._rng = rng or random.Random()
        self._crash_dump = crash_dump
        self._kill_tree = kill_tree

        self.store = store or TaskStore(settings.queue_dir, settings.cache_heartbeat_seconds)
        self.locks = locks or LockManager(settings.lock_dir)
        self.control = control or ControlFile(settings.control_file)
        self.scheduler = Scheduler(self.store, settings.running_recovery_seconds)
        self.vocabulary = vocabulary or Vocabulary(settings.vocabulary_file)
        self.adaptive = adaptive or AdaptiveTimeouts(settings.adaptive_state_file)
        self.resolver = ContextResolver(self.store.list, settings.responses_dir)
        self.orchestrator = orchestrator or ConnectionOrchestrator(ConnectionOptions.from_settings(settings))
        self.registry = registry or DriverRegistry(
            config=DriverConfig.from_settings(settings),
            adaptive=self.adaptive,
            vocabulary=self.vocabulary,
            rules_file=RulesFile(settings.rules_file),
        )
        self._unsubscribe = self.orchestrator.subscribe(self._on_connection_event)

        self.worker_id = f"{socket.gethostname()}:{os.getpid()}"
        self.state = "STARTING"
        self.current_task: Optional[str] = None
        self.task_failures = 0
        self.infra_failures = 0
        self.completed = 0
        self.failed = 0
        self.last_error: Optional[str] = None
        self._last_heartbeat = 0.0

    # ── Lifecycle ────────────────────────────────────────────

    def _interruptible_sleep(self, seconds: float) -> None:
        self.stop_event.wait(max(0.0, seconds))

    def _on_connection_event(self, name: str, payload: Dict[str, Any]) -> None:
        if name == SESSION_CLOSED and payload.get("session_id"):
            self.registry.dispose(payload["session_id"])

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "worker_id": self.worker_id,
            "current_task": self.current_task,
            "completed": self.completed,
            "failed": self.failed,
            "consecutive_task_failures": self.task_failures,
            "consecutive_infra_failures": self.infra_failures,
            "last_error": self.last_error,
            "connection": self.orchestrator.status(),
        }

    def stop(self) -> None:
        self.stop_event.set()

    def close(self) -> None:
        self._unsubscribe()
        self.registry.dispose_all()
        self.adaptive.flush()
        self.orchestrator.close()
        self.store.close()

    def run_forever(self) -> None:
        logger.info("Engine started (worker %s)", self.worker_id)
        self.store.start_watching()
        try:
            while not self.stop_event.is_set():
                try:
                    self.run_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Main loop failure; resuming in %.0fs", FATAL_PAUSE_SECONDS)
                    self._sleep(FATAL_PAUSE_SECONDS)
        finally:
            self.state = "STOPPED"
            self.close()
            logger.info("Engine stopped")

    # ── One pass ─────────────────────────────────────────────

    def _cooldown_seconds(self) -> float:
        base = 10.0 * self.task_failures + 5.0 * self.infra_failures
        return min(MAX_COOLDOWN_SECONDS, base + self._rng.uniform(0, 5))

    def run_once(self) -> str:
        """Run at most one task. Returns what the pass did."""
        if self.control.is_paused():
            self.state = "PAUSED"
            self._sleep(self.settings.idle_sleep_seconds)
            return "paused"

        if self.task_failures or self.infra_failures:
            delay = self._cooldown_seconds()
            self.state = "COOLDOWN"
            logger.warning(
                "Cooling down %.0fs after %d task / %d infra failure(s)",
                delay, self.task_failures, self.infra_failures,
            )
            self._sleep(delay)

        now = time.monotonic()
        if now - self._last_heartbeat > HEARTBEAT_SECONDS:
            logger.info("Heartbeat: %s", self.orchestrator.status())
            self._last_heartbeat = now

        ctx = self.orchestrator.acquire_context()
        self.infra_failures = 0

        task = self.scheduler.select_next()
        if task is None:
            self.state = "IDLE"
            self.task_failures = 0
            self._sleep(self.settings.idle_sleep_seconds)
            return "idle"

        if not self.locks.acquire(task.id, task.target):
            logger.info("Target %s is locked by %s", task.target, self.locks.holder(task.target))
            self._sleep(LOCK_BUSY_SECONDS)
            return "locked"

        outcome = "failed"
        limit_hit = False
        try:
            outcome, limit_hit = self._process(task, ctx)
        finally:
            self.locks.release(task.target)
            self.current_task = None

        if limit_hit:
            logger.critical("Usage limit reached; pausing %ds", self.settings.limit_cooldown_seconds)
            self.state = "COOLDOWN"
            self._sleep(self.settings.limit_cooldown_seconds)
        return outcome

    # ── Task attempt ─────────────────────────────────────────

    def _process(self, task: Task, ctx: AcquiredContext) -> Tuple[str, bool]:
        fresh = self.store.get(task.id)
        if fresh is None or fresh.status != TaskStatus.PENDING:
            logger.info("Task %s changed under us (%s); skipping", task.id, fresh.status.value if fresh else "deleted")
            return "skipped", False
        task = fresh

        self.state = "RUNNING"
        self.current_task = task.id
        task.mark_running(self.worker_id)
        self.store.save(task)
        logger.info(">>> Processing %s [target %s]", task.id, task.target)
        started = time.monotonic()

        try:
            driver = self.registry.get(task.target, ctx.session_id, ctx.page)
            out_path, finish_reason, rounds = self._run_task(driver, task)

            language = normalize_lang(self.settings.ui_language)
            check = validate_output(task, out_path, self.vocabulary, language)
            if not check.ok:
                raise OutputRejectedError(f"QUALITY_REJECTED: {check.reason}")

            with open(out_path, "r", encoding="utf-8", errors="replace") as handle:
                preview = handle.read(PREVIEW_CHARS)
            task.mark_done(file_path=out_path, finish_reason=finish_reason, preview=preview)
            try:
                task.result.session_url = ctx.page.url
            except PlaywrightError:
                task.result.session_url = None
            self.store.save(task)
        except Exception as exc:  # noqa: BLE001
            self._handle_failure(task, ctx, exc)
            return "failed", isinstance(exc, LimitReachedError)

        duration = (time.monotonic() - started) * 1000
        log_metric("task_done", task_id=task.id, target=task.target, duration_ms=duration, rounds=rounds)
        logger.info("<<< %s done in %.1fs (%d round(s))", task.id, duration / 1000, rounds)
        self.task_failures = 0
        self.completed += 1
        return "done", False

    def _handle_failure(self, task: Task, ctx: AcquiredContext, exc: BaseException) -> None:
        logger.error("Task %s failed: %s", task.id, exc)
        self.last_error = str(exc)
        self._crash_dump(ctx.page, exc, task.id, self.settings.crash_dir)

        if is_infra_error(exc):
            self._teardown_browser()
            self.infra_failures += 1

        task.mark_failed(f"[EXECUTION] {exc}", event="EXECUTION_FAILURE")
        self.store.save(task)
        log_metric("task_failed", task_id=task.id, target=task.target, error=str(exc))
        self.task_failures += 1
        self.failed += 1

    def _teardown_browser(self) -> None:
        pids = set()
        if self.settings.kill_browser_on_infra:
            for port in self.settings.debug_ports:
                pid = find_listener_pid(port)
                if pid:
                    pids.add(pid)
        self.orchestrator.teardown()
        for pid in pids:
            logger.warning("Killing browser process tree %s", pid)
            self._kill_tree(pid)

    def _run_task(self, driver: TargetDriver, task: Task) -> Tuple[str, str, int]:
        driver.prepare_context(task.spec)

        payload = task.spec.payload
        user_message = self.resolver.resolve(payload.user_message, task)
        system_message = self.resolver.resolve(payload.system_message, task)
        if not user_message or not user_message.strip():
            raise PromptDeliveryError("PROMPT_EMPTY_AFTER_RESOLVE")
        prompt = compose_prompt(user_message, system_message)

        timeout_ms = task.policy.timeout_ms
        hard_cap = timeout_ms / 1000.0 if isinstance(timeout_ms, int) else float(self.settings.task_timeout_seconds)

        start = driver.capture_state()
        driver.send_prompt(prompt, task.id)
        return self._collect(driver, task, start, hard_cap)

    def _collect(self, driver: TargetDriver, task: Task, start: int, hard_cap: float) -> Tuple[str, str, int]:
        """Append response chunks to the artifact, continuing until a natural end."""
        out_path = self.resolver.response_path(task.id)
        os.makedirs(os.path.dirname(out_path), exist_ok=True)
        if os.path.exists(out_path):
            os.remove(out_path)

        written = 0
        rounds = 0
        last_chunk: Optional[str] = None
        finish_reason = "stop"

        while True:
            try:
                chunk = driver.wait_for_completion(start, task_id=task.id, hard_cap_seconds=hard_cap)
            except CompletionError as exc:
                if written == 0 or exc.infra or isinstance(exc, _ABORTING):
                    raise
                logger.warning("Collection for %s interrupted (%s); keeping partial output", task.id, exc)
                task.add_history("PARTIAL_OUTPUT", str(exc))
                finish_reason = "unknown"
                break

            if rounds > 0 and chunk == last_chunk:
                logger.warning("Task %s is repeating itself; stopping collection", task.id)
                break
            last_chunk = chunk

            with open(out_path, "a", encoding="utf-8") as handle:
                handle.write(("\n\n" if written else "") + chunk)
            written += len(chunk)
            rounds += 1

            if rounds >= self.settings.max_continuations:
                logger.warning("Task %s hit the continuation limit (%d)", task.id, rounds)
                finish_reason = "length"
                break
            if is_natural_end(chunk):
                break

            self._sleep(min(5.0, len(chunk) * 0.015))
            logger.info("Task %s auto-continuation (round %d)", task.id, rounds)
            start = driver.capture_state()
            driver.send_prompt(driver.continue_command, task.id)
            self._sleep(2.0)
        return out_path, finish_reason, rounds
