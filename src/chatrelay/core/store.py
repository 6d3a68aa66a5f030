"""File-backed task queue.

One ``<task-id>.json`` per task in the queue directory. Reads go through
an in-memory cache owned by the store, invalidated two ways: a
``watchdog`` observer marks it dirty on any ``*.json`` change, and a
heartbeat forces a rescan after ``heartbeat_seconds`` even if no event
arrived.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from chatrelay.core.atomic import sanitize_filename, write_json_atomic
from chatrelay.core.models import Task, TaskStatus, TaskValidationError, parse_task

logger = logging.getLogger("chatrelay.store")

CORRUPT_DIRNAME = "corrupted"
SCHEMA_VIOLATION_PREFIX = "Schema Violation"

READ_ATTEMPTS = 5
READ_RETRY_SECONDS = 0.2


class TaskStoreError(RuntimeError):
    pass


class _QueueEventHandler(FileSystemEventHandler):
    def __init__(self, on_change: Callable[[], None]) -> None:
        self._on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [str(event.src_path), str(getattr(event, "dest_path", "") or "")]
        if any(p.endswith(".json") for p in paths):
            self._on_change()


class TaskStore:
    """Owns the queue directory and its read cache."""

    def __init__(
        self,
        queue_dir: str,
        heartbeat_seconds: float = 15.0,
        *,
        watch: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue_dir = queue_dir
        self.corrupt_dir = os.path.join(queue_dir, CORRUPT_DIRNAME)
        self.heartbeat_seconds = heartbeat_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._cache: Optional[List[Task]] = None
        self._invalid: Dict[str, str] = {}
        self._dirty = True
        self._last_scan = 0.0
        self._observer: Optional[Observer] = None
        os.makedirs(self.corrupt_dir, exist_ok=True)
        if watch:
            self.start_watching()

    # ── Cache lifecycle ──────────────────────────────────────

    def start_watching(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        observer.daemon = True
        try:
            observer.schedule(_QueueEventHandler(self.invalidate), self.queue_dir, recursive=False)
            observer.start()
        except OSError as exc:
            logger.warning("File watching unavailable for %s, relying on heartbeat: %s", self.queue_dir, exc)
            return
        self._observer = observer

    def close(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None

    def invalidate(self) -> None:
        self._dirty = True

    def _path_for(self, task_id: str) -> str:
        return os.path.join(self.queue_dir, f"{sanitize_filename(task_id, max_len=200)}.json")

    # ── Public API ───────────────────────────────────────────

    def list(self, force: bool = False) -> List[Task]:
        """Return all currently valid tasks.

        Served from cache unless the cache is dirty, the heartbeat has
        expired, or *force* is set. Returns a fresh list each call; the
        Task objects themselves are shared with the cache.
        """
        with self._lock:
            now = self._clock()
            stale = (now - self._last_scan) > self.heartbeat_seconds
            if not force and not self._dirty and not stale and self._cache is not None:
                return list(self._cache)
            # Clear before scanning so events during the scan are not lost
            self._dirty = False
            try:
                tasks = self._scan()
            except TaskStoreError as exc:
                self._dirty = True
                if self._cache is None:
                    raise
                logger.error("Queue scan failed, serving previous index: %s", exc)
                return list(self._cache)
            self._cache = tasks
            self._last_scan = now
            return list(tasks)

    def get(self, task_id: str) -> Optional[Task]:
        path = self._path_for(task_id)
        raw = self._read_json(path)
        if raw is None:
            return None
        try:
            return parse_task(raw)
        except TaskValidationError as exc:
            self._mark_invalid(path, raw, str(exc))
            return None

    def save(self, task: Task) -> None:
        """Validate and durably replace the task's file."""
        try:
            validated = Task.model_validate(task.to_dict())
        except ValidationError as exc:
            logger.error("Refusing to persist invalid task %s: %s", task.meta.id, exc)
            raise TaskValidationError(str(exc)) from exc
        path = self._path_for(validated.id)
        try:
            write_json_atomic(path, validated.to_dict())
        except OSError as exc:
            raise TaskStoreError(f"Failed to persist task {validated.id}: {exc}") from exc
        self.invalidate()

    def delete(self, task_id: str) -> bool:
        path = self._path_for(task_id)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        self.invalidate()
        self._invalid.pop(os.path.basename(path), None)
        logger.info("Task removed: %s", task_id)
        return True

    def invalid_records(self) -> Dict[str, str]:
        """Filenames that parse but fail validation, with their error."""
        with self._lock:
            return dict(self._invalid)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {s.value: 0 for s in TaskStatus}
        for task in self.list():
            counts[task.status.value] += 1
        counts["INVALID"] = len(self.invalid_records())
        return counts

    # ── Disk access ──────────────────────────────────────────

    def _scan(self) -> List[Task]:
        try:
            names = sorted(n for n in os.listdir(self.queue_dir) if n.endswith(".json"))
        except OSError as exc:
            raise TaskStoreError(f"Cannot list queue directory: {exc}") from exc
        tasks: List[Task] = []
        invalid: Dict[str, str] = {}
        for name in names:
            path = os.path.join(self.queue_dir, name)
            raw = self._read_json(path)
            if raw is None:
                continue
            try:
                tasks.append(parse_task(raw))
            except TaskValidationError as exc:
                invalid[name] = str(exc)
                self._mark_invalid(path, raw, str(exc))
        self._invalid = invalid
        return tasks

    def _read_json(self, path: str) -> Optional[dict]:
        """Read one record; quarantine it if it is not a JSON object."""
        for attempt in range(1, READ_ATTEMPTS + 1):
            try:
                with open(path, "r", encoding="utf-8") as handle:
                    content = handle.read()
            except FileNotFoundError:
                return None
            except PermissionError as exc:
                if attempt == READ_ATTEMPTS:
                    raise TaskStoreError(f"Cannot read {path}: {exc}") from exc
                time.sleep(READ_RETRY_SECONDS)
                continue
            try:
                if not content.strip():
                    raise ValueError("empty file")
                data = json.loads(content)
                if not isinstance(data, dict):
                    raise ValueError(f"top-level {type(data).__name__}, expected object")
            except ValueError as exc:  # includes json.JSONDecodeError
                self._quarantine(path, str(exc))
                return None
            return data
        return None

    def _quarantine(self, path: str, reason: str) -> None:
        name = os.path.basename(path)
        bad_path = os.path.join(self.corrupt_dir, f"{name}.{int(time.time() * 1000)}.bad")
        try:
            os.makedirs(self.corrupt_dir, exist_ok=True)
            os.replace(path, bad_path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.error("Could not quarantine %s: %s", name, exc)
            return
        logger.error("Quarantined corrupt task file %s (%s) -> %s", name, reason, os.path.basename(bad_path))

    def _mark_invalid(self, path: str, raw: dict, error: str) -> None:
        """Record a schema violation in the record itself, once."""
        state = raw.get("state")
        if not isinstance(state, dict):
            state = {}
        if state.get("status") == TaskStatus.FAILED.value and str(state.get("last_error") or "").startswith(
            SCHEMA_VIOLATION_PREFIX
        ):
            return
        marked = dict(raw)
        state = dict(state)
        state["status"] = TaskStatus.FAILED.value
        state["last_error"] = f"{SCHEMA_VIOLATION_PREFIX}: {error}"
        marked["state"] = state
        logger.error("Task file %s violates schema: %s", os.path.basename(path), error)
        try:
            write_json_atomic(path, marked)
        except OSError as exc:
            logger.error("Could not mark %s as failed: %s", os.path.basename(path), exc)
