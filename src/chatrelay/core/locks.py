"""Per-target run locks.

A lock is the file ``RUNNING_<target>.lock`` holding
``{task_id, pid, timestamp}``. It is created with exclusive-create
semantics, so two processes can never both believe they hold it. A lock
whose owner pid is no longer alive is broken and acquisition is retried
exactly once.

Breaking happens under a second exclusive file, ``RUNNING_<target>.lock.break``.
Only its holder may delete a lock it did not create, and it re-checks the
owner after taking it, so a lock created by a faster contender is never
removed by a slower one.
"""
from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

import psutil

from chatrelay.core.atomic import sanitize_filename

logger = logging.getLogger("chatrelay.locks")

LOCK_PREFIX = "RUNNING_"
BREAK_SUFFIX = ".break"
UNREADABLE_LOCK_GRACE_SECONDS = 60.0
ABANDONED_BREAK_SECONDS = 30.0


def pid_alive(pid: int | None) -> bool:
    """True if *pid* exists and is not a zombie."""
    if not pid or pid <= 0:
        return False
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to another user
        return True


class LockManager:
    def __init__(self, lock_dir: str, pid: int | None = None) -> None:
        self.lock_dir = lock_dir
        self.pid = pid if pid is not None else os.getpid()
        os.makedirs(lock_dir, exist_ok=True)

    def lock_path(self, target: str) -> str:
        name = sanitize_filename(target.lower(), max_len=100)
        return os.path.join(self.lock_dir, f"{LOCK_PREFIX}{name}.lock")

    def acquire(self, task_id: str, target: str) -> bool:
        return self._acquire(task_id, target, retry=True)

    def _acquire(self, task_id: str, target: str, retry: bool) -> bool:
        path = self.lock_path(target)
        record = {
            "task_id": task_id,
            "pid": self.pid,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if retry and self._break_orphaned(path, target):
                return self._acquire(task_id, target, retry=False)
            holder = self.holder(target)
            logger.info(
                "Lock for target %s held by task %s (pid %s)",
                target,
                holder.get("task_id") if holder else "?",
                holder.get("pid") if holder else "?",
            )
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(record, handle)
            handle.flush()
            os.fsync(handle.fileno())
        logger.debug("Lock acquired for target %s by task %s", target, task_id)
        return True

    def release(self, target: str) -> None:
        self._remove(self.lock_path(target))

    def holder(self, target: str) -> Optional[dict]:
        """Parsed lock record for *target*, or None if absent or unreadable."""
        try:
            with open(self.lock_path(target), "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        # Older lock files used camelCase
        if "task_id" not in data and "taskId" in data:
            data["task_id"] = data["taskId"]
        return data

    def _break_orphaned(self, path: str, target: str) -> bool:
        """Delete *path* if its owner is dead. True when the caller may retry."""
        guard = path + BREAK_SUFFIX
        try:
            fd = os.open(guard, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            self._clear_abandoned_guard(guard)
            return False
        os.close(fd)
        try:
            # Nobody else can delete the lock while we hold the guard, and a
            # dead owner cannot release it, so this check stays true.
            if not self._owner_is_dead(path):
                return False
            logger.warning("Breaking orphaned lock for target %s", target)
            self._remove(path)
            return True
        finally:
            self._remove(guard)

    @classmethod
    def _clear_abandoned_guard(cls, guard: str) -> None:
        try:
            age = time.time() - os.path.getmtime(guard)
        except OSError:
            return
        if age > ABANDONED_BREAK_SECONDS:
            logger.warning("Removing abandoned lock-break marker %s", os.path.basename(guard))
            cls._remove(guard)

    def _owner_is_dead(self, path: str) -> bool:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
            pid = int(data["pid"])
        except FileNotFoundError:
            # Released between our create and our read
            return True
        except (OSError, ValueError, KeyError, TypeError):
            # Unreadable: possibly mid-write by its owner, so only break it once old
            try:
                age = time.time() - os.path.getmtime(path)
            except OSError:
                return True
            return age > UNREADABLE_LOCK_GRACE_SECONDS
        return not pid_alive(pid)

    @staticmethod
    def _remove(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
