"""Tests for per-target run locks."""
from __future__ import annotations

import json
import os
import time
from unittest.mock import patch

import pytest

from chatrelay.core.locks import (
    ABANDONED_BREAK_SECONDS,
    BREAK_SUFFIX,
    UNREADABLE_LOCK_GRACE_SECONDS,
    LockManager,
    pid_alive,
)


@pytest.fixture
def lock_dir(tmp_path):
    return str(tmp_path / "locks")


class TestAcquireRelease:
    def test_acquire_writes_record(self, lock_dir):
        locks = LockManager(lock_dir)
        assert locks.acquire("task-1", "ChatGPT") is True
        path = os.path.join(lock_dir, "RUNNING_chatgpt.lock")
        with open(path, encoding="utf-8") as handle:
            record = json.load(handle)
        assert record["task_id"] == "task-1"
        assert record["pid"] == os.getpid()
        assert "timestamp" in record

    def test_second_acquire_fails_while_owner_alive(self, lock_dir):
        first = LockManager(lock_dir)
        second = LockManager(lock_dir, pid=os.getpid())
        assert first.acquire("task-1", "chatgpt") is True
        assert second.acquire("task-2", "chatgpt") is False
        assert second.holder("chatgpt")["task_id"] == "task-1"

    def test_locks_are_per_target(self, lock_dir):
        locks = LockManager(lock_dir)
        assert locks.acquire("a", "chatgpt") is True
        assert locks.acquire("b", "gemini") is True

    def test_release_is_idempotent(self, lock_dir):
        locks = LockManager(lock_dir)
        locks.release("chatgpt")
        locks.acquire("a", "chatgpt")
        locks.release("chatgpt")
        locks.release("chatgpt")
        assert not os.path.exists(locks.lock_path("chatgpt"))
        assert locks.holder("chatgpt") is None

    def test_reacquire_after_release(self, lock_dir):
        locks = LockManager(lock_dir)
        assert locks.acquire("a", "chatgpt")
        locks.release("chatgpt")
        assert locks.acquire("b", "chatgpt")


class TestLiveness:
    def test_dead_owner_lock_is_broken(self, lock_dir):
        locks = LockManager(lock_dir)
        os.makedirs(lock_dir, exist_ok=True)
        with open(locks.lock_path("chatgpt"), "w", encoding="utf-8") as handle:
            json.dump({"task_id": "ghost", "pid": 999_999_999, "timestamp": "2024-01-01T00:00:00Z"}, handle)

        with patch("chatrelay.core.locks.pid_alive", return_value=False):
            assert locks.acquire("fresh", "chatgpt") is True
        assert locks.holder("chatgpt")["task_id"] == "fresh"

    def test_legacy_camel_case_holder(self, lock_dir):
        locks = LockManager(lock_dir)
        with open(locks.lock_path("chatgpt"), "w", encoding="utf-8") as handle:
            json.dump({"taskId": "old", "pid": os.getpid()}, handle)
        assert locks.holder("chatgpt")["task_id"] == "old"
        assert locks.acquire("new", "chatgpt") is False

    def test_fresh_unreadable_lock_is_respected(self, lock_dir):
        locks = LockManager(lock_dir)
        with open(locks.lock_path("chatgpt"), "w", encoding="utf-8") as handle:
            handle.write("{half")
        assert locks.acquire("a", "chatgpt") is False

    def test_stale_unreadable_lock_is_broken(self, lock_dir):
        locks = LockManager(lock_dir)
        path = locks.lock_path("chatgpt")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write("{half")
        old = time.time() - UNREADABLE_LOCK_GRACE_SECONDS - 5
        os.utime(path, (old, old))
        assert locks.acquire("a", "chatgpt") is True

    def test_pid_alive(self):
        assert pid_alive(os.getpid()) is True
        assert pid_alive(None) is False
        assert pid_alive(0) is False

    def test_race_exactly_one_wins(self, lock_dir):
        engine_a = LockManager(lock_dir)
        engine_b = LockManager(lock_dir)
        results = [engine_a.acquire("t-a", "chatgpt"), engine_b.acquire("t-b", "chatgpt")]
        assert results.count(True) == 1


class TestOrphanBreaking:
    @pytest.fixture(autouse=True)
    def ghost_is_dead(self):
        with patch("chatrelay.core.locks.pid_alive", side_effect=lambda pid: pid != 999_999_999):
            yield

    def _stale_lock(self, locks, pid=999_999_999):
        with open(locks.lock_path("chatgpt"), "w", encoding="utf-8") as handle:
            json.dump({"task_id": "ghost", "pid": pid, "timestamp": "2024-01-01T00:00:00Z"}, handle)

    def test_contender_cannot_delete_a_lock_taken_mid_break(self, lock_dir):
        engine_a = LockManager(lock_dir)
        engine_b = LockManager(lock_dir)
        self._stale_lock(engine_b)
        results = {}
        original = engine_b._owner_is_dead

        def check_with_a_racing(path):
            # A tries while B is between its liveness check and the removal
            results["a"] = engine_a.acquire("t-a", "chatgpt")
            return original(path)

        with patch.object(engine_b, "_owner_is_dead", side_effect=check_with_a_racing):
            results["b"] = engine_b.acquire("t-b", "chatgpt")

        assert list(results.values()).count(True) == 1
        winner = "t-a" if results["a"] else "t-b"
        assert engine_a.holder("chatgpt")["task_id"] == winner

    def test_live_lock_replacing_stale_one_is_kept(self, lock_dir):
        engine_a = LockManager(lock_dir)
        engine_b = LockManager(lock_dir)
        self._stale_lock(engine_b)

        def replaced_by_a(path):
            # A broke the stale lock and took it before B looked
            os.remove(path)
            assert engine_a.acquire("t-a", "chatgpt") is True
            return False

        with patch.object(engine_b, "_owner_is_dead", side_effect=replaced_by_a):
            assert engine_b.acquire("t-b", "chatgpt") is False
        assert engine_b.holder("chatgpt")["task_id"] == "t-a"

    def test_break_marker_is_removed_afterwards(self, lock_dir):
        locks = LockManager(lock_dir)
        self._stale_lock(locks)
        assert locks.acquire("fresh", "chatgpt") is True
        assert sorted(os.listdir(lock_dir)) == ["RUNNING_chatgpt.lock"]

    def test_fresh_break_marker_blocks_breaking(self, lock_dir):
        locks = LockManager(lock_dir)
        self._stale_lock(locks)
        guard = locks.lock_path("chatgpt") + BREAK_SUFFIX
        open(guard, "w").close()
        assert locks.acquire("fresh", "chatgpt") is False
        assert locks.holder("chatgpt")["task_id"] == "ghost"
        assert os.path.exists(guard)

    def test_abandoned_break_marker_is_cleared(self, lock_dir):
        locks = LockManager(lock_dir)
        self._stale_lock(locks)
        guard = locks.lock_path("chatgpt") + BREAK_SUFFIX
        open(guard, "w").close()
        old = time.time() - ABANDONED_BREAK_SECONDS - 5
        os.utime(guard, (old, old))
        assert locks.acquire("fresh", "chatgpt") is False
        assert not os.path.exists(guard)
        assert locks.acquire("fresh", "chatgpt") is True


class TestLockPath:
    def test_target_cannot_escape_lock_dir(self, lock_dir):
        locks = LockManager(lock_dir)
        path = locks.lock_path("../x")
        assert os.path.dirname(path) == lock_dir
        assert os.path.basename(path) == "RUNNING_.._x.lock"
        assert locks.acquire("t", "../x") is True
        assert os.listdir(os.path.dirname(lock_dir)) == ["locks"]

    def test_target_is_lowercased(self, lock_dir):
        locks = LockManager(lock_dir)
        assert locks.lock_path("Gemini") == locks.lock_path("gemini")
