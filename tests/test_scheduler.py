"""Tests for task selection, dependency resolution and zombie recovery."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatrelay.core.models import TaskStatus, new_task
from chatrelay.core.scheduler import RECOVERY_EVENT, Scheduler
from chatrelay.core.store import TaskStore

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return TaskStore(str(tmp_path / "queue"), watch=False)


@pytest.fixture
def scheduler(store):
    return Scheduler(store, recovery_seconds=40 * 60)


def _task(task_id, *, status=TaskStatus.PENDING, priority=5, created=None, deps=None):
    task = new_task(task_id, f"prompt for {task_id}", priority=priority, dependencies=deps)
    task.state.status = status
    task.meta.created_at = created or NOW - timedelta(hours=1)
    return task


def _save(store, *tasks):
    for task in tasks:
        store.save(task)


class TestOrdering:
    def test_empty_queue(self, scheduler):
        assert scheduler.select_next(now=NOW) is None

    def test_highest_priority_first(self, store, scheduler):
        _save(store, _task("low", priority=1), _task("high", priority=9))
        assert scheduler.select_next(now=NOW).id == "high"

    def test_fifo_tie_break(self, store, scheduler):
        _save(
            store,
            _task("newer", created=NOW - timedelta(minutes=5)),
            _task("older", created=NOW - timedelta(minutes=50)),
        )
        assert scheduler.select_next(now=NOW).id == "older"

    def test_only_pending_is_eligible(self, store, scheduler):
        _save(store, _task("done", status=TaskStatus.DONE), _task("paused", status=TaskStatus.PAUSED))
        assert scheduler.select_next(now=NOW) is None

    def test_execute_after_in_future(self, store, scheduler):
        task = _task("later")
        task.policy.execute_after = NOW + timedelta(minutes=10)
        _save(store, task)
        assert scheduler.select_next(now=NOW) is None
        assert scheduler.select_next(now=NOW + timedelta(minutes=11)).id == "later"


class TestDependencies:
    def test_failed_dependency_skips_dependent(self, store, scheduler):
        _save(store, _task("T0", status=TaskStatus.FAILED), _task("T1", deps=["T0"]))
        assert scheduler.select_next(now=NOW) is None
        t1 = store.get("T1")
        assert t1.status == TaskStatus.SKIPPED
        assert t1.state.history[-1].event == "SKIPPED"

    def test_skipped_dependency_cascades(self, store, scheduler):
        _save(
            store,
            _task("A", status=TaskStatus.FAILED),
            _task("B", deps=["A"]),
            _task("C", deps=["B"]),
        )
        scheduler.select_next(now=NOW)
        scheduler.select_next(now=NOW)
        assert store.get("B").status == TaskStatus.SKIPPED
        assert store.get("C").status == TaskStatus.SKIPPED

    def test_missing_dependency_blocks(self, store, scheduler):
        _save(store, _task("T1", deps=["not-created-yet"]))
        assert scheduler.select_next(now=NOW) is None
        assert store.get("T1").status == TaskStatus.PENDING

    def test_pending_dependency_blocks(self, store, scheduler):
        _save(store, _task("T0", priority=1), _task("T1", priority=9, deps=["T0"]))
        assert scheduler.select_next(now=NOW).id == "T0"

    def test_done_dependency_releases(self, store, scheduler):
        _save(store, _task("T0", status=TaskStatus.DONE), _task("T1", deps=["T0"]))
        assert scheduler.select_next(now=NOW).id == "T1"


class TestZombieRecovery:
    def test_stale_running_task_is_failed(self, store, scheduler):
        zombie = _task("z", status=TaskStatus.RUNNING)
        zombie.state.started_at = NOW - timedelta(hours=2)
        _save(store, zombie)

        scheduler.select_next(now=NOW)

        recovered = store.get("z")
        assert recovered.status == TaskStatus.FAILED
        assert "Recovered from stall" in recovered.state.last_error
        assert recovered.state.history[-1].event == RECOVERY_EVENT

    def test_recent_running_task_is_left_alone(self, store, scheduler):
        running = _task("r", status=TaskStatus.RUNNING)
        running.state.started_at = NOW - timedelta(minutes=10)
        _save(store, running)
        scheduler.select_next(now=NOW)
        assert store.get("r").status == TaskStatus.RUNNING

    def test_zombie_dependents_are_skipped_same_pass(self, store, scheduler):
        zombie = _task("z", status=TaskStatus.RUNNING)
        zombie.state.started_at = NOW - timedelta(hours=2)
        _save(store, zombie, _task("child", deps=["z"]))
        assert scheduler.select_next(now=NOW) is None
        assert store.get("child").status == TaskStatus.SKIPPED
