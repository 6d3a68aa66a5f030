from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from chatrelay.core.models import Task, TaskStatus
from chatrelay.core.store import TaskStore

logger = logging.getLogger("chatrelay.scheduler")

RECOVERY_EVENT = "SYSTEM_RECOVERY"
RECOVERY_ERROR = "Recovered from stall: RUNNING past recovery threshold (zombie)"
DEPENDENCY_SKIP_REASON = "Dependency failed or was skipped"

_BLOCKED = "blocked"
_READY = "ready"
_SKIP = "skip"


class Scheduler:
    """Picks the next eligible task and heals zombies on every pass."""

    def __init__(self, store: TaskStore, recovery_seconds: int = 2400) -> None:
        self.store = store
        self.recovery_seconds = recovery_seconds

    def select_next(self, tasks: Optional[Sequence[Task]] = None, now: Optional[datetime] = None) -> Optional[Task]:
        all_tasks = list(tasks) if tasks is not None else self.store.list()
        now = now or datetime.now(timezone.utc)

        self.recover_zombies(all_tasks, now)

        by_id: Dict[str, Task] = {t.id: t for t in all_tasks}
        eligible: List[Task] = []
        for task in all_tasks:
            if task.status != TaskStatus.PENDING:
                continue
            if task.policy.execute_after and task.policy.execute_after > now:
                continue
            verdict = self._dependency_verdict(task, by_id)
            if verdict == _SKIP:
                task.mark_skipped(DEPENDENCY_SKIP_REASON)
                self.store.save(task)
                logger.warning("Task %s skipped: a dependency failed or was skipped", task.id)
                continue
            if verdict == _BLOCKED:
                continue
            eligible.append(task)

        if not eligible:
            return None
        eligible.sort(key=lambda t: (-t.meta.priority, t.meta.created_at))
        return eligible[0]

    def recover_zombies(self, tasks: Sequence[Task], now: Optional[datetime] = None) -> List[Task]:
        """FAIL tasks stuck in RUNNING longer than the recovery threshold."""
        now = now or datetime.now(timezone.utc)
        threshold = timedelta(seconds=self.recovery_seconds)
        recovered: List[Task] = []
        for task in tasks:
            started = task.state.started_at
            if task.status != TaskStatus.RUNNING or started is None:
                continue
            if now - started <= threshold:
                continue
            task.mark_failed(RECOVERY_ERROR, event=RECOVERY_EVENT)
            self.store.save(task)
            recovered.append(task)
            logger.warning(
                "Zombie task %s recovered (running since %s)", task.id, started.isoformat()
            )
        return recovered

    @staticmethod
    def _dependency_verdict(task: Task, by_id: Dict[str, Task]) -> str:
        blocked = False
        for dep_id in task.policy.dependencies:
            parent = by_id.get(dep_id)
            if parent is None:
                # Might not have been created yet
                blocked = True
                continue
            if parent.status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
                return _SKIP
            if parent.status != TaskStatus.DONE:
                blocked = True
        return _BLOCKED if blocked else _READY
