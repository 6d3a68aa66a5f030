"""Cross-task references inside prompts.

A prompt may embed ``{{REF:<criteria>}}`` or ``{{REF:<criteria>|<TRANSFORM>}}``.
Criteria select a DONE task of the same project:

``LAST``            most recently completed task
``TAG:<tag>``       most recently completed task carrying the tag
``FIRST:TAG:<tag>`` oldest completed task carrying the tag
``<task-id>``       that task

Transforms shape the referenced response file (``RAW`` by default):
``SUMMARY``, ``JSON``, ``HEAD``, ``TAIL``, ``STATUS``, ``CODE`` and
``PROMPT`` (the referenced task's own prompt instead of its output).

Injected text is itself scanned again, up to ``MAX_DEPTH`` rounds.
Unresolvable references are replaced by an inline marker; resolution
never raises.
"""
from __future__ import annotations

import logging
import os
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from chatrelay.core.atomic import sanitize_filename
from chatrelay.core.models import Task, TaskStatus

logger = logging.getLogger("chatrelay.context")

MAX_DEPTH = 3
MAX_READ_BYTES = 1024 * 1024
SUMMARY_LIMIT = 2000
EDGE_LIMIT = 1500
GLOBAL_CONTEXT_LIMIT = 500_000

REF_PATTERN = re.compile(r"\{\{REF:([A-Za-z0-9._\-:]+)(?:\|([A-Za-z0-9]+))?\}\}")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_CODE_BLOCK = re.compile(r"```[\s\S]*?```")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def extract_first_json_object(content: str) -> str:
    """Return the first balanced ``{...}`` span, or ``{}``."""
    depth = 0
    start = -1
    for i, ch in enumerate(content):
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start != -1:
                return content[start:i + 1]
    return "{}"


def smart_truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    sub = text[:limit]
    last_break = max(sub.rfind("."), sub.rfind("?"), sub.rfind("\n"))
    cut = last_break + 1 if last_break > limit * 0.7 else limit
    return sub[:cut].strip() + "\n\n[... SUMMARIZED ...]"


def apply_transform(content: str, transform: Optional[str], task: Task) -> str:
    kind = (transform or "RAW").upper()
    if kind == "SUMMARY":
        return smart_truncate(content, SUMMARY_LIMIT)
    if kind == "JSON":
        return extract_first_json_object(content)
    if kind == "HEAD":
        return content[:EDGE_LIMIT] + "\n[... HEAD OF CONTENT ...]"
    if kind == "TAIL":
        return "[... TAIL OF CONTENT ...]\n" + content[-EDGE_LIMIT:]
    if kind == "STATUS":
        return task.status.value
    if kind == "CODE":
        blocks = _CODE_BLOCK.findall(content)
        return "\n\n".join(blocks) if blocks else "[No code blocks found]"
    return content.strip()


class ProjectIndex:
    """DONE tasks of one project, newest completion first."""

    def __init__(self, tasks: Sequence[Task], project_id: str) -> None:
        self.tasks: List[Task] = sorted(
            (t for t in tasks if t.meta.project_id == project_id and t.status == TaskStatus.DONE),
            key=lambda t: t.state.completed_at or _EPOCH,
            reverse=True,
        )
        self.by_id: Dict[str, Task] = {t.id: t for t in self.tasks}

    def recent(self) -> Optional[Task]:
        return self.tasks[0] if self.tasks else None

    def last_by_tag(self, tag: str) -> Optional[Task]:
        return next((t for t in self.tasks if tag in t.meta.tags), None)

    def first_by_tag(self, tag: str) -> Optional[Task]:
        return next((t for t in reversed(self.tasks) if tag in t.meta.tags), None)

    def find(self, criteria: str) -> Optional[Task]:
        if criteria == "LAST":
            return self.recent()
        if criteria.startswith("FIRST:TAG:"):
            return self.first_by_tag(criteria[len("FIRST:TAG:"):])
        if criteria.startswith("TAG:"):
            return self.last_by_tag(criteria[len("TAG:"):])
        return self.by_id.get(criteria)


class ContextResolver:
    def __init__(self, list_tasks: Callable[[], Sequence[Task]], responses_dir: str) -> None:
        self._list_tasks = list_tasks
        self.responses_dir = responses_dir

    def response_path(self, task_id: str) -> str:
        return os.path.join(self.responses_dir, f"{sanitize_filename(task_id)}.txt")

    def resolve(self, text: str, task: Optional[Task] = None) -> str:
        if not text or "{{REF:" not in text:
            return text
        project = task.meta.project_id if task else "default"
        index = ProjectIndex(self._list_tasks(), project)
        injected = 0
        for _ in range(MAX_DEPTH + 1):
            if "{{REF:" not in text:
                break
            text, added = self._resolve_once(text, task, index, injected)
            injected += added
        return text

    def _resolve_once(self, text: str, current: Optional[Task], index: ProjectIndex, injected: int) -> tuple[str, int]:
        added = 0
        for match in list(dict.fromkeys(m.group(0) for m in REF_PATTERN.finditer(text))):
            criteria, transform = REF_PATTERN.fullmatch(match).groups()
            if injected + added > GLOBAL_CONTEXT_LIMIT:
                text = text.replace(match, "[OVERFLOW_LIMIT]")
                continue
            try:
                replacement = self._lookup(criteria, transform, current, index)
            except OSError as exc:
                logger.error("Reference %s could not be read: %s", criteria, exc)
                replacement = "[REF_READ_ERROR]"
            text = text.replace(match, replacement)
            added += len(replacement)
        return text, added

    def _lookup(self, criteria: str, transform: Optional[str], current: Optional[Task], index: ProjectIndex) -> str:
        target = index.find(criteria)
        if target is None or (current is not None and target.id == current.id):
            return f"[INVALID_REF: {criteria}]"
        if transform and transform.upper() == "PROMPT":
            return target.prompt
        path = self.response_path(target.id)
        if not os.path.exists(path):
            return f"[MISSING_OUTPUT: {target.id}]"
        return apply_transform(self._read_capped(path), transform, target)

    @staticmethod
    def _read_capped(path: str) -> str:
        with open(path, "rb") as handle:
            data = handle.read(MAX_READ_BYTES)
        return _CONTROL_CHARS.sub("", data.decode("utf-8", errors="ignore"))
