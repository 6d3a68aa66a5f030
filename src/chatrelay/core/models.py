"""Task record model.

A task on disk is one JSON object with five typed blocks (``meta``,
``spec``, ``policy``, ``state``, ``result``) plus an ``extensions`` map
that keeps any key the model does not know about, at the top level or
inside a block.

Older record shapes (flat ``prompt``/``status``/``prioridade`` keys) are
relocated by :func:`upgrade_legacy` before validation.
"""
from __future__ import annotations

import copy
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union, get_args, get_origin

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from chatrelay.core.atomic import sanitize_filename


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _lenient_timestamp(value: Any) -> Any:
    """Unparseable timestamp strings become "now" instead of failing."""
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _now()
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]
LenientDatetime = Annotated[datetime, BeforeValidator(_lenient_timestamp), AfterValidator(_as_utc)]


_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

DEFAULT_FORBIDDEN_TERMS = ["I cannot", "As an AI", "desculpe", "violação"]


class TaskValidationError(RuntimeError):
    pass


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    PAUSED = "PAUSED"
    SKIPPED = "SKIPPED"
    STALLED = "STALLED"


TERMINAL_STATUSES = {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.SKIPPED}


# ── Data models ──────────────────────────────────────────────

class _Block(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_assignment=False)


class TaskMeta(_Block):
    id: str = Field(min_length=1, pattern=r"^[A-Za-z0-9._-]+$")
    project_id: str = "default"
    parent_id: Optional[str] = None
    correlation_id: Optional[str] = None
    version: str = "4.0"
    created_at: LenientDatetime = Field(default_factory=_now)
    priority: int = 5
    source: str = "manual"
    tags: List[str] = Field(default_factory=list)
    checksum: Optional[str] = None

    @field_validator("priority")
    @classmethod
    def _clamp_priority(cls, v: int) -> int:
        return max(0, min(100, v))


class Payload(_Block):
    system_message: str = ""
    context: str = ""
    user_message: str

    @field_validator("user_message")
    @classmethod
    def _clean_message(cls, v: str) -> str:
        cleaned = _CONTROL_CHARS.sub("", v.strip())
        if not cleaned:
            raise ValueError("user_message must not be empty")
        return cleaned


class GenerationParameters(_Block):
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop_sequences: List[str] = Field(default_factory=list)


class ValidationRules(_Block):
    min_length: int = Field(default=10, ge=0)
    required_format: Literal["text", "json", "markdown", "code"] = "text"
    forbidden_terms: List[str] = Field(default_factory=lambda: list(DEFAULT_FORBIDDEN_TERMS))
    required_pattern: Optional[str] = None


class SpecConfig(_Block):
    reset_context: bool = False
    require_history: bool = True
    output_format: Literal["markdown", "json", "raw"] = "markdown"
    session_id: Optional[str] = None


class TaskSpec(_Block):
    target: str = "chatgpt"
    model: str = "gpt-5"
    payload: Payload
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    validation: ValidationRules = Field(default_factory=ValidationRules)
    config: SpecConfig = Field(default_factory=SpecConfig)


class TaskPolicy(_Block):
    max_attempts: int = Field(default=5, ge=1)
    timeout_ms: Union[int, Literal["auto"]] = "auto"
    dependencies: List[str] = Field(default_factory=list)
    execute_after: Optional[UtcDatetime] = None
    priority_weight: float = 1.0


class TaskMetrics(_Block):
    duration_ms: float = 0
    token_estimate: int = 0
    heartbeat_latency_ms: float = 0
    event_loop_lag_ms: float = 0
    ttft_ms: float = 0


class HistoryEntry(_Block):
    ts: LenientDatetime = Field(default_factory=_now)
    event: str
    msg: Optional[str] = None
    worker: Optional[str] = None


class TaskState(_Block):
    status: TaskStatus = TaskStatus.PENDING
    progress_estimate: float = Field(default=0, ge=0, le=100)
    worker_id: Optional[str] = None
    attempts: int = 0
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    last_error: Optional[str] = None
    metrics: TaskMetrics = Field(default_factory=TaskMetrics)
    history: List[HistoryEntry] = Field(default_factory=list)


class TaskResult(_Block):
    file_path: Optional[str] = None
    session_url: Optional[str] = None
    finish_reason: Literal["stop", "length", "content_filter", "error", "manual", "unknown"] = "unknown"
    raw_output_preview: Optional[str] = None


class Task(BaseModel):
    """A unit of work for one target chat surface."""

    model_config = ConfigDict(extra="forbid")

    meta: TaskMeta
    spec: TaskSpec
    policy: TaskPolicy = Field(default_factory=TaskPolicy)
    state: TaskState = Field(default_factory=TaskState)
    result: TaskResult = Field(default_factory=TaskResult)
    extensions: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extensions(cls, data: Any) -> Any:
        """Move unknown keys into ``extensions``.

        Top-level keys keep their name. Keys found inside a block are
        stored under their dotted path (``spec.custom_hint``,
        ``state.history.0.note``) and put back in place by :meth:`to_dict`.
        """
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        nested: Dict[str, Any] = {}
        cleaned: Dict[str, Any] = {}
        extras: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                extras[key] = value
            elif key in BLOCK_NAMES:
                cleaned[key] = _split_value(cls.model_fields[key].annotation, value, f"{key}.", nested)
            else:
                cleaned[key] = value
        if not extras and not nested:
            return data
        cleaned["extensions"] = {**(data.get("extensions") or {}), **nested, **extras}
        return cleaned

    # ── Accessors ────────────────────────────────────────────

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def status(self) -> TaskStatus:
        return self.state.status

    @property
    def target(self) -> str:
        return self.spec.target

    @property
    def prompt(self) -> str:
        return self.spec.payload.user_message

    @property
    def is_terminal(self) -> bool:
        return self.state.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        extensions = data["extensions"]
        for key in list(extensions):
            if _restore_nested(data, key, extensions[key]):
                del extensions[key]
        return data

    # ── Lifecycle transitions ────────────────────────────────

    def add_history(self, event: str, msg: str | None = None, worker: str | None = None) -> HistoryEntry:
        entry = HistoryEntry(ts=_now(), event=event, msg=msg, worker=worker)
        self.state.history.append(entry)
        return entry

    def mark_running(self, worker_id: str) -> None:
        self.state.status = TaskStatus.RUNNING
        self.state.attempts += 1
        self.state.worker_id = worker_id
        self.state.started_at = _now()
        self.state.completed_at = None
        self.state.last_error = None
        self.add_history("RUNNING", f"attempt {self.state.attempts}", worker=worker_id)

    def mark_done(self, file_path: str | None = None, finish_reason: str = "stop", preview: str | None = None) -> None:
        self.state.status = TaskStatus.DONE
        self.state.completed_at = _now()
        self.state.progress_estimate = 100
        self.state.last_error = None
        if self.state.started_at:
            self.state.metrics.duration_ms = (self.state.completed_at - self.state.started_at).total_seconds() * 1000
        self.result.file_path = file_path
        self.result.finish_reason = finish_reason  # type: ignore[assignment]
        if preview is not None:
            self.result.raw_output_preview = preview
        self.add_history("DONE", "completed")

    def mark_failed(self, error: str, event: str = "FAILED") -> None:
        self.state.status = TaskStatus.FAILED
        self.state.completed_at = _now()
        self.state.last_error = error
        self.result.finish_reason = "error"
        self.add_history(event, error)

    def mark_skipped(self, reason: str) -> None:
        self.state.status = TaskStatus.SKIPPED
        self.state.completed_at = _now()
        self.state.last_error = reason
        self.add_history("SKIPPED", reason)

    def reset_for_retry(self) -> None:
        """Operator retry: FAILED/SKIPPED back to PENDING with attempts cleared."""
        if self.state.status not in (TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.STALLED):
            raise TaskValidationError(f"Task {self.id} is {self.state.status.value}; only failed tasks can be retried")
        self.state.status = TaskStatus.PENDING
        self.state.attempts = 0
        self.state.started_at = None
        self.state.completed_at = None
        self.state.last_error = None
        self.state.worker_id = None
        self.state.progress_estimate = 0
        self.add_history("RETRY_RESET", "reset by operator")


# ── Nested extensions ────────────────────────────────────────

BLOCK_NAMES = ("meta", "spec", "policy", "state", "result")


def _block_type(annotation: Any) -> Optional[type]:
    if isinstance(annotation, type) and issubclass(annotation, _Block):
        return annotation
    return None


def _split_value(annotation: Any, value: Any, prefix: str, found: Dict[str, Any]) -> Any:
    block = _block_type(annotation)
    if block is not None and isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            field = block.model_fields.get(key)
            if field is None:
                found[f"{prefix}{key}"] = item
            else:
                cleaned[key] = _split_value(field.annotation, item, f"{prefix}{key}.", found)
        return cleaned
    if get_origin(annotation) is list and isinstance(value, list):
        args = get_args(annotation)
        if args and _block_type(args[0]) is not None:
            return [_split_value(args[0], item, f"{prefix}{i}.", found) for i, item in enumerate(value)]
    return value


def _restore_nested(data: dict, dotted: str, value: Any) -> bool:
    """Put a dotted extension key back into its block. False if it has no home."""
    head, _, rest = dotted.partition(".")
    if head not in BLOCK_NAMES or not rest:
        return False
    node: Any = data[head]
    parts = rest.split(".")
    for part in parts[:-1]:
        if isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        elif isinstance(node, dict) and isinstance(node.get(part), (dict, list)):
            node = node[part]
        else:
            return False
    if not isinstance(node, dict) or parts[-1] in node:
        return False
    node[parts[-1]] = value
    return True


# ── Legacy adaptation ────────────────────────────────────────

def _block(data: dict, name: str) -> dict:
    value = data.get(name)
    if not isinstance(value, dict):
        value = {}
        data[name] = value
    return value


def _relocate(data: dict, key: str, block: str, field: str, transform=None) -> None:
    if key not in data:
        return
    target = _block(data, block)
    if target.get(field) in (None, "", []):
        value = data.pop(key)
        target[field] = transform(value) if transform else value


def upgrade_legacy(raw: dict) -> dict:
    """Relocate flat legacy keys into their typed blocks.

    Idempotent: a record that has already been upgraded passes through
    unchanged. A legacy key is only moved when its destination is empty,
    so nothing present in the new shape is overwritten.
    """
    n = copy.deepcopy(raw)
    if "prompt" in n:
        payload = _block(_block(n, "spec"), "payload")
        if not payload.get("user_message"):
            payload["user_message"] = n.pop("prompt")
    for key in ("prioridade", "priority"):
        _relocate(n, key, "meta", "priority")
    _relocate(n, "id", "meta", "id", transform=lambda v: sanitize_filename(str(v), max_len=200))
    for key in ("created_at", "criadoEm"):
        _relocate(n, key, "meta", "created_at")
    _relocate(n, "status", "state", "status")
    for key in ("erro", "error"):
        _relocate(n, key, "state", "last_error")
    _relocate(n, "dependsOn", "policy", "dependencies")
    for name in ("meta", "spec", "policy", "state", "result"):
        _block(n, name)
    return n


def parse_task(raw: Any) -> Task:
    """Upgrade and validate one raw record. Raises TaskValidationError."""
    if not isinstance(raw, dict):
        raise TaskValidationError("Task must be a JSON object")
    try:
        return Task.model_validate(upgrade_legacy(raw))
    except ValidationError as exc:
        raise TaskValidationError(_summarize(exc)) from exc


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def new_task(
    task_id: str,
    prompt: str,
    *,
    target: str = "chatgpt",
    model: str = "gpt-5",
    priority: int = 5,
    dependencies: list[str] | None = None,
    tags: list[str] | None = None,
    **spec_config: Any,
) -> Task:
    """Build a fresh PENDING task (used by tests and tooling)."""
    return parse_task({
        "meta": {"id": task_id, "priority": priority, "tags": tags or []},
        "spec": {
            "target": target,
            "model": model,
            "payload": {"user_message": prompt},
            "config": spec_config,
        },
        "policy": {"dependencies": dependencies or []},
    })
