"""Durable file helpers shared by the store, the lock manager and the
state files (vocabulary, adaptive estimator, rules).

Writes go to a uniquely-named sibling temp file which is fsync'd and then
``os.replace``'d over the target, so readers only ever see the previous
or the new content.
"""
from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from typing import Any

from chatrelay.core.logging_config import log_metric

logger = logging.getLogger("chatrelay.atomic")

REPLACE_ATTEMPTS = 10
REPLACE_BACKOFF_SECONDS = 0.1

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(name: str | None, max_len: int = 50) -> str:
    """Map an arbitrary identifier onto ``[A-Za-z0-9._-]``."""
    if not name:
        return "unknown"
    return _UNSAFE_CHARS.sub("_", str(name))[:max_len]


def write_text_atomic(path: str, content: str) -> None:
    """Replace *path* with *content* without ever exposing a partial file.

    The rename is retried with growing backoff on ``PermissionError``
    (a reader holding the file open on Windows). Other errors propagate
    after the temp file is cleaned up.
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp = f"{path}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}"
    t0 = time.monotonic()
    try:
        with open(tmp, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        for attempt in range(1, REPLACE_ATTEMPTS + 1):
            try:
                os.replace(tmp, path)
                break
            except PermissionError:
                if attempt == REPLACE_ATTEMPTS:
                    raise
                time.sleep(REPLACE_BACKOFF_SECONDS * attempt)
    except Exception:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass
        logger.error("Atomic write failed for %s", path)
        raise
    log_metric("io_write_ms", duration=(time.monotonic() - t0) * 1000, file=os.path.basename(path))


def write_json_atomic(path: str, payload: Any) -> None:
    write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2))
