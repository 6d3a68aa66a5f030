"""Crash dumps for failed task attempts.

Each dump is a folder under the crash directory::

    crash_<ts>_<task_id>/
    ├── meta.json           # error, url, timestamp
    ├── screenshot.jpg      # when the page is still alive
    └── dom_snapshot.html   # sanitized clone of the document

``LATEST_CRASH.trigger`` in the crash directory holds the path of the
newest dump.
"""
from __future__ import annotations

import logging
import os
import traceback
from datetime import datetime, timezone
from typing import Any, Optional

from playwright.sync_api import Error as PlaywrightError

from chatrelay.core.atomic import sanitize_filename, write_json_atomic, write_text_atomic
from chatrelay.integrations.errors import CompletionError
from chatrelay.integrations.page_probe import PageProbe

logger = logging.getLogger("chatrelay.forensics")

TRIGGER_FILENAME = "LATEST_CRASH.trigger"


def _page_alive(page: Any) -> bool:
    try:
        return page is not None and not page.is_closed()
    except PlaywrightError:
        return False


def capture_crash_dump(page: Any, error: BaseException, task_id: str, crash_dir: str) -> Optional[str]:
    """Write a forensic dump and return its folder, or None if nothing could be written."""
    now = datetime.now(timezone.utc)
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
    dump_id = f"crash_{stamp}_{sanitize_filename(task_id or 'unknown')}"
    folder = os.path.join(crash_dir, dump_id)

    try:
        os.makedirs(folder, exist_ok=True)
        logger.error("Writing crash dump for task %s to %s", task_id, folder)

        alive = _page_alive(page)
        url = "no-page"
        if alive:
            try:
                url = page.url
            except PlaywrightError:
                url = "unknown"
        write_json_atomic(os.path.join(folder, "meta.json"), {
            "id": dump_id,
            "task_id": task_id,
            "error_type": type(error).__name__,
            "error_code": getattr(error, "code", None) if isinstance(error, CompletionError) else None,
            "error_msg": str(error),
            "error_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
            "url": url,
            "timestamp": now.isoformat(),
        })

        if alive:
            try:
                page.screenshot(path=os.path.join(folder, "screenshot.jpg"), type="jpeg", quality=50)
                html = PageProbe(page).sanitized_dom()
                write_text_atomic(os.path.join(folder, "dom_snapshot.html"), html)
            except (PlaywrightError, CompletionError) as exc:
                logger.warning("Partial crash dump for task %s: %s", task_id, exc)

        write_text_atomic(os.path.join(crash_dir, TRIGGER_FILENAME), folder)
    except OSError as exc:
        logger.error("Crash dump for task %s failed: %s", task_id, exc)
        return None
    return folder
