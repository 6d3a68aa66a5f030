"""Centralized logging configuration for chatrelay.

Sets up Python's logging system to write to both stdout and a rotating
log file in the configured log directory. Also provides a dedicated
JSONL logger for timing metrics.

Log directory structure::

    ~/.chatrelay/logs/
    ├── chatrelay.log          # All Python logger output (rotating)
    ├── metrics.log            # One JSON line per measurement
    ├── adaptive_state.json    # Timeout estimator state
    └── crash_reports/
        └── {ts}_{task_id}/    # Forensic dumps
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from typing import Any, Optional

# Module-level log directory, set by setup_logging()
_log_dir: Optional[str] = None

metrics_logger = logging.getLogger("chatrelay._metrics")


def get_log_dir() -> Optional[str]:
    """Return the configured log directory, or None before setup."""
    return _log_dir


def setup_logging(log_dir: str, log_level: str = "info") -> None:
    """Configure the logging system with both stdout and file handlers.

    This should be called once at application startup.
    """
    global _log_dir
    _log_dir = log_dir

    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)

    # ── Root logger: stdout + rotating file ──────────────────
    root = logging.getLogger()
    root.setLevel(level)

    # Clear any existing handlers (avoid duplicate output on re-init)
    root.handlers.clear()

    fmt = logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stdout_handler = logging.StreamHandler()
    stdout_handler.setLevel(level)
    stdout_handler.setFormatter(fmt)
    root.addHandler(stdout_handler)

    main_log_path = os.path.join(log_dir, "chatrelay.log")
    file_handler = logging.handlers.RotatingFileHandler(
        main_log_path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)  # Capture everything to file
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # ── Metrics logger (JSONL) ───────────────────────────────
    _setup_jsonl_logger(metrics_logger, os.path.join(log_dir, "metrics.log"))

    # Playwright and httpx are chatty at DEBUG
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)

    logging.getLogger("chatrelay").info(
        "Logging initialized: log_dir=%s, level=%s", log_dir, log_level
    )


def _setup_jsonl_logger(logger_instance: logging.Logger, path: str) -> None:
    """Configure a logger to write raw JSONL messages to a rotating file."""
    logger_instance.setLevel(logging.INFO)
    logger_instance.propagate = False  # Don't bubble up to root
    logger_instance.handlers.clear()

    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    # Raw formatter: message is already JSON
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger_instance.addHandler(handler)


# ── Structured logging helpers ───────────────────────────────


def log_metric(name: str, task_id: str | None = None, **fields: Any) -> None:
    """Log one measurement to the dedicated metrics log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "metric": name,
    }
    if task_id:
        record["task_id"] = task_id
    for key, value in fields.items():
        record[key] = round(value, 1) if isinstance(value, float) else value
    try:
        metrics_logger.info(json.dumps(record, default=str))
    except Exception:  # noqa: BLE001
        pass
