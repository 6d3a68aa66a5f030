from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _flag(value: str) -> bool:
    return value.lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    log_level: str
    log_dir: str
    data_dir: str
    queue_dir: str
    responses_dir: str
    lock_dir: str
    control_file: str
    rules_file: str
    vocabulary_file: str
    adaptive_state_file: str
    crash_dir: str
    host: str
    port: int
    # Scheduler / store
    running_recovery_seconds: int
    cache_heartbeat_seconds: float
    idle_sleep_seconds: float
    # Collection
    max_continuations: int
    stable_cycles: int
    stability_interval_seconds: float
    task_timeout_seconds: int
    limit_cooldown_seconds: int
    # Browser connection
    debug_ports: list[int]
    allowed_domains: list[str]
    page_selection_policy: str
    connection_strategies: list[str]
    retry_delay_seconds: float
    max_retry_delay_seconds: float
    page_scan_interval_seconds: float
    state_history_size: int
    # Target behaviour
    default_model: str
    ui_language: str
    human_typing: bool
    kill_browser_on_infra: bool

    @staticmethod
    def from_env() -> "Settings":
        default_data_dir = str(Path(os.path.expanduser("~")) / ".chatrelay")
        data_dir = os.getenv("CHATRELAY_DATA_DIR") or default_data_dir
        log_dir = os.getenv("CHATRELAY_LOG_DIR") or str(Path(data_dir) / "logs")
        return Settings(
            log_level=os.getenv("CHATRELAY_LOG_LEVEL", "info"),
            log_dir=log_dir,
            data_dir=data_dir,
            queue_dir=os.getenv("CHATRELAY_QUEUE_DIR") or str(Path(data_dir) / "queue"),
            responses_dir=os.getenv("CHATRELAY_RESPONSES_DIR") or str(Path(data_dir) / "responses"),
            lock_dir=os.getenv("CHATRELAY_LOCK_DIR") or data_dir,
            control_file=os.getenv("CHATRELAY_CONTROL_FILE") or str(Path(data_dir) / "control.json"),
            rules_file=os.getenv("CHATRELAY_RULES_FILE") or str(Path(data_dir) / "dynamic_rules.json"),
            vocabulary_file=os.getenv("CHATRELAY_VOCABULARY_FILE") or str(Path(data_dir) / "vocabulary.json"),
            adaptive_state_file=os.getenv("CHATRELAY_ADAPTIVE_STATE_FILE") or str(Path(log_dir) / "adaptive_state.json"),
            crash_dir=os.getenv("CHATRELAY_CRASH_DIR") or str(Path(log_dir) / "crash_reports"),
            host=os.getenv("CHATRELAY_HOST", "127.0.0.1"),
            port=int(os.getenv("CHATRELAY_PORT", "18791")),
            running_recovery_seconds=int(os.getenv("CHATRELAY_RUNNING_RECOVERY_SECONDS", "2400")),
            cache_heartbeat_seconds=float(os.getenv("CHATRELAY_CACHE_HEARTBEAT_SECONDS", "15")),
            idle_sleep_seconds=float(os.getenv("CHATRELAY_IDLE_SLEEP_SECONDS", "3")),
            max_continuations=int(os.getenv("CHATRELAY_MAX_CONTINUATIONS", "25")),
            stable_cycles=int(os.getenv("CHATRELAY_STABLE_CYCLES", "3")),
            stability_interval_seconds=float(os.getenv("CHATRELAY_STABILITY_INTERVAL_SECONDS", "1.5")),
            task_timeout_seconds=int(os.getenv("CHATRELAY_TASK_TIMEOUT_SECONDS", "1800")),
            limit_cooldown_seconds=int(os.getenv("CHATRELAY_LIMIT_COOLDOWN_SECONDS", "1800")),
            debug_ports=[int(p) for p in _csv(os.getenv("CHATRELAY_DEBUG_PORTS", "9222"))],
            allowed_domains=_csv(os.getenv("CHATRELAY_ALLOWED_DOMAINS", "chatgpt.com,gemini.google.com")),
            page_selection_policy=os.getenv("CHATRELAY_PAGE_SELECTION_POLICY", "FIRST").upper(),
            connection_strategies=[s.upper() for s in _csv(os.getenv("CHATRELAY_CONNECTION_STRATEGIES", "BROWSER_URL,WS_ENDPOINT"))],
            retry_delay_seconds=float(os.getenv("CHATRELAY_RETRY_DELAY_SECONDS", "3")),
            max_retry_delay_seconds=float(os.getenv("CHATRELAY_MAX_RETRY_DELAY_SECONDS", "15")),
            page_scan_interval_seconds=float(os.getenv("CHATRELAY_PAGE_SCAN_INTERVAL_SECONDS", "4")),
            state_history_size=int(os.getenv("CHATRELAY_STATE_HISTORY_SIZE", "50")),
            default_model=os.getenv("CHATRELAY_DEFAULT_MODEL", "gpt-5"),
            ui_language=os.getenv("CHATRELAY_UI_LANGUAGE", "en"),
            human_typing=_flag(os.getenv("CHATRELAY_HUMAN_TYPING", "true")),
            kill_browser_on_infra=_flag(os.getenv("CHATRELAY_KILL_BROWSER_ON_INFRA", "true")),
        )
