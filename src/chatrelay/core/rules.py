from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatrelay.core.atomic import write_json_atomic

logger = logging.getLogger("chatrelay.rules")

CHECK_INTERVAL_SECONDS = 2.0

DEFAULT_SELECTORS: Dict[str, List[str]] = {
    "input_box": ["#prompt-textarea", "div[contenteditable='true'][role='textbox']", "textarea"],
    "send_button": ["[data-testid='send-button']", "button[aria-label*='Send']"],
    "response_region": ["div[data-message-author-role='assistant']"],
}


class Rules(BaseModel):
    """Externally editable selector candidates and behaviour overrides."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    meta: Dict[str, Any] = Field(default_factory=dict, alias="_meta")
    selectors: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_SELECTORS.items()})
    behavior_overrides: Dict[str, Any] = Field(default_factory=dict)

    def candidates(self, name: str) -> List[str]:
        return list(self.selectors.get(name) or [])

    def override(self, key: str, default: Any = None) -> Any:
        return self.behavior_overrides.get(key, default)


class RulesFile:
    """Hot-reloaded ``dynamic_rules.json``.

    The disk is consulted at most once per ``check_interval`` seconds and
    re-parsed only when its mtime changed. A broken edit keeps the last
    good rules in force.
    """

    def __init__(
        self,
        path: str,
        check_interval: float = CHECK_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = path
        self.check_interval = check_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Optional[Rules] = None
        self._mtime = 0.0
        self._last_check: Optional[float] = None

    def load(self) -> Rules:
        with self._lock:
            now = self._clock()
            if self._cache is not None and self._last_check is not None and now - self._last_check < self.check_interval:
                return self._cache
            self._last_check = now
            try:
                if not os.path.exists(self.path):
                    defaults = Rules(meta={"created_by": "system_init", "version": 1})
                    write_json_atomic(self.path, defaults.model_dump(mode="json", by_alias=True))
                mtime = os.path.getmtime(self.path)
                if self._cache is None or mtime != self._mtime:
                    with open(self.path, "r", encoding="utf-8") as handle:
                        self._cache = Rules.model_validate(json.load(handle))
                    self._mtime = mtime
                    logger.info("Rules reloaded from %s", self.path)
            except (OSError, ValueError, ValidationError) as exc:
                logger.error("Rules file unusable, keeping previous rules: %s", exc)
            if self._cache is None:
                self._cache = Rules()
            return self._cache
