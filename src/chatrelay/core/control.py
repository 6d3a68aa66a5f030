from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from chatrelay.core.atomic import write_json_atomic

logger = logging.getLogger("chatrelay.control")

RUN = "RUN"
PAUSED = "PAUSED"


class ControlFile:
    """External pause/resume switch polled before each task pickup.

    A missing or unreadable file means RUN so a bad edit never wedges the
    engine in pause.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def state(self) -> str:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return RUN
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable control file %s, assuming RUN: %s", self.path, exc)
            return RUN
        if not isinstance(data, dict):
            return RUN
        value = data.get("state", data.get("estado", RUN))
        return PAUSED if str(value).upper() == PAUSED else RUN

    def is_paused(self) -> bool:
        return self.state() == PAUSED

    def set_state(self, state: str) -> None:
        state = state.upper()
        if state not in (RUN, PAUSED):
            raise ValueError(f"Invalid control state: {state}")
        write_json_atomic(self.path, {"state": state, "updated_at": datetime.now(timezone.utc).isoformat()})
        logger.info("Control state set to %s", state)
