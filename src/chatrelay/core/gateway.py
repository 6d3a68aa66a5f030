from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import os
import threading
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from chatrelay import __version__
from chatrelay.core.config import Settings
from chatrelay.core.control import ControlFile
from chatrelay.core.engine import Engine
from chatrelay.core.logging_config import setup_logging
from chatrelay.core.store import TaskStore

logger = logging.getLogger("chatrelay.gateway")


def create_app(engine: Optional[Engine] = None, start_engine: bool = True) -> FastAPI:
    """Health/status gateway with the engine running in a background thread."""
    # Ensure .env is loaded before anything reads os.getenv
    load_dotenv(override=False)

    settings = engine.settings if engine is not None else Settings.from_env()
    if engine is None:
        setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

    os.makedirs(settings.data_dir, exist_ok=True)
    os.makedirs(settings.log_dir, exist_ok=True)

    engine_ref: dict[str, Optional[Engine]] = {"engine": engine}
    stop_event = engine.stop_event if engine is not None else threading.Event()
    control = ControlFile(settings.control_file)

    def _engine() -> Engine:
        if engine_ref["engine"] is None:
            engine_ref["engine"] = Engine(settings, stop_event=stop_event)
        return engine_ref["engine"]  # type: ignore[return-value]

    def _store() -> TaskStore:
        current = engine_ref["engine"]
        if current is not None:
            return current.store
        return TaskStore(settings.queue_dir, settings.cache_heartbeat_seconds, watch=False)

    # ---- lifespan ----

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        engine_thread: Optional[threading.Thread] = None
        if start_engine:
            engine_thread = threading.Thread(target=_engine().run_forever, daemon=True, name="task-engine")
            engine_thread.start()
            logger.info("Engine thread started")

        yield

        # Shutdown
        stop_event.set()
        if engine_thread is not None:
            engine_thread.join(timeout=15)
            if engine_thread.is_alive():
                logger.warning("Engine thread did not stop within 15s")

    app = FastAPI(title="chatrelay", version=__version__, lifespan=lifespan)

    # ---- routes ----

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/control/status")
    def control_status() -> dict:
        current = engine_ref["engine"]
        return {
            "paused": control.is_paused(),
            "queue": _store().counts(),
            "engine": current.status() if current is not None else {"state": "NOT_STARTED"},
        }

    return app
