from __future__ import annotations

import json
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)

def _load_env() -> None:
    load_dotenv()

def _settings():
    from chatrelay.core.config import Settings

    return Settings.from_env()

def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from chatrelay.core.logging_config import setup_logging

    settings = _settings()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level)

def _store():
    from chatrelay.core.store import TaskStore

    settings = _settings()
    return TaskStore(settings.queue_dir, settings.cache_heartbeat_seconds, watch=False)

@app.command()
def run() -> None:
    """Run the task engine in the foreground."""
    _load_env()
    _setup_logging()

    from chatrelay.core.engine import Engine

    engine = Engine(_settings())
    try:
        engine.run_forever()
    except KeyboardInterrupt:
        engine.stop()

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default CHATRELAY_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default CHATRELAY_PORT)"),
) -> None:
    """Run the engine behind the health/status gateway."""
    _load_env()
    _setup_logging()
    settings = _settings()
    uvicorn.run(
        "chatrelay.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        factory=True,
    )

@app.command()
def status(as_json: bool = typer.Option(False, "--json", help="Print machine-readable output")) -> None:
    """Summarize the queue by status."""
    _load_env()
    from chatrelay.core.control import ControlFile

    store = _store()
    counts = store.counts()
    paused = ControlFile(_settings().control_file).is_paused()
    if as_json:
        typer.echo(json.dumps({"paused": paused, "counts": counts, "invalid": store.invalid_records()}, indent=2))
        return

    typer.echo(f"Engine control: {'PAUSED' if paused else 'RUN'}")
    for name, count in counts.items():
        typer.echo(f"  {name:<8} {count}")
    for filename, error in store.invalid_records().items():
        typer.secho(f"  ! {filename}: {error}", fg=typer.colors.RED)
    failed = [t for t in store.list() if t.status.value == "FAILED"]
    for task in failed[:20]:
        typer.echo(f"  FAILED {task.id}: {task.state.last_error}")

@app.command()
def retry(task_id: str = typer.Argument(..., help="Task to reset to PENDING")) -> None:
    """Reset a FAILED or SKIPPED task so the engine picks it up again."""
    _load_env()
    from chatrelay.core.models import TaskValidationError

    store = _store()
    task = store.get(task_id)
    if task is None:
        typer.secho(f"Task not found: {task_id}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        task.reset_for_retry()
    except TaskValidationError as exc:
        typer.secho(str(exc), fg=typer.colors.YELLOW)
        raise typer.Exit(code=1)
    store.save(task)
    typer.echo(f"✅ {task_id} reset to PENDING")

@app.command()
def pause() -> None:
    """Stop the engine from picking up new tasks."""
    _load_env()
    from chatrelay.core.control import PAUSED, ControlFile

    ControlFile(_settings().control_file).set_state(PAUSED)
    typer.echo("⏸️  Engine paused")

@app.command()
def resume() -> None:
    _load_env()
    from chatrelay.core.control import RUN, ControlFile

    ControlFile(_settings().control_file).set_state(RUN)
    typer.echo("▶️  Engine resumed")

@app.command()
def delete(task_id: str = typer.Argument(..., help="Task to remove from the queue")) -> None:
    _load_env()
    if not _store().delete(task_id):
        typer.secho(f"Task not found: {task_id}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"🗑️  {task_id} deleted")

@app.command()
def version() -> None:
    from chatrelay import __version__

    typer.echo(__version__)

if __name__ == "__main__":
    app()
