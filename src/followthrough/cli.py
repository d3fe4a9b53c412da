from __future__ import annotations

from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

app = typer.Typer(add_completion=False)

def _load_env() -> None:
    load_dotenv()

def _setup_logging() -> None:
    """Configure centralized logging to both stdout and log files."""
    from followthrough.core.config import Settings
    from followthrough.core.logging_config import setup_logging

    settings = Settings.from_env()
    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (default: FOLLOWTHROUGH_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (default: FOLLOWTHROUGH_PORT)"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    _load_env()
    _setup_logging()
    from followthrough.core.config import Settings

    settings = Settings.from_env()
    uvicorn.run(
        "followthrough.core.gateway:create_app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        factory=True,
    )

@app.command()
def version() -> None:
    from followthrough import __version__

    typer.echo(__version__)

@app.command()
def tasks(
    all_tasks: bool = typer.Option(False, "--all", help="Include hidden tasks"),
) -> None:
    """List tasks stored in the data directory."""
    _load_env()
    from followthrough.core.config import Settings
    from followthrough.core.tasks import TaskStore

    store = TaskStore(Settings.from_env().data_dir)
    listed = store.list_tasks(include_hidden=all_tasks)
    if not listed:
        typer.echo("No tasks.")
        raise typer.Exit()
    for task in listed:
        step = f"{task.current_step.index}/{len(task.plan)}"
        typer.echo(f"{task.task_id:<40} {task.status:<18} {step:<6} {task.title}")

@app.command()
def cancel(task_id: str = typer.Argument(..., help="Task to cancel")) -> None:
    """Cancel a task directly in the data directory (use the HTTP API while serving)."""
    _load_env()
    from followthrough.core.config import Settings
    from followthrough.core.errors import InvalidTransitionError, TaskNotFoundError
    from followthrough.core.tasks import TaskStore

    store = TaskStore(Settings.from_env().data_dir)
    try:
        task = store.cancel_task(task_id)
    except (TaskNotFoundError, InvalidTransitionError) as exc:
        typer.secho(f"❌ {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"✅ Cancelled {task.task_id} ({task.title})")

if __name__ == "__main__":
    app()
