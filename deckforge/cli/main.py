"""
Typer CLI for the deckforge service.

Commands:
    deckforge serve                 - Run the HTTP API with uvicorn
    deckforge generate              - Generate decks for a module, course or everything
    deckforge db init               - Initialize database tables
    deckforge config                - Show effective configuration
    deckforge version               - Show version information

Usage:
    deckforge --help
    deckforge generate --course hr101 --module m1
    deckforge generate --course hr101 --content-dir data/content
    deckforge generate --all --llm --verification llm
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from config import Settings, get_settings
from deckforge import __version__
from deckforge.logging_config import configure_logging

app = typer.Typer(help="deckforge CLI: course content -> verified flashcard decks")
console = Console()


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log warnings and errors"),
) -> None:
    """Flashcard generation orchestrator."""
    level = "DEBUG" if verbose else "WARNING" if quiet else None
    configure_logging(get_settings(), level=level)


# ========================================
# SERVER
# ========================================


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: from config)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: from config)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "deckforge.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


# ========================================
# GENERATION
# ========================================


async def _run_generation(settings: Settings, mode: str, course: Optional[str], module: Optional[str]):
    from deckforge.container import build_container
    from deckforge.orchestrator.models import JobMode, JobRequest, JobTarget, TriggerSource

    container = build_container(settings)
    await container.orchestrator.start()
    try:
        job = await container.orchestrator.enqueue(
            JobRequest(
                mode=JobMode(mode),
                target=JobTarget(course_id=course, module_id=module),
                triggered_by=TriggerSource.CLI,
            )
        )
        job = await container.orchestrator.wait_for_job(job.job_id)
        pending = await container.review_queue.list_pending(limit=1000)
        return job, len(pending)
    finally:
        await container.aclose()


@app.command("generate")
def generate(
    course: Optional[str] = typer.Option(None, "--course", "-c", help="Course id"),
    module: Optional[str] = typer.Option(None, "--module", "-m", help="Module id (requires --course)"),
    all_courses: bool = typer.Option(False, "--all", help="Generate for every course"),
    content_dir: Optional[str] = typer.Option(
        None, "--content-dir", help="Directory of <course>/<module>.json files"
    ),
    llm: bool = typer.Option(False, "--llm/--mock", help="Use the configured LLM instead of mock stages"),
    verification: Optional[str] = typer.Option(
        None, "--verification", help="Verification mode: heuristic or llm"
    ),
    cards: Optional[int] = typer.Option(None, "--cards", help="Target cards per module"),
) -> None:
    """
    Run one generation job in-process and print the module results.

    Examples:
        deckforge generate --course hr101 --module m1
        deckforge generate --course hr101
        deckforge generate --all --llm
    """
    if all_courses:
        mode = "all_courses"
    elif course and module:
        mode = "single_module"
    elif course:
        mode = "course"
    else:
        rprint("[red]✗[/red] Pass --course (optionally with --module) or --all")
        raise typer.Exit(code=2)

    updates: dict[str, object] = {}
    if content_dir:
        updates["content_dir"] = content_dir
    if not llm:
        updates["llm_provider"] = "mock"
    if verification:
        if verification not in ("heuristic", "llm"):
            rprint(f"[red]✗[/red] Unknown verification mode: {verification}")
            raise typer.Exit(code=2)
        updates["verification_mode"] = verification
    if cards:
        updates["target_card_count"] = cards
    settings = get_settings().model_copy(update=updates)

    rprint("\n[bold cyan]Flashcard Generation[/bold cyan]")
    rprint(f"  Mode: {mode}")
    rprint(f"  Content: {settings.content_dir}")
    rprint(f"  LLM: {settings.llm_provider}\n")

    job, pending = asyncio.run(_run_generation(settings, mode, course, module))

    table = Table(title=f"Job {job.job_id}", show_header=True)
    table.add_column("Course", style="cyan")
    table.add_column("Module", style="cyan")
    table.add_column("Status")
    table.add_column("Cards", justify="right")
    table.add_column("Published", justify="right", style="green")
    table.add_column("Review", justify="right", style="yellow")
    table.add_column("Error", style="red")

    status_styles = {"succeeded": "green", "failed": "red", "skipped": "yellow", "cancelled": "dim"}
    for result in job.module_results:
        style = status_styles.get(result.status.value, "white")
        table.add_row(
            result.course_id,
            result.module_id,
            f"[{style}]{result.status.value}[/{style}]",
            str(result.generated_count),
            str(result.verified_count),
            str(result.review_count),
            result.error or "-",
        )
    console.print(table)

    outcome = job.outcome.value if job.outcome else "-"
    rprint(f"\nStatus: [bold]{job.status.value}[/bold] (outcome: {outcome})")
    if pending:
        rprint(f"[yellow]⚠[/yellow] {pending} cards awaiting review")
    if job.error:
        rprint(f"[red]✗[/red] {job.error}")

    logger.info(f"Generation job {job.job_id} finished: {job.status.value}")
    if job.status.value == "failed":
        raise typer.Exit(code=1)


# ========================================
# DATABASE COMMANDS
# ========================================

db_app = typer.Typer(help="Database management")
app.add_typer(db_app, name="db")


@db_app.command("init")
def db_init() -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from sqlalchemy.exc import SQLAlchemyError

    from deckforge.db.database import init_db

    logger.info("Initializing database tables...")
    try:
        init_db()
    except SQLAlchemyError as e:
        rprint(f"[red]✗[/red] Database initialization failed: {e}")
        raise typer.Exit(code=1)
    rprint("[green]✓[/green] Database initialized!")


# ========================================
# INFO
# ========================================


@app.command("config")
def show_config() -> None:
    """Show effective configuration (secrets hidden)."""
    settings = get_settings()

    table = Table(title="Orchestrator", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in settings.get_orchestrator_config().items():
        table.add_row(key, str(value))
    for key, value in settings.get_retry_config().items():
        table.add_row(key, str(value))
    for key, value in settings.get_rate_limits().items():
        table.add_row(f"rate_limit.{key}", f"{value}/min")
    console.print(table)

    rprint(f"\n  Environment: {settings.environment}")
    rprint(f"  Persistence: {settings.persistence_backend}")
    rprint(f"  LLM: {settings.llm_provider} ({'configured' if settings.has_llm_configured() else 'no key'})")


@app.command("version")
def show_version() -> None:
    """Show version information."""
    rprint(f"[bold]deckforge[/bold] v{__version__}")
    rprint("  Course content -> verified flashcard decks")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
