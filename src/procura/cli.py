"""Procura CLI for operations and local runs."""

import asyncio

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import get_settings
from .logging_config import configure_logging

load_dotenv()

app = typer.Typer(name="procura", help="Procura - bidding lifecycle engine")
console = Console()

STATUS_COLORS = {
    "draft": "white",
    "bidding": "green",
    "reviewing": "yellow",
    "awarded": "blue",
    "completed": "cyan",
    "cancelled": "red",
}


def run_async(coro):
    """Run async function in sync context."""
    return asyncio.run(coro)


def build_engine():
    from .lifecycle import LifecycleEngine
    from .notifications import NotificationDispatcher, create_sink
    from .ratings import create_ratings
    from .store import create_store

    settings = get_settings()
    store = create_store(settings)
    sink = create_sink(settings)
    engine = LifecycleEngine(
        store,
        NotificationDispatcher(sink),
        ratings=create_ratings(settings, client=getattr(store, "client", None)),
        settings=settings,
    )
    return engine, store, sink


@app.callback()
def main():
    settings = get_settings()
    configure_logging(level=settings.log_level, json=settings.log_json)


# ============================================================
# Setup Commands
# ============================================================

@app.command()
def setup():
    """Create store indexes and verify the connection."""
    from .ratings import create_ratings
    from .store import create_store

    async def _setup():
        settings = get_settings()
        console.print("[bold blue]Setting up Procura...[/]")

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Connecting to {settings.store_backend} store...", total=None)
            store = create_store(settings)
            ratings = create_ratings(settings, client=getattr(store, "client", None))

            progress.update(task, description="Creating indexes...")
            await store.setup_indexes()
            if hasattr(ratings, "setup_indexes"):
                await ratings.setup_indexes()
            await store.close()

        console.print("[bold green]Setup complete![/]")

    run_async(_setup())


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the HTTP API (and the closure scheduler, if enabled)."""
    import uvicorn

    uvicorn.run(
        "procura.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_config=None,
    )


# ============================================================
# Scheduler Commands
# ============================================================

@app.command()
def sweep():
    """Close every bidding window whose deadline has passed, once."""
    from .scheduler import ClosureScheduler

    async def _sweep():
        engine, store, sink = build_engine()
        try:
            report = await ClosureScheduler(engine).sweep()
        finally:
            await sink.close()
            await store.close()

        panel = Panel(
            f"""[bold]Examined:[/] {len(report.examined)}
[bold]Closed:[/] {len(report.closed)}
[bold]Skipped:[/] {len(report.skipped)}
[bold]Failed:[/] {len(report.failed)}""",
            title="[green]Sweep Complete[/]" if not report.failed else "[yellow]Sweep Complete[/]",
        )
        console.print(panel)
        for project_id in report.failed:
            console.print(f"  [red]failed:[/] {project_id}")

    run_async(_sweep())


@app.command()
def scheduler(
    interval: float = typer.Option(None, help="Seconds between sweeps (default from settings)"),
):
    """Run the closure scheduler in the foreground until interrupted."""
    from .scheduler import ClosureScheduler

    async def _run():
        settings = get_settings()
        engine, store, sink = build_engine()
        closure = ClosureScheduler(
            engine,
            interval=interval or settings.sweep_interval_seconds,
            sweep_on_start=settings.sweep_on_start,
        )
        closure.start()
        console.print(f"[bold blue]Closure scheduler running every {closure.interval:.0f}s. Ctrl+C to stop.[/]")
        try:
            await asyncio.Event().wait()
        finally:
            await closure.stop()
            await sink.close()
            await store.close()

    try:
        run_async(_run())
    except KeyboardInterrupt:
        console.print("[yellow]Scheduler stopped.[/]")


# ============================================================
# Project Commands
# ============================================================

@app.command()
def projects(
    status: str = typer.Option(None, help="Filter by status"),
    owner: str = typer.Option(None, help="Filter by owner ID"),
    limit: int = typer.Option(20, help="Max rows"),
):
    """List projects."""
    from .models import ProjectStatus

    async def _list():
        engine, store, sink = build_engine()
        try:
            rows = await engine.list_projects(
                status=ProjectStatus(status) if status else None,
                owner_id=owner,
                limit=limit,
            )
        finally:
            await sink.close()
            await store.close()

        if not rows:
            console.print("[yellow]No projects found.[/]")
            return

        table = Table(title="Projects")
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="green")
        table.add_column("Status")
        table.add_column("Owner")
        table.add_column("Deadline")
        table.add_column("Awarded", justify="right")

        for p in rows:
            color = STATUS_COLORS.get(p.status, "white")
            table.add_row(
                p.id,
                p.title[:40],
                f"[{color}]{p.status}[/]",
                p.owner_id,
                p.bidding_deadline.strftime("%Y-%m-%d %H:%M"),
                f"${p.awarded_amount:,.2f}" if p.awarded_amount is not None else "-",
            )

        console.print(table)

    run_async(_list())


if __name__ == "__main__":
    app()
