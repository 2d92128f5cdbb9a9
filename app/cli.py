"""
CLI interface for the Student Caller.
Provides commands for seeding, browsing the roster and history, analytics,
password hashing, and running the server.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from app.config import get_settings
from app.logging_config import setup_logging

app = typer.Typer(
    name="student-caller",
    help="Student roster, bridged calling and call history",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


async def _open_store(settings):
    from app.database import SQLiteKeyValueStore

    store = SQLiteKeyValueStore(settings.database_path)
    await store.connect()
    return store


@app.command()
def seed(
    force: bool = typer.Option(False, help="Overwrite existing roster and history"),
    with_history: bool = typer.Option(True, help="Also load sample call history"),
):
    """Load the sample students, teachers and call history."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from app.directory import Directory
        from app.history import HistoryStore
        from app.seed import SAMPLE_STUDENTS, SAMPLE_TEACHERS, sample_history

        store = await _open_store(settings)
        try:
            directory = Directory(store, settings.default_region)
            if not force and (await directory.list_students() or await directory.list_teachers()):
                console.print("[yellow]Roster is not empty. Use --force to overwrite.[/yellow]")
                raise typer.Exit(code=1)
            await directory.import_roster(list(SAMPLE_STUDENTS), list(SAMPLE_TEACHERS))
            if with_history:
                await HistoryStore(store).import_records(sample_history())
            console.print(
                f"\n[green]✓ Seeded {len(SAMPLE_STUDENTS)} students, {len(SAMPLE_TEACHERS)} teachers[/green]"
            )
        finally:
            await store.close()

    _run(_do())


@app.command()
def students(
    search: str = typer.Option("", help="Case-insensitive name filter"),
):
    """List the student roster."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from app.directory import Directory
        from app.phone_utils import format_for_display

        store = await _open_store(settings)
        try:
            roster = await Directory(store, settings.default_region).list_students(search)
        finally:
            await store.close()

        table = Table(title="Students")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Phone", style="green")
        table.add_column("Parent")
        table.add_column("Email")
        for s in roster:
            table.add_row(
                str(s.id),
                s.name,
                format_for_display(s.phone, settings.default_region),
                s.parent or "",
                s.email or "",
            )
        console.print(table)

    _run(_do())


@app.command()
def history(
    student: str = typer.Option("", help="Filter by student name"),
    teacher: str = typer.Option("", help="Filter by teacher name"),
    status: Optional[str] = typer.Option(None, help="Exact status, e.g. 'Completed'"),
    export: Optional[Path] = typer.Option(None, help="Write a CSV export into this directory"),
):
    """Show (or export) the call history."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from app.history import HistoryStore
        from app.models import CallStatus, HistoryFilter
        from app.output import format_duration, generate_history_csv

        flt = HistoryFilter(
            student=student,
            teacher=teacher,
            status=CallStatus(status) if status else None,
        )
        store = await _open_store(settings)
        try:
            records = await HistoryStore(store).list(flt)
        finally:
            await store.close()

        if export:
            path = generate_history_csv(records, export)
            console.print(f"\n[green]✓ History exported to:[/green] {path}")
            return

        table = Table(title=f"Call History ({len(records)})")
        table.add_column("When", style="dim")
        table.add_column("Student", style="cyan")
        table.add_column("Teacher")
        table.add_column("Status", style="green")
        table.add_column("Duration", justify="right")
        for r in records:
            table.add_row(
                r.timestamp.strftime("%Y-%m-%d %H:%M"),
                r.student_name,
                r.teacher_name,
                r.status.value,
                format_duration(r.duration),
            )
        console.print(table)

    _run(_do())


@app.command()
def analytics():
    """Summary statistics over the call history."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from app.history import HistoryStore
        from app.output import format_duration, generate_analytics

        store = await _open_store(settings)
        try:
            summary = generate_analytics(await HistoryStore(store).list())
        finally:
            await store.close()

        table = Table(title="Call Analytics")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Total Calls", str(summary["total_calls"]))
        table.add_row("Completed", str(summary["completed"]))
        table.add_row("Failed", str(summary["failed"]))
        table.add_row("Canceled", str(summary["canceled"]))
        table.add_row("Success Rate", f"{summary['success_rate']:.0%}")
        table.add_row("Total Talk Time", format_duration(summary["total_talk_time"]))
        table.add_row("Average Duration", format_duration(int(summary["average_duration"])))
        console.print(table)

        if summary["per_teacher"]:
            teacher_table = Table(title="By Teacher")
            teacher_table.add_column("Teacher", style="cyan")
            teacher_table.add_column("Calls", style="green")
            teacher_table.add_column("Completed", style="green")
            teacher_table.add_column("Talk Time", justify="right")
            for name, stats in sorted(summary["per_teacher"].items()):
                teacher_table.add_row(
                    name,
                    str(stats["calls"]),
                    str(stats["completed"]),
                    format_duration(stats["talk_time"]),
                )
            console.print(teacher_table)

    _run(_do())


@app.command()
def clear_history(
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
):
    """Delete all call history."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)
    if not yes:
        typer.confirm("Delete all call history? This cannot be undone.", abort=True)

    async def _do():
        from app.history import HistoryStore

        store = await _open_store(settings)
        try:
            removed = await HistoryStore(store).clear()
        finally:
            await store.close()
        console.print(f"\n[green]✓ Removed {removed} records[/green]")

    _run(_do())


@app.command()
def hash_password(
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Print a bcrypt hash for ADMIN_PASSWORD_HASH / STAFF_PASSWORD_HASH."""
    from app.auth import hash_password as _hash

    console.print(_hash(password), soft_wrap=True, highlight=False)


@app.command()
def serve():
    """Run the HTTP server (logging is configured on startup)."""
    settings = get_settings()

    import uvicorn

    console.print(f"\n[green]Server running on {settings.host}:{settings.port}[/green]")
    uvicorn.run(
        "app.server:app",
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


if __name__ == "__main__":
    app()
