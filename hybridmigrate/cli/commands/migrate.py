"""Migration management commands."""

import importlib
import inspect
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

import inquirer
import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from hybridmigrate.core.config import get_settings
from hybridmigrate.core.db.session import create_migration_engine
from hybridmigrate.core.exceptions import MigrationError, NoChangesError
from hybridmigrate.core.migrations import (
    Entity,
    MigrationFile,
    MigrationManager,
    MigrationMode,
    MigrationReporter,
)

app = typer.Typer(help="Migration management commands")
console = Console()


def load_entities(module_path: str) -> List[type]:
    """Import a models module and return the entities it defines, in definition order."""
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise MigrationError(f"cannot import models module '{module_path}': {e}") from e

    return [
        obj
        for obj in vars(module).values()
        if inspect.isclass(obj)
        and issubclass(obj, Entity)
        and obj is not Entity
        and obj.__module__ == module.__name__
    ]


@contextmanager
def _session(ctx: Optional[typer.Context]) -> Iterator[Tuple[MigrationManager, MigrationReporter]]:
    """Build a manager from the root options and turn MigrationError into exit code 1."""
    options = (ctx.find_root().obj if ctx is not None else None) or {}
    settings = get_settings()
    database_url = options.get("database_url") or settings.database_url
    migrations_dir = options.get("migrations_dir") or settings.MIGRATIONS_DIR
    models_module = options.get("models") or settings.MODELS_MODULE

    manager: Optional[MigrationManager] = None
    try:
        engine = create_migration_engine(database_url)
        manager = MigrationManager(engine=engine, migrations_dir=Path(migrations_dir), settings=settings)
        if models_module:
            manager.db_set(*load_entities(models_module))
        yield manager, MigrationReporter(console)
    except MigrationError as e:
        console.print(f"[red]✗ {escape(e.message)}[/red]")
        raise typer.Exit(1)
    finally:
        if manager is not None:
            manager.close()


def handle_add(
    manager: MigrationManager, reporter: MigrationReporter, name: str, mode: MigrationMode
) -> Optional[MigrationFile]:
    """Create a migration file from the current model changes."""
    try:
        migration = manager.add_migration(name, mode)
    except NoChangesError:
        console.print("[green]No changes detected; models match the database[/green]")
        return None

    reporter.print_migration_file(migration)
    if migration.is_destructive():
        console.print("[bold red]⚠ WARNING: This migration contains destructive changes[/bold red]")
    return migration


def handle_apply(manager: MigrationManager, reporter: MigrationReporter, mode: MigrationMode, yes: bool) -> None:
    """Apply pending migrations, confirming destructive ones in Interactive mode."""
    pending = manager.get_pending_migrations()
    if pending:
        console.print(f"\n[yellow]Pending migrations ({len(pending)}):[/yellow]")
        for migration in pending:
            marker = " [red](destructive)[/red]" if migration.is_destructive() else ""
            console.print(f"  • {migration.migration_id}{marker}")

        destructive = [m for m in pending if m.is_destructive()]
        if mode == MigrationMode.INTERACTIVE and destructive and not yes:
            console.print("\n[red]Destructive changes may cause data loss![/red]")
            if not typer.confirm("Apply these migrations?", default=False):
                console.print("[yellow]Cancelled[/yellow]")
                raise typer.Exit(0)

    console.print(f"\n[bold cyan]Applying migrations in {mode.value} mode...[/bold cyan]")
    result = manager.apply_migrations(mode)
    console.print(f"\n{reporter.format_apply_result(result)}")


def handle_revert(manager: MigrationManager, reporter: MigrationReporter) -> None:
    record = manager.revert_migration()
    console.print(f"[green]✓ Reverted migration {record.migration_id}[/green]")


def handle_status(manager: MigrationManager, reporter: MigrationReporter) -> None:
    status = manager.get_migration_status()
    reporter.print_status_report(status)
    if status.current_changes:
        console.print(reporter.format_changes(status.current_changes), markup=False, highlight=False)


def handle_plan(manager: MigrationManager, reporter: MigrationReporter) -> None:
    """Show the changes a new migration would contain, without writing it."""
    plan = manager.detect_changes()
    summary = manager.detector.get_change_summary(plan)
    console.print(reporter.format_plan(plan, summary), markup=False, highlight=False)


def handle_verify(manager: MigrationManager, reporter: MigrationReporter) -> bool:
    result = manager.verify()
    reporter.print_verification_report(result)
    return result.ok


def handle_history(manager: MigrationManager, reporter: MigrationReporter) -> None:
    applied = manager.get_applied_migrations()
    pending = manager.get_pending_migrations()
    migrations = sorted(applied + pending, key=lambda m: (m.timestamp, m.migration_id))
    console.print(f"\nTotal migrations: {len(migrations)}")
    console.print(f"Applied: {len(applied)}")
    console.print(f"Pending: {len(pending)}")
    if migrations:
        applied_ids = {m.migration_id for m in applied}
        console.print(reporter.format_migration_list(migrations, applied_ids), markup=False, highlight=False)


@app.command()
def add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
) -> None:
    """Create a migration from model changes (Interactive mode)."""
    console.print(f"[bold cyan]Creating migration: {name}[/bold cyan]")
    with _session(ctx) as (manager, reporter):
        handle_add(manager, reporter, name, MigrationMode.INTERACTIVE)


@app.command()
def apply(
    ctx: typer.Context,
    auto: bool = typer.Option(False, "--auto", help="Automatic mode: refuse destructive migrations"),
    force: bool = typer.Option(False, "--force", help="ForceDestructive mode: apply without confirmation"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Apply pending migrations."""
    if auto and force:
        console.print("[red]Error: --auto and --force are mutually exclusive[/red]")
        raise typer.Exit(1)

    mode = MigrationMode.INTERACTIVE
    if force:
        mode = MigrationMode.FORCE_DESTRUCTIVE
    elif auto:
        mode = MigrationMode.AUTOMATIC

    with _session(ctx) as (manager, reporter):
        handle_apply(manager, reporter, mode, yes)


@app.command()
def revert(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
) -> None:
    """Revert the most recently applied migration.

    Runs the migration's down script. Use with caution as this may cause data loss.
    """
    with _session(ctx) as (manager, reporter):
        last = manager.get_last_applied()
        if last is None:
            console.print("[yellow]No migrations to revert[/yellow]")
            raise typer.Exit(0)

        console.print(f"\n[bold yellow]⚠ WARNING: This will revert {last.migration_id}[/bold yellow]")
        if not yes:
            console.print("\n[red]This action may cause data loss![/red]")
            if not typer.confirm("Are you sure you want to revert this migration?", default=False):
                console.print("[yellow]Revert cancelled[/yellow]")
                raise typer.Exit(0)

        handle_revert(manager, reporter)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show migration status."""
    with _session(ctx) as (manager, reporter):
        handle_status(manager, reporter)


@app.command()
def plan(ctx: typer.Context) -> None:
    """Preview detected model changes without creating a migration."""
    with _session(ctx) as (manager, reporter):
        handle_plan(manager, reporter)


@app.command()
def generate(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
) -> None:
    """Generate a migration script only (no database changes)."""
    console.print(f"[bold cyan]Generating migration script: {name}[/bold cyan]")
    with _session(ctx) as (manager, reporter):
        migration = handle_add(manager, reporter, name, MigrationMode.GENERATE_ONLY)
    if migration is not None:
        console.print("Review the script before applying with the 'apply' command")


@app.command()
def force(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Migration name"),
) -> None:
    """Create a migration in ForceDestructive mode."""
    console.print(f"[bold cyan]Creating migration with force destructive mode: {name}[/bold cyan]")
    console.print("[yellow]⚠ WARNING: This allows destructive changes without confirmation[/yellow]")
    with _session(ctx) as (manager, reporter):
        migration = handle_add(manager, reporter, name, MigrationMode.FORCE_DESTRUCTIVE)
    if migration is not None:
        console.print("Apply it with 'apply --force'")


@app.command()
def verify(ctx: typer.Context) -> None:
    """Verify the migration ledger against migration files."""
    with _session(ctx) as (manager, reporter):
        ok = handle_verify(manager, reporter)
    if not ok:
        raise typer.Exit(1)


@app.command()
def history(ctx: typer.Context) -> None:
    """Show all migration files with their applied state."""
    with _session(ctx) as (manager, reporter):
        handle_history(manager, reporter)


def show_menu() -> str:
    """Show interactive menu and return selected option."""
    console.print(
        Panel.fit(
            "[bold cyan]hybridmigrate - Migration Manager (Interactive)[/bold cyan]",
            border_style="cyan",
        )
    )

    questions = [
        inquirer.List(
            "action",
            message="Select an action",
            choices=[
                ("Add - Create migration from model changes", "add"),
                ("Apply - Apply pending migrations", "apply"),
                ("Status - View current status", "status"),
                ("Plan - Preview model changes", "plan"),
                ("Verify - Verify ledger vs files", "verify"),
                ("Revert - Revert last migration", "revert"),
                ("Show History - View migration files", "history"),
                ("Exit", "exit"),
            ],
        ),
    ]

    answers = inquirer.prompt(questions)
    return answers["action"] if answers else "exit"


def _interactive_action(action: str, manager: MigrationManager, reporter: MigrationReporter) -> None:
    if action == "add":
        answers = inquirer.prompt(
            [inquirer.Text("name", message="Migration name", validate=lambda _, x: len(x) > 0)]
        )
        if answers:
            handle_add(manager, reporter, answers["name"], MigrationMode.INTERACTIVE)
    elif action == "apply":
        answers = inquirer.prompt(
            [inquirer.Confirm("confirm", message="Apply pending migrations?", default=True)]
        )
        if answers and answers.get("confirm"):
            handle_apply(manager, reporter, MigrationMode.INTERACTIVE, yes=True)
    elif action == "status":
        handle_status(manager, reporter)
    elif action == "plan":
        handle_plan(manager, reporter)
    elif action == "verify":
        handle_verify(manager, reporter)
    elif action == "revert":
        answers = inquirer.prompt(
            [inquirer.Confirm("confirm", message="Revert the last applied migration?", default=False)]
        )
        if answers and answers.get("confirm"):
            handle_revert(manager, reporter)
    elif action == "history":
        handle_history(manager, reporter)


@app.command()
def interactive(ctx: typer.Context) -> None:
    """Run interactive migration menu."""
    with _session(ctx) as (manager, reporter):
        while True:
            try:
                action = show_menu()
                if action == "exit":
                    console.print("\n[cyan]Goodbye![/cyan]")
                    break
                _interactive_action(action, manager, reporter)
            except KeyboardInterrupt:
                console.print("\n\n[yellow]Interrupted by user[/yellow]")
                break
            except MigrationError as e:
                console.print(f"\n[red]Error: {escape(e.message)}[/red]")
