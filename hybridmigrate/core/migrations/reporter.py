"""Migration reporter for generating formatted reports."""

from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from tabulate import tabulate

from hybridmigrate.core.migrations.models import (
    ApplyResult,
    MigrationChange,
    MigrationFile,
    MigrationPlan,
    MigrationStatus,
    VerificationResult,
)

console = Console()


def _flag(value: bool) -> str:
    return "yes" if value else "no"


class MigrationReporter:
    """Reporter for generating formatted migration reports."""

    def __init__(self, output: Optional[Console] = None):
        """Initialize migration reporter.

        Args:
            output: Rich console to print to. Defaults to the module console
        """
        self.console = output or console

    def generate_status_report(self, status: MigrationStatus) -> str:
        """Print the status report with Rich and return its plain-text form.

        Args:
            status: MigrationStatus object

        Returns:
            Formatted status report string
        """
        self.console.print(
            Panel.fit(
                "[bold cyan]Migration Status Report[/bold cyan]",
                border_style="cyan",
            )
        )

        if status.applied:
            self.console.print(f"\n[green]✓ Applied Migrations ({len(status.applied)}):[/green]")
            self.console.print(self._migration_table("Applied Migrations", status.applied, "bold green"))
        else:
            self.console.print("\n[yellow]⚠ No migrations applied[/yellow]")

        if status.pending:
            self.console.print(f"\n[yellow]⏳ Pending Migrations ({len(status.pending)}):[/yellow]")
            self.console.print(self._migration_table("Pending Migrations", status.pending, "bold yellow"))
        else:
            self.console.print("\n[green]✓ No pending migrations[/green]")

        if status.orphaned:
            self.console.print(f"\n[red]⚠ Orphaned Migrations ({len(status.orphaned)}):[/red]")
            for orphaned in status.orphaned:
                self.console.print(f"  • {orphaned}")

        style = "red" if status.has_destructive else ("yellow" if status.has_pending_changes else "green")
        self.console.print(f"\n[bold]Model changes:[/bold] [{style}]{status.summary}[/{style}]")

        return self._status_to_text(status)

    def _migration_table(self, title: str, migrations: List[MigrationFile], header_style: str) -> Table:
        table = Table(title=title, show_header=True, header_style=header_style)
        table.add_column("Migration", style="cyan")
        table.add_column("Created", style="white")
        table.add_column("Mode", style="dim")
        table.add_column("Destructive", style="white")

        for migration in migrations:
            table.add_row(
                migration.migration_id,
                migration.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                migration.mode.value,
                _flag(migration.is_destructive()),
            )
        return table

    def _status_to_text(self, status: MigrationStatus) -> str:
        """Convert status to text representation."""
        lines = []
        lines.append("=" * 60)
        lines.append("Migration Status Report")
        lines.append("=" * 60)
        lines.append(f"\nApplied Migrations ({len(status.applied)}):")
        for migration in status.applied:
            lines.append(f"  ✓ {migration.migration_id}")

        lines.append(f"\nPending Migrations ({len(status.pending)}):")
        for migration in status.pending:
            marker = " (destructive)" if migration.is_destructive() else ""
            lines.append(f"  ⏳ {migration.migration_id}{marker}")

        if status.orphaned:
            lines.append(f"\nOrphaned Migrations ({len(status.orphaned)}):")
            for orphaned in status.orphaned:
                lines.append(f"  ⚠ {orphaned}")

        lines.append(f"\nModel Changes: {status.summary}")
        return "\n".join(lines)

    def format_changes(self, changes: List[MigrationChange]) -> str:
        """Format a change list as a grid.

        Args:
            changes: MigrationChange objects in plan order

        Returns:
            Formatted table string
        """
        if not changes:
            return "No changes"

        table_data = [
            [
                change.change_type.value,
                change.table_name,
                change.object_name or "-",
                _flag(change.is_destructive),
                change.description,
            ]
            for change in changes
        ]
        return tabulate(
            table_data,
            headers=["Type", "Table", "Object", "Destructive", "Description"],
            tablefmt="grid",
        )

    def format_plan(self, plan: MigrationPlan, summary: str) -> str:
        lines = [f"Plan {plan.checksum[:12] or '-'}: {summary}", self.format_changes(plan.changes)]
        if plan.warnings:
            lines.append(f"\nWarnings ({len(plan.warnings)}):")
            for warning in plan.warnings:
                lines.append(f"  ⚠ {warning}")
        return "\n".join(lines)

    def format_migration_list(self, migrations: List[MigrationFile], applied_ids: Optional[set] = None) -> str:
        """Format list of migrations.

        Args:
            migrations: MigrationFile objects
            applied_ids: Ids of applied migrations, used for the status column

        Returns:
            Formatted migration list
        """
        if not migrations:
            return "No migrations"

        applied_ids = applied_ids or set()
        table_data = []
        for migration in migrations:
            status = "✓" if migration.migration_id in applied_ids else "⏳"
            table_data.append(
                [
                    status,
                    migration.migration_id,
                    migration.mode.value,
                    _flag(migration.is_destructive()),
                    migration.checksum[:12],
                ]
            )

        return tabulate(
            table_data,
            headers=["Status", "Migration", "Mode", "Destructive", "Checksum"],
            tablefmt="grid",
        )

    def format_apply_result(self, result: ApplyResult) -> str:
        """Format an apply run.

        Args:
            result: ApplyResult object

        Returns:
            Formatted result string
        """
        lines = []
        lines.append("=" * 60)
        if result.success:
            lines.append(f"✓ Migrations applied ({result.mode.value} mode)")
        else:
            lines.append(f"✗ Migration run failed ({result.mode.value} mode)")
        lines.append("=" * 60)

        if result.applied_count > 0:
            lines.append(f"\nApplied Migrations: {result.applied_count}")
            for migration_id in result.applied_migrations:
                lines.append(f"  • {migration_id}")

        if result.skipped_migrations:
            lines.append(f"\nNot Executed ({len(result.skipped_migrations)}):")
            for migration_id in result.skipped_migrations:
                lines.append(f"  • {migration_id}")

        if result.warnings:
            lines.append(f"\nWarnings ({len(result.warnings)}):")
            for warning in result.warnings:
                lines.append(f"  ⚠ {warning}")

        if result.errors:
            lines.append(f"\nErrors ({len(result.errors)}):")
            for error in result.errors:
                lines.append(f"  ✗ {error}")

        return "\n".join(lines)

    def generate_verification_report(self, result: VerificationResult) -> str:
        """Generate verification report.

        Args:
            result: VerificationResult object

        Returns:
            Formatted verification report string
        """
        lines = []
        lines.append("=" * 60)
        lines.append("Migration Verification Report")
        lines.append("=" * 60)

        for label, problems in (
            ("Orphaned Migrations", result.orphaned),
            ("Checksums", result.checksum_mismatches),
            ("Duplicate Names", result.duplicate_names),
        ):
            status_icon = "✗" if problems else "✓"
            status_text = "FAILED" if problems else "OK"
            lines.append(f"{label}: {status_icon} {status_text}")

        if result.issues:
            lines.append(f"\nIssues Found ({len(result.issues)}):")
            for issue in result.issues:
                lines.append(f"  • {issue}")
        else:
            lines.append("\n✓ No issues found")

        return "\n".join(lines)

    def print_status_report(self, status: MigrationStatus) -> None:
        self.generate_status_report(status)

    def print_verification_report(self, result: VerificationResult) -> None:
        report = self.generate_verification_report(result)
        border = "green" if result.ok else "red"
        self.console.print(Panel(report, title="Verification Report", border_style=border))

    def print_migration_file(self, migration: MigrationFile) -> None:
        style = "red" if migration.is_destructive() else "green"
        self.console.print(
            Panel(
                f"[bold]{migration.migration_id}[/bold]\n"
                f"Mode: {migration.mode.value}\n"
                f"Checksum: {migration.checksum}\n"
                f"Destructive: {_flag(migration.is_destructive())}\n"
                f"File: {migration.file_path}",
                title="Migration Created",
                border_style=style,
            )
        )
        if migration.changes:
            self.console.print(self.format_changes(migration.changes), markup=False, highlight=False)
        for warning in migration.warnings:
            self.console.print(f"[yellow]⚠ {warning}[/yellow]")
