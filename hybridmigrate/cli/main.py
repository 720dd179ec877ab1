"""Main CLI entry point for hybridmigrate."""

from typing import Optional

import typer

from hybridmigrate.cli.commands import migrate
from hybridmigrate.core.logging import setup_logging

app = typer.Typer(
    name="hybridmigrate",
    help="hybridmigrate - model-driven schema migrations",
    add_completion=False,
)


@app.callback()
def root(
    ctx: typer.Context,
    database_url: Optional[str] = typer.Option(
        None, "--database-url", "--db", help="Database URL (defaults to DATABASE_URL)"
    ),
    migrations_dir: Optional[str] = typer.Option(
        None, "--migrations-dir", "-m", help="Migration files directory (defaults to MIGRATIONS_DIR)"
    ),
    models: Optional[str] = typer.Option(
        None, "--models", help="Dotted module path of the entities to register (defaults to MODELS_MODULE)"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level (defaults to LOG_LEVEL)"),
) -> None:
    """Detect model changes, write migration files and apply them."""
    setup_logging(level=log_level)
    ctx.obj = {
        "database_url": database_url,
        "migrations_dir": migrations_dir,
        "models": models,
    }


# Register subcommands
app.add_typer(migrate.app, name="migrate")

# Top-level aliases for the migrate commands
app.command(name="add")(migrate.add)
app.command(name="apply")(migrate.apply)
app.command(name="revert")(migrate.revert)
app.command(name="status")(migrate.status)
app.command(name="plan")(migrate.plan)
app.command(name="generate")(migrate.generate)
app.command(name="force")(migrate.force)
app.command(name="verify")(migrate.verify)
app.command(name="history")(migrate.history)
app.command(name="interactive")(migrate.interactive)


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
