from typing import TYPE_CHECKING, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from hybridmigrate.core.config import get_settings

if TYPE_CHECKING:
    from hybridmigrate.core.migrations.models import Dialect


def create_migration_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create the engine the migrator runs against.

    SQLite connections are switched to explicit BEGIN handling so that DDL
    statements take part in the per-migration transaction.
    """
    settings = get_settings()
    url = database_url or settings.database_url

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=settings.DEBUG if echo is None else echo, future=True)
        _enable_sqlite_transactional_ddl(engine)
        return engine

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args = {"connect_timeout": 10, "options": "-c timezone=utc"}

    return create_engine(
        url,
        echo=settings.DEBUG if echo is None else echo,
        future=True,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def _enable_sqlite_transactional_ddl(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable pysqlite's implicit transaction handling
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def detect_dialect(engine: Engine) -> "Dialect":
    """Map the engine's SQLAlchemy dialect name to a migration dialect."""
    from hybridmigrate.core.migrations.models import Dialect

    return Dialect.from_name(engine.dialect.name)
