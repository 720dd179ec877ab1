"""Database-resident migration history ledger."""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Set, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from hybridmigrate.core.config import Settings, get_settings
from hybridmigrate.core.exceptions import LedgerError
from hybridmigrate.core.migrations import dialects
from hybridmigrate.core.migrations.models import (
    Dialect,
    MigrationFile,
    MigrationRecord,
    MigrationState,
)

logger = logging.getLogger(__name__)

_AUTO_ID = {
    Dialect.POSTGRES: "id SERIAL PRIMARY KEY",
    Dialect.MYSQL: "id BIGINT AUTO_INCREMENT PRIMARY KEY",
    Dialect.SQLITE: "id INTEGER PRIMARY KEY AUTOINCREMENT",
}

_BOOL_COLUMN = {
    Dialect.POSTGRES: "BOOLEAN NOT NULL DEFAULT FALSE",
    Dialect.MYSQL: "TINYINT(1) NOT NULL DEFAULT 0",
    Dialect.SQLITE: "INTEGER NOT NULL DEFAULT 0",
}

_RECORD_COLUMNS = (
    "id, migration_id, name, version, checksum, is_destructive, state, "
    "applied_at, rolled_back_at, error_message, execution_time_ms, created_at"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def version_of(migration: MigrationFile) -> int:
    return int(migration.timestamp.strftime("%Y%m%d%H%M%S"))


class MigrationHistory:
    """Tracks applied migrations in three tables.

    - compact table (``MIGRATION_TABLE``): one row per applied migration id
    - history table (``HISTORY_TABLE``): every apply attempt with its scripts,
      outcome, timing and error text
    - snapshot table (``SNAPSHOT_TABLE``): model definitions recorded after
      successful runs
    """

    def __init__(self, engine: Engine, dialect: Dialect, settings: Optional[Settings] = None):
        self.engine = engine
        self.dialect = dialect
        self.settings = settings or get_settings()
        self.migration_table = self.settings.MIGRATION_TABLE
        self.history_table = self.settings.HISTORY_TABLE
        self.snapshot_table = self.settings.SNAPSHOT_TABLE

    @property
    def table_names(self) -> Tuple[str, str, str]:
        return self.migration_table, self.history_table, self.snapshot_table

    def _q(self, name: str) -> str:
        return dialects.quote_identifier(name, self.dialect)

    def _bind_time(self, value: Optional[datetime]) -> Any:
        # pysqlite's datetime adapter is deprecated; SQLite stores ISO strings
        if value is not None and self.dialect == Dialect.SQLITE:
            return value.isoformat(sep=" ")
        return value

    @staticmethod
    def _read_time(value: Any) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value))

    def ensure_schema(self) -> None:
        """Create the tracking tables and indexes if they do not exist."""
        auto_id = _AUTO_ID[self.dialect]
        statements = [
            f"CREATE TABLE IF NOT EXISTS {self._q(self.migration_table)} ("
            "migration_id VARCHAR(150) NOT NULL PRIMARY KEY, "
            "product_version VARCHAR(32) NOT NULL, "
            "applied_at TIMESTAMP NULL DEFAULT CURRENT_TIMESTAMP)",
            f"CREATE TABLE IF NOT EXISTS {self._q(self.history_table)} ("
            f"{auto_id}, "
            "migration_id VARCHAR(150) NOT NULL, "
            "name VARCHAR(255) NOT NULL, "
            "version BIGINT NOT NULL, "
            "description TEXT, "
            "checksum VARCHAR(64), "
            f"is_destructive {_BOOL_COLUMN[self.dialect]}, "
            "up_sql TEXT, "
            "down_sql TEXT, "
            "applied_at TIMESTAMP NULL, "
            "rolled_back_at TIMESTAMP NULL, "
            "state VARCHAR(20) NOT NULL DEFAULT 'pending', "
            "execution_time_ms BIGINT, "
            "error_message TEXT, "
            "created_at TIMESTAMP NULL DEFAULT CURRENT_TIMESTAMP)",
            f"CREATE TABLE IF NOT EXISTS {self._q(self.snapshot_table)} ("
            f"{auto_id}, "
            "model_hash VARCHAR(64) NOT NULL, "
            "model_definition TEXT NOT NULL, "
            "created_at TIMESTAMP NULL DEFAULT CURRENT_TIMESTAMP)",
        ]

        try:
            with self.engine.begin() as conn:
                for statement in statements:
                    conn.execute(text(statement))
                for index_name, column in (
                    ("idx_migration_history_version", "version"),
                    ("idx_migration_history_state", "state"),
                ):
                    self._ensure_index(conn, index_name, column)
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to create migration history tables: {e}") from e

    def _ensure_index(self, conn: Connection, index_name: str, column: str) -> None:
        table = self._q(self.history_table)
        if self.dialect != Dialect.MYSQL:
            conn.execute(text(f"CREATE INDEX IF NOT EXISTS {self._q(index_name)} ON {table} ({column})"))
            return

        exists = conn.execute(
            text(
                "SELECT COUNT(*) FROM information_schema.statistics "
                "WHERE table_schema = DATABASE() AND table_name = :table AND index_name = :index"
            ),
            {"table": self.history_table, "index": index_name},
        ).scalar()
        if not exists:
            conn.execute(text(f"CREATE INDEX {self._q(index_name)} ON {table} ({column})"))

    # Writes

    def add_record(self, conn: Connection, migration: MigrationFile) -> int:
        """Insert a pending record inside the caller's transaction; returns its id."""
        params = {
            "migration_id": migration.migration_id,
            "name": migration.name,
            "version": version_of(migration),
            "description": migration.name,
            "checksum": migration.checksum,
            "is_destructive": migration.is_destructive(),
            "up_sql": migration.up_script,
            "down_sql": migration.down_script,
            "state": MigrationState.PENDING.value,
            "created_at": self._bind_time(_utcnow()),
        }
        statement = (
            f"INSERT INTO {self._q(self.history_table)} "
            "(migration_id, name, version, description, checksum, is_destructive, up_sql, down_sql, state, created_at) "
            "VALUES (:migration_id, :name, :version, :description, :checksum, :is_destructive, "
            ":up_sql, :down_sql, :state, :created_at)"
        )
        try:
            if self.dialect == Dialect.POSTGRES:
                return conn.execute(text(statement + " RETURNING id"), params).scalar_one()
            result = conn.execute(text(statement), params)
            return result.lastrowid
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to record migration {migration.migration_id}: {e}") from e

    def mark_applied(self, conn: Connection, record_id: int, migration: MigrationFile, execution_ms: int) -> None:
        """Move a pending record to applied and add the compact row."""
        applied_at = self._bind_time(_utcnow())
        try:
            conn.execute(
                text(
                    f"UPDATE {self._q(self.history_table)} "
                    "SET state = :state, applied_at = :applied_at, execution_time_ms = :ms "
                    "WHERE id = :id"
                ),
                {"state": MigrationState.APPLIED.value, "applied_at": applied_at, "ms": execution_ms, "id": record_id},
            )
            conn.execute(
                text(
                    f"INSERT INTO {self._q(self.migration_table)} (migration_id, product_version, applied_at) "
                    "VALUES (:migration_id, :product_version, :applied_at)"
                ),
                {
                    "migration_id": migration.migration_id,
                    "product_version": self.settings.PRODUCT_VERSION,
                    "applied_at": applied_at,
                },
            )
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to mark migration {migration.migration_id} as applied: {e}") from e

    def record_failure(self, migration: MigrationFile, error: str, execution_ms: int) -> None:
        """Write a failed record in its own transaction so it survives the rollback."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        f"INSERT INTO {self._q(self.history_table)} "
                        "(migration_id, name, version, description, checksum, is_destructive, up_sql, down_sql, "
                        "state, execution_time_ms, error_message, created_at) "
                        "VALUES (:migration_id, :name, :version, :description, :checksum, :is_destructive, "
                        ":up_sql, :down_sql, :state, :ms, :error, :created_at)"
                    ),
                    {
                        "migration_id": migration.migration_id,
                        "name": migration.name,
                        "version": version_of(migration),
                        "description": migration.name,
                        "checksum": migration.checksum,
                        "is_destructive": migration.is_destructive(),
                        "up_sql": migration.up_script,
                        "down_sql": migration.down_script,
                        "state": MigrationState.FAILED.value,
                        "ms": execution_ms,
                        "error": error,
                        "created_at": self._bind_time(_utcnow()),
                    },
                )
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to record failure of {migration.migration_id}: {e}") from e
        logger.error(f"Migration {migration.migration_id} failed: {error}")

    def remove_record(self, conn: Connection, record: MigrationRecord) -> None:
        """Mark an applied record rolled back and delete its compact row."""
        try:
            conn.execute(
                text(
                    f"UPDATE {self._q(self.history_table)} "
                    "SET state = :state, rolled_back_at = :rolled_back_at WHERE id = :id"
                ),
                {
                    "state": MigrationState.ROLLED_BACK.value,
                    "rolled_back_at": self._bind_time(_utcnow()),
                    "id": record.id,
                },
            )
            conn.execute(
                text(f"DELETE FROM {self._q(self.migration_table)} WHERE migration_id = :migration_id"),
                {"migration_id": record.migration_id},
            )
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to remove ledger entry for {record.migration_id}: {e}") from e

    def record_snapshot(self, model_hash: str, definition: str) -> bool:
        """Store the model definition unless it matches the latest snapshot."""
        latest = self.get_latest_snapshot()
        if latest is not None and latest[0] == model_hash:
            return False
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        f"INSERT INTO {self._q(self.snapshot_table)} (model_hash, model_definition, created_at) "
                        "VALUES (:hash, :definition, :created_at)"
                    ),
                    {"hash": model_hash, "definition": definition, "created_at": self._bind_time(_utcnow())},
                )
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to record model snapshot: {e}") from e
        return True

    # Reads

    def _fetch_records(self, where: str = "", params: Optional[dict] = None, order: str = "id") -> List[MigrationRecord]:
        statement = f"SELECT {_RECORD_COLUMNS} FROM {self._q(self.history_table)}"
        if where:
            statement += f" WHERE {where}"
        statement += f" ORDER BY {order}"
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(text(statement), params or {}).fetchall()
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to read migration history: {e}") from e
        return [self._to_record(row._mapping) for row in rows]

    def _to_record(self, row) -> MigrationRecord:
        return MigrationRecord(
            id=row["id"],
            migration_id=row["migration_id"],
            name=row["name"],
            version=row["version"],
            checksum=row["checksum"] or "",
            is_destructive=bool(row["is_destructive"]),
            state=MigrationState(row["state"]),
            applied_at=self._read_time(row["applied_at"]),
            rolled_back_at=self._read_time(row["rolled_back_at"]),
            error_message=row["error_message"],
            execution_time_ms=row["execution_time_ms"],
            created_at=self._read_time(row["created_at"]),
        )

    def get_applied_migrations(self) -> List[MigrationRecord]:
        return self._fetch_records("state = :state", {"state": MigrationState.APPLIED.value}, order="version, id")

    def get_last_applied(self) -> Optional[MigrationRecord]:
        records = self._fetch_records("state = :state", {"state": MigrationState.APPLIED.value}, order="id DESC")
        return records[0] if records else None

    def applied_ids(self) -> Set[str]:
        return {record.migration_id for record in self.get_applied_migrations()}

    def is_applied(self, migration_id: str) -> bool:
        records = self._fetch_records(
            "migration_id = :migration_id AND state = :state",
            {"migration_id": migration_id, "state": MigrationState.APPLIED.value},
        )
        return bool(records)

    def get_history(self) -> List[MigrationRecord]:
        return self._fetch_records()

    def count_records(self) -> int:
        try:
            with self.engine.connect() as conn:
                return conn.execute(text(f"SELECT COUNT(*) FROM {self._q(self.history_table)}")).scalar_one()
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to read migration history: {e}") from e

    def get_latest_snapshot(self) -> Optional[Tuple[str, str]]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text(
                        f"SELECT model_hash, model_definition FROM {self._q(self.snapshot_table)} "
                        "ORDER BY id DESC LIMIT 1"
                    )
                ).first()
        except SQLAlchemyError as e:
            raise LedgerError(f"failed to read model snapshot: {e}") from e
        return (row[0], row[1]) if row else None
