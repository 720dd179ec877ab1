"""Live schema inspection and comparison against model snapshots."""

import logging
import re
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from hybridmigrate.core.exceptions import DetectionError, InspectionNotImplementedError
from hybridmigrate.core.migrations import dialects
from hybridmigrate.core.migrations.models import (
    ChangeType,
    ColumnInfo,
    ConstraintInfo,
    ConstraintKind,
    Dialect,
    IndexInfo,
    MigrationChange,
    ModelSnapshot,
    TableSchema,
)

logger = logging.getLogger(__name__)

SYSTEM_TABLES = {
    "__migration_history",
    "__ef_migrations_history",
    "__ef_migration_history",
    "__model_snapshot",
    "schema_migrations",
    "flyway_schema_history",
    "liquibase_databasechangelog",
    "migration_versions",
    "alembic_version",
}

_PG_INDEX_RE = re.compile(r"CREATE\s+(UNIQUE\s+)?INDEX\s+\S+\s+ON\s+\S+(?:\s+USING\s+(\w+))?\s*\((.*)\)", re.I)
_NAMED_CHECK_RE = re.compile(r"CONSTRAINT\s+[\"`\[]?(\w+)[\"`\]]?\s+CHECK\s*\(", re.I)
_DIFFED_CONSTRAINTS = {ConstraintKind.FOREIGN_KEY: "foreign key", ConstraintKind.CHECK: "check constraint"}


def strip_outer_parens(expression: str) -> str:
    """``((qty >= 0))`` -> ``qty >= 0``; inner groups are kept."""
    expression = expression.strip()
    while expression.startswith("(") and expression.endswith(")"):
        depth = 0
        for i, char in enumerate(expression):
            if char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
                if depth == 0 and i < len(expression) - 1:
                    return expression
        expression = expression[1:-1].strip()
    return expression


def parse_check_constraints(create_sql: str) -> List[tuple]:
    """Named CHECK constraints of a CREATE TABLE statement as (name, expression)."""
    checks = []
    for match in _NAMED_CHECK_RE.finditer(create_sql):
        depth = 1
        quote = None
        position = match.end()
        while position < len(create_sql) and depth:
            char = create_sql[position]
            if quote:
                if char == quote:
                    quote = None
            elif char in ("'", '"'):
                quote = char
            elif char == "(":
                depth += 1
            elif char == ")":
                depth -= 1
            position += 1
        if depth == 0:
            checks.append((match.group(1), create_sql[match.end():position - 1].strip()))
    return checks


def fold_column_foreign_keys(changes: List[MigrationChange]) -> List[MigrationChange]:
    """Drop foreign key changes that travel with an added or dropped column.

    SQLite declares a single-column reference inline with the column, so the
    column change alone carries it.
    """
    added = {c.column_name for c in changes if c.change_type == ChangeType.ADD_COLUMN}
    dropped = {c.column_name for c in changes if c.change_type == ChangeType.DROP_COLUMN}

    folded = []
    for change in changes:
        if change.change_type == ChangeType.ADD_CONSTRAINT:
            constraint = change.new_value
            columns = added
        elif change.change_type == ChangeType.DROP_CONSTRAINT:
            constraint = change.old_value
            columns = dropped
        else:
            folded.append(change)
            continue
        if (
            constraint.kind == ConstraintKind.FOREIGN_KEY
            and len(constraint.columns) == 1
            and constraint.columns[0] in columns
        ):
            logger.debug(f"Folded {change.description} into the column change")
            continue
        folded.append(change)
    return folded


class DatabaseInspector:
    """Reads the structural schema of the connected database."""

    def __init__(self, engine: Engine, dialect: Dialect, system_tables: Optional[Iterable[str]] = None):
        self.engine = engine
        self.dialect = dialect
        self.system_tables = set(SYSTEM_TABLES)
        if system_tables:
            self.system_tables.update(system_tables)

    def is_system_table(self, table_name: str) -> bool:
        name = table_name.lower()
        return name in self.system_tables or name.startswith("sqlite_")

    def get_current_schema(self) -> Dict[str, TableSchema]:
        """Return table name -> TableSchema for every non-system table."""
        if self.dialect == Dialect.MYSQL:
            raise InspectionNotImplementedError(self.dialect.value)

        try:
            with self.engine.connect() as conn:
                if self.dialect == Dialect.POSTGRES:
                    schema = self._get_postgres_schema(conn)
                else:
                    schema = self._get_sqlite_schema(conn)
        except SQLAlchemyError as e:
            raise DetectionError(
                f"failed to inspect {self.dialect.value} schema: {e}",
                details={"dialect": self.dialect.value},
            ) from e

        logger.debug(f"Inspected {len(schema)} table(s) from {self.dialect.value} database")
        return schema

    # PostgreSQL

    def _get_postgres_schema(self, conn: Connection) -> Dict[str, TableSchema]:
        rows = conn.execute(
            text(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = current_schema() AND table_type = 'BASE TABLE' "
                "ORDER BY table_name"
            )
        ).fetchall()

        schema: Dict[str, TableSchema] = {}
        for (table_name,) in rows:
            if self.is_system_table(table_name):
                continue
            table = TableSchema(table_name=table_name)
            self._get_postgres_columns(conn, table)
            backing_constraints = self._get_postgres_constraints(conn, table)
            self._get_postgres_indexes(conn, table, backing_constraints)
            schema[table_name] = table
        return schema

    def _get_postgres_columns(self, conn: Connection, table: TableSchema) -> None:
        rows = conn.execute(
            text(
                "SELECT column_name, data_type, is_nullable, column_default, "
                "character_maximum_length, numeric_precision, numeric_scale "
                "FROM information_schema.columns "
                "WHERE table_schema = current_schema() AND table_name = :table "
                "ORDER BY ordinal_position"
            ),
            {"table": table.table_name},
        ).fetchall()

        for name, data_type, is_nullable, default, max_length, precision, scale in rows:
            base = data_type.upper()
            identity = default is not None and str(default).startswith("nextval(")
            sql_type = base
            if base == "CHARACTER VARYING" and max_length:
                sql_type = f"VARCHAR({max_length})"
            elif base == "NUMERIC" and precision:
                sql_type = f"DECIMAL({precision},{scale or 0})"
            table.columns[name] = ColumnInfo(
                name=name,
                data_type=dialects.logical_type_for(sql_type),
                sql_type=sql_type,
                nullable=is_nullable == "YES",
                default=None if identity else default,
                max_length=max_length,
                precision=precision if base == "NUMERIC" else None,
                scale=scale if base == "NUMERIC" else None,
                auto_increment=identity,
            )

    def _get_postgres_constraints(self, conn: Connection, table: TableSchema) -> Set[str]:
        """Load key constraints; returns the names of constraints backed by an index."""
        rows = conn.execute(
            text(
                "SELECT tc.constraint_name, tc.constraint_type, kcu.column_name "
                "FROM information_schema.table_constraints tc "
                "JOIN information_schema.key_column_usage kcu "
                "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
                "AND tc.table_name = kcu.table_name "
                "WHERE tc.table_schema = current_schema() AND tc.table_name = :table "
                "AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE') "
                "ORDER BY tc.constraint_name, kcu.ordinal_position"
            ),
            {"table": table.table_name},
        ).fetchall()

        grouped: Dict[tuple, List[str]] = {}
        backing: Set[str] = set()
        for constraint_name, constraint_type, column_name in rows:
            grouped.setdefault((constraint_name, constraint_type), []).append(column_name)

        for (constraint_name, constraint_type), columns in grouped.items():
            backing.add(constraint_name)
            if constraint_type == "PRIMARY KEY":
                for column_name in columns:
                    self._update_column(table, column_name, primary_key=True, nullable=False)
            elif len(columns) == 1:
                self._update_column(table, columns[0], unique=True)
            else:
                table.constraints[constraint_name] = ConstraintInfo(
                    name=constraint_name,
                    kind=ConstraintKind.UNIQUE,
                    columns=tuple(columns),
                )

        fk_rows = conn.execute(
            text(
                "SELECT tc.constraint_name, kcu.column_name, ccu.table_name, ccu.column_name "
                "FROM information_schema.table_constraints tc "
                "JOIN information_schema.key_column_usage kcu "
                "ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema "
                "AND tc.table_name = kcu.table_name "
                "JOIN information_schema.constraint_column_usage ccu "
                "ON ccu.constraint_name = tc.constraint_name AND ccu.table_schema = tc.table_schema "
                "WHERE tc.table_schema = current_schema() AND tc.table_name = :table "
                "AND tc.constraint_type = 'FOREIGN KEY' "
                "ORDER BY tc.constraint_name, kcu.ordinal_position"
            ),
            {"table": table.table_name},
        ).fetchall()

        foreign_keys: Dict[str, dict] = {}
        for constraint_name, column_name, ref_table, ref_column in fk_rows:
            entry = foreign_keys.setdefault(
                constraint_name, {"columns": [], "ref_table": ref_table, "ref_columns": []}
            )
            if column_name not in entry["columns"]:
                entry["columns"].append(column_name)
            if ref_column not in entry["ref_columns"]:
                entry["ref_columns"].append(ref_column)

        for constraint_name, entry in foreign_keys.items():
            self._add_foreign_key(table, constraint_name, entry["columns"], entry["ref_table"], entry["ref_columns"])

        check_rows = conn.execute(
            text(
                "SELECT tc.constraint_name, cc.check_clause "
                "FROM information_schema.table_constraints tc "
                "JOIN information_schema.check_constraints cc "
                "ON cc.constraint_name = tc.constraint_name AND cc.constraint_schema = tc.constraint_schema "
                "WHERE tc.table_schema = current_schema() AND tc.table_name = :table "
                "AND tc.constraint_type = 'CHECK' "
                "ORDER BY tc.constraint_name"
            ),
            {"table": table.table_name},
        ).fetchall()

        for constraint_name, check_clause in check_rows:
            # NOT NULL columns are reported as CHECK constraints too
            if check_clause.strip().upper().endswith("IS NOT NULL"):
                continue
            self._add_check(table, constraint_name, check_clause)
        return backing

    def _get_postgres_indexes(self, conn: Connection, table: TableSchema, backing_constraints: Set[str]) -> None:
        rows = conn.execute(
            text(
                "SELECT indexname, indexdef FROM pg_indexes "
                "WHERE schemaname = current_schema() AND tablename = :table "
                "ORDER BY indexname"
            ),
            {"table": table.table_name},
        ).fetchall()

        for index_name, index_def in rows:
            # Primary key and unique-constraint indexes are reported through the columns
            if index_name.endswith("_pkey") or index_name in backing_constraints:
                continue
            match = _PG_INDEX_RE.search(index_def)
            if not match:
                logger.warning(f"Could not parse index definition for {index_name}: {index_def}")
                continue
            columns = tuple(c.strip().strip('"') for c in match.group(3).split(",") if c.strip())
            table.indexes[index_name] = IndexInfo(
                name=index_name,
                columns=columns,
                unique=bool(match.group(1)),
                kind=(match.group(2) or "btree").lower(),
            )

    # SQLite

    def _get_sqlite_schema(self, conn: Connection) -> Dict[str, TableSchema]:
        rows = conn.execute(
            text("SELECT name, sql FROM sqlite_master WHERE type = 'table' ORDER BY name")
        ).fetchall()

        schema: Dict[str, TableSchema] = {}
        for table_name, create_sql in rows:
            if self.is_system_table(table_name):
                continue
            table = TableSchema(table_name=table_name)
            self._get_sqlite_columns(conn, table)
            self._get_sqlite_indexes(conn, table)
            self._get_sqlite_foreign_keys(conn, table)
            for constraint_name, expression in parse_check_constraints(create_sql or ""):
                self._add_check(table, constraint_name, expression)
            schema[table_name] = table
        return schema

    def _pragma(self, conn: Connection, pragma: str, name: str) -> list:
        quoted = dialects.quote_identifier(name, Dialect.SQLITE)
        return conn.execute(text(f"PRAGMA {pragma}({quoted})")).fetchall()

    def _get_sqlite_columns(self, conn: Connection, table: TableSchema) -> None:
        rows = self._pragma(conn, "table_info", table.table_name)
        pk_columns = [row[1] for row in rows if row[5]]

        for _cid, name, declared_type, notnull, default, pk in rows:
            sql_type = " ".join((declared_type or "").upper().split())
            max_length, precision, scale = dialects.parse_length(sql_type)
            identity = bool(pk) and len(pk_columns) == 1 and dialects.type_family(sql_type) in ("INTEGER", "BIGINT")
            table.columns[name] = ColumnInfo(
                name=name,
                data_type=dialects.logical_type_for(sql_type),
                sql_type=sql_type,
                nullable=not notnull and not pk,
                default=default,
                max_length=max_length,
                precision=precision,
                scale=scale,
                primary_key=bool(pk),
                auto_increment=identity,
            )

    def _get_sqlite_indexes(self, conn: Connection, table: TableSchema) -> None:
        for row in self._pragma(conn, "index_list", table.table_name):
            index_name, unique, origin = row[1], bool(row[2]), row[3] if len(row) > 3 else "c"
            columns = tuple(info[2] for info in self._pragma(conn, "index_info", index_name))

            if index_name.startswith("sqlite_autoindex_") or origin in ("u", "pk"):
                # Inline UNIQUE constraints surface as automatic indexes
                if origin == "u" and len(columns) == 1:
                    self._update_column(table, columns[0], unique=True)
                continue

            table.indexes[index_name] = IndexInfo(name=index_name, columns=columns, unique=unique)

    def _get_sqlite_foreign_keys(self, conn: Connection, table: TableSchema) -> None:
        grouped: Dict[int, dict] = {}
        for row in self._pragma(conn, "foreign_key_list", table.table_name):
            fk_id, _seq, ref_table, from_column, to_column = row[0], row[1], row[2], row[3], row[4]
            entry = grouped.setdefault(fk_id, {"columns": [], "ref_table": ref_table, "ref_columns": []})
            entry["columns"].append(from_column)
            entry["ref_columns"].append(to_column)

        for entry in grouped.values():
            name = f"fk_{table.table_name}_{entry['columns'][0]}"
            self._add_foreign_key(table, name, entry["columns"], entry["ref_table"], entry["ref_columns"])

    # Shared helpers

    def _update_column(self, table: TableSchema, column_name: str, **changes) -> None:
        column = table.columns.get(column_name)
        if column is None:
            return
        table.columns[column_name] = replace(column, **changes)

    def _add_foreign_key(
        self,
        table: TableSchema,
        name: str,
        columns: List[str],
        ref_table: str,
        ref_columns: List[str],
    ) -> None:
        table.constraints[name] = ConstraintInfo(
            name=name,
            kind=ConstraintKind.FOREIGN_KEY,
            columns=tuple(columns),
            referenced_table=ref_table,
            referenced_columns=tuple(c for c in ref_columns if c),
        )
        if len(columns) == 1 and ref_columns and ref_columns[0]:
            self._update_column(table, columns[0], foreign_key=f"{ref_table}.{ref_columns[0]}")

    def _add_check(self, table: TableSchema, name: str, expression: str) -> None:
        expression = strip_outer_parens(expression)
        columns = tuple(c for c in table.columns if re.search(rf"\b{re.escape(c)}\b", expression))
        table.constraints[name] = ConstraintInfo(
            name=name,
            kind=ConstraintKind.CHECK,
            columns=columns,
            expression=expression,
        )

    # Comparison

    def compare_with_models(
        self, db_schema: Dict[str, TableSchema], snapshots: Dict[str, ModelSnapshot]
    ) -> List[MigrationChange]:
        """Structural differences needed to bring ``db_schema`` to ``snapshots``."""
        changes: List[MigrationChange] = []

        for table_name in sorted(snapshots):
            snapshot = snapshots[table_name]
            db_table = db_schema.get(table_name)
            if db_table is None:
                changes.append(
                    MigrationChange(
                        change_type=ChangeType.CREATE_TABLE,
                        table_name=table_name,
                        new_value=snapshot,
                        description=f"Create table {table_name}",
                    )
                )
                for index in snapshot.indexes.values():
                    changes.append(self._create_index_change(table_name, index))
                continue

            table_changes = (
                self.compare_columns(db_table, snapshot)
                + self.compare_indexes(db_table, snapshot)
                + self.compare_constraints(db_table, snapshot)
            )
            if self.dialect == Dialect.SQLITE:
                table_changes = fold_column_foreign_keys(table_changes)
            for change in table_changes:
                change.table_before = db_table
                change.table_after = snapshot
            changes.extend(table_changes)

        for table_name in sorted(db_schema):
            if table_name in snapshots or self.is_system_table(table_name):
                continue
            changes.append(
                MigrationChange(
                    change_type=ChangeType.DROP_TABLE,
                    table_name=table_name,
                    old_value=db_schema[table_name],
                    description=f"Drop table {table_name}",
                )
            )

        return changes

    def compare_columns(self, db_table: TableSchema, snapshot: ModelSnapshot) -> List[MigrationChange]:
        changes: List[MigrationChange] = []
        table_name = snapshot.table_name

        for column_name, model_column in snapshot.columns.items():
            db_column = db_table.columns.get(column_name)
            if db_column is None:
                changes.append(
                    MigrationChange(
                        change_type=ChangeType.ADD_COLUMN,
                        table_name=table_name,
                        column_name=column_name,
                        new_value=model_column,
                        description=f"Add column {table_name}.{column_name}",
                    )
                )
                continue

            differences = self.column_differences(model_column, db_column)
            if differences:
                logger.debug(f"Column {table_name}.{column_name} changed: {', '.join(differences)}")
                changes.append(
                    MigrationChange(
                        change_type=ChangeType.ALTER_COLUMN,
                        table_name=table_name,
                        column_name=column_name,
                        old_value=db_column,
                        new_value=model_column,
                        description=f"Alter column {table_name}.{column_name} ({', '.join(differences)})",
                    )
                )

        for column_name, db_column in db_table.columns.items():
            if column_name not in snapshot.columns:
                changes.append(
                    MigrationChange(
                        change_type=ChangeType.DROP_COLUMN,
                        table_name=table_name,
                        column_name=column_name,
                        old_value=db_column,
                        description=f"Drop column {table_name}.{column_name}",
                    )
                )
        return changes

    def column_differences(self, model_column: ColumnInfo, db_column: ColumnInfo) -> List[str]:
        """Describe how a live column differs from its model; empty when equivalent."""
        differences = []
        if not dialects.types_compatible(model_column.sql_type, db_column.sql_type):
            differences.append(f"type {db_column.sql_type} -> {model_column.sql_type}")
        if model_column.nullable != db_column.nullable:
            differences.append("nullable" if model_column.nullable else "not null")
        identity = model_column.auto_increment or db_column.auto_increment
        if not identity and dialects.normalize_default(model_column.default) != dialects.normalize_default(
            db_column.default
        ):
            differences.append(f"default {db_column.default} -> {model_column.default}")
        if (
            model_column.max_length is not None
            and db_column.max_length is not None
            and model_column.max_length != db_column.max_length
        ):
            differences.append(f"length {db_column.max_length} -> {model_column.max_length}")
        keyed = model_column.primary_key or db_column.primary_key
        if not keyed and model_column.unique != db_column.unique:
            differences.append("unique" if model_column.unique else "drop unique")
        return differences

    def compare_indexes(self, db_table: TableSchema, snapshot: ModelSnapshot) -> List[MigrationChange]:
        changes: List[MigrationChange] = []
        table_name = snapshot.table_name

        for index_name, index in snapshot.indexes.items():
            db_index = db_table.indexes.get(index_name)
            if db_index is None:
                changes.append(self._create_index_change(table_name, index))
            elif db_index.columns != index.columns or db_index.unique != index.unique:
                # Redefined index: drop the old definition, create the new one
                changes.append(self._drop_index_change(table_name, db_index))
                changes.append(self._create_index_change(table_name, index))

        for index_name, db_index in db_table.indexes.items():
            if index_name not in snapshot.indexes:
                changes.append(self._drop_index_change(table_name, db_index))
        return changes

    def compare_constraints(self, db_table: TableSchema, snapshot: ModelSnapshot) -> List[MigrationChange]:
        """Foreign key and check constraints, matched by name."""
        changes: List[MigrationChange] = []
        table_name = snapshot.table_name

        model_constraints = {n: c for n, c in snapshot.constraints.items() if c.kind in _DIFFED_CONSTRAINTS}
        db_constraints = {n: c for n, c in db_table.constraints.items() if c.kind in _DIFFED_CONSTRAINTS}

        for name, constraint in model_constraints.items():
            if name not in db_constraints:
                changes.append(
                    MigrationChange(
                        change_type=ChangeType.ADD_CONSTRAINT,
                        table_name=table_name,
                        constraint_name=name,
                        new_value=constraint,
                        description=f"Add {_DIFFED_CONSTRAINTS[constraint.kind]} {name} on {table_name}",
                    )
                )
        for name, constraint in db_constraints.items():
            if name not in model_constraints:
                changes.append(
                    MigrationChange(
                        change_type=ChangeType.DROP_CONSTRAINT,
                        table_name=table_name,
                        constraint_name=name,
                        old_value=constraint,
                        description=f"Drop {_DIFFED_CONSTRAINTS[constraint.kind]} {name} on {table_name}",
                    )
                )
        return changes

    def _create_index_change(self, table_name: str, index: IndexInfo) -> MigrationChange:
        return MigrationChange(
            change_type=ChangeType.CREATE_INDEX,
            table_name=table_name,
            index_name=index.name,
            new_value=index,
            description=f"Create {'unique ' if index.unique else ''}index {index.name} on {table_name}",
        )

    def _drop_index_change(self, table_name: str, index: IndexInfo) -> MigrationChange:
        return MigrationChange(
            change_type=ChangeType.DROP_INDEX,
            table_name=table_name,
            index_name=index.name,
            old_value=index,
            description=f"Drop index {index.name} on {table_name}",
        )
