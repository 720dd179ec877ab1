"""SQL generation for migration plans."""

import logging
from dataclasses import dataclass, field, replace
from itertools import groupby
from typing import Any, Dict, List, Optional, Set, Union

from hybridmigrate.core.exceptions import GenerationError
from hybridmigrate.core.migrations import dialects
from hybridmigrate.core.migrations.models import (
    ChangeType,
    ColumnInfo,
    ConstraintInfo,
    ConstraintKind,
    Dialect,
    IndexInfo,
    MigrationChange,
    MigrationPlan,
    ModelSnapshot,
    TableSchema,
)

logger = logging.getLogger(__name__)

TableDefinition = Union[ModelSnapshot, TableSchema]

SECTION_TITLES: Dict[ChangeType, str] = {
    ChangeType.CREATE_TABLE: "Create Tables",
    ChangeType.DROP_TABLE: "Drop Tables",
    ChangeType.ADD_COLUMN: "Add Columns",
    ChangeType.DROP_COLUMN: "Drop Columns",
    ChangeType.ALTER_COLUMN: "Alter Columns",
    ChangeType.CREATE_INDEX: "Create Indexes",
    ChangeType.DROP_INDEX: "Drop Indexes",
    ChangeType.ADD_CONSTRAINT: "Add Constraints",
    ChangeType.DROP_CONSTRAINT: "Drop Constraints",
}

# Changes a SQLite table rebuild already carries out
_REBUILT_CHANGES = {
    ChangeType.ADD_COLUMN,
    ChangeType.DROP_COLUMN,
    ChangeType.ALTER_COLUMN,
    ChangeType.CREATE_INDEX,
    ChangeType.DROP_INDEX,
    ChangeType.ADD_CONSTRAINT,
    ChangeType.DROP_CONSTRAINT,
}

_INVERSE_TYPES: Dict[ChangeType, ChangeType] = {
    ChangeType.CREATE_TABLE: ChangeType.DROP_TABLE,
    ChangeType.DROP_TABLE: ChangeType.CREATE_TABLE,
    ChangeType.ADD_COLUMN: ChangeType.DROP_COLUMN,
    ChangeType.DROP_COLUMN: ChangeType.ADD_COLUMN,
    ChangeType.ALTER_COLUMN: ChangeType.ALTER_COLUMN,
    ChangeType.CREATE_INDEX: ChangeType.DROP_INDEX,
    ChangeType.DROP_INDEX: ChangeType.CREATE_INDEX,
    ChangeType.ADD_CONSTRAINT: ChangeType.DROP_CONSTRAINT,
    ChangeType.DROP_CONSTRAINT: ChangeType.ADD_CONSTRAINT,
}


@dataclass
class MigrationSQL:
    """Rendered up and down scripts for one plan."""

    up_script: str
    down_script: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def invert_change(change: MigrationChange) -> Optional[MigrationChange]:
    """Structural inverse of a change, or None when it has none."""
    inverse_type = _INVERSE_TYPES.get(change.change_type)
    if inverse_type is None:
        return None
    # The inverse creates what the change removed, so the old value must be known
    if change.change_type in (
        ChangeType.DROP_TABLE,
        ChangeType.DROP_COLUMN,
        ChangeType.DROP_INDEX,
        ChangeType.DROP_CONSTRAINT,
        ChangeType.ALTER_COLUMN,
    ) and change.old_value is None:
        return None
    return MigrationChange(
        change_type=inverse_type,
        table_name=change.table_name,
        column_name=change.column_name,
        index_name=change.index_name,
        constraint_name=change.constraint_name,
        old_value=change.new_value,
        new_value=change.old_value,
        is_destructive=inverse_type in (ChangeType.DROP_TABLE, ChangeType.DROP_COLUMN),
        description=f"Revert: {change.description}",
        table_before=change.table_after,
        table_after=change.table_before,
    )


def split_statements(script: str) -> List[str]:
    """Split a script into statements, skipping ``--`` comments and respecting quotes."""
    statements: List[str] = []
    current: List[str] = []
    quote: Optional[str] = None
    i = 0
    length = len(script)

    while i < length:
        char = script[i]
        if quote:
            current.append(char)
            if char == quote:
                # Doubled quote is an escaped quote
                if i + 1 < length and script[i + 1] == quote:
                    current.append(script[i + 1])
                    i += 1
                else:
                    quote = None
        elif char == "-" and script.startswith("--", i):
            newline = script.find("\n", i)
            i = length if newline == -1 else newline
            continue
        elif char in ("'", '"', "`"):
            quote = char
            current.append(char)
        elif char == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(char)
        i += 1

    statement = "".join(current).strip()
    if statement:
        statements.append(statement)
    return statements


class SQLGenerator:
    """Renders migration plans into dialect-specific DDL."""

    def __init__(self, dialect: Dialect):
        self.dialect = dialect
        self._rebuilt: Set[str] = set()

    def generate_migration_sql(self, plan: MigrationPlan) -> MigrationSQL:
        generated_at = plan.created_at.isoformat(timespec="seconds")
        up_script = self.generate_up_script(plan.changes, generated_at)
        down_script, warnings = self.generate_down_script(plan.changes, generated_at)

        metadata = {
            "generated_at": generated_at,
            "checksum": plan.checksum,
            "dialect": self.dialect.value,
            "has_destructive": plan.has_destructive,
            "requires_review": plan.requires_review,
            "change_count": len(plan.changes),
        }
        return MigrationSQL(up_script=up_script, down_script=down_script, metadata=metadata, warnings=warnings)

    def generate_up_script(self, changes: List[MigrationChange], generated_at: str = "") -> str:
        self._rebuilt = set()
        lines = ["-- Migration Up Script", f"-- Generated at: {generated_at}", f"-- Changes: {len(changes)}", ""]
        if not changes:
            lines.append("-- No changes")
            return "\n".join(lines) + "\n"

        for change_type, group in groupby(changes, key=lambda c: c.change_type):
            group = list(group)
            lines.append(f"-- {SECTION_TITLES[change_type]} ({len(group)})")
            for change in group:
                sql = self.generate_change_sql(change)
                if sql:
                    lines.append(sql)
                    lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    def generate_down_script(self, changes: List[MigrationChange], generated_at: str = ""):
        """Inverse script; returns (script, warnings) for inverses that cannot be rendered."""
        self._rebuilt = set()
        lines = ["-- Migration Down Script", f"-- Generated at: {generated_at}", "-- Reverses changes from up script", ""]
        warnings: List[str] = []
        inverses = [inverse for inverse in (invert_change(c) for c in reversed(changes)) if inverse is not None]
        if not inverses:
            lines.append("-- No changes")
            return "\n".join(lines) + "\n", warnings

        for change_type, group in groupby(inverses, key=lambda c: c.change_type):
            group = list(group)
            lines.append(f"-- {SECTION_TITLES[change_type]} ({len(group)})")
            for change in group:
                try:
                    sql = self.generate_change_sql(change)
                except GenerationError as e:
                    warning = f"{change.description} is not reversible: {e.message}"
                    logger.warning(warning)
                    warnings.append(warning)
                    lines.append(f"-- NOT REVERSIBLE: {e.message}")
                    lines.append("")
                    continue
                if sql:
                    lines.append(sql)
                    lines.append("")
        return "\n".join(lines).rstrip() + "\n", warnings

    def generate_change_sql(self, change: MigrationChange) -> str:
        handlers = {
            ChangeType.CREATE_TABLE: self._create_table,
            ChangeType.DROP_TABLE: self._drop_table,
            ChangeType.ADD_COLUMN: self._add_column,
            ChangeType.DROP_COLUMN: self._drop_column,
            ChangeType.ALTER_COLUMN: self._alter_column,
            ChangeType.CREATE_INDEX: self._create_index,
            ChangeType.DROP_INDEX: self._drop_index,
            ChangeType.ADD_CONSTRAINT: self._add_constraint,
            ChangeType.DROP_CONSTRAINT: self._drop_constraint,
        }
        if (
            self.dialect == Dialect.SQLITE
            and change.table_name in self._rebuilt
            and change.change_type in _REBUILT_CHANGES
        ):
            return f"-- {change.description}: applied by table rebuild"
        handler = handlers.get(change.change_type)
        if handler is None:
            raise GenerationError(
                f"unsupported change type: {change.change_type}",
                dialect=self.dialect.value,
                change_type=str(change.change_type),
            )
        return handler(change)

    # Rendering helpers

    def quote(self, name: str) -> str:
        return dialects.quote_identifier(name, self.dialect)

    def column_type(self, column: ColumnInfo) -> str:
        sql_type = column.sql_type or dialects.native_type(column.data_type, self.dialect)
        if column.auto_increment and self.dialect == Dialect.POSTGRES:
            sql_type = dialects.SERIAL_TYPES.get(sql_type.upper(), sql_type)
        if "(" not in sql_type:
            if column.max_length and dialects.supports_length(sql_type):
                sql_type = f"{sql_type}({column.max_length})"
            elif column.precision and dialects.supports_precision(sql_type):
                sql_type = f"{sql_type}({column.precision},{column.scale or 0})"
        return sql_type

    def column_definition(self, column: ColumnInfo, inline_primary_key: bool = False) -> str:
        name = self.quote(column.name)
        if self.dialect == Dialect.SQLITE and column.auto_increment and inline_primary_key:
            return f"{name} INTEGER PRIMARY KEY AUTOINCREMENT"

        parts = [name, self.column_type(column)]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.unique and not column.primary_key:
            parts.append("UNIQUE")
        if column.default is not None:
            parts.append(f"DEFAULT {column.default}")
        if column.auto_increment and self.dialect == Dialect.MYSQL:
            parts.append("AUTO_INCREMENT")
        if inline_primary_key:
            parts.append("PRIMARY KEY")
        return " ".join(parts)

    def constraint_definition(self, constraint: ConstraintInfo) -> str:
        name = self.quote(constraint.name)
        columns = ", ".join(self.quote(c) for c in constraint.columns)
        if constraint.kind == ConstraintKind.FOREIGN_KEY:
            references = ", ".join(self.quote(c) for c in constraint.referenced_columns)
            return (
                f"CONSTRAINT {name} FOREIGN KEY ({columns}) "
                f"REFERENCES {self.quote(constraint.referenced_table)} ({references})"
            )
        if constraint.kind == ConstraintKind.CHECK:
            return f"CONSTRAINT {name} CHECK ({constraint.expression})"
        return f"CONSTRAINT {name} UNIQUE ({columns})"

    def create_table_sql(self, table: TableDefinition, name: Optional[str] = None) -> str:
        primary_key = table.primary_key
        single_pk = len(primary_key) == 1

        definitions = [
            self.column_definition(column, inline_primary_key=single_pk and column.primary_key)
            for column in table.columns.values()
        ]
        if len(primary_key) > 1:
            definitions.append(f"PRIMARY KEY ({', '.join(self.quote(c) for c in primary_key)})")
        for constraint_name in sorted(table.constraints):
            definitions.append(self.constraint_definition(table.constraints[constraint_name]))

        body = ",\n".join(f"    {definition}" for definition in definitions)
        return f"CREATE TABLE {self.quote(name or table.table_name)} (\n{body}\n);"

    def index_sql(self, table_name: str, index: IndexInfo) -> str:
        unique = "UNIQUE " if index.unique else ""
        if_not_exists = "" if self.dialect == Dialect.MYSQL else "IF NOT EXISTS "
        columns = ", ".join(self.quote(c) for c in index.columns)
        return (
            f"CREATE {unique}INDEX {if_not_exists}{self.quote(index.name)} "
            f"ON {self.quote(table_name)} ({columns});"
        )

    def rebuild_table_sql(self, source: TableDefinition, target: TableDefinition) -> str:
        """Recreate a table with the target definition and copy the surviving columns.

        SQLite cannot alter columns or constraints in place.
        """
        table = self.quote(target.table_name)
        staging = self.quote(f"{target.table_name}__rebuild")
        statements = [self.create_table_sql(target, name=f"{target.table_name}__rebuild")]

        shared = [self.quote(c) for c in target.columns if c in source.columns]
        if shared:
            columns = ", ".join(shared)
            statements.append(f"INSERT INTO {staging} ({columns}) SELECT {columns} FROM {table};")
        statements.append(f"DROP TABLE {table};")
        statements.append(f"ALTER TABLE {staging} RENAME TO {table};")
        for index_name in sorted(target.indexes):
            statements.append(self.index_sql(target.table_name, target.indexes[index_name]))
        return "\n".join(statements)

    def _unsupported(self, change: MigrationChange, what: str) -> GenerationError:
        return GenerationError(
            f"{self.dialect.value} does not support {what} ({change.table_name}.{change.object_name})",
            dialect=self.dialect.value,
            change_type=change.change_type.value,
        )

    def _rebuild_or_raise(self, change: MigrationChange, what: str) -> str:
        if change.table_before is None or change.table_after is None:
            raise self._unsupported(change, what)
        logger.info(f"Rebuilding table {change.table_name} for: {change.description}")
        self._rebuilt.add(change.table_name)
        return self.rebuild_table_sql(change.table_before, change.table_after)

    def _constrained(self, change: MigrationChange) -> bool:
        """Whether SQLite refuses a plain DROP COLUMN for this column."""
        column: Optional[ColumnInfo] = change.old_value
        if column is not None and (column.primary_key or column.unique or column.foreign_key):
            return True
        if change.table_before is None:
            return False
        return any(change.column_name in c.columns for c in change.table_before.constraints.values())

    # Change handlers

    def _create_table(self, change: MigrationChange) -> str:
        if change.new_value is None:
            return ""
        return self.create_table_sql(change.new_value)

    def _drop_table(self, change: MigrationChange) -> str:
        return f"DROP TABLE IF EXISTS {self.quote(change.table_name)};"

    def _add_column(self, change: MigrationChange) -> str:
        column: ColumnInfo = change.new_value
        definition = self.column_definition(column)
        if self.dialect == Dialect.SQLITE:
            if column.unique or column.primary_key:
                return self._rebuild_or_raise(change, "adding a UNIQUE or PRIMARY KEY column")
            if not column.nullable and column.default is None:
                return self._rebuild_or_raise(change, "adding a NOT NULL column without a default")
            if column.foreign_key:
                ref_table, ref_column = column.foreign_key.split(".", 1)
                definition += f" REFERENCES {self.quote(ref_table)} ({self.quote(ref_column)})"
        return f"ALTER TABLE {self.quote(change.table_name)} ADD COLUMN {definition};"

    def _drop_column(self, change: MigrationChange) -> str:
        if self.dialect == Dialect.SQLITE and self._constrained(change):
            return self._rebuild_or_raise(change, "dropping a key or constrained column")
        if_exists = "IF EXISTS " if self.dialect == Dialect.POSTGRES else ""
        return (
            f"ALTER TABLE {self.quote(change.table_name)} "
            f"DROP COLUMN {if_exists}{self.quote(change.column_name)};"
        )

    def _alter_column(self, change: MigrationChange) -> str:
        if self.dialect == Dialect.SQLITE:
            return self._rebuild_or_raise(change, "ALTER COLUMN")

        old: ColumnInfo = change.old_value
        new: ColumnInfo = change.new_value
        table = self.quote(change.table_name)
        column = self.quote(change.column_name)

        if self.dialect == Dialect.MYSQL:
            statements = [f"ALTER TABLE {table} MODIFY COLUMN {self.column_definition(replace(new, unique=False))};"]
            if new.unique and not old.unique:
                statements.append(f"ALTER TABLE {table} ADD UNIQUE INDEX {column} ({column});")
            elif old.unique and not new.unique:
                statements.append(f"ALTER TABLE {table} DROP INDEX {column};")
            return "\n".join(statements)

        statements = []
        old_type = self.column_type(replace_identity(old))
        new_type = self.column_type(replace_identity(new))
        if not dialects.types_compatible(old_type, new_type) or old.max_length != new.max_length:
            statements.append(f"ALTER TABLE {table} ALTER COLUMN {column} TYPE {new_type};")
        if old.nullable != new.nullable:
            action = "DROP NOT NULL" if new.nullable else "SET NOT NULL"
            statements.append(f"ALTER TABLE {table} ALTER COLUMN {column} {action};")
        if dialects.normalize_default(old.default) != dialects.normalize_default(new.default):
            if new.default is None:
                statements.append(f"ALTER TABLE {table} ALTER COLUMN {column} DROP DEFAULT;")
            else:
                statements.append(f"ALTER TABLE {table} ALTER COLUMN {column} SET DEFAULT {new.default};")
        if old.unique != new.unique and not (old.primary_key or new.primary_key):
            key = self.quote(f"{change.table_name}_{change.column_name}_key")
            if new.unique:
                statements.append(f"ALTER TABLE {table} ADD CONSTRAINT {key} UNIQUE ({column});")
            else:
                statements.append(f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {key};")
        return "\n".join(statements)

    def _create_index(self, change: MigrationChange) -> str:
        return self.index_sql(change.table_name, change.new_value)

    def _drop_index(self, change: MigrationChange) -> str:
        if self.dialect == Dialect.MYSQL:
            return f"DROP INDEX {self.quote(change.index_name)} ON {self.quote(change.table_name)};"
        return f"DROP INDEX IF EXISTS {self.quote(change.index_name)};"

    def _add_constraint(self, change: MigrationChange) -> str:
        if self.dialect == Dialect.SQLITE:
            return self._rebuild_or_raise(change, "ADD CONSTRAINT")
        return (
            f"ALTER TABLE {self.quote(change.table_name)} "
            f"ADD {self.constraint_definition(change.new_value)};"
        )

    def _drop_constraint(self, change: MigrationChange) -> str:
        if self.dialect == Dialect.SQLITE:
            return self._rebuild_or_raise(change, "DROP CONSTRAINT")
        table = self.quote(change.table_name)
        name = self.quote(change.constraint_name)
        if self.dialect == Dialect.MYSQL:
            kind = change.old_value.kind if change.old_value is not None else ConstraintKind.FOREIGN_KEY
            keyword = {
                ConstraintKind.FOREIGN_KEY: "FOREIGN KEY",
                ConstraintKind.CHECK: "CHECK",
                ConstraintKind.UNIQUE: "INDEX",
            }[kind]
            return f"ALTER TABLE {table} DROP {keyword} {name};"
        return f"ALTER TABLE {table} DROP CONSTRAINT IF EXISTS {name};"


def replace_identity(column: ColumnInfo) -> ColumnInfo:
    """Column without its identity flag, for comparing plain storage types."""
    if not column.auto_increment:
        return column
    return replace(column, auto_increment=False)
