"""Model registry: turns entity schema descriptions into table snapshots."""

import hashlib
import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from hybridmigrate.core.migrations import dialects
from hybridmigrate.core.migrations.models import (
    ColumnInfo,
    ConstraintInfo,
    ConstraintKind,
    Dialect,
    IndexInfo,
    ModelSnapshot,
)
from hybridmigrate.core.migrations.schema import Entity, Field, iter_fields, unwrap_optional

logger = logging.getLogger(__name__)

PYTHON_TYPES: Dict[Any, str] = {
    bool: "bool",
    int: "int",
    float: "float64",
    str: "string",
    datetime: "timestamp",
    date: "date",
    Decimal: "decimal",
    bytes: "bytes",
}

LOGICAL_ALIASES: Dict[str, str] = {
    "string": "string",
    "str": "string",
    "varchar": "string",
    "text": "text",
    "int": "int",
    "int32": "int",
    "integer": "int",
    "int64": "int64",
    "bigint": "int64",
    "float32": "float32",
    "real": "float32",
    "float": "float64",
    "float64": "float64",
    "double": "float64",
    "bool": "bool",
    "boolean": "bool",
    "timestamp": "timestamp",
    "datetime": "timestamp",
    "time": "timestamp",
    "date": "date",
    "decimal": "decimal",
    "numeric": "decimal",
    "bytes": "bytes",
    "blob": "bytes",
}

_FK_RE = re.compile(r"^\s*(\w+)\s*(?:\.\s*(\w+)|\(\s*(\w+)\s*\))\s*$")


def infer_table_name(entity: type) -> str:
    """Table name from ``__tablename__`` or the pluralised class name."""
    explicit = entity.table_name() if issubclass(entity, Entity) else getattr(entity, "__tablename__", None)
    if explicit:
        return explicit

    name = entity.__name__.lower()
    # Remove common suffixes
    for suffix in ("entity", "model"):
        if name.endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
    return pluralize(name)


def pluralize(word: str) -> str:
    if word.endswith("y"):
        return word[:-1] + "ies"
    if word.endswith("s"):
        return word + "es"
    return word + "s"


def parse_foreign_key(reference: str) -> Optional[tuple]:
    """Parse ``users.id`` or ``users(id)`` into (table, column)."""
    match = _FK_RE.match(reference)
    if not match:
        return None
    return match.group(1), match.group(2) or match.group(3)


def _format_default(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


def _as_int(value: Any) -> Optional[int]:
    if value is None or value is True:
        return None
    return int(value)


class ModelRegistry:
    """Registry of model snapshots keyed by table name."""

    def __init__(self, dialect: Dialect = Dialect.POSTGRES):
        self.dialect = dialect
        self._models: Dict[str, ModelSnapshot] = {}

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, table_name: str) -> bool:
        return table_name in self._models

    def register_model(self, entity: Any) -> ModelSnapshot:
        """Register an entity class (or instance), replacing any snapshot for its table."""
        entity_type = entity if isinstance(entity, type) else type(entity)
        snapshot = self.create_snapshot(entity_type)

        previous = self._models.get(snapshot.table_name)
        if previous is not None and previous.checksum != snapshot.checksum:
            logger.info(f"Replacing model snapshot for table {snapshot.table_name}")
        self._models[snapshot.table_name] = snapshot
        logger.debug(
            f"Registered {entity_type.__name__} as {snapshot.table_name} "
            f"({len(snapshot.columns)} columns, checksum {snapshot.checksum[:12]})"
        )
        return snapshot

    def get_models(self) -> Dict[str, ModelSnapshot]:
        return dict(self._models)

    def get_model(self, table_name: str) -> Optional[ModelSnapshot]:
        return self._models.get(table_name)

    def unregister(self, table_name: str) -> bool:
        return self._models.pop(table_name, None) is not None

    def combined_checksum(self) -> str:
        """Hash over every registered snapshot, independent of registration order."""
        hasher = hashlib.sha256()
        for table_name in sorted(self._models):
            hasher.update(f"{table_name}:{self._models[table_name].checksum}".encode())
        return hasher.hexdigest()

    def snapshot_definition(self) -> str:
        """JSON document describing every registered table."""
        document = {
            table_name: {
                "columns": [snapshot.columns[c].fingerprint() for c in sorted(snapshot.columns)],
                "indexes": [snapshot.indexes[i].fingerprint() for i in sorted(snapshot.indexes)],
                "constraints": [
                    snapshot.constraints[c].fingerprint() for c in sorted(snapshot.constraints)
                ],
                "checksum": snapshot.checksum,
            }
            for table_name, snapshot in self._models.items()
        }
        return json.dumps(document, sort_keys=True)

    def create_snapshot(self, entity_type: type) -> ModelSnapshot:
        table_name = infer_table_name(entity_type)
        columns: Dict[str, ColumnInfo] = {}
        indexes: Dict[str, IndexInfo] = {}
        constraints: Dict[str, ConstraintInfo] = {}

        fields = list(iter_fields(entity_type))
        has_explicit_pk = any(f.parsed_tags().get("primary_key") for _, f in fields)

        for attr_name, field in fields:
            options = field.parsed_tags()
            column_name = options.get("column") or attr_name
            if not has_explicit_pk and column_name == "id":
                options["primary_key"] = True

            column = self._create_column(table_name, column_name, field, options)
            if column is None:
                continue
            columns[column_name] = column

            self._extract_indexes(table_name, column_name, options, indexes)
            self._extract_constraints(table_name, column, options, constraints)

        return ModelSnapshot(
            table_name=table_name,
            columns=columns,
            indexes=indexes,
            constraints=constraints,
        )

    def _create_column(
        self, table_name: str, column_name: str, field: Field, options: Dict[str, Any]
    ) -> Optional[ColumnInfo]:
        field_type, optional = unwrap_optional(field.type)
        logical_type = self._logical_type(field_type)
        if logical_type is None:
            logger.warning(
                f"Skipping field {table_name}.{column_name}: unsupported type {field.type!r}"
            )
            return None

        primary_key = bool(options.get("primary_key"))
        precision = _as_int(options.get("precision"))
        scale = _as_int(options.get("scale"))
        max_length = _as_int(options.get("max_length") or options.get("size"))
        if logical_type == "float64" and precision is not None and scale is not None:
            logical_type = "decimal"

        auto_increment = bool(options.get("auto_increment"))
        if primary_key and logical_type in ("int", "int64") and options.get("auto_increment") is not False:
            auto_increment = True

        explicit_type = options.get("sql_type") or options.get("type")
        if explicit_type and explicit_type is not True:
            sql_type = str(explicit_type).upper()
            parsed_length, parsed_precision, parsed_scale = dialects.parse_length(sql_type)
            max_length = max_length or parsed_length
            precision = precision or parsed_precision
            scale = scale if scale is not None else parsed_scale
        else:
            sql_type, max_length = self._sql_type(logical_type, auto_increment, max_length, precision, scale)

        if primary_key:
            nullable = False
        elif options.get("not_null"):
            nullable = False
        else:
            nullable = optional or bool(options.get("null") or options.get("nullable"))

        foreign_key = None
        reference = options.get("foreign_key") or options.get("references")
        if reference and reference is not True:
            parsed = parse_foreign_key(str(reference))
            if parsed is None:
                logger.warning(f"Ignoring malformed foreign key {reference!r} on {table_name}.{column_name}")
            else:
                foreign_key = f"{parsed[0]}.{parsed[1]}"

        return ColumnInfo(
            name=column_name,
            data_type=logical_type,
            sql_type=sql_type,
            nullable=nullable,
            default=_format_default(options.get("default")),
            max_length=max_length,
            precision=precision,
            scale=scale,
            primary_key=primary_key,
            auto_increment=auto_increment,
            unique=bool(options.get("unique")) and not primary_key,
            foreign_key=foreign_key,
        )

    def _logical_type(self, field_type: Any) -> Optional[str]:
        if isinstance(field_type, str):
            return LOGICAL_ALIASES.get(field_type.lower())
        return PYTHON_TYPES.get(field_type)

    def _sql_type(
        self,
        logical_type: str,
        auto_increment: bool,
        max_length: Optional[int],
        precision: Optional[int],
        scale: Optional[int],
    ) -> tuple:
        base = dialects.native_type(logical_type, self.dialect)

        if logical_type == "string":
            max_length = max_length or dialects.DEFAULT_STRING_LENGTH
            return f"{base}({max_length})", max_length
        if logical_type == "decimal" and precision is not None:
            return f"{base}({precision},{scale or 0})", None
        if auto_increment and self.dialect == Dialect.POSTGRES:
            return dialects.SERIAL_TYPES.get(base, base), None
        return base, None

    def _extract_indexes(
        self, table_name: str, column_name: str, options: Dict[str, Any], indexes: Dict[str, IndexInfo]
    ) -> None:
        for key, prefix, unique in (
            ("index", "idx", False),
            ("unique_index", "uidx", True),
            ("uniqueindex", "uidx", True),
        ):
            value = options.get(key)
            if not value:
                continue
            index_name = value if isinstance(value, str) else f"{prefix}_{table_name}_{column_name}"
            existing = indexes.get(index_name)
            # Several fields naming the same index build a composite index
            columns = (existing.columns if existing else ()) + (column_name,)
            indexes[index_name] = IndexInfo(name=index_name, columns=columns, unique=unique)

    def _extract_constraints(
        self,
        table_name: str,
        column: ColumnInfo,
        options: Dict[str, Any],
        constraints: Dict[str, ConstraintInfo],
    ) -> None:
        check = options.get("check")
        if check and check is not True:
            name = f"chk_{table_name}_{column.name}"
            constraints[name] = ConstraintInfo(
                name=name,
                kind=ConstraintKind.CHECK,
                columns=(column.name,),
                expression=str(check),
            )

        if column.foreign_key:
            ref_table, ref_column = column.foreign_key.split(".", 1)
            name = f"fk_{table_name}_{column.name}"
            constraints[name] = ConstraintInfo(
                name=name,
                kind=ConstraintKind.FOREIGN_KEY,
                columns=(column.name,),
                referenced_table=ref_table,
                referenced_columns=(ref_column,),
            )
