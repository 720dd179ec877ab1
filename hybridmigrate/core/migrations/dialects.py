"""Per-dialect type names, identifier quoting and type compatibility rules."""

import re
from typing import Dict, Optional, Tuple

from hybridmigrate.core.migrations.models import Dialect

# Canonical logical types understood by the registry and the generator
LOGICAL_TYPES = (
    "string",
    "text",
    "int",
    "int64",
    "float32",
    "float64",
    "bool",
    "timestamp",
    "date",
    "decimal",
    "bytes",
)

TYPE_MAPS: Dict[Dialect, Dict[str, str]] = {
    Dialect.POSTGRES: {
        "string": "VARCHAR",
        "text": "TEXT",
        "int": "INTEGER",
        "int64": "BIGINT",
        "float32": "REAL",
        "float64": "DOUBLE PRECISION",
        "bool": "BOOLEAN",
        "timestamp": "TIMESTAMP",
        "date": "DATE",
        "decimal": "DECIMAL",
        "bytes": "BYTEA",
    },
    Dialect.MYSQL: {
        "string": "VARCHAR",
        "text": "TEXT",
        "int": "INT",
        "int64": "BIGINT",
        "float32": "FLOAT",
        "float64": "DOUBLE",
        "bool": "TINYINT(1)",
        "timestamp": "TIMESTAMP",
        "date": "DATE",
        "decimal": "DECIMAL",
        "bytes": "BLOB",
    },
    Dialect.SQLITE: {
        "string": "VARCHAR",
        "text": "TEXT",
        "int": "INTEGER",
        "int64": "INTEGER",
        "float32": "REAL",
        "float64": "REAL",
        "bool": "INTEGER",
        "timestamp": "TIMESTAMP",
        "date": "DATE",
        "decimal": "DECIMAL",
        "bytes": "BLOB",
    },
}

SERIAL_TYPES = {"INTEGER": "SERIAL", "INT": "SERIAL", "BIGINT": "BIGSERIAL"}

DEFAULT_STRING_LENGTH = 255

_LENGTH_TYPES = {"VARCHAR", "CHAR", "CHARACTER VARYING", "CHARACTER", "NVARCHAR"}
_PRECISION_TYPES = {"DECIMAL", "NUMERIC"}

# Synonyms reported by the catalogs, grouped by the type they stand for
TYPE_FAMILIES: Dict[str, str] = {
    "INT": "INTEGER",
    "INTEGER": "INTEGER",
    "INT4": "INTEGER",
    "MEDIUMINT": "INTEGER",
    "SERIAL": "INTEGER",
    "SERIAL4": "INTEGER",
    "BIGINT": "BIGINT",
    "INT8": "BIGINT",
    "BIGSERIAL": "BIGINT",
    "SERIAL8": "BIGINT",
    "SMALLINT": "SMALLINT",
    "INT2": "SMALLINT",
    "VARCHAR": "TEXT",
    "CHARACTER VARYING": "TEXT",
    "NVARCHAR": "TEXT",
    "CHAR": "TEXT",
    "CHARACTER": "TEXT",
    "TEXT": "TEXT",
    "MEDIUMTEXT": "TEXT",
    "LONGTEXT": "TEXT",
    "BOOL": "BOOLEAN",
    "BOOLEAN": "BOOLEAN",
    "TINYINT": "BOOLEAN",
    "TIMESTAMP": "TIMESTAMP",
    "TIMESTAMPTZ": "TIMESTAMP",
    "TIMESTAMP WITH TIME ZONE": "TIMESTAMP",
    "TIMESTAMP WITHOUT TIME ZONE": "TIMESTAMP",
    "DATETIME": "TIMESTAMP",
    "DATE": "DATE",
    "DECIMAL": "DECIMAL",
    "NUMERIC": "DECIMAL",
    "DOUBLE": "DOUBLE",
    "DOUBLE PRECISION": "DOUBLE",
    "FLOAT8": "DOUBLE",
    "REAL": "REAL",
    "FLOAT4": "REAL",
    "FLOAT": "REAL",
    "BYTEA": "BYTES",
    "BLOB": "BYTES",
}

_CAST_RE = re.compile(r"::[a-z_ ]+(\(\d+(,\s*\d+)?\))?(\[\])?", re.IGNORECASE)


def quote_identifier(name: str, dialect: Dialect) -> str:
    if dialect == Dialect.MYSQL:
        return f"`{name.replace('`', '``')}`"
    return '"' + name.replace('"', '""') + '"'


def native_type(logical_type: str, dialect: Dialect) -> str:
    """Native spelling of a logical type; unknown names pass through upper-cased."""
    return TYPE_MAPS[dialect].get(logical_type.lower(), logical_type.upper())


def split_type(sql_type: str) -> Tuple[str, Optional[str]]:
    """Split "VARCHAR(255)" into ("VARCHAR", "255")."""
    sql_type = " ".join(sql_type.strip().upper().split())
    match = re.match(r"^([A-Z0-9_ ]+?)\s*\((.*)\)(.*)$", sql_type)
    if not match:
        return sql_type, None
    base = f"{match.group(1)}{match.group(3)}".strip()
    return base, match.group(2).replace(" ", "")


def supports_length(base_type: str) -> bool:
    return base_type.upper() in _LENGTH_TYPES


def supports_precision(base_type: str) -> bool:
    return base_type.upper() in _PRECISION_TYPES


def type_family(sql_type: str) -> str:
    base, _ = split_type(sql_type)
    return TYPE_FAMILIES.get(base, base)


def types_compatible(model_type: str, db_type: str) -> bool:
    """Whether two SQL type spellings describe the same storage type."""
    if not model_type or not db_type:
        return model_type == db_type
    return type_family(model_type) == type_family(db_type)


_FAMILY_LOGICAL_TYPES = {
    "INTEGER": "int",
    "SMALLINT": "int",
    "BIGINT": "int64",
    "BOOLEAN": "bool",
    "TIMESTAMP": "timestamp",
    "DATE": "date",
    "DECIMAL": "decimal",
    "DOUBLE": "float64",
    "REAL": "float32",
    "BYTES": "bytes",
}


def logical_type_for(sql_type: str) -> str:
    """Best-effort logical type for a type reported by the database."""
    base, _ = split_type(sql_type)
    family = TYPE_FAMILIES.get(base, base)
    if family == "TEXT":
        return "text" if base in ("TEXT", "MEDIUMTEXT", "LONGTEXT") else "string"
    return _FAMILY_LOGICAL_TYPES.get(family, base.lower())


def normalize_default(value: Optional[str]) -> Optional[str]:
    """Normalize a column default for comparison.

    Casts (``'x'::character varying``), wrapping parentheses and quotes are
    stripped and the result is lower-cased.
    """
    if value is None:
        return None
    text = str(value).strip()
    if text.upper() == "NULL" or text == "":
        return None
    text = _CAST_RE.sub("", text).strip()
    while text.startswith("(") and text.endswith(")"):
        text = text[1:-1].strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        text = text[1:-1]
    return text.lower()


def parse_length(sql_type: str) -> Tuple[Optional[int], Optional[int], Optional[int]]:
    """Extract (max_length, precision, scale) from a parenthesised type."""
    base, args = split_type(sql_type)
    if not args:
        return None, None, None
    numbers = args.split(",")
    try:
        if supports_length(base):
            return int(numbers[0]), None, None
        if supports_precision(base):
            scale = int(numbers[1]) if len(numbers) > 1 else 0
            return None, int(numbers[0]), scale
    except ValueError:
        return None, None, None
    return None, None, None
