"""Data models for migration management."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union


class Dialect(str, Enum):
    """Supported database dialects."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLITE = "sqlite"

    @classmethod
    def from_name(cls, name: str) -> "Dialect":
        """Resolve a dialect from its own name or a SQLAlchemy dialect name."""
        aliases = {
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
            "mysql": cls.MYSQL,
            "mariadb": cls.MYSQL,
            "sqlite": cls.SQLITE,
            "sqlite3": cls.SQLITE,
        }
        try:
            return aliases[name.lower()]
        except KeyError:
            raise ValueError(f"unsupported dialect: {name}") from None


class ChangeType(str, Enum):
    """Kinds of structural change a plan can contain."""

    CREATE_TABLE = "CreateTable"
    DROP_TABLE = "DropTable"
    ADD_COLUMN = "AddColumn"
    DROP_COLUMN = "DropColumn"
    ALTER_COLUMN = "AlterColumn"
    CREATE_INDEX = "CreateIndex"
    DROP_INDEX = "DropIndex"
    ADD_CONSTRAINT = "AddConstraint"
    DROP_CONSTRAINT = "DropConstraint"

    @property
    def priority(self) -> int:
        return CHANGE_PRIORITY[self]


# Creates before the objects depending on them, drops in reverse
CHANGE_PRIORITY: Dict[ChangeType, int] = {
    ChangeType.CREATE_TABLE: 1,
    ChangeType.ADD_COLUMN: 2,
    ChangeType.ALTER_COLUMN: 3,
    ChangeType.CREATE_INDEX: 4,
    ChangeType.ADD_CONSTRAINT: 5,
    ChangeType.DROP_CONSTRAINT: 6,
    ChangeType.DROP_INDEX: 7,
    ChangeType.DROP_COLUMN: 8,
    ChangeType.DROP_TABLE: 9,
}


class MigrationMode(str, Enum):
    """Policy gate applied when a migration is created or applied."""

    AUTOMATIC = "Automatic"
    INTERACTIVE = "Interactive"
    GENERATE_ONLY = "GenerateOnly"
    FORCE_DESTRUCTIVE = "ForceDestructive"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MigrationMode":
        """Parse a mode name, falling back to Automatic for unknown values."""
        if not value:
            return cls.AUTOMATIC
        normalized = value.replace("_", "").replace("-", "").lower()
        for mode in cls:
            if mode.value.lower() == normalized:
                return mode
        return cls.AUTOMATIC


class MigrationState(str, Enum):
    """Lifecycle state of a ledger record."""

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ConstraintKind(str, Enum):
    FOREIGN_KEY = "foreign_key"
    UNIQUE = "unique"
    CHECK = "check"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ColumnInfo:
    """Column description shared by model snapshots and live schema inspection."""

    name: str
    data_type: str
    sql_type: str
    nullable: bool = True
    default: Optional[str] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    primary_key: bool = False
    auto_increment: bool = False
    unique: bool = False
    foreign_key: Optional[str] = None  # "table.column"

    def fingerprint(self) -> str:
        parts = [
            self.name,
            self.sql_type,
            str(self.nullable).lower(),
            str(self.primary_key).lower(),
            str(self.unique).lower(),
            str(self.auto_increment).lower(),
        ]
        if self.max_length is not None:
            parts.append(f"len={self.max_length}")
        if self.precision is not None:
            parts.append(f"prec={self.precision},{self.scale or 0}")
        if self.default is not None:
            parts.append(f"default={self.default}")
        if self.foreign_key:
            parts.append(f"fk={self.foreign_key}")
        return ":".join(parts)


@dataclass(frozen=True)
class IndexInfo:
    """Secondary index on a table."""

    name: str
    columns: Tuple[str, ...]
    unique: bool = False
    kind: str = "btree"

    def fingerprint(self) -> str:
        return f"{self.name}:{','.join(self.columns)}:{str(self.unique).lower()}"


@dataclass(frozen=True)
class ConstraintInfo:
    """Table constraint (foreign key, unique or check)."""

    name: str
    kind: ConstraintKind
    columns: Tuple[str, ...]
    referenced_table: Optional[str] = None
    referenced_columns: Tuple[str, ...] = ()
    expression: Optional[str] = None

    def fingerprint(self) -> str:
        parts = [self.name, self.kind.value, ",".join(self.columns)]
        if self.referenced_table:
            parts.append(f"{self.referenced_table}({','.join(self.referenced_columns)})")
        if self.expression:
            parts.append(self.expression)
        return ":".join(parts)


@dataclass(frozen=True)
class ModelSnapshot:
    """Immutable structural description of one registered entity."""

    table_name: str
    columns: Dict[str, ColumnInfo] = field(default_factory=dict)
    indexes: Dict[str, IndexInfo] = field(default_factory=dict)
    constraints: Dict[str, ConstraintInfo] = field(default_factory=dict)
    checksum: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "checksum", self.compute_checksum())

    def compute_checksum(self) -> str:
        hasher = hashlib.sha256()
        hasher.update(f"table:{self.table_name}".encode())
        for name in sorted(self.columns):
            hasher.update(f"col:{self.columns[name].fingerprint()}".encode())
        for name in sorted(self.indexes):
            hasher.update(f"idx:{self.indexes[name].fingerprint()}".encode())
        for name in sorted(self.constraints):
            hasher.update(f"con:{self.constraints[name].fingerprint()}".encode())
        return hasher.hexdigest()

    @property
    def primary_key(self) -> List[str]:
        return [c.name for c in self.columns.values() if c.primary_key]

    def referenced_tables(self) -> List[str]:
        return sorted(
            {
                c.referenced_table
                for c in self.constraints.values()
                if c.kind == ConstraintKind.FOREIGN_KEY and c.referenced_table
            }
        )


@dataclass
class TableSchema:
    """Live schema of one table, rebuilt on every inspection."""

    table_name: str
    columns: Dict[str, ColumnInfo] = field(default_factory=dict)
    indexes: Dict[str, IndexInfo] = field(default_factory=dict)
    constraints: Dict[str, ConstraintInfo] = field(default_factory=dict)

    @property
    def primary_key(self) -> List[str]:
        return [c.name for c in self.columns.values() if c.primary_key]

    def referenced_tables(self) -> List[str]:
        return sorted(
            {
                c.referenced_table
                for c in self.constraints.values()
                if c.kind == ConstraintKind.FOREIGN_KEY and c.referenced_table
            }
        )


@dataclass
class MigrationChange:
    """A single atomic structural operation."""

    change_type: ChangeType
    table_name: str
    column_name: Optional[str] = None
    index_name: Optional[str] = None
    constraint_name: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    is_destructive: bool = False
    requires_data_migration: bool = False
    description: str = ""
    # Table definitions around the change; used where a dialect has to rebuild the table
    table_before: Optional[Union[ModelSnapshot, TableSchema]] = field(default=None, repr=False, compare=False)
    table_after: Optional[Union[ModelSnapshot, TableSchema]] = field(default=None, repr=False, compare=False)

    @property
    def object_name(self) -> str:
        return self.column_name or self.index_name or self.constraint_name or ""

    def checksum_key(self) -> str:
        """Stable string used when hashing a plan."""
        value = self.new_value if self.new_value is not None else self.old_value
        fingerprint = ""
        if isinstance(value, (ColumnInfo, IndexInfo, ConstraintInfo)):
            fingerprint = value.fingerprint()
        elif isinstance(value, (ModelSnapshot, TableSchema)):
            fingerprint = ModelSnapshot(
                table_name=value.table_name,
                columns=value.columns,
                indexes=value.indexes,
                constraints=value.constraints,
            ).checksum
        return "|".join(
            [
                self.change_type.value,
                self.table_name,
                self.column_name or "",
                self.index_name or "",
                self.constraint_name or "",
                fingerprint,
            ]
        )


@dataclass
class MigrationPlan:
    """Ordered result of one diff pass."""

    changes: List[MigrationChange] = field(default_factory=list)
    model_snapshots: Dict[str, ModelSnapshot] = field(default_factory=dict)
    db_schema: Dict[str, TableSchema] = field(default_factory=dict)
    checksum: str = ""
    has_destructive: bool = False
    requires_review: bool = False
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.changes


@dataclass
class MigrationFile:
    """Named, timestamped migration artifact with up and down scripts."""

    name: str
    timestamp: datetime
    checksum: str
    mode: MigrationMode
    up_script: str = ""
    down_script: str = ""
    changes: List[MigrationChange] = field(default_factory=list)
    file_path: Optional[Path] = None
    has_destructive: bool = False
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def migration_id(self) -> str:
        if self.file_path is not None:
            return self.file_path.stem
        return f"{self.timestamp.strftime('%Y%m%d%H%M%S')}_{slugify(self.name)}"

    def is_destructive(self) -> bool:
        # The change list wins when present; the header flag is its persisted copy
        if self.changes:
            return any(change.is_destructive for change in self.changes)
        return self.has_destructive

    def requires_review(self) -> bool:
        return self.is_destructive()


@dataclass
class MigrationRecord:
    """A row of the detailed history ledger."""

    migration_id: str
    name: str
    checksum: str
    state: MigrationState = MigrationState.PENDING
    id: Optional[int] = None
    version: Optional[int] = None
    is_destructive: bool = False
    applied_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    error_message: Optional[str] = None
    execution_time_ms: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class MigrationStatus:
    """Complete migration status."""

    applied: List[MigrationFile] = field(default_factory=list)
    pending: List[MigrationFile] = field(default_factory=list)
    current_changes: List[MigrationChange] = field(default_factory=list)
    has_pending_changes: bool = False
    has_destructive: bool = False
    summary: str = ""
    orphaned: List[str] = field(default_factory=list)


@dataclass
class ApplyResult:
    """Result of an apply run."""

    success: bool
    mode: MigrationMode = MigrationMode.AUTOMATIC
    applied_count: int = 0
    applied_migrations: List[str] = field(default_factory=list)
    skipped_migrations: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class VerificationResult:
    """Result of comparing the ledger with the migration files on disk."""

    orphaned: List[str] = field(default_factory=list)
    checksum_mismatches: List[Tuple[str, str, str]] = field(
        default_factory=list
    )  # (migration_id, ledger checksum, file checksum)
    duplicate_names: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    issues: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.orphaned or self.checksum_mismatches or self.duplicate_names)


def slugify(name: str) -> str:
    """Turn a migration name into a file-name-safe slug."""
    slug = []
    previous_underscore = False
    for char in name.strip().lower():
        if char.isalnum():
            slug.append(char)
            previous_underscore = False
        elif not previous_underscore:
            slug.append("_")
            previous_underscore = True
    return "".join(slug).strip("_") or "migration"
