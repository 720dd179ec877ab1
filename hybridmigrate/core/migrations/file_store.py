"""Reading and writing migration files.

File layout::

    -- Migration: <name>
    -- Created: <RFC3339 timestamp>
    -- Checksum: <hex>
    -- Mode: Automatic|Interactive|GenerateOnly|ForceDestructive
    -- Has Destructive: true|false
    -- Requires Review: true|false

    -- +migrate Up
    <statements>

    -- +migrate Down
    <statements>

Warnings and errors attached to the plan are written as ``-- WARNINGS:`` /
``-- ERRORS:`` comment blocks between the header and the Up section.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from hybridmigrate.core.exceptions import MigrationFileError
from hybridmigrate.core.migrations.models import MigrationFile, MigrationMode, slugify

logger = logging.getLogger(__name__)

UP_MARKER = "-- +migrate Up"
DOWN_MARKER = "-- +migrate Down"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

_HEADER_RE = re.compile(r"^--\s*([A-Za-z ]+):\s*(.*)$")
_FILENAME_RE = re.compile(r"^(\d{14})_(.+)\.sql$")


def format_timestamp(value: datetime) -> str:
    """RFC3339 rendering with second precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "yes", "1")


class MigrationFileStore:
    """Directory of ``<timestamp>_<slug>.sql`` migration files."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def filename_for(self, name: str, timestamp: datetime) -> str:
        return f"{timestamp.strftime(TIMESTAMP_FORMAT)}_{slugify(name)}.sql"

    def render(self, migration: MigrationFile) -> str:
        lines = [
            f"-- Migration: {migration.name}",
            f"-- Created: {format_timestamp(migration.timestamp)}",
            f"-- Checksum: {migration.checksum}",
            f"-- Mode: {migration.mode.value}",
            f"-- Has Destructive: {str(migration.is_destructive()).lower()}",
            f"-- Requires Review: {str(migration.requires_review()).lower()}",
            "",
        ]
        if migration.warnings:
            lines.append("-- WARNINGS:")
            lines.extend(f"-- * {warning}" for warning in migration.warnings)
            lines.append("")
        if migration.errors:
            lines.append("-- ERRORS:")
            lines.extend(f"-- * {error}" for error in migration.errors)
            lines.append("")

        lines.append(UP_MARKER)
        lines.append(migration.up_script.strip())
        lines.append("")
        lines.append(DOWN_MARKER)
        lines.append(migration.down_script.strip())
        return "\n".join(lines) + "\n"

    def save(self, migration: MigrationFile) -> Path:
        """Write a migration file; existing files are never overwritten."""
        self.ensure_directory()
        path = self.directory / self.filename_for(migration.name, migration.timestamp)
        if path.exists():
            raise MigrationFileError(
                f"migration file already exists: {path}", details={"path": str(path)}
            )

        try:
            path.write_text(self.render(migration), encoding="utf-8")
        except OSError as e:
            raise MigrationFileError(f"failed to write migration file {path}: {e}") from e

        migration.file_path = path
        migration.has_destructive = migration.is_destructive()
        logger.info(f"Created migration file {path.name}")
        return path

    def parse(self, path: Path) -> MigrationFile:
        """Read a migration file back; the change list is not recoverable from disk."""
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise MigrationFileError(f"failed to read migration file {path}: {e}") from e

        header: Dict[str, str] = {}
        sections: Dict[str, List[str]] = {"up": [], "down": []}
        warnings: List[str] = []
        errors: List[str] = []
        section: Optional[str] = None
        block: Optional[List[str]] = None

        for line in content.splitlines():
            stripped = line.strip()
            if stripped == UP_MARKER:
                section = "up"
                continue
            if stripped == DOWN_MARKER:
                section = "down"
                continue
            if section is not None:
                sections[section].append(line)
                continue

            if stripped == "-- WARNINGS:":
                block = warnings
            elif stripped == "-- ERRORS:":
                block = errors
            elif stripped.startswith("-- * ") and block is not None:
                block.append(stripped[5:])
            else:
                match = _HEADER_RE.match(stripped)
                if match:
                    header[match.group(1).strip().lower()] = match.group(2).strip()
                    block = None

        if section is None:
            raise MigrationFileError(
                f"migration file {path.name} has no '{UP_MARKER}' section",
                details={"path": str(path)},
            )

        timestamp = self._timestamp(path, header.get("created"))
        name = header.get("migration")
        if not name:
            match = _FILENAME_RE.match(path.name)
            name = match.group(2) if match else path.stem

        has_destructive = _parse_bool(header.get("has destructive", "false"))
        return MigrationFile(
            name=name,
            timestamp=timestamp,
            checksum=header.get("checksum", ""),
            mode=MigrationMode.parse(header.get("mode")),
            up_script="\n".join(sections["up"]).strip(),
            down_script="\n".join(sections["down"]).strip(),
            file_path=path,
            has_destructive=has_destructive or _parse_bool(header.get("requires review", "false")),
            warnings=warnings,
            errors=errors,
        )

    def _timestamp(self, path: Path, created: Optional[str]) -> datetime:
        if created:
            try:
                return parse_timestamp(created)
            except ValueError:
                logger.warning(f"Invalid Created header in {path.name}: {created!r}")
        match = _FILENAME_RE.match(path.name)
        if not match:
            raise MigrationFileError(
                f"cannot determine timestamp of migration file {path.name}",
                details={"path": str(path)},
            )
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)

    def load_all(self) -> List[MigrationFile]:
        """All migration files, oldest first."""
        if not self.directory.exists():
            return []
        migrations = [self.parse(path) for path in self.directory.glob("*.sql")]
        migrations.sort(key=lambda m: (m.timestamp, m.file_path.name))
        return migrations

    def load(self, migration_id: str) -> MigrationFile:
        path = self.directory / f"{migration_id}.sql"
        if not path.exists():
            raise MigrationFileError(
                f"migration file not found for {migration_id}",
                details={"migration_id": migration_id, "path": str(path)},
            )
        return self.parse(path)

    def find_by_name(self, name: str) -> Optional[MigrationFile]:
        slug = slugify(name)
        for migration in self.load_all():
            if migration.name == name or migration.migration_id.split("_", 1)[-1] == slug:
                return migration
        return None

    def latest_timestamp(self) -> Optional[datetime]:
        migrations = self.load_all()
        return migrations[-1].timestamp if migrations else None
