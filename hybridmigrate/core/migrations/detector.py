"""Change detection: diff registered models against the live database."""

import hashlib
import heapq
import logging
from typing import Dict, List, Set

from sqlalchemy.exc import SQLAlchemyError

from hybridmigrate.core.exceptions import DetectionError, ValidationError
from hybridmigrate.core.migrations import dialects
from hybridmigrate.core.migrations.inspector import DatabaseInspector
from hybridmigrate.core.migrations.models import (
    ChangeType,
    ColumnInfo,
    ConstraintKind,
    MigrationChange,
    MigrationPlan,
)
from hybridmigrate.core.migrations.registry import ModelRegistry

logger = logging.getLogger(__name__)

# Type families whose conversion cannot be done without losing data
INCOMPATIBLE_TYPE_CHANGES: Dict[str, Set[str]] = {
    "TEXT": {"INTEGER", "BIGINT", "BOOLEAN", "TIMESTAMP", "DATE"},
    "INTEGER": {"BOOLEAN", "TIMESTAMP", "DATE"},
    "BIGINT": {"BOOLEAN", "TIMESTAMP", "DATE"},
    "BOOLEAN": {"INTEGER", "BIGINT", "TEXT", "TIMESTAMP", "DATE"},
    "TIMESTAMP": {"INTEGER", "BIGINT", "BOOLEAN"},
    "DATE": {"INTEGER", "BIGINT", "BOOLEAN"},
}

_SUMMARY_LABELS = (
    (ChangeType.CREATE_TABLE, "table(s) to create"),
    (ChangeType.DROP_TABLE, "table(s) to drop"),
    (ChangeType.ADD_COLUMN, "column(s) to add"),
    (ChangeType.DROP_COLUMN, "column(s) to drop"),
    (ChangeType.ALTER_COLUMN, "column(s) to alter"),
    (ChangeType.CREATE_INDEX, "index(es) to create"),
    (ChangeType.DROP_INDEX, "index(es) to drop"),
    (ChangeType.ADD_CONSTRAINT, "constraint(s) to add"),
    (ChangeType.DROP_CONSTRAINT, "constraint(s) to drop"),
)


def data_loss_reasons(old: ColumnInfo, new: ColumnInfo) -> List[str]:
    """Reasons an alteration from ``old`` to ``new`` could discard data."""
    reasons = []
    if old.nullable and not new.nullable:
        reasons.append("nullable column becomes NOT NULL")
    if old.max_length is not None and new.max_length is not None and new.max_length < old.max_length:
        reasons.append(f"max length shrinks from {old.max_length} to {new.max_length}")
    old_family = dialects.type_family(old.sql_type)
    new_family = dialects.type_family(new.sql_type)
    if new_family in INCOMPATIBLE_TYPE_CHANGES.get(old_family, set()):
        reasons.append(f"type change {old.sql_type} -> {new.sql_type} is not convertible")
    return reasons


class ChangeDetector:
    """Produces ordered, checksummed migration plans."""

    def __init__(self, registry: ModelRegistry, inspector: DatabaseInspector):
        self.registry = registry
        self.inspector = inspector

    def detect_changes(self) -> MigrationPlan:
        snapshots = self.registry.get_models()
        try:
            db_schema = self.inspector.get_current_schema()
            changes = self.inspector.compare_with_models(db_schema, snapshots)
        except DetectionError:
            raise
        except SQLAlchemyError as e:
            raise DetectionError(f"failed to detect schema changes: {e}") from e

        for change in changes:
            self.classify(change)

        ordered = self.sort_changes(changes)
        plan = MigrationPlan(
            changes=ordered,
            model_snapshots=snapshots,
            db_schema=db_schema,
            checksum=self.calculate_checksum(ordered),
        )
        plan.has_destructive = any(change.is_destructive for change in ordered)
        plan.requires_review = plan.has_destructive

        logger.info(f"Detected {len(ordered)} change(s): {self.get_change_summary(plan)}")
        return plan

    def classify(self, change: MigrationChange) -> MigrationChange:
        """Set the destructive and data-migration flags of a change."""
        if change.change_type in (ChangeType.DROP_TABLE, ChangeType.DROP_COLUMN):
            change.is_destructive = True
        elif change.change_type == ChangeType.ALTER_COLUMN:
            reasons = data_loss_reasons(change.old_value, change.new_value)
            change.is_destructive = bool(reasons)
            change.requires_data_migration = bool(reasons)
        return change

    def sort_changes(self, changes: List[MigrationChange]) -> List[MigrationChange]:
        """Order by type priority, table and object name.

        New tables are additionally ordered so referenced tables come first;
        dropped tables so that dependents go first.
        """
        ordered = sorted(
            changes,
            key=lambda c: (c.change_type.priority, c.table_name, c.object_name),
        )
        creates = [c for c in ordered if c.change_type == ChangeType.CREATE_TABLE]
        drops = [c for c in ordered if c.change_type == ChangeType.DROP_TABLE]
        middle = [c for c in ordered if c.change_type not in (ChangeType.CREATE_TABLE, ChangeType.DROP_TABLE)]

        create_deps = {c.table_name: set(c.new_value.referenced_tables()) for c in creates}
        create_order = _topological_order(create_deps)

        # A dropped table waits until every dropped table referencing it is gone
        drop_names = {c.table_name for c in drops}
        drop_deps: Dict[str, Set[str]] = {name: set() for name in drop_names}
        for change in drops:
            for referenced in change.old_value.referenced_tables():
                if referenced in drop_names and referenced != change.table_name:
                    drop_deps[referenced].add(change.table_name)
        drop_order = _topological_order(drop_deps)

        creates.sort(key=lambda c: create_order.index(c.table_name))
        drops.sort(key=lambda c: drop_order.index(c.table_name))
        return creates + middle + drops

    def calculate_checksum(self, changes: List[MigrationChange]) -> str:
        keys = sorted(change.checksum_key() for change in changes)
        return hashlib.sha256("\n".join(keys).encode()).hexdigest()

    def validate_plan(self, plan: MigrationPlan) -> MigrationPlan:
        """Check a plan; circular dependencies raise, everything else becomes a warning."""
        errors = [f"circular foreign key dependency: {' -> '.join(cycle)}" for cycle in self._find_cycles(plan)]

        dropped = {c.table_name for c in plan.changes if c.change_type == ChangeType.DROP_TABLE}
        warnings = []
        for change in plan.changes:
            for constraint_name, referenced in self._references(change):
                if referenced in dropped and referenced != change.table_name:
                    warnings.append(
                        f"orphaned foreign key {constraint_name} on {change.table_name} "
                        f"references table {referenced} scheduled for deletion"
                    )
            if change.is_destructive:
                warnings.append(f"potential data loss: {change.description}")

        for warning in warnings:
            if warning not in plan.warnings:
                plan.warnings.append(warning)
                logger.warning(warning)

        plan.errors = errors
        if errors:
            raise ValidationError(errors)
        return plan

    def get_change_summary(self, plan: MigrationPlan) -> str:
        if not plan.changes:
            return "No changes detected"

        counts: Dict[ChangeType, int] = {}
        for change in plan.changes:
            counts[change.change_type] = counts.get(change.change_type, 0) + 1

        parts = [f"{counts[t]} {label}" for t, label in _SUMMARY_LABELS if t in counts]
        result = ", ".join(parts)
        if plan.has_destructive:
            result += " (includes destructive changes)"
        if plan.requires_review:
            result += " (requires manual review)"
        return result

    def _references(self, change: MigrationChange):
        if change.change_type == ChangeType.CREATE_TABLE:
            for constraint in change.new_value.constraints.values():
                if constraint.kind == ConstraintKind.FOREIGN_KEY:
                    yield constraint.name, constraint.referenced_table
        elif change.change_type == ChangeType.ADD_CONSTRAINT:
            if change.new_value.kind == ConstraintKind.FOREIGN_KEY:
                yield change.new_value.name, change.new_value.referenced_table
        elif change.change_type == ChangeType.ADD_COLUMN and change.new_value.foreign_key:
            yield (
                f"fk_{change.table_name}_{change.column_name}",
                change.new_value.foreign_key.split(".", 1)[0],
            )

    def _find_cycles(self, plan: MigrationPlan) -> List[List[str]]:
        graph: Dict[str, List[str]] = {}
        for change in plan.changes:
            if change.change_type == ChangeType.CREATE_TABLE:
                graph[change.table_name] = [
                    t for t in change.new_value.referenced_tables() if t != change.table_name
                ]

        cycles: List[List[str]] = []
        visited: Set[str] = set()
        stack: List[str] = []
        on_stack: Set[str] = set()

        def visit(node: str) -> None:
            visited.add(node)
            stack.append(node)
            on_stack.add(node)
            for neighbour in graph.get(node, []):
                if neighbour not in graph:
                    continue
                if neighbour in on_stack:
                    cycles.append(stack[stack.index(neighbour):] + [neighbour])
                elif neighbour not in visited:
                    visit(neighbour)
            stack.pop()
            on_stack.discard(node)

        for node in sorted(graph):
            if node not in visited:
                visit(node)
        return cycles


def _topological_order(dependencies: Dict[str, Set[str]]) -> List[str]:
    """Kahn's algorithm; each node follows its dependencies, ties sorted by name.

    Nodes left over by a cycle are appended in name order.
    """
    pending = {node: {d for d in deps if d in dependencies and d != node} for node, deps in dependencies.items()}
    ready = [node for node, deps in pending.items() if not deps]
    heapq.heapify(ready)
    order: List[str] = []

    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for other, deps in pending.items():
            if node in deps:
                deps.discard(node)
                if not deps and other not in order:
                    heapq.heappush(ready, other)

    order.extend(sorted(node for node in pending if node not in order))
    return order
