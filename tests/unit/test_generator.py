"""Tests for SQL generation."""

from dataclasses import replace
from typing import Optional

import pytest

from hybridmigrate.core.exceptions import GenerationError
from hybridmigrate.core.migrations.generator import SQLGenerator, invert_change, split_statements
from hybridmigrate.core.migrations.models import (
    ChangeType,
    ColumnInfo,
    ConstraintInfo,
    ConstraintKind,
    Dialect,
    IndexInfo,
    MigrationChange,
    MigrationPlan,
)
from hybridmigrate.core.migrations.registry import ModelRegistry
from hybridmigrate.core.migrations.schema import Entity, Field


class User(Entity):
    id = Field(int, "primary_key")
    email = Field(str, "unique,not_null,max_length:255")
    active = Field(bool, "default:true")


class Order(Entity):
    id = Field(int, "primary_key")
    user_id = Field(int, "foreign_key:users.id")
    total = Field(float, "precision:10,scale:2")
    note = Field(Optional[str])


def create_table_change(entity, dialect: Dialect) -> MigrationChange:
    snapshot = ModelRegistry(dialect).create_snapshot(entity)
    return MigrationChange(
        change_type=ChangeType.CREATE_TABLE,
        table_name=snapshot.table_name,
        new_value=snapshot,
        description=f"Create table {snapshot.table_name}",
    )


NOTE = ColumnInfo(name="note", data_type="string", sql_type="VARCHAR(255)", max_length=255)


class TestCreateTable:
    """CREATE TABLE rendering per dialect."""

    def test_sqlite(self):
        sql = SQLGenerator(Dialect.SQLITE).generate_change_sql(create_table_change(User, Dialect.SQLITE))

        assert sql.startswith('CREATE TABLE "users" (')
        assert '"id" INTEGER PRIMARY KEY AUTOINCREMENT' in sql
        assert '"email" VARCHAR(255) NOT NULL UNIQUE' in sql
        assert '"active" INTEGER NOT NULL DEFAULT true' in sql
        assert sql.endswith(");")

    def test_postgres(self):
        sql = SQLGenerator(Dialect.POSTGRES).generate_change_sql(create_table_change(User, Dialect.POSTGRES))

        assert '"id" SERIAL NOT NULL PRIMARY KEY' in sql
        assert '"active" BOOLEAN NOT NULL DEFAULT true' in sql

    def test_mysql(self):
        sql = SQLGenerator(Dialect.MYSQL).generate_change_sql(create_table_change(User, Dialect.MYSQL))

        assert sql.startswith("CREATE TABLE `users` (")
        assert "`id` INT NOT NULL AUTO_INCREMENT PRIMARY KEY" in sql
        assert "`active` TINYINT(1) NOT NULL DEFAULT true" in sql

    def test_foreign_key_inline(self):
        sql = SQLGenerator(Dialect.SQLITE).generate_change_sql(create_table_change(Order, Dialect.SQLITE))

        assert 'CONSTRAINT "fk_orders_user_id" FOREIGN KEY ("user_id") REFERENCES "users" ("id")' in sql
        assert '"total" DECIMAL(10,2) NOT NULL' in sql
        assert '"note" VARCHAR(255),' in sql or '"note" VARCHAR(255)\n' in sql


class TestStatements:
    def test_add_column(self):
        change = MigrationChange(ChangeType.ADD_COLUMN, "orders", column_name="note", new_value=NOTE)

        assert SQLGenerator(Dialect.POSTGRES).generate_change_sql(change) == (
            'ALTER TABLE "orders" ADD COLUMN "note" VARCHAR(255);'
        )

    def test_sqlite_cannot_add_unique_column(self):
        column = ColumnInfo(name="code", data_type="string", sql_type="VARCHAR(10)", unique=True)
        change = MigrationChange(ChangeType.ADD_COLUMN, "orders", column_name="code", new_value=column)

        with pytest.raises(GenerationError) as exc_info:
            SQLGenerator(Dialect.SQLITE).generate_change_sql(change)

        assert exc_info.value.dialect == "sqlite"
        assert exc_info.value.change_type == "AddColumn"

    def test_drop_column(self):
        change = MigrationChange(ChangeType.DROP_COLUMN, "orders", column_name="note", old_value=NOTE)

        assert SQLGenerator(Dialect.POSTGRES).generate_change_sql(change) == (
            'ALTER TABLE "orders" DROP COLUMN IF EXISTS "note";'
        )
        assert SQLGenerator(Dialect.SQLITE).generate_change_sql(change) == (
            'ALTER TABLE "orders" DROP COLUMN "note";'
        )

    def test_alter_column_postgres(self):
        old = ColumnInfo(name="note", data_type="string", sql_type="VARCHAR(50)", max_length=50)
        new = ColumnInfo(
            name="note", data_type="string", sql_type="VARCHAR(255)", max_length=255, nullable=False, default="'n/a'"
        )
        change = MigrationChange(ChangeType.ALTER_COLUMN, "orders", column_name="note", old_value=old, new_value=new)

        sql = SQLGenerator(Dialect.POSTGRES).generate_change_sql(change)

        assert sql.splitlines() == [
            'ALTER TABLE "orders" ALTER COLUMN "note" TYPE VARCHAR(255);',
            'ALTER TABLE "orders" ALTER COLUMN "note" SET NOT NULL;',
            'ALTER TABLE "orders" ALTER COLUMN "note" SET DEFAULT \'n/a\';',
        ]

    def test_alter_column_mysql(self):
        old = ColumnInfo(name="note", data_type="string", sql_type="VARCHAR(50)", max_length=50)
        change = MigrationChange(ChangeType.ALTER_COLUMN, "orders", column_name="note", old_value=old, new_value=NOTE)

        assert SQLGenerator(Dialect.MYSQL).generate_change_sql(change) == (
            "ALTER TABLE `orders` MODIFY COLUMN `note` VARCHAR(255);"
        )

    def test_sqlite_cannot_alter_column(self):
        change = MigrationChange(ChangeType.ALTER_COLUMN, "orders", column_name="note", old_value=NOTE, new_value=NOTE)

        with pytest.raises(GenerationError):
            SQLGenerator(Dialect.SQLITE).generate_change_sql(change)

    def test_indexes(self):
        index = IndexInfo(name="uidx_users_email", columns=("email",), unique=True)
        create = MigrationChange(ChangeType.CREATE_INDEX, "users", index_name=index.name, new_value=index)
        drop = MigrationChange(ChangeType.DROP_INDEX, "users", index_name=index.name, old_value=index)

        assert SQLGenerator(Dialect.SQLITE).generate_change_sql(create) == (
            'CREATE UNIQUE INDEX IF NOT EXISTS "uidx_users_email" ON "users" ("email");'
        )
        assert SQLGenerator(Dialect.MYSQL).generate_change_sql(create) == (
            "CREATE UNIQUE INDEX `uidx_users_email` ON `users` (`email`);"
        )
        assert SQLGenerator(Dialect.POSTGRES).generate_change_sql(drop) == 'DROP INDEX IF EXISTS "uidx_users_email";'
        assert SQLGenerator(Dialect.MYSQL).generate_change_sql(drop) == "DROP INDEX `uidx_users_email` ON `users`;"

    def test_constraints(self):
        fk = ConstraintInfo(
            name="fk_orders_user_id",
            kind=ConstraintKind.FOREIGN_KEY,
            columns=("user_id",),
            referenced_table="users",
            referenced_columns=("id",),
        )
        add = MigrationChange(ChangeType.ADD_CONSTRAINT, "orders", constraint_name=fk.name, new_value=fk)
        drop = MigrationChange(ChangeType.DROP_CONSTRAINT, "orders", constraint_name=fk.name, old_value=fk)

        assert SQLGenerator(Dialect.POSTGRES).generate_change_sql(add) == (
            'ALTER TABLE "orders" ADD CONSTRAINT "fk_orders_user_id" FOREIGN KEY ("user_id") REFERENCES "users" ("id");'
        )
        assert SQLGenerator(Dialect.MYSQL).generate_change_sql(drop) == (
            "ALTER TABLE `orders` DROP FOREIGN KEY `fk_orders_user_id`;"
        )
        with pytest.raises(GenerationError):
            SQLGenerator(Dialect.SQLITE).generate_change_sql(add)

    def test_drop_table(self):
        change = MigrationChange(ChangeType.DROP_TABLE, "users")

        assert SQLGenerator(Dialect.SQLITE).generate_change_sql(change) == 'DROP TABLE IF EXISTS "users";'


class TestUniqueAlter:
    def test_postgres_adds_and_drops_unique_constraint(self):
        unique = ColumnInfo(name="note", data_type="string", sql_type="VARCHAR(255)", max_length=255, unique=True)
        add = MigrationChange(ChangeType.ALTER_COLUMN, "orders", column_name="note", old_value=NOTE, new_value=unique)
        drop = MigrationChange(ChangeType.ALTER_COLUMN, "orders", column_name="note", old_value=unique, new_value=NOTE)
        generator = SQLGenerator(Dialect.POSTGRES)

        assert generator.generate_change_sql(add) == (
            'ALTER TABLE "orders" ADD CONSTRAINT "orders_note_key" UNIQUE ("note");'
        )
        assert generator.generate_change_sql(drop) == 'ALTER TABLE "orders" DROP CONSTRAINT IF EXISTS "orders_note_key";'

    def test_mysql_uses_unique_index(self):
        unique = ColumnInfo(name="note", data_type="string", sql_type="VARCHAR(255)", max_length=255, unique=True)
        change = MigrationChange(ChangeType.ALTER_COLUMN, "orders", column_name="note", old_value=NOTE, new_value=unique)

        assert SQLGenerator(Dialect.MYSQL).generate_change_sql(change).splitlines() == [
            "ALTER TABLE `orders` MODIFY COLUMN `note` VARCHAR(255);",
            "ALTER TABLE `orders` ADD UNIQUE INDEX `note` (`note`);",
        ]


AUTHOR_ID = ColumnInfo(name="author_id", data_type="int", sql_type="INTEGER", foreign_key="users.id")


class TestSqliteRebuild:
    """Changes SQLite cannot express with ALTER TABLE."""

    def test_add_foreign_key_column_inline(self):
        change = MigrationChange(ChangeType.ADD_COLUMN, "orders", column_name="author_id", new_value=AUTHOR_ID)

        assert SQLGenerator(Dialect.SQLITE).generate_change_sql(change) == (
            'ALTER TABLE "orders" ADD COLUMN "author_id" INTEGER REFERENCES "users" ("id");'
        )

    def test_drop_foreign_key_column_without_definitions_names_column(self):
        change = MigrationChange(ChangeType.DROP_COLUMN, "orders", column_name="author_id", old_value=AUTHOR_ID)

        with pytest.raises(GenerationError) as exc_info:
            SQLGenerator(Dialect.SQLITE).generate_change_sql(change)

        assert "orders.author_id" in exc_info.value.message
        assert exc_info.value.change_type == "DropColumn"

    def test_alter_column_rebuilds_table(self):
        registry = ModelRegistry(Dialect.SQLITE)
        before = registry.create_snapshot(Order)
        after = registry.create_snapshot(User)
        change = MigrationChange(
            ChangeType.ALTER_COLUMN,
            "users",
            column_name="active",
            old_value=ColumnInfo(name="active", data_type="bool", sql_type="INTEGER"),
            new_value=after.columns["active"],
            table_before=before,
            table_after=after,
        )

        statements = split_statements(SQLGenerator(Dialect.SQLITE).generate_change_sql(change))

        assert statements[0].startswith('CREATE TABLE "users__rebuild"')
        assert statements[1] == 'INSERT INTO "users__rebuild" ("id") SELECT "id" FROM "users"'
        assert statements[2:4] == ['DROP TABLE "users"', 'ALTER TABLE "users__rebuild" RENAME TO "users"']

    def test_later_changes_on_rebuilt_table_are_skipped(self):
        registry = ModelRegistry(Dialect.SQLITE)
        before = registry.create_snapshot(Order)
        columns = {n: c for n, c in before.columns.items() if n != "user_id"}
        after = replace(before, columns=columns, indexes={}, constraints={})
        changes = [
            MigrationChange(
                ChangeType.DROP_COLUMN,
                "orders",
                column_name="user_id",
                old_value=before.columns["user_id"],
                description="Drop column orders.user_id",
                table_before=before,
                table_after=after,
            ),
            MigrationChange(
                ChangeType.DROP_COLUMN,
                "orders",
                column_name="note",
                old_value=NOTE,
                description="Drop column orders.note",
                table_before=before,
                table_after=after,
            ),
        ]

        script = SQLGenerator(Dialect.SQLITE).generate_up_script(changes)
        statements = split_statements(script)

        assert "-- Drop column orders.note: applied by table rebuild" in script
        assert statements[1] == (
            'INSERT INTO "orders__rebuild" ("id", "total", "note") SELECT "id", "total", "note" FROM "orders"'
        )
        assert not any("DROP COLUMN" in s for s in statements)

    def test_invert_swaps_table_definitions(self):
        registry = ModelRegistry(Dialect.SQLITE)
        before = registry.create_snapshot(User)
        after = registry.create_snapshot(Order)
        change = MigrationChange(
            ChangeType.ADD_COLUMN, "orders", column_name="note", new_value=NOTE, table_before=before, table_after=after
        )

        inverse = invert_change(change)

        assert inverse.table_before is after
        assert inverse.table_after is before


class TestScripts:
    """Up and down scripts for whole plans."""

    def test_down_script_reverses_up_script(self):
        generator = SQLGenerator(Dialect.SQLITE)
        changes = [
            create_table_change(User, Dialect.SQLITE),
            MigrationChange(ChangeType.ADD_COLUMN, "orders", column_name="note", new_value=NOTE),
        ]
        plan = MigrationPlan(changes=changes, checksum="abc")

        sql = generator.generate_migration_sql(plan)

        up = split_statements(sql.up_script)
        down = split_statements(sql.down_script)
        assert up[0].startswith('CREATE TABLE "users"')
        assert up[1] == 'ALTER TABLE "orders" ADD COLUMN "note" VARCHAR(255)'
        assert down == ['ALTER TABLE "orders" DROP COLUMN "note"', 'DROP TABLE IF EXISTS "users"']
        assert "-- Create Tables (1)" in sql.up_script
        assert "-- Drop Columns (1)" in sql.down_script
        assert sql.metadata["checksum"] == "abc"
        assert sql.metadata["change_count"] == 2
        assert sql.warnings == []

    def test_irreversible_down_step_becomes_comment(self):
        old = ColumnInfo(name="note", data_type="string", sql_type="VARCHAR(50)", max_length=50)
        change = MigrationChange(ChangeType.ALTER_COLUMN, "orders", column_name="note", old_value=old, new_value=NOTE)

        script, warnings = SQLGenerator(Dialect.SQLITE).generate_down_script([change])

        assert "-- NOT REVERSIBLE:" in script
        assert split_statements(script) == []
        assert len(warnings) == 1

    def test_empty_plan(self):
        generator = SQLGenerator(Dialect.POSTGRES)

        assert "-- No changes" in generator.generate_up_script([])
        assert split_statements(generator.generate_up_script([])) == []

    def test_invert_change(self):
        change = MigrationChange(ChangeType.DROP_COLUMN, "orders", column_name="note", old_value=NOTE)

        inverse = invert_change(change)

        assert inverse.change_type == ChangeType.ADD_COLUMN
        assert inverse.new_value == NOTE
        assert invert_change(MigrationChange(ChangeType.DROP_COLUMN, "orders", column_name="note")) is None


class TestSplitStatements:
    def test_semicolons_in_literals_and_comments(self):
        script = (
            "-- header; not a statement\n"
            "INSERT INTO t VALUES ('a;b', 'it''s');\n"
            'CREATE TABLE "x;y" (id INTEGER); -- trailing\n'
            "SELECT 1"
        )

        assert split_statements(script) == [
            "INSERT INTO t VALUES ('a;b', 'it''s')",
            'CREATE TABLE "x;y" (id INTEGER)',
            "SELECT 1",
        ]
