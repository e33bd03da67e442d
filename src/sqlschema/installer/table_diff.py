"""In-place alteration of tables whose definition changed.

The desired column set is materialized as a scratch table so that the server
normalizes types, lengths and nullability. Both tables are then read back
through sys.columns and compared column by column, which produces the minimal
ALTER TABLE statements that keep existing rows.
"""

import logging
import re
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Optional

from ..sql import SqlDriver
from .exceptions import UnsupportedAlterError
from .execution import run_query
from .schema_object import SchemaObject
from .schema_object import generate_drop_sql
from .schema_pull import ColumnInfo
from .schema_pull import SchemaPull
from .sql_parser import SchemaObjectType
from .sql_parser import format_name
from .table_columns import ColumnDefinition
from .table_columns import TableDefinition
from .table_columns import parse_table_definition

logger = logging.getLogger(__name__)

SCRATCH_TABLE_PREFIX = "_sqlschema_scratch_"

_COLLATE_RE = re.compile(r"\bCOLLATE\s+(?P<collation>\w+)", re.IGNORECASE)


class DiffType(str, Enum):
    """Type of column difference."""

    ADD = "add"
    DROP = "drop"
    ALTER = "alter"
    REBUILD = "rebuild"


@dataclass
class ColumnDiff:
    """Represents a column change."""

    name: str
    diff_type: DiffType
    definition: Optional[ColumnDefinition] = None
    column: Optional[ColumnInfo] = None
    old_column: Optional[ColumnInfo] = None


@dataclass
class TableDiff:
    """Column changes of one table and the statements that apply them."""

    table: str
    columns: list[ColumnDiff] = field(default_factory=list)
    statements: list[str] = field(default_factory=list)

    def of_type(self, diff_type: DiffType) -> list[ColumnDiff]:
        return [c for c in self.columns if c.diff_type == diff_type]

    @property
    def has_changes(self) -> bool:
        return bool(self.columns)

    @property
    def changed_columns(self) -> set[str]:
        """Existing columns that are dropped, retyped or rebuilt, lower-cased.

        Added columns are left out: adding a column never conflicts with the
        objects already bound to the table.
        """
        return {c.name.lower() for c in self.columns if c.diff_type != DiffType.ADD}


def _quote(identifier: str) -> str:
    return "[" + identifier.replace("]", "]]") + "]"


def scratch_table_name(table: str) -> str:
    schema, name = table.split(".", 1)
    return f"{schema}.{SCRATCH_TABLE_PREFIX}{name}"


class TableAlterPlanner:
    """Plan ALTER TABLE statements for a changed CREATE TABLE statement."""

    def __init__(self, sql_driver: SqlDriver):
        """Initialize the planner.

        Args:
            sql_driver: SQL driver for database access
        """
        self.sql_driver = sql_driver
        self.schema_pull = SchemaPull(sql_driver)

    def check_alterable(self, table_object: SchemaObject) -> TableDefinition:
        """Parse the new definition, rejecting tables with inline constraints.

        Raises:
            UnsupportedAlterError: If any column or table-level constraint is inline
        """
        target = parse_table_definition(table_object.sql)
        if target.has_inline_constraints:
            raise UnsupportedAlterError(
                f"Table {target.name} has inline constraints and cannot be altered in place; "
                "declare constraints as separate ALTER TABLE ... ADD CONSTRAINT statements"
            )
        return target

    async def plan(self, table_object: SchemaObject) -> TableDiff:
        """Compare the live table with its new definition.

        Args:
            table_object: The changed Table object

        Returns:
            TableDiff with the ALTER TABLE statements to run, possibly none

        Raises:
            UnsupportedAlterError: If the definition carries inline constraints,
                the table is missing from the database, or a NOT NULL column
                would be added to a table that has rows
        """
        target = self.check_alterable(table_object)
        scratch = scratch_table_name(target.declared_name)
        drop_scratch = generate_drop_sql(scratch, SchemaObjectType.TABLE)
        columns_sql = ",\n\t".join(c.definition for c in target.columns)

        await run_query(self.sql_driver, drop_scratch)
        await run_query(self.sql_driver, f"CREATE TABLE {format_name(scratch)} (\n\t{columns_sql}\n)")
        live = await self.schema_pull.pull_columns(target.declared_name)
        desired = await self.schema_pull.pull_columns(scratch)
        await run_query(self.sql_driver, drop_scratch)

        if not live:
            raise UnsupportedAlterError(f"Table {target.name} is registered but not present in the database")

        diff = self.diff(target, live, desired)
        await self.check_added_columns(target, diff)
        diff.statements = self.generate_alter_sql(target, diff)
        logger.debug(f"Planned {len(diff.statements)} statements to alter {target.name}")
        return diff

    def diff(self, target: TableDefinition, live: list[ColumnInfo], desired: list[ColumnInfo]) -> TableDiff:
        """Compare live columns with the desired ones.

        Args:
            target: Parsed new table definition
            live: Columns of the installed table
            desired: Columns of the new definition as the server reports them

        Returns:
            TableDiff without statements
        """
        diff = TableDiff(table=target.name)
        live_map = {c.name.lower(): c for c in live}
        desired_map = {c.name.lower(): c for c in desired}

        for column in live:
            if column.name.lower() not in desired_map:
                diff.columns.append(ColumnDiff(name=column.name, diff_type=DiffType.DROP, old_column=column))

        for column in desired:
            definition = target.column(column.name)
            old = live_map.get(column.name.lower())
            if old is None:
                diff_type = DiffType.ADD
            elif self._needs_rebuild(old, column):
                diff_type = DiffType.REBUILD
            elif self._columns_differ(old, column):
                diff_type = DiffType.ALTER
            else:
                continue
            diff.columns.append(
                ColumnDiff(name=column.name, diff_type=diff_type, definition=definition, column=column, old_column=old)
            )

        return diff

    async def check_added_columns(self, target: TableDefinition, diff: TableDiff) -> None:
        """Reject NOT NULL columns that existing rows could not be given a value for.

        Identity, computed and rowversion columns are filled in by the server.
        Defaults cannot be declared inline, so every other added NOT NULL
        column fails on a table that already has rows.

        Raises:
            UnsupportedAlterError: If such a column is added to a table with rows
        """
        required = [
            change.name
            for change in diff.columns
            if change.diff_type in (DiffType.ADD, DiffType.REBUILD)
            and not change.definition.is_nullable
            and change.definition.is_settable
        ]
        if not required:
            return

        query = f"SELECT CASE WHEN EXISTS (SELECT 1 FROM {format_name(target.declared_name)}) THEN 1 ELSE 0 END AS has_rows"
        rows = await run_query(self.sql_driver, query)
        if rows and rows[0].cells["has_rows"]:
            columns = ", ".join(required)
            raise UnsupportedAlterError(
                f"Cannot add NOT NULL column(s) {columns} to {target.name} because the table already has rows; "
                "declare the column NULL, or add it NULL, populate it, then make it NOT NULL"
            )

    def _needs_rebuild(self, source: ColumnInfo, target: ColumnInfo) -> bool:
        """Identity, computed and rowversion columns cannot be changed by ALTER COLUMN."""
        return (
            source.is_identity != target.is_identity
            or source.is_computed != target.is_computed
            or source.is_rowversion != target.is_rowversion
            or (target.is_identity and (
                source.identity_seed != target.identity_seed
                or source.identity_increment != target.identity_increment
            ))
            or (target.is_computed and source.computed_definition != target.computed_definition)
        )

    def _columns_differ(self, source: ColumnInfo, target: ColumnInfo) -> bool:
        return (
            source.data_type != target.data_type
            or source.max_length != target.max_length
            or source.precision != target.precision
            or source.scale != target.scale
            or source.is_nullable != target.is_nullable
            or source.collation_name != target.collation_name
        )

    def generate_alter_sql(self, target: TableDefinition, diff: TableDiff) -> list[str]:
        """Generate statements in an order the server accepts.

        Removed and rebuilt columns are dropped first, which frees the single
        identity or rowversion slot a table has, then columns are retyped, then
        new and rebuilt columns are added.
        """
        table = format_name(target.declared_name)
        statements = []

        for change in diff.of_type(DiffType.DROP) + diff.of_type(DiffType.REBUILD):
            statements.append(f"ALTER TABLE {table} DROP COLUMN {_quote(change.name)}")

        for change in diff.of_type(DiffType.ALTER):
            statements.append(f"ALTER TABLE {table} ALTER COLUMN {self._alter_column_sql(change)}")

        for change in diff.columns:
            if change.diff_type in (DiffType.ADD, DiffType.REBUILD):
                statements.append(f"ALTER TABLE {table} ADD {change.definition.definition}")

        return statements

    def _alter_column_sql(self, change: ColumnDiff) -> str:
        definition = change.definition
        sql = f"{_quote(change.name)} {definition.type_sql}"
        collation = _COLLATE_RE.search(definition.definition)
        if collation:
            sql += f" COLLATE {collation.group('collation')}"
        return sql + (" NULL" if change.column.is_nullable else " NOT NULL")
