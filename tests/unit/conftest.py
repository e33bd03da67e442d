"""In-memory SQL Server stand-in for installer tests.

The fake understands exactly the statements the installer issues: DDL from the
schema under test, generated DROP/REVOKE statements, column-level ALTER TABLE
statements, sys.* existence and column queries, and the registry table. It
enforces the ordering rules the real server enforces (objects must exist before
objects that reference them, schema-bound and foreign key dependents block
drops, constraints and indexes on a column block changes to it) so that an
installer bug shows up as an error rather than a silently wrong catalog.

Names in generated statements and OBJECT_ID lookups must match the declared
case exactly, as they would under a case-sensitive database collation.
"""

import re
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Optional

import pytest

from sqlschema.installer.registry import REGISTRY_TABLE_NAME
from sqlschema.installer.schema_object import generate_drop_sql
from sqlschema.installer.schema_object import parse_permission_name
from sqlschema.installer.schema_object import split_owned_name
from sqlschema.installer.sql_parser import CONSTRAINT_TYPES
from sqlschema.installer.sql_parser import SchemaObjectType
from sqlschema.installer.sql_parser import format_name
from sqlschema.installer.sql_parser import parse_statement
from sqlschema.installer.sql_parser import split_name
from sqlschema.installer.sql_parser import unquote
from sqlschema.installer.table_columns import ColumnDefinition
from sqlschema.installer.table_columns import parse_table_definition
from sqlschema.installer.table_diff import SCRATCH_TABLE_PREFIX
from sqlschema.sql import RowResult

_TYPE_CODES = {
    "U": SchemaObjectType.TABLE,
    "V": SchemaObjectType.VIEW,
    "P": SchemaObjectType.PROCEDURE,
    "FN": SchemaObjectType.FUNCTION,
    "TR": SchemaObjectType.TRIGGER,
    "PK": SchemaObjectType.PRIMARY_KEY,
    "UQ": SchemaObjectType.UNIQUE_CONSTRAINT,
    "F": SchemaObjectType.FOREIGN_KEY,
    "C": SchemaObjectType.CHECK_CONSTRAINT,
    "D": SchemaObjectType.DEFAULT_CONSTRAINT,
}
_PERMISSION_CLASS_IDS = {"object": 1, "schema": 3, "type": 6}

_COLUMN_ALTER_RE = re.compile(
    r"\AALTER TABLE (?P<table>\[[^\]]+\]\.\[[^\]]+\]) (?P<action>ADD|DROP COLUMN|ALTER COLUMN) (?P<rest>.*)\Z",
    re.DOTALL,
)
_HAS_ROWS_RE = re.compile(r"\bFROM (?P<table>\[[^\]]+\]\.\[[^\]]+\])\)")
_TYPE_CODE_RE = re.compile(r"type IN \('(?P<code>\w+)'")
_TYPE_ARGS_RE = re.compile(r"\((?P<args>[^()]*)\)")
_IDENTITY_RE = re.compile(r"IDENTITY\s*\(\s*(?P<seed>-?\d+)\s*,\s*(?P<increment>-?\d+)\s*\)", re.IGNORECASE)
_COLLATE_RE = re.compile(r"\bCOLLATE\s+(?P<collation>\w+)", re.IGNORECASE)
_COMPUTED_RE = re.compile(r"\bAS\b(?P<definition>.*)\Z", re.IGNORECASE | re.DOTALL)
_XML_INDEX_RE = re.compile(r"\b(?:XML|SPATIAL)\s+INDEX\b", re.IGNORECASE)


class FakeDatabaseError(Exception):
    """Raised where SQL Server would reject a statement."""


def canonical(formatted: str) -> str:
    return ".".join(part.lower() for part in split_name(formatted))


def declared(formatted: str) -> str:
    return ".".join(split_name(formatted))


def uses_column(sql: str, column: str) -> bool:
    """True if the text names the column or selects ``*``."""
    if re.search(r"(?:\bSELECT\s+|\.)\*", sql, re.IGNORECASE):
        return True
    return re.search(rf"(?<![\w@#$]){re.escape(column)}(?![\w@#$])", sql, re.IGNORECASE) is not None


@dataclass
class FakeObject:
    name: str
    object_type: SchemaObjectType
    dependencies: frozenset
    declared_name: str = ""
    sql: str = ""
    schema_bound: bool = False
    owner: Optional[str] = None


@dataclass
class FakeSqlServer:
    """Catalog state plus a log of every statement received."""

    objects: dict = field(default_factory=dict)
    columns: dict = field(default_factory=dict)
    permissions: set = field(default_factory=set)
    registry_rows: dict = field(default_factory=dict)
    registry_created: bool = False
    known_names: set = field(default_factory=set)
    # Canonical names of tables that hold rows
    populated: set = field(default_factory=set)
    drops: dict = field(default_factory=dict)
    executed: list = field(default_factory=list)
    ddl: list = field(default_factory=list)
    fail_on: Optional[str] = None

    async def execute_query(self, query: str, params: Optional[list[Any]] = None) -> Optional[list[RowResult]]:
        text = query.strip()
        params = list(params or [])
        self.executed.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise FakeDatabaseError(f"Simulated failure executing: {text[:60]}")

        if REGISTRY_TABLE_NAME in text:
            return self._registry(text, params)
        if "sp_getapplock" in text:
            return [RowResult(cells={"lock_result": 0})]
        if text.startswith("SELECT COUNT(*) AS object_count"):
            return [RowResult(cells={"object_count": int(self._exists(text, params))})]
        if text.startswith("SELECT CASE WHEN EXISTS"):
            table = self._table(_HAS_ROWS_RE.search(text).group("table"))
            return [RowResult(cells={"has_rows": int(table in self.populated)})]
        if "FROM sys.columns c" in text:
            table = self._find(declared(params[0]), SchemaObjectType.TABLE)
            return self._column_rows(table.name) if table else []
        self._ddl(text)
        return None

    # =========================================================================
    # Catalog queries
    # =========================================================================

    def has(self, name: str, object_type: SchemaObjectType) -> bool:
        return (name, object_type) in self.objects

    def _has_name(self, name: str) -> bool:
        return any(key[0] == name for key in self.objects)

    def _find(self, declared_name: str, object_type: SchemaObjectType) -> Optional[FakeObject]:
        """Look an object up by its exact declared name."""
        fake_object = self.objects.get((declared_name.lower(), object_type))
        if fake_object is None or fake_object.declared_name != declared_name:
            return None
        return fake_object

    def _table(self, formatted: str) -> str:
        table = self._find(declared(formatted), SchemaObjectType.TABLE)
        if table is None:
            raise FakeDatabaseError(f"Invalid object name '{declared(formatted)}'")
        return table.name

    def _exists(self, text: str, params: list) -> bool:
        if "FROM sys.types" in text:
            return self._find(f"{params[1]}.{params[0]}", SchemaObjectType.USER_TYPE) is not None
        if "is_primary_key = 1" in text:
            table = canonical(params[0])
            return any(o.owner == table and o.object_type == SchemaObjectType.PRIMARY_KEY for o in self.objects.values())
        if "FROM sys.identity_columns" in text:
            return any(c.is_identity for c in self.columns.get(canonical(params[0]), []))
        if "FROM sys.indexes" in text:
            return self._find(f"{declared(params[0])}.{params[1]}", SchemaObjectType.INDEX) is not None
        if "FROM sys.database_permissions" in text:
            return tuple(params) in self.permissions

        object_type = _TYPE_CODES[_TYPE_CODE_RE.search(text).group("code")]
        if "parent_object_id" in text:
            return self._find(f"{declared(params[0])}.{params[1]}", object_type) is not None

        if canonical(params[0]) == f"dbo.{REGISTRY_TABLE_NAME}":
            return self.registry_created
        return self._find(declared(params[0]), object_type) is not None

    def _column_rows(self, table: str) -> list[RowResult]:
        rows = []
        for column in self.columns.get(table, []):
            rows.append(RowResult(cells=self._column_cells(column)))
        return rows

    def _column_cells(self, column: ColumnDefinition) -> dict:
        data_type = column.type_name
        max_length = precision = scale = None
        args_match = _TYPE_ARGS_RE.search(column.type_sql or "")
        args = [a.strip() for a in args_match.group("args").split(",")] if args_match else []
        if data_type in ("varchar", "nvarchar", "char", "nchar", "varbinary", "binary"):
            if args and args[0].lower() == "max":
                max_length = -1
            else:
                max_length = int(args[0]) if args else 1
        elif data_type in ("decimal", "numeric"):
            precision = int(args[0]) if args else 18
            scale = int(args[1]) if len(args) > 1 else 0

        identity = _IDENTITY_RE.search(column.definition) if column.is_identity else None
        collation = _COLLATE_RE.search(column.definition)
        computed = _COMPUTED_RE.search(column.definition) if column.is_computed else None
        return {
            "column_name": column.name,
            "data_type": data_type,
            "max_length": max_length,
            "precision": precision,
            "scale": scale,
            "is_nullable": column.is_nullable,
            "is_identity": column.is_identity,
            "is_computed": column.is_computed,
            "collation_name": collation.group("collation") if collation else None,
            "identity_seed": (int(identity.group("seed")) if identity else 1) if column.is_identity else None,
            "identity_increment": (int(identity.group("increment")) if identity else 1) if column.is_identity else None,
            "computed_definition": computed.group("definition").strip() if computed else None,
        }

    # =========================================================================
    # Registry table
    # =========================================================================

    def _registry(self, text: str, params: list) -> Optional[list[RowResult]]:
        if text.startswith("IF OBJECT_ID"):
            self.registry_created = True
            return None
        if not self.registry_created:
            raise FakeDatabaseError(f"Invalid object name '{REGISTRY_TABLE_NAME}'")

        if text.startswith("SELECT SchemaGroup"):
            rows = [row for key, row in self.registry_rows.items() if key[0] == params[0]]
            rows.sort(key=lambda row: (row["OrderIndex"], row["ObjectName"]))
            return [RowResult(cells=dict(row)) for row in rows]

        if text.startswith("SELECT COUNT(*) AS entry_count"):
            row = self.registry_rows.get(tuple(params[:3]))
            return [RowResult(cells={"entry_count": int(row is not None and row["Signature"] == params[3])})]

        if text.startswith("INSERT INTO"):
            key = tuple(params[:3])
            if key in self.registry_rows:
                raise FakeDatabaseError(f"Violation of PRIMARY KEY constraint: duplicate key {key}")
            self.registry_rows[key] = {
                "SchemaGroup": params[0],
                "ObjectName": params[1],
                "ObjectType": params[2],
                "DeclaredName": params[3],
                "Signature": params[4],
                "OrderIndex": params[5],
            }
            return None

        if text.startswith("UPDATE"):
            key = tuple(params[3:6])
            if key not in self.registry_rows:
                raise FakeDatabaseError(f"Registry row {key} does not exist")
            self.registry_rows[key]["Signature"] = params[0]
            self.registry_rows[key]["OrderIndex"] = params[1]
            self.registry_rows[key]["DeclaredName"] = params[2]
            return None

        if text.startswith("DELETE FROM") and "ObjectName = ?" in text:
            self.registry_rows.pop(tuple(params[:3]), None)
            return None

        if text.startswith("DELETE FROM"):
            for key in [k for k in self.registry_rows if k[0] == params[0]]:
                del self.registry_rows[key]
            return None

        raise FakeDatabaseError(f"Unexpected registry statement: {text}")

    def registry_entries(self, schema_group: str) -> dict:
        return {
            (row["ObjectName"], SchemaObjectType(row["ObjectType"])): row
            for key, row in self.registry_rows.items()
            if key[0] == schema_group
        }

    # =========================================================================
    # DDL
    # =========================================================================

    def _ddl(self, text: str) -> None:
        if text.startswith(("DROP ", "REVOKE ")) or " DROP CONSTRAINT IF EXISTS " in text:
            key = self.drops.get(text)
            if key is not None:
                self._drop(key)
                self._log(text, key[0])
            return

        alter = _COLUMN_ALTER_RE.match(text)
        if alter and not alter.group("rest").upper().startswith("CONSTRAINT"):
            table = self._table(alter.group("table"))
            self._alter_columns(table, alter.group("action"), alter.group("rest"))
            self._log(text, table)
            return

        self._create(text)

    def _log(self, text: str, name: str) -> None:
        if SCRATCH_TABLE_PREFIX not in name:
            self.ddl.append(text)

    def _create(self, text: str) -> None:
        parsed = parse_statement(text)
        if parsed.object_type == SchemaObjectType.AUTOPROC:
            raise FakeDatabaseError("The batch contains no statements")
        key = (parsed.name, parsed.object_type)
        if self._has_name(parsed.name):
            raise FakeDatabaseError(f"There is already an object named '{parsed.name}' in the database")

        owner = None
        if parsed.object_type == SchemaObjectType.INDEX or parsed.object_type in CONSTRAINT_TYPES:
            owner = split_owned_name(parsed.name)[0]
        elif parsed.object_type == SchemaObjectType.TRIGGER:
            owner = next((d for d in parsed.dependencies if d in self.columns), "")
        if owner is not None and not self._has_name(owner):
            raise FakeDatabaseError(f"Cannot find the object '{owner}'")

        if parsed.object_type != SchemaObjectType.PROCEDURE:
            for dependency in parsed.dependencies:
                if dependency in self.known_names and not self._has_name(dependency):
                    raise FakeDatabaseError(f"Invalid object name '{dependency}'")

        self.objects[key] = FakeObject(
            name=parsed.name,
            object_type=parsed.object_type,
            dependencies=parsed.dependencies,
            declared_name=parsed.declared_name,
            sql=text,
            schema_bound=parsed.schema_bound,
            owner=owner,
        )
        self.known_names.add(parsed.name)
        self.drops[generate_drop_sql(parsed.declared_name, parsed.object_type)] = key

        if parsed.object_type == SchemaObjectType.TABLE:
            self.columns[parsed.name] = list(parse_table_definition(text).columns)
        elif parsed.object_type == SchemaObjectType.PERMISSION:
            self.permissions |= self._permission_rows(parsed.declared_name)

        self._log(text, parsed.name)

    def _permission_rows(self, name: str) -> set:
        grant = parse_permission_name(name)
        securable_class = grant["securable_class"]
        securable = grant["securable"] if securable_class == "schema" else format_name(grant["securable"])
        return {
            (_PERMISSION_CLASS_IDS[securable_class], securable, grant["principal"], permission)
            for permission in grant["permissions"]
        }

    def _drop(self, key: tuple) -> None:
        name, object_type = key
        for other in self.objects.values():
            if other.name == name:
                continue
            if other.schema_bound and name in other.dependencies:
                raise FakeDatabaseError(f"Cannot drop '{name}' because it is referenced by schema-bound '{other.name}'")
            if other.object_type == SchemaObjectType.FOREIGN_KEY and other.owner != name:
                referenced_table = name if object_type == SchemaObjectType.TABLE else None
                if object_type in (SchemaObjectType.PRIMARY_KEY, SchemaObjectType.UNIQUE_CONSTRAINT):
                    referenced_table = split_owned_name(name)[0]
                if referenced_table and other.owner != referenced_table and referenced_table in other.dependencies:
                    raise FakeDatabaseError(f"'{name}' is referenced by foreign key '{other.name}'")
            if (
                object_type == SchemaObjectType.PRIMARY_KEY
                and other.object_type == SchemaObjectType.INDEX
                and other.owner == split_owned_name(name)[0]
                and _XML_INDEX_RE.search(other.sql)
            ):
                raise FakeDatabaseError(f"Cannot drop '{name}' because XML index '{other.name}' depends on it")

        self._remove(key)
        if object_type in (SchemaObjectType.TABLE, SchemaObjectType.VIEW):
            for other_key in [k for k, o in self.objects.items() if o.owner == name]:
                self._remove(other_key)
            self.columns.pop(name, None)
            self.populated.discard(name)
        if object_type == SchemaObjectType.INDEX:
            # Dropping a primary XML index drops its secondary XML indexes
            for other_key in [k for k, o in self.objects.items() if o.object_type == object_type and name in o.dependencies]:
                self._remove(other_key)
        for other_key in [k for k, o in self.objects.items() if o.object_type == SchemaObjectType.PERMISSION]:
            if name in self.objects[other_key].dependencies:
                self._remove(other_key)

    def _remove(self, key: tuple) -> None:
        removed = self.objects.pop(key)
        self.drops = {sql: k for sql, k in self.drops.items() if k != key}
        if key[1] == SchemaObjectType.PERMISSION:
            self.permissions -= self._permission_rows(removed.declared_name)

    def _column_dependents(self, table: str, column: str) -> list[FakeObject]:
        dependents = []
        for other in self.objects.values():
            bound = other.owner == table or (other.schema_bound and table in other.dependencies)
            referencing = other.object_type == SchemaObjectType.FOREIGN_KEY and table in other.dependencies
            if (bound or referencing) and uses_column(other.sql, column):
                dependents.append(other)
        return dependents

    def _alter_columns(self, table: str, action: str, rest: str) -> None:
        columns = self.columns[table]

        if action != "ADD":
            column_name = unquote(re.match(r"\s*(\[[^\]]+\]|\S+)", rest).group(1))
            for other in self._column_dependents(table, column_name):
                raise FakeDatabaseError(f"The object '{other.name}' is dependent on column '{column_name}'")

        if action == "DROP COLUMN":
            name = unquote(rest).lower()
            self.columns[table] = [c for c in columns if c.name.lower() != name]
            return

        column = parse_table_definition(f"CREATE TABLE scratch ({rest})").columns[0]
        position = next((i for i, c in enumerate(columns) if c.name.lower() == column.name.lower()), None)
        if action == "ADD":
            if position is not None:
                raise FakeDatabaseError(f"Column '{column.name}' already exists in '{table}'")
            if table in self.populated and not column.is_nullable and column.is_settable:
                raise FakeDatabaseError(f"ALTER TABLE only allows columns to be added that can contain nulls ('{column.name}')")
            columns.append(column)
        else:
            if position is None:
                raise FakeDatabaseError(f"Column '{column.name}' does not exist in '{table}'")
            columns[position] = column


@pytest.fixture
def fake_server():
    """Create an empty fake SQL Server database."""
    return FakeSqlServer()
