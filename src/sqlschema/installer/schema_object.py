"""Typed, fingerprinted representation of a single DDL statement."""

import hashlib
import logging
import re
from typing import Any
from typing import Optional

from ..sql import SqlDriver
from .autoproc import KEYED_VERBS
from .autoproc import procedure_name
from .execution import run_query
from .sql_parser import CONSTRAINT_TYPES
from .sql_parser import AutoProcDirective
from .sql_parser import Markers
from .sql_parser import SchemaObjectType
from .sql_parser import format_name
from .sql_parser import parse_statement

logger = logging.getLogger(__name__)

_OBJECT_TYPE_CODES = {
    SchemaObjectType.TABLE: ("U",),
    SchemaObjectType.VIEW: ("V",),
    SchemaObjectType.PROCEDURE: ("P", "PC"),
    SchemaObjectType.FUNCTION: ("FN", "IF", "TF", "FS", "FT"),
    SchemaObjectType.TRIGGER: ("TR", "TA"),
    SchemaObjectType.PRIMARY_KEY: ("PK",),
    SchemaObjectType.UNIQUE_CONSTRAINT: ("UQ",),
    SchemaObjectType.FOREIGN_KEY: ("F",),
    SchemaObjectType.CHECK_CONSTRAINT: ("C",),
    SchemaObjectType.DEFAULT_CONSTRAINT: ("D",),
}

_DROP_KEYWORDS = {
    SchemaObjectType.TABLE: "TABLE",
    SchemaObjectType.VIEW: "VIEW",
    SchemaObjectType.PROCEDURE: "PROCEDURE",
    SchemaObjectType.FUNCTION: "FUNCTION",
    SchemaObjectType.TRIGGER: "TRIGGER",
    SchemaObjectType.USER_TYPE: "TYPE",
}

# sys.database_permissions.class and the function resolving major_id
_PERMISSION_CLASSES = {
    "object": (1, "OBJECT_ID(?)"),
    "schema": (3, "SCHEMA_ID(?)"),
    "type": (6, "TYPE_ID(?)"),
}

_PERMISSION_NAME_RE = re.compile(
    r"\A(?P<permissions>.+?) on (?:(?P<class>type|schema)::)?(?P<securable>.+?) "
    r"to (?P<principal>.+?)(?P<grant_option> with grant option)?\Z"
)


def compute_signature(sql: str) -> str:
    """Fingerprint DDL text.

    Only line endings and outer whitespace are normalized, so any other edit,
    including a comment, produces a different signature.
    """
    normalized = sql.replace("\r\n", "\n").strip()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def split_owned_name(name: str) -> tuple[str, str]:
    """Split ``schema.table.object`` into the owning table and the object name."""
    table, _, child = name.rpartition(".")
    return table, child


def parse_permission_name(name: str) -> dict[str, Any]:
    """Decompose a permission name into its GRANT parts."""
    match = _PERMISSION_NAME_RE.match(name)
    if not match:
        raise ValueError(f"Invalid permission name: {name!r}")
    return {
        "permissions": [p.strip().upper() for p in match.group("permissions").split(",")],
        "securable_class": match.group("class") or "object",
        "securable": match.group("securable"),
        "principal": match.group("principal"),
        "grant_option": bool(match.group("grant_option")),
    }


def _securable_sql(securable_class: str, securable: str) -> str:
    quoted = format_name(securable)
    if securable_class == "object":
        return quoted
    return f"{securable_class.upper()}::{quoted}"


def generate_drop_sql(name: str, object_type: SchemaObjectType) -> Optional[str]:
    """Generate the statement that removes an object.

    Only the declared name and type are needed, so registry entries whose
    source text is no longer available can still be dropped. AutoProc
    directives have nothing to drop and return None; their procedures are
    separate objects.
    """
    if object_type == SchemaObjectType.AUTOPROC:
        return None

    if object_type in _DROP_KEYWORDS:
        return f"DROP {_DROP_KEYWORDS[object_type]} IF EXISTS {format_name(name)}"

    if object_type == SchemaObjectType.INDEX:
        table, index = split_owned_name(name)
        return f"DROP INDEX IF EXISTS {format_name(index)} ON {format_name(table)}"

    if object_type in CONSTRAINT_TYPES:
        table, constraint = split_owned_name(name)
        return f"ALTER TABLE {format_name(table)} DROP CONSTRAINT IF EXISTS {format_name(constraint)}"

    if object_type == SchemaObjectType.PERMISSION:
        grant = parse_permission_name(name)
        sql = (
            f"REVOKE {', '.join(grant['permissions'])} "
            f"ON {_securable_sql(grant['securable_class'], grant['securable'])} "
            f"FROM {format_name(grant['principal'])}"
        )
        if grant["grant_option"]:
            sql += " CASCADE"
        return sql

    raise ValueError(f"Unsupported object type: {object_type}")


async def _count(sql_driver: SqlDriver, query: str, params: list[Any]) -> int:
    rows = await run_query(sql_driver, query, params)
    if not rows:
        return 0
    return int(rows[0].cells["object_count"] or 0)


async def verify_object(sql_driver: SqlDriver, name: str, object_type: SchemaObjectType) -> bool:
    """Check that an object exists in the database, independent of the registry.

    Args:
        sql_driver: SQL driver for database access
        name: Qualified object name with its declared case
        object_type: Type of the object

    Returns:
        True if the object is present
    """
    if object_type == SchemaObjectType.AUTOPROC:
        raise ValueError("AutoProc directives are verified through their directive, not by name")

    if object_type == SchemaObjectType.USER_TYPE:
        schema, type_name = name.split(".", 1)
        query = (
            "SELECT COUNT(*) AS object_count FROM sys.types "
            "WHERE is_user_defined = 1 AND name = ? AND schema_id = SCHEMA_ID(?)"
        )
        return await _count(sql_driver, query, [type_name, schema]) > 0

    if object_type == SchemaObjectType.INDEX:
        table, index = split_owned_name(name)
        query = "SELECT COUNT(*) AS object_count FROM sys.indexes WHERE object_id = OBJECT_ID(?) AND name = ?"
        return await _count(sql_driver, query, [format_name(table), index]) > 0

    if object_type in CONSTRAINT_TYPES:
        table, constraint = split_owned_name(name)
        codes = ", ".join(f"'{code}'" for code in _OBJECT_TYPE_CODES[object_type])
        query = (
            "SELECT COUNT(*) AS object_count FROM sys.objects "
            f"WHERE parent_object_id = OBJECT_ID(?) AND name = ? AND type IN ({codes})"
        )
        return await _count(sql_driver, query, [format_name(table), constraint]) > 0

    if object_type == SchemaObjectType.PERMISSION:
        grant = parse_permission_name(name)
        class_id, major_id = _PERMISSION_CLASSES[grant["securable_class"]]
        securable = grant["securable"] if grant["securable_class"] == "schema" else format_name(grant["securable"])
        query = (
            "SELECT COUNT(*) AS object_count FROM sys.database_permissions "
            f"WHERE class = ? AND major_id = {major_id} "
            "AND grantee_principal_id = DATABASE_PRINCIPAL_ID(?) "
            "AND permission_name = ? AND state IN ('G', 'W')"
        )
        for permission in grant["permissions"]:
            params = [class_id, securable, grant["principal"], permission]
            if await _count(sql_driver, query, params) == 0:
                return False
        return True

    codes = ", ".join(f"'{code}'" for code in _OBJECT_TYPE_CODES[object_type])
    query = f"SELECT COUNT(*) AS object_count FROM sys.objects WHERE object_id = OBJECT_ID(?) AND type IN ({codes})"
    return await _count(sql_driver, query, [format_name(name)]) > 0


async def _has_row_key(sql_driver: SqlDriver, table: str) -> bool:
    params = [format_name(table)]
    query = "SELECT COUNT(*) AS object_count FROM sys.indexes WHERE object_id = OBJECT_ID(?) AND is_primary_key = 1"
    if await _count(sql_driver, query, params) > 0:
        return True
    query = "SELECT COUNT(*) AS object_count FROM sys.identity_columns WHERE object_id = OBJECT_ID(?)"
    return await _count(sql_driver, query, params) > 0


async def verify_autoproc(sql_driver: SqlDriver, directive: AutoProcDirective) -> bool:
    """Check that the table and every procedure an AUTOPROC directive generates exist.

    Keyed procedures are expected only when the table has a primary key or an
    identity column, since they are not generated otherwise.
    """
    table = directive.declared_table
    if not await verify_object(sql_driver, table, SchemaObjectType.TABLE):
        return False

    keyed = await _has_row_key(sql_driver, table)
    schema, table_name = table.split(".", 1)
    for verb in directive.verbs:
        if verb in KEYED_VERBS and not keyed:
            continue
        procedure = f"{schema}.{procedure_name(verb, table_name)}"
        if not await verify_object(sql_driver, procedure, SchemaObjectType.PROCEDURE):
            logger.debug(f"AUTOPROC procedure {procedure} is missing")
            return False
    return True


class SchemaObject:
    """One named SQL entity built from its DDL text.

    Instances are immutable: the type, names, dependencies and signature
    are derived once from ``sql`` when the object is constructed.

    Args:
        sql: The DDL statement
        generated: True for procedures produced by AUTOPROC expansion
        source: Name of the object whose directive generated this one; it
            becomes a dependency so that a changed directive recreates it

    Raises:
        ParseError: If the statement cannot be classified
    """

    def __init__(self, sql: str, generated: bool = False, source: Optional[str] = None):
        parsed = parse_statement(sql)
        self._sql = sql
        self._object_type = parsed.object_type
        self._name = parsed.name
        self._declared_name = parsed.declared_name
        self._dependencies = parsed.dependencies if source is None else parsed.dependencies | {source}
        self._markers = parsed.markers
        self._schema_bound = parsed.schema_bound
        self._signature = compute_signature(sql)
        self._generated = generated

    @property
    def sql(self) -> str:
        return self._sql

    @property
    def name(self) -> str:
        return self._name

    @property
    def declared_name(self) -> str:
        """Qualified name as declared, used in generated SQL."""
        return self._declared_name

    @property
    def object_type(self) -> SchemaObjectType:
        return self._object_type

    @property
    def signature(self) -> str:
        return self._signature

    @property
    def dependencies(self) -> frozenset[str]:
        return self._dependencies

    @property
    def markers(self) -> Markers:
        return self._markers

    @property
    def schema_bound(self) -> bool:
        return self._schema_bound

    @property
    def generated(self) -> bool:
        """True for procedures produced by AUTOPROC expansion."""
        return self._generated

    @property
    def key(self) -> tuple[str, SchemaObjectType]:
        """Identity of the object within a schema group."""
        return (self._name, self._object_type)

    @property
    def owner(self) -> Optional[str]:
        """Owning table of an index or constraint."""
        if self._object_type == SchemaObjectType.INDEX or self._object_type in CONSTRAINT_TYPES:
            return split_owned_name(self._name)[0]
        return None

    @property
    def drop_sql(self) -> Optional[str]:
        return generate_drop_sql(self._declared_name, self._object_type)

    async def verify(self, sql_driver: SqlDriver) -> bool:
        """Check that the object exists in the live database."""
        if self._object_type == SchemaObjectType.AUTOPROC:
            return await verify_autoproc(sql_driver, self._markers.autoproc)
        return await verify_object(sql_driver, self._declared_name, self._object_type)

    def __repr__(self) -> str:
        return f"SchemaObject({self._object_type.value} {self._name})"
