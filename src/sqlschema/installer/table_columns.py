"""Column-level view of a CREATE TABLE statement."""

import re
from dataclasses import dataclass
from dataclasses import field
from typing import Optional

from .exceptions import ParseError
from .sql_parser import IDENTIFIER
from .sql_parser import IDENTIFIER_PART
from .sql_parser import canonicalize
from .sql_parser import qualify
from .sql_parser import split_name
from .sql_parser import split_top_level
from .sql_parser import strip_comments
from .sql_parser import unquote

_CREATE_TABLE_RE = re.compile(rf"\A\s*CREATE\s+TABLE\s+(?P<name>{IDENTIFIER})\s*\(", re.IGNORECASE)
_COLUMN_RE = re.compile(
    rf"\A\s*(?P<name>{IDENTIFIER_PART})\s*"
    rf"(?:(?P<computed>AS\b)|(?P<type>{IDENTIFIER}(?:\s*\([^()]*\))?))",
    re.IGNORECASE,
)
_TABLE_CONSTRAINT_RE = re.compile(
    r"\A\s*(?:CONSTRAINT|PRIMARY\s+KEY|UNIQUE|CHECK|FOREIGN\s+KEY|INDEX|PERIOD\s+FOR)\b",
    re.IGNORECASE,
)
_INLINE_CONSTRAINT_RE = re.compile(
    r"\b(?:CONSTRAINT|PRIMARY\s+KEY|UNIQUE|CHECK|DEFAULT|REFERENCES|FOREIGN\s+KEY|INDEX)\b",
    re.IGNORECASE,
)
_PRIMARY_KEY_COLUMNS_RE = re.compile(
    r"\bPRIMARY\s+KEY\s*(?:CLUSTERED|NONCLUSTERED)?\s*(?P<columns>\(.*?\))",
    re.IGNORECASE | re.DOTALL,
)

ROWVERSION_TYPES = ("rowversion", "timestamp")


@dataclass
class ColumnDefinition:
    """One column as written in a CREATE TABLE statement."""

    name: str
    definition: str
    type_sql: Optional[str] = None
    is_nullable: bool = True
    is_identity: bool = False
    is_computed: bool = False
    is_rowversion: bool = False
    is_primary_key: bool = False
    has_inline_constraint: bool = False

    @property
    def type_name(self) -> Optional[str]:
        """Bare type name without length/precision, e.g. ``varchar``."""
        if not self.type_sql:
            return None
        return split_name(self.type_sql.split("(")[0])[-1].lower()

    @property
    def is_settable(self) -> bool:
        """True when INSERT/UPDATE statements may assign this column."""
        return not (self.is_identity or self.is_computed or self.is_rowversion)


@dataclass
class TableDefinition:
    """Columns and table-level constraints of a CREATE TABLE statement."""

    name: str
    display_name: str
    declared_name: str
    columns: list[ColumnDefinition] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)

    @property
    def has_inline_constraints(self) -> bool:
        return bool(self.constraints) or any(c.has_inline_constraint for c in self.columns)

    @property
    def primary_key_columns(self) -> list[str]:
        for constraint in self.constraints:
            match = _PRIMARY_KEY_COLUMNS_RE.search(constraint)
            if match:
                return parse_column_list(match.group("columns"))
        return [c.name for c in self.columns if c.is_primary_key]

    @property
    def identity_column(self) -> Optional[ColumnDefinition]:
        return next((c for c in self.columns if c.is_identity), None)

    def column(self, name: str) -> Optional[ColumnDefinition]:
        lowered = name.lower()
        return next((c for c in self.columns if c.name.lower() == lowered), None)


def parse_column_list(text: str) -> list[str]:
    """Parse ``([ID] ASC, Name)`` into bare column names."""
    items, _ = split_top_level(text.strip())
    columns = []
    for item in items:
        match = re.match(IDENTIFIER, item.strip())
        if match:
            columns.append(unquote(match.group(0)))
    return columns


def parse_primary_key_columns(sql: str) -> list[str]:
    """Key columns of an ``ALTER TABLE ... ADD CONSTRAINT ... PRIMARY KEY`` statement."""
    match = _PRIMARY_KEY_COLUMNS_RE.search(strip_comments(sql, blank_strings=True))
    return parse_column_list(match.group("columns")) if match else []


def _parse_column(item: str) -> ColumnDefinition:
    match = _COLUMN_RE.match(item)
    if not match:
        raise ParseError(f"Cannot parse column definition: {item!r}", sql=item)

    name = unquote(match.group("name"))
    if match.group("computed"):
        return ColumnDefinition(name=name, definition=item, is_computed=True)

    type_sql = match.group("type")
    rest = item[match.end():]
    type_name = split_name(type_sql.split("(")[0])[-1].lower()
    is_rowversion = type_name in ROWVERSION_TYPES
    is_identity = bool(re.search(r"\bIDENTITY\b", rest, re.IGNORECASE))
    is_primary_key = bool(re.search(r"\bPRIMARY\s+KEY\b", rest, re.IGNORECASE))
    not_null = bool(re.search(r"\bNOT\s+NULL\b", rest, re.IGNORECASE))

    return ColumnDefinition(
        name=name,
        definition=item,
        type_sql=type_sql,
        is_nullable=not (not_null or is_identity or is_primary_key or is_rowversion),
        is_identity=is_identity,
        is_rowversion=is_rowversion,
        is_primary_key=is_primary_key,
        has_inline_constraint=bool(_INLINE_CONSTRAINT_RE.search(rest)),
    )


def parse_table_definition(sql: str) -> TableDefinition:
    """Split a CREATE TABLE statement into column definitions.

    Args:
        sql: CREATE TABLE statement

    Returns:
        TableDefinition with columns in declaration order

    Raises:
        ParseError: If the statement is not a CREATE TABLE
    """
    body = strip_comments(sql)
    match = _CREATE_TABLE_RE.match(body)
    if not match:
        raise ParseError("Not a CREATE TABLE statement", sql=sql)

    items, _ = split_top_level(body, match.end() - 1)
    definition = TableDefinition(
        name=canonicalize(match.group("name")),
        display_name=split_name(match.group("name"))[-1],
        declared_name=qualify(match.group("name")),
    )
    for item in items:
        if _TABLE_CONSTRAINT_RE.match(item):
            definition.constraints.append(item)
        else:
            definition.columns.append(_parse_column(item))
    return definition
