"""Classification of T-SQL DDL statements.

Each statement is matched against an ordered table of rules. The first rule
whose clause shape matches decides the object type and how the canonical name
is extracted. References to other objects are then collected by scanning for
identifiers that follow reference-introducing keywords.

This is deliberately not a SQL grammar: only the DDL shapes listed in
``PARSE_RULES`` are recognized.
"""

import logging
import re
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Callable
from typing import Iterable
from typing import Optional

from .exceptions import ParseError

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "dbo"

IDENTIFIER_PART = r'(?:\[(?:[^\]]|\]\])+\]|"(?:[^"]|"")+"|[A-Za-z_@#][\w@#$]*)'
IDENTIFIER = rf"{IDENTIFIER_PART}(?:\s*\.\s*{IDENTIFIER_PART})*"

_PART_RE = re.compile(IDENTIFIER_PART)
_TOKEN_RE = re.compile(
    r"--[^\n]*"
    r"|/\*.*?\*/"
    r"|'(?:[^']|'')*'"
    r"|\[(?:[^\]]|\]\])*\]"
    r'|"(?:[^"]|"")*"',
    re.DOTALL,
)


class SchemaObjectType(str, Enum):
    """Kind of object a DDL statement creates."""

    USER_TYPE = "UserType"
    TABLE = "Table"
    PRIMARY_KEY = "PrimaryKey"
    UNIQUE_CONSTRAINT = "UniqueConstraint"
    FOREIGN_KEY = "ForeignKey"
    CHECK_CONSTRAINT = "CheckConstraint"
    DEFAULT_CONSTRAINT = "DefaultConstraint"
    VIEW = "View"
    FUNCTION = "Function"
    PROCEDURE = "Procedure"
    TRIGGER = "Trigger"
    INDEX = "Index"
    PERMISSION = "Permission"
    # Standalone AUTOPROC directive; it has no database object of its own
    AUTOPROC = "AutoProc"


CONSTRAINT_TYPES = frozenset(
    {
        SchemaObjectType.PRIMARY_KEY,
        SchemaObjectType.UNIQUE_CONSTRAINT,
        SchemaObjectType.FOREIGN_KEY,
        SchemaObjectType.CHECK_CONSTRAINT,
        SchemaObjectType.DEFAULT_CONSTRAINT,
    }
)

AUTOPROC_VERBS = ("select", "insert", "update", "upsert", "delete", "find")


# =============================================================================
# Names
# =============================================================================


def unquote(part: str) -> str:
    """Strip the delimiters from a single identifier part."""
    part = part.strip()
    if part.startswith("[") and part.endswith("]"):
        return part[1:-1].replace("]]", "]")
    if part.startswith('"') and part.endswith('"'):
        return part[1:-1].replace('""', '"')
    return part


def split_name(name: str) -> list[str]:
    """Split a possibly multi-part, possibly delimited name into raw parts."""
    return [unquote(m.group(0)) for m in _PART_RE.finditer(name)]


def qualify(name: str, default_schema: str = DEFAULT_SCHEMA) -> str:
    """Return the ``schema.object`` form of a name with its declared case.

    Delimiters are stripped and unqualified names get the default schema.
    Server and database qualifiers are discarded. This is the form used when
    generating SQL, so the statements work under case-sensitive collations.

    Args:
        name: Name as written in SQL, e.g. ``[Beer]`` or ``dbo."Beer"``
        default_schema: Schema applied to single-part names

    Returns:
        Qualified name, e.g. ``dbo.Beer``
    """
    parts = split_name(name)
    if not parts:
        raise ParseError(f"Invalid object name: {name!r}")
    if len(parts) == 1:
        parts = [default_schema, parts[0]]
    return ".".join(parts[-2:])


def canonicalize(name: str, default_schema: str = DEFAULT_SCHEMA) -> str:
    """Return the canonical ``schema.object`` form of a name.

    Canonical names identify objects and are only ever compared, never put
    into SQL: they are the qualified name with case folded.

    Returns:
        Canonical name, e.g. ``dbo.beer``
    """
    return qualify(name, default_schema).lower()


def owned_name(owner: str, name: str) -> str:
    """Qualified name of an object owned by a table (index, constraint), with declared case."""
    return f"{qualify(owner)}.{split_name(name)[-1]}"


def format_name(name: str) -> str:
    """Quote a qualified name for use in generated SQL."""
    return ".".join("[" + part.replace("]", "]]") + "]" for part in name.split("."))


# =============================================================================
# Text helpers
# =============================================================================


def strip_comments(sql: str, blank_strings: bool = False) -> str:
    """Remove comments, and optionally string literal contents, from SQL text."""

    def replace(match: re.Match) -> str:
        token = match.group(0)
        if token.startswith("--") or token.startswith("/*"):
            return " "
        if blank_strings and token.startswith("'"):
            return "''"
        return token

    return _TOKEN_RE.sub(replace, sql)


def split_top_level(text: str, start: int = 0) -> tuple[list[str], int]:
    """Split the parenthesized list that opens at ``text[start]`` on top-level commas.

    Returns:
        The list items (stripped) and the index just past the closing parenthesis
    """
    if start >= len(text) or text[start] != "(":
        raise ParseError("Expected '(' at start of list", sql=text)

    items: list[str] = []
    depth = 0
    current = start + 1
    i = start
    while i < len(text):
        char = text[i]
        if char in "'[\"":
            closing = "]" if char == "[" else char
            i += 1
            while i < len(text):
                if text[i] == closing:
                    if i + 1 < len(text) and text[i + 1] == closing:
                        i += 2
                        continue
                    break
                i += 1
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                item = text[current:i].strip()
                if item:
                    items.append(item)
                return items, i + 1
        elif char == "," and depth == 1:
            items.append(text[current:i].strip())
            current = i + 1
        i += 1

    raise ParseError("Unbalanced parentheses", sql=text)


# =============================================================================
# Directives
# =============================================================================


@dataclass(frozen=True)
class AutoProcDirective:
    """Parsed ``-- AUTOPROC <verbs> [<table>]`` directive."""

    verbs: tuple[str, ...]
    table: Optional[str] = None
    # Qualified table name with its declared case, for generated SQL
    declared_table: Optional[str] = None


@dataclass(frozen=True)
class Markers:
    """Directive flags found in the leading comments of a statement."""

    autoproc: Optional[AutoProcDirective] = None
    indexed_view: bool = False


_AUTOPROC_RE = re.compile(r"^--\s*AUTOPROC\b(?P<rest>.*)$", re.IGNORECASE)
_INDEXEDVIEW_RE = re.compile(r"^--\s*INDEXEDVIEW\b", re.IGNORECASE)


def _parse_autoproc(rest: str, sql: str) -> AutoProcDirective:
    verbs: list[str] = []
    table = None
    declared_table = None
    rest = rest.split("--", 1)[0]
    for match in re.finditer(IDENTIFIER, rest):
        token = match.group(0)
        word = token.lower()
        if table is not None:
            raise ParseError(f"Unexpected text after AUTOPROC table name: {token!r}", sql=sql)
        if word == "all":
            verbs.extend(v for v in AUTOPROC_VERBS if v not in verbs)
        elif word in AUTOPROC_VERBS and not token.startswith("["):
            if word not in verbs:
                verbs.append(word)
        else:
            declared_table = qualify(token)
            table = declared_table.lower()

    if not verbs:
        raise ParseError("AUTOPROC directive names no procedure verbs", sql=sql)

    return AutoProcDirective(
        verbs=tuple(v for v in AUTOPROC_VERBS if v in verbs),
        table=table,
        declared_table=declared_table,
    )


def parse_markers(sql: str) -> Markers:
    """Read AUTOPROC/INDEXEDVIEW directives from the leading comment lines."""
    autoproc = None
    indexed_view = False
    for line in sql.strip().splitlines():
        line = line.strip()
        if not line:
            continue
        if not line.startswith("--"):
            break
        match = _AUTOPROC_RE.match(line)
        if match:
            autoproc = _parse_autoproc(match.group("rest"), sql)
        elif _INDEXEDVIEW_RE.match(line):
            indexed_view = True
    return Markers(autoproc=autoproc, indexed_view=indexed_view)


# =============================================================================
# Classification rules
# =============================================================================


@dataclass
class ParsedStatement:
    """Classification result for a single DDL statement."""

    object_type: SchemaObjectType
    name: str
    declared_name: str
    dependencies: frozenset[str]
    markers: Markers = field(default_factory=Markers)
    schema_bound: bool = False


@dataclass(frozen=True)
class ParseRule:
    """Maps one clause shape to an object type and a naming function."""

    object_type: SchemaObjectType
    pattern: re.Pattern
    name_of: Callable[[re.Match], str]
    references_of: Callable[[re.Match], set[str]] = lambda match: set()


def _rule(object_type, pattern, name_of, references_of=None) -> ParseRule:
    compiled = re.compile(r"\A\s*" + pattern, re.IGNORECASE | re.DOTALL)
    if references_of is None:
        return ParseRule(object_type, compiled, name_of)
    return ParseRule(object_type, compiled, name_of, references_of)


def _named(match: re.Match) -> str:
    return qualify(match.group("name"))


def _owned(match: re.Match) -> str:
    return owned_name(match.group("table"), match.group("name"))


def _owner(match: re.Match) -> set[str]:
    return {canonicalize(match.group("table"))}


def _index_references(match: re.Match) -> set[str]:
    references = _owner(match)
    if match.group("primary"):
        references.add(owned_name(match.group("table"), match.group("primary")).lower())
    return references


def _foreign_key_references(match: re.Match) -> set[str]:
    return {canonicalize(match.group("table")), canonicalize(match.group("ref"))}


def _permission_list(text: str) -> list[str]:
    permissions = []
    for permission in text.split(","):
        permission = " ".join(permission.split()).upper()
        if permission == "EXEC":
            permission = "EXECUTE"
        permissions.append(permission)
    return permissions


def _permission_securable(match: re.Match) -> str:
    securable_class = (match.group("class") or "").lower()
    if securable_class == "schema":
        return "schema::" + split_name(match.group("securable"))[-1]
    securable = qualify(match.group("securable"))
    return f"{securable_class}::{securable}" if securable_class == "type" else securable


def _permission_name(match: re.Match) -> str:
    permissions = ", ".join(_permission_list(match.group("permissions"))).lower()
    principal = split_name(match.group("principal"))[-1]
    name = f"{permissions} on {_permission_securable(match)} to {principal}"
    if match.group("grant_option"):
        name += " with grant option"
    return name


def _permission_references(match: re.Match) -> set[str]:
    securable = _permission_securable(match)
    if securable.startswith("schema::"):
        return set()
    return {securable.split("::")[-1].lower()}


_CONSTRAINT_PREFIX = (
    rf"ALTER\s+TABLE\s+(?P<table>{IDENTIFIER})\s+(?:WITH\s+(?:NO)?CHECK\s+)?"
    rf"ADD\s+CONSTRAINT\s+(?P<name>{IDENTIFIER})\s+"
)

# Order matters: the first matching rule wins.
PARSE_RULES: tuple[ParseRule, ...] = (
    _rule(SchemaObjectType.USER_TYPE, rf"CREATE\s+TYPE\s+(?P<name>{IDENTIFIER})\s+(?:FROM|AS\s+TABLE)\b", _named),
    _rule(SchemaObjectType.TABLE, rf"CREATE\s+TABLE\s+(?P<name>{IDENTIFIER})\s*\(", _named),
    _rule(SchemaObjectType.VIEW, rf"CREATE\s+VIEW\s+(?P<name>{IDENTIFIER})", _named),
    _rule(SchemaObjectType.PROCEDURE, rf"CREATE\s+PROC(?:EDURE)?\s+(?P<name>{IDENTIFIER})", _named),
    _rule(SchemaObjectType.FUNCTION, rf"CREATE\s+FUNCTION\s+(?P<name>{IDENTIFIER})", _named),
    _rule(
        SchemaObjectType.TRIGGER,
        rf"CREATE\s+TRIGGER\s+(?P<name>{IDENTIFIER})\s+ON\s+(?P<table>{IDENTIFIER})",
        _named,
        _owner,
    ),
    _rule(
        SchemaObjectType.INDEX,
        r"CREATE\s+(?:UNIQUE\s+)?(?:(?:CLUSTERED|NONCLUSTERED)\s+)?"
        r"(?:COLUMNSTORE\s+|SPATIAL\s+|(?:PRIMARY\s+)?XML\s+)?"
        rf"INDEX\s+(?P<name>{IDENTIFIER})\s+ON\s+(?P<table>{IDENTIFIER})"
        rf"(?:.*?\bUSING\s+XML\s+INDEX\s+(?P<primary>{IDENTIFIER}))?",
        _owned,
        _index_references,
    ),
    _rule(SchemaObjectType.PRIMARY_KEY, _CONSTRAINT_PREFIX + r"PRIMARY\s+KEY\b", _owned, _owner),
    _rule(SchemaObjectType.UNIQUE_CONSTRAINT, _CONSTRAINT_PREFIX + r"UNIQUE\b", _owned, _owner),
    _rule(
        SchemaObjectType.FOREIGN_KEY,
        _CONSTRAINT_PREFIX + rf"FOREIGN\s+KEY\b.*?\bREFERENCES\s+(?P<ref>{IDENTIFIER})",
        _owned,
        _foreign_key_references,
    ),
    _rule(SchemaObjectType.CHECK_CONSTRAINT, _CONSTRAINT_PREFIX + r"CHECK\b", _owned, _owner),
    _rule(
        SchemaObjectType.DEFAULT_CONSTRAINT,
        _CONSTRAINT_PREFIX + rf"DEFAULT\b.*\bFOR\s+{IDENTIFIER}\s*;?\s*\Z",
        _owned,
        _owner,
    ),
    _rule(
        SchemaObjectType.PERMISSION,
        r"GRANT\s+(?P<permissions>.+?)\s+ON\s+(?:(?P<class>OBJECT|TYPE|SCHEMA)\s*::\s*)?"
        rf"(?P<securable>{IDENTIFIER})\s+TO\s+(?P<principal>{IDENTIFIER})"
        r"(?P<grant_option>\s+WITH\s+GRANT\s+OPTION)?\s*;?\s*\Z",
        _permission_name,
        _permission_references,
    ),
)


# =============================================================================
# Dependency scanning
# =============================================================================

_REFERENCE_RE = re.compile(
    r"\b(?:FROM|JOIN|REFERENCES|INTO|UPDATE|APPLY|EXEC(?:UTE)?(?:\s+@\w+\s*=)?)"
    rf"\s+(?P<name>{IDENTIFIER})",
    re.IGNORECASE,
)
_FUNCTION_CALL_RE = re.compile(rf"(?P<name>{IDENTIFIER_PART}\s*\.\s*{IDENTIFIER_PART})\s*\(")
_PARAMETER_TYPE_RE = re.compile(rf"@\w+\s+(?:AS\s+)?(?P<name>{IDENTIFIER})", re.IGNORECASE)
_SCHEMABINDING_RE = re.compile(r"\bWITH\b[^()]*?\bSCHEMABINDING\b", re.IGNORECASE)
_STAR_RE = re.compile(r"(?:\bSELECT\s+(?:DISTINCT\s+)?|\.\s*)\*", re.IGNORECASE)

_COLUMN_CONSTRAINT_KEYWORDS = ("constraint", "primary", "unique", "check", "foreign", "index", "period")


def _candidate(name: str) -> Optional[str]:
    if name.startswith("@") or name.startswith("#"):
        return None
    return canonicalize(name)


def _table_column_types(body: str, start: int) -> set[str]:
    types = set()
    items, _ = split_top_level(body, start)
    for item in items:
        parts = list(_PART_RE.finditer(item))
        if len(parts) < 2 or parts[0].group(0).lower() in _COLUMN_CONSTRAINT_KEYWORDS:
            continue
        rest = item[parts[0].end():]
        type_match = re.match(rf"\s*(?P<name>{IDENTIFIER})", rest)
        if type_match and type_match.group("name").lower() != "as":
            types.add(canonicalize(type_match.group("name")))
    return types


def scan_references(body: str) -> set[str]:
    """Collect canonical names referenced by a comment-free statement body."""
    references = set()
    for pattern in (_REFERENCE_RE, _FUNCTION_CALL_RE, _PARAMETER_TYPE_RE):
        for match in pattern.finditer(body):
            name = _candidate(match.group("name"))
            if name:
                references.add(name)
    return references


def mentions_columns(sql: str, columns: Iterable[str]) -> bool:
    """True if a statement may bind to any of the given columns.

    Any identifier equal to a column name counts, and so does a ``*`` select
    list, which binds every column of its source.
    """
    body = strip_comments(sql, blank_strings=True)
    if _STAR_RE.search(body):
        return True
    wanted = {c.lower() for c in columns}
    return any(unquote(m.group(0)).lower() in wanted for m in _PART_RE.finditer(body))


def _directive_statement(markers: Markers, sql: str) -> ParsedStatement:
    directive = markers.autoproc
    if directive.table is None:
        raise ParseError("A standalone AUTOPROC directive must name its table", sql=sql)
    return ParsedStatement(
        object_type=SchemaObjectType.AUTOPROC,
        name=f"autoproc on {directive.table}",
        declared_name=f"autoproc on {directive.declared_table}",
        dependencies=frozenset({directive.table}),
        markers=markers,
    )


def parse_statement(sql: str) -> ParsedStatement:
    """Classify one DDL statement.

    A statement made only of an ``-- AUTOPROC <verbs> <table>`` directive is
    classified as an AutoProc object named ``autoproc on <table>``.

    Args:
        sql: The statement text, optionally preceded by directive comments

    Returns:
        ParsedStatement with type, canonical and declared names, dependencies
        and markers

    Raises:
        ParseError: If no classification rule matches
    """
    markers = parse_markers(sql)
    body = strip_comments(sql, blank_strings=True)
    if not body.strip():
        if markers.autoproc is None:
            raise ParseError("Statement contains no DDL", sql=sql)
        return _directive_statement(markers, sql)

    for rule in PARSE_RULES:
        match = rule.pattern.match(body)
        if not match:
            continue

        declared_name = rule.name_of(match)
        name = declared_name.lower()
        dependencies = set(rule.references_of(match))
        if rule.object_type != SchemaObjectType.PERMISSION:
            dependencies |= scan_references(body[match.end():])
        if rule.object_type == SchemaObjectType.TABLE:
            dependencies |= _table_column_types(body, match.end() - 1)
        dependencies.discard(name)

        if markers.indexed_view and rule.object_type != SchemaObjectType.VIEW:
            raise ParseError("INDEXEDVIEW directive can only precede a CREATE VIEW statement", sql=sql)

        schema_bound = rule.object_type in (SchemaObjectType.VIEW, SchemaObjectType.FUNCTION) and (
            markers.indexed_view or bool(_SCHEMABINDING_RE.search(body))
        )

        logger.debug(f"Parsed {rule.object_type.value} {name} with {len(dependencies)} references")
        return ParsedStatement(
            object_type=rule.object_type,
            name=name,
            declared_name=declared_name,
            dependencies=frozenset(dependencies),
            markers=markers,
            schema_bound=schema_bound,
        )

    raise ParseError(f"Cannot determine the object type of statement: {body.strip()[:80]!r}", sql=sql)
