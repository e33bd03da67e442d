"""Generation of CRUD procedures for AUTOPROC directives.

For a table ``[dbo].[Beer]`` the verbs expand to procedures named
``SelectBeer``, ``InsertBeer``, ``UpdateBeer``, ``UpsertBeer``, ``DeleteBeer``
and ``FindBeer`` in the table's schema.
"""

import logging
from typing import Optional

from .sql_parser import AutoProcDirective
from .table_columns import ColumnDefinition
from .table_columns import TableDefinition

logger = logging.getLogger(__name__)

# Types that cannot appear in an equality predicate
NON_COMPARABLE_TYPES = ("xml", "text", "ntext", "image", "geography", "geometry")

KEYED_VERBS = ("select", "update", "upsert", "delete")


def _quote(identifier: str) -> str:
    return "[" + identifier.replace("]", "]]") + "]"


def _parameter(column: ColumnDefinition) -> str:
    return "@" + "".join(ch if ch.isalnum() or ch == "_" else "_" for ch in column.name)


def _parameter_type(column: ColumnDefinition) -> str:
    if column.is_rowversion:
        return "binary(8)"
    return column.type_sql or "sql_variant"


def procedure_name(verb: str, table: str) -> str:
    """Name of the procedure generated for a verb, e.g. ``SelectBeer`` for ``Beer``."""
    return verb.capitalize() + table


class AutoProcGenerator:
    """Builds CREATE PROCEDURE statements for one table.

    Args:
        table: Parsed CREATE TABLE statement
        key_columns: Names of the columns that identify a row
    """

    def __init__(self, table: TableDefinition, key_columns: Optional[list[str]] = None):
        self.table = table
        self.schema = table.declared_name.split(".", 1)[0]
        self.table_sql = f"{_quote(self.schema)}.{_quote(table.display_name)}"

        keys = []
        for name in key_columns or []:
            column = table.column(name)
            if column is not None:
                keys.append(column)
        if not keys and table.identity_column is not None:
            keys.append(table.identity_column)
        self.keys = keys

    def procedure_name(self, verb: str) -> str:
        return procedure_name(verb, self.table.display_name)

    def generate(self, directive: AutoProcDirective) -> list[str]:
        """Generate one CREATE PROCEDURE statement per requested verb.

        Keyed verbs are skipped when the table has neither a primary key nor an
        identity column.
        """
        statements = []
        for verb in directive.verbs:
            if verb in KEYED_VERBS and not self.keys:
                logger.warning(
                    f"Skipping AUTOPROC {verb} for {self.table.name}: table has no primary key or identity column"
                )
                continue
            if verb == "insert" and not self._settable():
                logger.warning(f"Skipping AUTOPROC insert for {self.table.name}: table has no settable columns")
                continue
            if verb in ("update", "upsert") and not self._settable(exclude_keys=True):
                logger.warning(f"Skipping AUTOPROC {verb} for {self.table.name}: table has no updatable columns")
                continue
            body = getattr(self, f"_{verb}")()
            statements.append(self._procedure(verb, body))
        return statements

    def _settable(self, exclude_keys: bool = False) -> list[ColumnDefinition]:
        key_names = {c.name.lower() for c in self.keys} if exclude_keys else set()
        return [c for c in self.table.columns if c.is_settable and c.name.lower() not in key_names]

    def _procedure(self, verb: str, body: tuple[list[ColumnDefinition], str]) -> str:
        parameters, statement = body
        name = f"{_quote(self.schema)}.{_quote(self.procedure_name(verb))}"
        if verb == "find":
            declared = [f"{_parameter(c)} {_parameter_type(c)} = NULL" for c in parameters]
        else:
            declared = [f"{_parameter(c)} {_parameter_type(c)}" for c in parameters]
        if not declared:
            return f"CREATE PROCEDURE {name}\nAS\n{statement}"
        return f"CREATE PROCEDURE {name}\n(\n\t" + ",\n\t".join(declared) + f"\n)\nAS\n{statement}"

    def _key_predicate(self) -> str:
        return " AND ".join(f"{_quote(c.name)} = {_parameter(c)}" for c in self.keys)

    def _select(self) -> tuple[list[ColumnDefinition], str]:
        return self.keys, f"SELECT * FROM {self.table_sql} WHERE {self._key_predicate()}"

    def _insert(self) -> tuple[list[ColumnDefinition], str]:
        columns = self._settable()
        names = ", ".join(_quote(c.name) for c in columns)
        values = ", ".join(_parameter(c) for c in columns)
        return columns, f"INSERT INTO {self.table_sql} ({names})\nOUTPUT INSERTED.*\nVALUES ({values})"

    def _update_statement(self) -> str:
        assignments = ", ".join(f"{_quote(c.name)} = {_parameter(c)}" for c in self._settable(exclude_keys=True))
        return f"UPDATE {self.table_sql} SET {assignments}\nWHERE {self._key_predicate()}"

    def _update(self) -> tuple[list[ColumnDefinition], str]:
        return self.keys + self._settable(exclude_keys=True), self._update_statement()

    def _upsert(self) -> tuple[list[ColumnDefinition], str]:
        settable = self._settable(exclude_keys=True)
        insertable = self._settable()
        names = ", ".join(_quote(c.name) for c in insertable)
        values = ", ".join(_parameter(c) for c in insertable)
        statement = (
            f"IF EXISTS (SELECT 1 FROM {self.table_sql} WHERE {self._key_predicate()})\n"
            f"\t{self._update_statement()}\n"
            f"ELSE\n"
            f"\tINSERT INTO {self.table_sql} ({names}) VALUES ({values})"
        )
        parameters = self.keys + [c for c in settable if c not in self.keys]
        parameters += [c for c in insertable if c not in parameters]
        return parameters, statement

    def _delete(self) -> tuple[list[ColumnDefinition], str]:
        return self.keys, f"DELETE FROM {self.table_sql} WHERE {self._key_predicate()}"

    def _find(self) -> tuple[list[ColumnDefinition], str]:
        columns = [
            c for c in self.table.columns if not c.is_computed and c.type_name not in NON_COMPARABLE_TYPES
        ]
        if not columns:
            return columns, f"SELECT * FROM {self.table_sql}"
        predicate = "\n\tAND ".join(
            f"({_parameter(c)} IS NULL OR {_quote(c.name)} = {_parameter(c)})" for c in columns
        )
        return columns, f"SELECT * FROM {self.table_sql}\nWHERE {predicate}"
