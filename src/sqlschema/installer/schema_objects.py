"""Ordered collection of the desired objects of one schema group."""

import logging
from typing import Iterable
from typing import Iterator
from typing import Optional
from typing import Union

from .autoproc import AutoProcGenerator
from .exceptions import ParseError
from .schema_object import SchemaObject
from .sql_parser import AutoProcDirective
from .sql_parser import SchemaObjectType
from .table_columns import parse_primary_key_columns
from .table_columns import parse_table_definition

logger = logging.getLogger(__name__)


class SchemaObjectCollection:
    """Desired state of a schema group, in declaration order.

    A statement that consists only of an ``-- AUTOPROC`` directive is an
    AutoProc object of its own. It is registered like any other object, and
    ``expand()`` turns every directive into generated procedures that depend
    on the object carrying it.
    """

    def __init__(self, statements: Optional[Iterable[str]] = None):
        self._objects: list[SchemaObject] = []
        self._directives: list[tuple[AutoProcDirective, SchemaObject]] = []
        self._keys: set = set()
        for sql in statements or []:
            self.add(sql)

    def add(self, item: Union[str, SchemaObject]) -> None:
        """Append a statement or a parsed object.

        Raises:
            ParseError: If the statement cannot be classified or duplicates an
                object already in the collection
        """
        schema_object = item if isinstance(item, SchemaObject) else SchemaObject(item)
        self._append(schema_object)

        directive = schema_object.markers.autoproc
        if directive is None:
            return
        if directive.table is None:
            if schema_object.object_type != SchemaObjectType.TABLE:
                raise ParseError(
                    "AUTOPROC without a table name must precede a CREATE TABLE statement",
                    sql=schema_object.sql,
                )
            directive = AutoProcDirective(
                verbs=directive.verbs,
                table=schema_object.name,
                declared_table=schema_object.declared_name,
            )
        self._directives.append((directive, schema_object))

    def _append(self, schema_object: SchemaObject) -> None:
        if schema_object.key in self._keys:
            raise ParseError(
                f"Duplicate {schema_object.object_type.value} {schema_object.name} in schema",
                sql=schema_object.sql,
            )
        self._keys.add(schema_object.key)
        self._objects.append(schema_object)

    @property
    def objects(self) -> list[SchemaObject]:
        """Objects parsed from the statements, without generated procedures."""
        return list(self._objects)

    @property
    def directives(self) -> list[AutoProcDirective]:
        return [directive for directive, _ in self._directives]

    def __iter__(self) -> Iterator[SchemaObject]:
        return iter(self._objects)

    def __len__(self) -> int:
        return len(self._objects)

    def find(self, name: str, object_type: SchemaObjectType) -> Optional[SchemaObject]:
        return next((o for o in self._objects if o.key == (name, object_type)), None)

    def _key_columns(self, table: str) -> list[str]:
        for schema_object in self._objects:
            if schema_object.object_type == SchemaObjectType.PRIMARY_KEY and schema_object.owner == table:
                return parse_primary_key_columns(schema_object.sql)
        return []

    def expand(self) -> list[SchemaObject]:
        """Return the working set: declared objects followed by generated procedures.

        Raises:
            ParseError: If a directive names a table that is not in the collection,
                or a generated procedure collides with a declared object
        """
        working_set = list(self._objects)
        keys = set(self._keys)

        for directive, source in self._directives:
            table_object = self.find(directive.table, SchemaObjectType.TABLE)
            if table_object is None:
                raise ParseError(f"AUTOPROC table {directive.table} is not defined in the schema", sql=source.sql)

            table = parse_table_definition(table_object.sql)
            key_columns = self._key_columns(table.name) or table.primary_key_columns
            generator = AutoProcGenerator(table, key_columns)

            for sql in generator.generate(directive):
                generated = SchemaObject(sql, generated=True, source=source.name)
                if generated.key in keys:
                    raise ParseError(f"Generated procedure {generated.name} collides with an existing object", sql=sql)
                keys.add(generated.key)
                working_set.append(generated)
                logger.debug(f"AUTOPROC generated {generated.name} for {table.name}")

        return working_set
