"""Column introspection for live SQL Server tables."""

import logging
from dataclasses import dataclass
from typing import Optional

from ..sql import SqlDriver
from .execution import run_query
from .sql_parser import format_name
from .table_columns import ROWVERSION_TYPES

logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    """Information about a table column as reported by sys.columns."""

    name: str
    data_type: Optional[str]
    max_length: Optional[int]
    precision: Optional[int]
    scale: Optional[int]
    is_nullable: bool
    is_identity: bool = False
    is_computed: bool = False
    collation_name: Optional[str] = None
    identity_seed: Optional[int] = None
    identity_increment: Optional[int] = None
    computed_definition: Optional[str] = None

    @property
    def is_rowversion(self) -> bool:
        return (self.data_type or "").lower() in ROWVERSION_TYPES


class SchemaPull:
    """Pull column metadata from a SQL Server database."""

    def __init__(self, sql_driver: SqlDriver):
        """Initialize the schema puller.

        Args:
            sql_driver: SQL driver for database access
        """
        self.sql_driver = sql_driver

    async def pull_columns(self, table: str) -> list[ColumnInfo]:
        """Pull the columns of a table in column order.

        Args:
            table: Canonical table name

        Returns:
            List of ColumnInfo, empty if the table does not exist
        """
        query = """
        SELECT
            c.name AS column_name,
            TYPE_NAME(c.user_type_id) AS data_type,
            c.max_length,
            c.precision,
            c.scale,
            c.is_nullable,
            c.is_identity,
            c.is_computed,
            c.collation_name,
            CAST(ic.seed_value AS bigint) AS identity_seed,
            CAST(ic.increment_value AS bigint) AS identity_increment,
            cc.definition AS computed_definition
        FROM sys.columns c
        LEFT JOIN sys.identity_columns ic
            ON ic.object_id = c.object_id AND ic.column_id = c.column_id
        LEFT JOIN sys.computed_columns cc
            ON cc.object_id = c.object_id AND cc.column_id = c.column_id
        WHERE c.object_id = OBJECT_ID(?)
        ORDER BY c.column_id
        """
        rows = await run_query(self.sql_driver, query, [format_name(table)])
        if not rows:
            return []

        columns = [
            ColumnInfo(
                name=row.cells["column_name"],
                data_type=row.cells["data_type"],
                max_length=row.cells["max_length"],
                precision=row.cells["precision"],
                scale=row.cells["scale"],
                is_nullable=bool(row.cells["is_nullable"]),
                is_identity=bool(row.cells["is_identity"]),
                is_computed=bool(row.cells["is_computed"]),
                collation_name=row.cells["collation_name"],
                identity_seed=row.cells["identity_seed"],
                identity_increment=row.cells["identity_increment"],
                computed_definition=row.cells["computed_definition"],
            )
            for row in rows
        ]
        logger.debug(f"Pulled {len(columns)} columns for {table}")
        return columns
