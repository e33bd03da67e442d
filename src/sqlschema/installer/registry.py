"""Persisted record of the objects installed for each schema group."""

import logging
from dataclasses import dataclass
from typing import Optional

from typing_extensions import TypedDict

from ..sql import SqlDriver
from .exceptions import SchemaError
from .execution import run_query
from .schema_object import SchemaObject
from .schema_object import generate_drop_sql
from .schema_object import verify_object
from .sql_parser import DEFAULT_SCHEMA
from .sql_parser import SchemaObjectType
from .sql_parser import format_name

logger = logging.getLogger(__name__)

REGISTRY_TABLE_NAME = "_sqlschema_registry"

LOCK_TIMEOUT_MS = 30000


class RegistryStatusEntry(TypedDict):
    """Type for a single registry entry in status."""

    name: str
    object_type: str
    signature: str
    order_index: int


class RegistryStatus(TypedDict):
    """Type for registry status summary."""

    schema_group: str
    total_objects: int
    objects: list[RegistryStatusEntry]


@dataclass(frozen=True)
class RegistryEntry:
    """Represents one installed object of a schema group."""

    schema_group: str
    name: str
    object_type: SchemaObjectType
    signature: str
    order_index: int
    # Qualified name with its declared case; the canonical name is used when missing
    declared_name: Optional[str] = None
    # Only known while planning an install; never persisted
    dependencies: frozenset[str] = frozenset()

    @property
    def key(self) -> tuple[str, SchemaObjectType]:
        return (self.name, self.object_type)

    @property
    def drop_sql(self) -> Optional[str]:
        return generate_drop_sql(self.declared_name or self.name, self.object_type)


class SchemaRegistry:
    """Reads and writes the registry rows of one schema group."""

    def __init__(self, sql_driver: SqlDriver, schema_group: str, schema: str = DEFAULT_SCHEMA):
        """Initialize the registry.

        Args:
            sql_driver: SQL driver for database access
            schema_group: Group whose entries this registry manages
            schema: Schema where the registry table is stored
        """
        self.sql_driver = sql_driver
        self.schema_group = schema_group
        self.schema = schema
        self.table_name = f"{schema}.{REGISTRY_TABLE_NAME}"
        self.table_sql = format_name(self.table_name)

    async def ensure_registry_table(self) -> None:
        """Create the registry table if it doesn't exist."""
        create_table_sql = f"""
        IF OBJECT_ID(N'{self.table_sql}', N'U') IS NULL
        CREATE TABLE {self.table_sql} (
            SchemaGroup NVARCHAR(100) NOT NULL,
            ObjectName NVARCHAR(256) NOT NULL,
            ObjectType NVARCHAR(50) NOT NULL,
            DeclaredName NVARCHAR(256) NOT NULL,
            Signature VARCHAR(64) NOT NULL,
            OrderIndex INT NOT NULL,
            CONSTRAINT PK{REGISTRY_TABLE_NAME} PRIMARY KEY (SchemaGroup, ObjectName, ObjectType)
        )
        """
        await run_query(self.sql_driver, create_table_sql)
        logger.debug(f"Registry table ensured: {self.table_name}")

    async def table_exists(self) -> bool:
        return await verify_object(self.sql_driver, self.table_name, SchemaObjectType.TABLE)

    async def load(self) -> list[RegistryEntry]:
        """Get the entries of the group ordered by install position.

        Returns:
            List of registry entries
        """
        query = f"""
        SELECT SchemaGroup, ObjectName, ObjectType, DeclaredName, Signature, OrderIndex
        FROM {self.table_sql}
        WHERE SchemaGroup = ?
        ORDER BY OrderIndex, ObjectName
        """
        rows = await run_query(self.sql_driver, query, [self.schema_group])
        if not rows:
            return []

        return [
            RegistryEntry(
                schema_group=row.cells["SchemaGroup"],
                name=row.cells["ObjectName"],
                object_type=SchemaObjectType(row.cells["ObjectType"]),
                declared_name=row.cells["DeclaredName"],
                signature=row.cells["Signature"],
                order_index=row.cells["OrderIndex"],
            )
            for row in rows
        ]

    async def add(self, entry: RegistryEntry) -> None:
        query = f"""
        INSERT INTO {self.table_sql} (SchemaGroup, ObjectName, ObjectType, DeclaredName, Signature, OrderIndex)
        VALUES (?, ?, ?, ?, ?, ?)
        """
        await run_query(
            self.sql_driver,
            query,
            [
                self.schema_group,
                entry.name,
                entry.object_type.value,
                entry.declared_name or entry.name,
                entry.signature,
                entry.order_index,
            ],
        )
        logger.info(f"Registered {entry.object_type.value} {entry.name} in group {self.schema_group}")

    async def remove(self, entry: RegistryEntry) -> None:
        query = f"""
        DELETE FROM {self.table_sql}
        WHERE SchemaGroup = ? AND ObjectName = ? AND ObjectType = ?
        """
        await run_query(self.sql_driver, query, [self.schema_group, entry.name, entry.object_type.value])
        logger.info(f"Unregistered {entry.object_type.value} {entry.name} from group {self.schema_group}")

    async def update(self, entry: RegistryEntry) -> None:
        """Store a new signature, declared name and install position for an existing entry."""
        query = f"""
        UPDATE {self.table_sql}
        SET Signature = ?, OrderIndex = ?, DeclaredName = ?
        WHERE SchemaGroup = ? AND ObjectName = ? AND ObjectType = ?
        """
        await run_query(
            self.sql_driver,
            query,
            [
                entry.signature,
                entry.order_index,
                entry.declared_name or entry.name,
                self.schema_group,
                entry.name,
                entry.object_type.value,
            ],
        )
        logger.debug(f"Updated registry entry {entry.object_type.value} {entry.name} (position {entry.order_index})")

    async def contains(self, schema_object: SchemaObject) -> bool:
        """Check whether the object is registered with the same signature.

        Args:
            schema_object: Object to look up

        Returns:
            True if name, type and signature all match an entry
        """
        query = f"""
        SELECT COUNT(*) AS entry_count
        FROM {self.table_sql}
        WHERE SchemaGroup = ? AND ObjectName = ? AND ObjectType = ? AND Signature = ?
        """
        rows = await run_query(
            self.sql_driver,
            query,
            [self.schema_group, schema_object.name, schema_object.object_type.value, schema_object.signature],
        )
        return bool(rows) and int(rows[0].cells["entry_count"] or 0) > 0

    async def clear(self) -> None:
        """Remove every entry of the group."""
        query = f"""
        DELETE FROM {self.table_sql}
        WHERE SchemaGroup = ?
        """
        await run_query(self.sql_driver, query, [self.schema_group])
        logger.info(f"Cleared registry for group {self.schema_group}")

    async def acquire_group_lock(self, timeout_ms: Optional[int] = None) -> None:
        """Serialize installers of this group until the current transaction ends.

        Raises:
            SchemaError: If the lock cannot be granted within the timeout
        """
        query = """
        DECLARE @result INT;
        EXEC @result = sp_getapplock @Resource = ?, @LockMode = 'Exclusive', @LockOwner = 'Transaction', @LockTimeout = ?;
        SELECT @result AS lock_result
        """
        timeout = LOCK_TIMEOUT_MS if timeout_ms is None else timeout_ms
        rows = await run_query(self.sql_driver, query, [f"sqlschema:{self.schema_group}", timeout])
        result = rows[0].cells["lock_result"] if rows else None
        if result is None or result < 0:
            raise SchemaError(f"Could not acquire the install lock for group {self.schema_group} (result {result})")
        logger.debug(f"Acquired install lock for group {self.schema_group}")

    async def get_status(self) -> RegistryStatus:
        """Get registry status summary.

        Returns:
            Dictionary with the entries of the group
        """
        entries = await self.load() if await self.table_exists() else []
        return RegistryStatus(
            schema_group=self.schema_group,
            total_objects=len(entries),
            objects=[
                RegistryStatusEntry(
                    name=e.name,
                    object_type=e.object_type.value,
                    signature=e.signature,
                    order_index=e.order_index,
                )
                for e in entries
            ],
        )
