"""Schema installer for converging a database onto a schema group's desired state.

Provides:
- Diffing desired objects against the registry (add, remove, keep, alter)
- In-place table alteration with transient drop/recreate of blocking dependents
- Dependency-ordered creates and drops
- Dry run support
- Uninstall of a whole schema group

The installer issues one statement at a time on the driver it was given and
never commits or rolls back; callers wrap each call in a transaction.
"""

import logging
import re
from collections import defaultdict
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from typing import Iterable
from typing import Optional
from typing import Union

from ..sql import SqlDriver
from .dependency import InstallDirection
from .dependency import order_objects
from .exceptions import UnsupportedAlterError
from .execution import run_query
from .registry import RegistryEntry
from .registry import SchemaRegistry
from .schema_object import SchemaObject
from .schema_object import split_owned_name
from .schema_objects import SchemaObjectCollection
from .sql_parser import CONSTRAINT_TYPES
from .sql_parser import DEFAULT_SCHEMA
from .sql_parser import SchemaObjectType
from .sql_parser import mentions_columns
from .table_diff import TableAlterPlanner
from .table_diff import TableDiff

logger = logging.getLogger(__name__)

# Dropping one of these also invalidates foreign keys that reference the owning table
_KEY_TYPES = (SchemaObjectType.PRIMARY_KEY, SchemaObjectType.UNIQUE_CONSTRAINT, SchemaObjectType.INDEX)

# XML and spatial indexes cannot outlive the clustered primary key of their table
_XML_OR_SPATIAL_INDEX_RE = re.compile(r"\bCREATE\s+(?:PRIMARY\s+)?(?:XML|SPATIAL)\s+INDEX\b", re.IGNORECASE)
_UNIQUE_INDEX_RE = re.compile(r"\bCREATE\s+UNIQUE\b", re.IGNORECASE)


@dataclass
class InstallResult:
    """Result of an install or uninstall operation."""

    schema_group: str
    dry_run: bool = False
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    altered: list[str] = field(default_factory=list)
    recreated: list[str] = field(default_factory=list)
    statements: list[str] = field(default_factory=list)
    sql_preview: str = ""

    @property
    def changed(self) -> bool:
        return bool(self.statements)


@dataclass
class InstallPlan:
    """Partition of the desired objects against the registry."""

    install_order: list[SchemaObject]
    registered: dict[tuple, RegistryEntry]
    to_add: list[SchemaObject] = field(default_factory=list)
    to_remove: list[RegistryEntry] = field(default_factory=list)
    to_keep: list[SchemaObject] = field(default_factory=list)
    to_alter: list[SchemaObject] = field(default_factory=list)
    # None marks a table whose alteration is planned once its new dependencies exist
    table_alters: dict[tuple, Optional[TableDiff]] = field(default_factory=dict)
    transient: list[SchemaObject] = field(default_factory=list)

    @property
    def altered_objects(self) -> list[SchemaObject]:
        """Altered objects other than tables; these are dropped and recreated."""
        return [o for o in self.to_alter if o.object_type != SchemaObjectType.TABLE]


class SchemaInstaller:
    """Installs, upgrades and uninstalls schema groups."""

    def __init__(self, sql_driver: SqlDriver, registry_schema: str = DEFAULT_SCHEMA):
        """Initialize the schema installer.

        Args:
            sql_driver: SQL driver bound to the caller's transaction
            registry_schema: Schema for the registry table
        """
        self.sql_driver = sql_driver
        self.registry_schema = registry_schema
        self.planner = TableAlterPlanner(sql_driver)

    def registry(self, schema_group: str) -> SchemaRegistry:
        return SchemaRegistry(self.sql_driver, schema_group, self.registry_schema)

    async def install(
        self,
        schema_group: str,
        schema: Union[SchemaObjectCollection, Iterable[str]],
        dry_run: bool = False,
    ) -> InstallResult:
        """Converge the database onto the desired objects of a schema group.

        Args:
            schema_group: Name of the group that owns the objects
            schema: Desired DDL statements in declaration order
            dry_run: If True, plan only and return the statements that would run

        Returns:
            InstallResult with the affected objects and executed statements

        Raises:
            ParseError: If a statement cannot be classified
            CycleError: If non-procedure objects depend on each other
            UnsupportedAlterError: If a table change cannot be applied in place
            DbExecutionError: If any statement fails
        """
        collection = schema if isinstance(schema, SchemaObjectCollection) else SchemaObjectCollection(schema)
        working_set = collection.expand()
        install_order = order_objects(working_set, InstallDirection.INSTALL)

        registry = self.registry(schema_group)
        if dry_run:
            entries = await registry.load() if await registry.table_exists() else []
        else:
            await registry.ensure_registry_table()
            entries = await registry.load()

        plan = self._partition(install_order, entries)
        await self._plan_table_alters(plan)
        plan.transient = self._transient_objects(plan)

        result = InstallResult(
            schema_group=schema_group,
            dry_run=dry_run,
            added=[o.name for o in plan.to_add],
            removed=[e.name for e in plan.to_remove],
            altered=[o.name for o in plan.to_alter],
            recreated=[o.name for o in plan.transient],
        )

        await self._drop_phase(plan, registry, result)
        await self._create_phase(plan, registry, result)

        if dry_run:
            result.sql_preview = "\n\n".join(result.statements)
        logger.info(
            f"Schema group {schema_group}: {len(result.added)} added, {len(result.removed)} removed, "
            f"{len(result.altered)} altered, {len(result.recreated)} recreated"
            + (" (dry run)" if dry_run else "")
        )
        return result

    async def uninstall(self, schema_group: str, dry_run: bool = False) -> InstallResult:
        """Drop every object of a schema group and clear its registry entries.

        Args:
            schema_group: Name of the group to remove
            dry_run: If True, return the drop statements without executing them

        Returns:
            InstallResult listing the removed objects
        """
        result = InstallResult(schema_group=schema_group, dry_run=dry_run)
        registry = self.registry(schema_group)
        if not await registry.table_exists():
            logger.info(f"No registry found; nothing to uninstall for group {schema_group}")
            return result

        entries = await registry.load()
        for entry in order_objects(entries, InstallDirection.UNINSTALL):
            await self._execute(entry.drop_sql, result)
            if not dry_run:
                await registry.remove(entry)
            result.removed.append(entry.name)

        if dry_run:
            result.sql_preview = "\n\n".join(result.statements)
        else:
            await registry.clear()
        logger.info(f"Uninstalled {len(result.removed)} objects from group {schema_group}")
        return result

    def _partition(self, install_order: list[SchemaObject], entries: list[RegistryEntry]) -> InstallPlan:
        registered = {e.key: e for e in entries}
        desired = {o.key for o in install_order}
        plan = InstallPlan(install_order=install_order, registered=registered)

        for schema_object in install_order:
            entry = registered.get(schema_object.key)
            if entry is None:
                plan.to_add.append(schema_object)
            elif entry.signature == schema_object.signature:
                plan.to_keep.append(schema_object)
            else:
                plan.to_alter.append(schema_object)

        plan.to_remove = [e for e in entries if e.key not in desired]
        logger.debug(
            f"Partitioned: {len(plan.to_add)} to add, {len(plan.to_remove)} to remove, "
            f"{len(plan.to_keep)} to keep, {len(plan.to_alter)} to alter"
        )
        return plan

    async def _plan_table_alters(self, plan: InstallPlan) -> None:
        new_names = {o.name for o in plan.to_add}
        for table in plan.to_alter:
            if table.object_type != SchemaObjectType.TABLE:
                continue
            if table.dependencies & new_names:
                # The scratch table cannot be built before new user types exist
                self.planner.check_alterable(table)
                plan.table_alters[table.key] = None
            else:
                plan.table_alters[table.key] = await self.planner.plan(table)

    def _blocks_table_alter(self, schema_object: SchemaObject, columns: Optional[set[str]]) -> bool:
        """True if an object must be out of the way while a table's columns change.

        Args:
            schema_object: Object that depends on the altered table
            columns: Existing columns the alteration drops, retypes or rebuilds;
                None when they are not known yet
        """
        object_type = schema_object.object_type
        if object_type in (SchemaObjectType.INDEX, SchemaObjectType.TRIGGER, SchemaObjectType.VIEW):
            blocks = True
        elif object_type in CONSTRAINT_TYPES:
            blocks = True
        else:
            blocks = object_type == SchemaObjectType.FUNCTION and schema_object.schema_bound
        return blocks and (columns is None or mentions_columns(schema_object.sql, columns))

    def _owner_dependents(
        self,
        name: str,
        object_type: SchemaObjectType,
        sql: Optional[str],
        dependents: dict[str, list[SchemaObject]],
    ) -> list[SchemaObject]:
        """Objects on the owning table that break when a key or index is dropped.

        Foreign keys may reference a primary key, a unique constraint or a
        unique index. XML and spatial indexes need the primary key. An index
        whose installed text is unknown counts as unique.
        """
        if object_type not in _KEY_TYPES:
            return []
        if object_type == SchemaObjectType.INDEX and sql is not None and not _UNIQUE_INDEX_RE.search(sql):
            return []

        on_owner = dependents.get(split_owned_name(name)[0], ())
        blocked = [o for o in on_owner if o.object_type == SchemaObjectType.FOREIGN_KEY]
        if object_type == SchemaObjectType.PRIMARY_KEY:
            blocked += [o for o in on_owner if o.object_type == SchemaObjectType.INDEX and _XML_OR_SPATIAL_INDEX_RE.search(o.sql)]
        return blocked

    def _transient_objects(self, plan: InstallPlan) -> list[SchemaObject]:
        """Find kept objects that must be dropped and recreated around this install.

        Raises:
            UnsupportedAlterError: If a table would have to be dropped
        """
        candidates = plan.to_keep + [o for o in plan.to_alter if o.object_type == SchemaObjectType.TABLE]
        dependents: dict[str, list[SchemaObject]] = defaultdict(list)
        for schema_object in candidates:
            for dependency in schema_object.dependencies:
                dependents[dependency].append(schema_object)

        # (name, type, altered in place, columns touched by an in-place alteration)
        queue: deque[tuple[str, SchemaObjectType, bool, Optional[set[str]]]] = deque()
        for key, diff in plan.table_alters.items():
            if diff is None:
                queue.append((key[0], key[1], True, None))
            elif diff.changed_columns:
                queue.append((key[0], key[1], True, diff.changed_columns))
        for entry in plan.to_remove:
            queue.append((entry.name, entry.object_type, False, None))
        for schema_object in plan.altered_objects:
            queue.append((schema_object.name, schema_object.object_type, False, None))

        # Text of kept objects; a removed or altered object's installed text is unknown
        sources = {o.key: o.sql for o in plan.to_keep}
        transient: dict[tuple, SchemaObject] = {}
        while queue:
            name, object_type, in_place, columns = queue.popleft()
            blocked = list(dependents.get(name, ()))
            if not in_place:
                blocked += self._owner_dependents(name, object_type, sources.get((name, object_type)), dependents)

            for schema_object in blocked:
                if schema_object.key in transient:
                    continue
                if in_place and not self._blocks_table_alter(schema_object, columns):
                    continue
                if schema_object.object_type == SchemaObjectType.TABLE:
                    raise UnsupportedAlterError(
                        f"Table {schema_object.name} depends on {name}, which must be dropped and recreated"
                    )
                logger.debug(f"{schema_object.object_type.value} {schema_object.name} blocks changes to {name}")
                transient[schema_object.key] = schema_object
                queue.append((schema_object.name, schema_object.object_type, False, None))

        return [o for o in plan.install_order if o.key in transient]

    async def _execute(self, sql: Optional[str], result: InstallResult) -> None:
        if sql is None:
            return
        result.statements.append(sql)
        if result.dry_run:
            return
        await run_query(self.sql_driver, sql)

    async def _drop_phase(self, plan: InstallPlan, registry: SchemaRegistry, result: InstallResult) -> None:
        dropped = list(plan.to_remove)
        dropped += [plan.registered[o.key] for o in plan.altered_objects]
        dropped += [replace(plan.registered[o.key], dependencies=o.dependencies) for o in plan.transient]
        dropped.sort(key=lambda e: e.order_index)

        for entry in order_objects(dropped, InstallDirection.UNINSTALL):
            logger.info(f"Dropping {entry.object_type.value} {entry.name}")
            await self._execute(entry.drop_sql, result)
            if not result.dry_run:
                await registry.remove(entry)

    async def _create_phase(self, plan: InstallPlan, registry: SchemaRegistry, result: InstallResult) -> None:
        created = {o.key for o in plan.to_add + plan.altered_objects + plan.transient}
        renumbered = []

        for position, schema_object in enumerate(plan.install_order):
            entry = RegistryEntry(
                schema_group=registry.schema_group,
                name=schema_object.name,
                object_type=schema_object.object_type,
                signature=schema_object.signature,
                order_index=position,
                declared_name=schema_object.declared_name,
            )

            if schema_object.key in plan.table_alters:
                await self._alter_table(schema_object, plan.table_alters[schema_object.key], result)
                if not result.dry_run:
                    await registry.update(entry)
            elif schema_object.key in created and schema_object.object_type == SchemaObjectType.AUTOPROC:
                logger.info(f"Registering AUTOPROC directive {schema_object.name}")
                if not result.dry_run:
                    await registry.add(entry)
            elif schema_object.key in created:
                logger.info(f"Creating {schema_object.object_type.value} {schema_object.name}")
                await self._execute(schema_object.sql, result)
                if not result.dry_run:
                    await registry.add(entry)
            elif plan.registered[schema_object.key].order_index != position:
                renumbered.append(entry)

        if not result.dry_run:
            for entry in renumbered:
                await registry.update(entry)

    async def _alter_table(self, table: SchemaObject, diff: Optional[TableDiff], result: InstallResult) -> None:
        if diff is None:
            if result.dry_run:
                result.statements.append(f"-- {table.name} is altered after the objects it depends on are created")
                return
            diff = await self.planner.plan(table)

        if not diff.statements:
            logger.info(f"Table {table.name} changed without column changes")
        for statement in diff.statements:
            logger.info(f"Altering table {table.name}: {statement}")
            await self._execute(statement, result)
