"""Dependency-aware schema installer for SQL Server.

This module installs, upgrades and removes schema groups:
- Classify DDL statements and compute their signatures
- Order objects by their dependencies
- Track installed objects in a registry table
- Alter changed tables in place
"""

from .dependency import InstallDirection
from .dependency import order_objects
from .exceptions import CycleError
from .exceptions import DbExecutionError
from .exceptions import ParseError
from .exceptions import SchemaError
from .exceptions import UnsupportedAlterError
from .registry import RegistryEntry
from .registry import RegistryStatus
from .registry import SchemaRegistry
from .schema_installer import InstallResult
from .schema_installer import SchemaInstaller
from .schema_object import SchemaObject
from .schema_objects import SchemaObjectCollection
from .sql_parser import SchemaObjectType
from .sql_parser import canonicalize
from .sql_parser import format_name

__all__ = [
    "CycleError",
    "DbExecutionError",
    "InstallDirection",
    "InstallResult",
    "ParseError",
    "RegistryEntry",
    "RegistryStatus",
    "SchemaError",
    "SchemaInstaller",
    "SchemaObject",
    "SchemaObjectCollection",
    "SchemaObjectType",
    "SchemaRegistry",
    "UnsupportedAlterError",
    "canonicalize",
    "format_name",
    "order_objects",
]
