"""Errors raised by the schema installer."""

from typing import Optional


class SchemaError(Exception):
    """Base class for schema installer errors."""

    pass


class ParseError(SchemaError):
    """A statement matches none of the classification rules."""

    def __init__(self, message: str, sql: str = ""):
        super().__init__(message)
        self.sql = sql


class CycleError(SchemaError):
    """Objects other than procedures reference each other in a cycle."""

    def __init__(self, message: str, path: tuple[str, ...] = ()):
        super().__init__(message)
        self.path = path


class UnsupportedAlterError(SchemaError):
    """A table change cannot be applied in place without losing data."""

    pass


class DbExecutionError(SchemaError):
    """A statement failed at the connection."""

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message)
        self.sql = sql
