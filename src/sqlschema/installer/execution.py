"""Statement execution with uniform error reporting."""

import logging
from typing import Any
from typing import Optional
from typing import cast

from typing_extensions import LiteralString

from ..sql import RowResult
from ..sql import SqlDriver
from .exceptions import DbExecutionError
from .exceptions import SchemaError

logger = logging.getLogger(__name__)


async def run_query(
    sql_driver: SqlDriver,
    query: str,
    params: Optional[list[Any]] = None,
) -> Optional[list[RowResult]]:
    """Execute a statement, converting driver failures into DbExecutionError.

    Args:
        sql_driver: SQL driver for database access
        query: Statement to execute
        params: Optional positional parameters

    Returns:
        Result rows, or None when the statement returns no result set

    Raises:
        DbExecutionError: If the driver raises
    """
    try:
        return await sql_driver.execute_query(cast(LiteralString, query), params=params)
    except SchemaError:
        raise
    except Exception as e:
        logger.error(f"Statement failed: {e}")
        raise DbExecutionError(str(e), sql=query) from e
