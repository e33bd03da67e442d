"""SQL Server connection handling.

The schema installer only needs to issue one statement at a time on a
connection whose transaction is owned by the caller. ``DbConnPool.transaction``
provides such a connection: it commits when the block succeeds and rolls back
when it raises.
"""

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from typing import AsyncIterator
from typing import Optional

import aioodbc
from typing_extensions import LiteralString

logger = logging.getLogger(__name__)


@dataclass
class RowResult:
    """A single result row keyed by column name."""

    cells: dict[str, Any]


def obfuscate_password(text: Optional[str]) -> Optional[str]:
    """Mask password values in ODBC connection strings and error messages."""
    if text is None:
        return None
    return re.sub(r"(?i)\b(PWD|Password)\s*=\s*(\{[^}]*\}|[^;]*)", r"\1=****", text)


class SqlDriver:
    """Executes statements on a single open connection."""

    def __init__(self, conn: Any):
        """Initialize the driver.

        Args:
            conn: An open aioodbc connection
        """
        self.conn = conn

    async def execute_query(
        self,
        query: LiteralString,
        params: Optional[list[Any]] = None,
    ) -> Optional[list[RowResult]]:
        """Execute a statement and return the first result set, if any.

        Args:
            query: T-SQL batch to execute
            params: Positional parameters for ``?`` placeholders

        Returns:
            List of rows, or None when the batch produces no result set
        """
        async with self.conn.cursor() as cursor:
            if params:
                await cursor.execute(query, *params)
            else:
                await cursor.execute(query)

            while cursor.description is None:
                if not await cursor.nextset():
                    return None

            columns = [column[0] for column in cursor.description]
            rows = await cursor.fetchall()
            return [RowResult(cells=dict(zip(columns, row))) for row in rows]


class DbConnPool:
    """Connection pool with caller-owned transaction scopes."""

    def __init__(self, connection_url: Optional[str] = None):
        self.connection_url = connection_url
        self.pool: Any = None
        self._is_valid = False
        self._last_error: Optional[str] = None

    async def pool_connect(self, connection_url: Optional[str] = None) -> Any:
        """Create the pool and check that a connection can be opened.

        Args:
            connection_url: ODBC connection string

        Returns:
            The connection pool
        """
        url = connection_url or self.connection_url
        self.connection_url = url
        if not url:
            self._is_valid = False
            self._last_error = "Database connection URL not provided"
            raise ValueError(self._last_error)

        await self.close()
        try:
            self.pool = await aioodbc.create_pool(dsn=url, minsize=1, maxsize=5, autocommit=False)
            async with self.pool.acquire() as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute("SELECT 1")
            self._is_valid = True
            self._last_error = None
            return self.pool
        except Exception as e:
            self._is_valid = False
            self._last_error = str(e)
            await self.close()
            raise ValueError(f"Connection attempt failed: {obfuscate_password(str(e))}") from e

    @property
    def is_valid(self) -> bool:
        return self._is_valid

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @asynccontextmanager
    async def transaction(self, commit: bool = True) -> AsyncIterator[SqlDriver]:
        """Run a block on one connection inside one transaction.

        Args:
            commit: Commit on success; pass False to always roll back (dry runs)

        Yields:
            SqlDriver bound to the transaction's connection
        """
        if self.pool is None:
            raise ValueError("Connection pool not initialized")

        async with self.pool.acquire() as conn:
            try:
                yield SqlDriver(conn=conn)
            except BaseException:
                await conn.rollback()
                logger.info("Transaction rolled back")
                raise
            if commit:
                await conn.commit()
                logger.debug("Transaction committed")
            else:
                await conn.rollback()
                logger.debug("Transaction rolled back (no commit requested)")

    async def close(self) -> None:
        """Close the pool and all its connections."""
        if self.pool is not None:
            try:
                self.pool.close()
                await self.pool.wait_closed()
            except Exception as e:
                logger.warning(f"Error closing connection pool: {e}")
            finally:
                self.pool = None
                self._is_valid = False
