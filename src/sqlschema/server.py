# ruff: noqa: B008
import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Any
from typing import List

import mcp.types as types
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from pydantic import Field

# Load environment variables from .env file if present
# This allows users to configure the server via .env file
load_dotenv()

from .installer import InstallResult
from .installer import SchemaInstaller
from .installer import SchemaObject
from .installer import SchemaRegistry
from .sql import DbConnPool
from .sql import obfuscate_password

# Initialize FastMCP with default settings
mcp = FastMCP("sqlschema")

# Constants
DEFAULT_SSE_HOST = "localhost"
DEFAULT_SSE_PORT = 8000
DEFAULT_SSE_PATH = "/sse"
DEFAULT_SCHEMA_GROUP = "default"

ResponseType = List[types.TextContent | types.ImageContent | types.EmbeddedResource]

logger = logging.getLogger(__name__)

# Global variables
db_connection = DbConnPool()
current_schema_group = DEFAULT_SCHEMA_GROUP
shutdown_in_progress = False


def format_text_response(text: Any) -> ResponseType:
    """Format a text response."""
    return [types.TextContent(type="text", text=str(text))]


def format_error_response(error: str) -> ResponseType:
    """Format an error response."""
    return format_text_response(f"Error: {error}")


def format_install_result(result: InstallResult) -> dict[str, Any]:
    response: dict[str, Any] = {
        "schema_group": result.schema_group,
        "added": result.added,
        "removed": result.removed,
        "altered": result.altered,
        "recreated": result.recreated,
        "statement_count": len(result.statements),
    }
    if result.dry_run:
        response["dry_run"] = True
        response["sql_preview"] = result.sql_preview
    return response


# =============================================================================
# Schema Tools
# =============================================================================


@mcp.tool(
    description="Install or upgrade a schema group. Statements are DDL (CREATE TABLE/VIEW/PROCEDURE/FUNCTION/"
    "TRIGGER/INDEX/TYPE, ALTER TABLE ... ADD CONSTRAINT, GRANT) in declaration order. Objects missing from the "
    "list are dropped, changed objects are redeployed and changed tables are altered in place."
)
async def schema_install(
    statements: list[str] = Field(description="Desired DDL statements, one object per statement"),
    schema_group: str = Field(description="Schema group that owns the objects (default: server setting)", default=""),
    dry_run: bool = Field(description="If True, show SQL without executing", default=False),
) -> ResponseType:
    """Install a schema group."""
    group = schema_group or current_schema_group
    try:
        async with db_connection.transaction(commit=not dry_run) as sql_driver:
            registry = SchemaRegistry(sql_driver, group)
            if not dry_run:
                await registry.acquire_group_lock()
            installer = SchemaInstaller(sql_driver)
            result = await installer.install(group, statements, dry_run=dry_run)
        return format_text_response(format_install_result(result))
    except Exception as e:
        logger.error(f"Error installing schema group {group}: {e}")
        return format_error_response(str(e))


@mcp.tool(description="Drop every object of a schema group and clear its registry entries")
async def schema_uninstall(
    schema_group: str = Field(description="Schema group to remove (default: server setting)", default=""),
    dry_run: bool = Field(description="If True, show SQL without executing", default=False),
) -> ResponseType:
    """Uninstall a schema group."""
    group = schema_group or current_schema_group
    try:
        async with db_connection.transaction(commit=not dry_run) as sql_driver:
            registry = SchemaRegistry(sql_driver, group)
            if not dry_run:
                await registry.acquire_group_lock()
            installer = SchemaInstaller(sql_driver)
            result = await installer.uninstall(group, dry_run=dry_run)
        return format_text_response(format_install_result(result))
    except Exception as e:
        logger.error(f"Error uninstalling schema group {group}: {e}")
        return format_error_response(str(e))


@mcp.tool(description="List the objects registered for a schema group with their signatures and install order")
async def schema_registry(
    schema_group: str = Field(description="Schema group to inspect (default: server setting)", default=""),
) -> ResponseType:
    """Show the registry of a schema group."""
    group = schema_group or current_schema_group
    try:
        async with db_connection.transaction(commit=False) as sql_driver:
            status = await SchemaRegistry(sql_driver, group).get_status()
        return format_text_response(status)
    except Exception as e:
        logger.error(f"Error reading registry for schema group {group}: {e}")
        return format_error_response(str(e))


@mcp.tool(
    description="Check each statement's object against the live database and the registry. "
    "Reports whether the object exists and whether it is registered with the same signature."
)
async def schema_verify(
    statements: list[str] = Field(description="DDL statements to verify"),
    schema_group: str = Field(description="Schema group to check against (default: server setting)", default=""),
) -> ResponseType:
    """Verify objects against the database and registry."""
    group = schema_group or current_schema_group
    try:
        objects = [SchemaObject(sql) for sql in statements]
        report = []
        async with db_connection.transaction(commit=False) as sql_driver:
            registry = SchemaRegistry(sql_driver, group)
            has_registry = await registry.table_exists()
            for schema_object in objects:
                report.append(
                    {
                        "name": schema_object.name,
                        "object_type": schema_object.object_type.value,
                        "exists": await schema_object.verify(sql_driver),
                        "registered": has_registry and await registry.contains(schema_object),
                    }
                )
        return format_text_response(report)
    except Exception as e:
        logger.error(f"Error verifying schema objects: {e}")
        return format_error_response(str(e))


async def main():
    # Parse command line arguments
    parser = argparse.ArgumentParser(description="SQL Server Schema Installer MCP Server")
    parser.add_argument("database_url", help="ODBC connection string", nargs="?")
    parser.add_argument(
        "--schema-group",
        type=str,
        default=None,
        help=f"Default schema group for tools (default: {DEFAULT_SCHEMA_GROUP}). Can also be set via SCHEMA_GROUP env var.",
    )
    parser.add_argument(
        "--transport",
        type=str,
        choices=["stdio", "sse"],
        default="stdio",
        help="Select MCP transport: stdio (default) or sse",
    )
    parser.add_argument(
        "--sse-host",
        type=str,
        default=None,
        help=f"Host to bind SSE server to (default: {DEFAULT_SSE_HOST}). Can also be set via SSE_HOST env var.",
    )
    parser.add_argument(
        "--sse-port",
        type=int,
        default=None,
        help=f"Port for SSE server (default: {DEFAULT_SSE_PORT}). Can also be set via SSE_PORT env var.",
    )
    parser.add_argument(
        "--sse-path",
        type=str,
        default=None,
        help=f"Path for SSE endpoint (default: {DEFAULT_SSE_PATH}). Can also be set via SSE_PATH env var.",
    )

    args = parser.parse_args()

    # Set the default schema group from CLI argument or environment variable
    global current_schema_group
    if args.schema_group is not None:
        current_schema_group = args.schema_group
    else:
        current_schema_group = os.environ.get("SCHEMA_GROUP", DEFAULT_SCHEMA_GROUP)

    logger.info(f"Starting schema installer MCP server (default schema group: {current_schema_group})")

    # Get database URL from environment variable or command line
    database_url = os.environ.get("DATABASE_URI", args.database_url)

    if not database_url:
        raise ValueError(
            "Error: No database URL provided. Please specify via 'DATABASE_URI' environment variable or command-line argument.",
        )

    # Initialize database connection pool
    try:
        await db_connection.pool_connect(database_url)
        logger.info("Successfully connected to database and initialized connection pool")
    except Exception as e:
        logger.warning(
            f"Could not connect to database: {obfuscate_password(str(e))}",
        )
        logger.warning(
            "The MCP server will start but database operations will fail until a valid connection is established.",
        )

    # Set up proper shutdown handling
    try:
        loop = asyncio.get_running_loop()
        signals = (signal.SIGTERM, signal.SIGINT)
        for s in signals:
            loop.add_signal_handler(s, lambda s=s: asyncio.create_task(shutdown(s)))
    except NotImplementedError:
        # Windows doesn't support signals properly
        logger.warning("Signal handling not supported on Windows")

    # Run the server with the selected transport (always async)
    if args.transport == "stdio":
        await mcp.run_stdio_async()
    else:
        # Set SSE host from CLI argument or environment variable
        sse_host = args.sse_host
        if sse_host is None:
            sse_host = os.environ.get("SSE_HOST", DEFAULT_SSE_HOST)

        # Set SSE port from CLI argument or environment variable
        sse_port = args.sse_port
        if sse_port is None:
            env_port = os.environ.get("SSE_PORT")
            if env_port is not None:
                try:
                    sse_port = int(env_port)
                except ValueError:
                    logger.warning(f"Invalid SSE_PORT value '{env_port}', using default {DEFAULT_SSE_PORT}")
                    sse_port = DEFAULT_SSE_PORT
            else:
                sse_port = DEFAULT_SSE_PORT

        # Set SSE path from CLI argument or environment variable
        sse_path = args.sse_path
        if sse_path is None:
            sse_path = os.environ.get("SSE_PATH", DEFAULT_SSE_PATH)

        mcp.settings.host = sse_host
        mcp.settings.port = sse_port
        mcp.settings.sse_path = sse_path

        logger.info(f"Starting SSE server on {sse_host}:{sse_port}{sse_path}")
        await mcp.run_sse_async()


async def shutdown(sig=None):
    """Clean shutdown of the server."""
    global shutdown_in_progress

    if shutdown_in_progress:
        logger.warning("Forcing immediate exit")
        sys.exit(1)

    shutdown_in_progress = True

    if sig:
        logger.info(f"Received exit signal {sig.name}")

    # Close database connections
    try:
        await db_connection.close()
        logger.info("Closed database connections")
    except Exception as e:
        logger.error(f"Error closing database connections: {e}")

    # Exit with appropriate status code
    sys.exit(128 + sig if sig is not None else 0)
