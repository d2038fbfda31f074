# buildloop/__main__.py
"""
Entry point for the buildloop MCP server.

CRITICAL: Server imports configure_logging() first to prevent stdout pollution.

FastMCP doesn't have built-in lifecycle hooks, so lifecycle initialization is
handled here before the stdio transport starts.
"""

import asyncio
import logging

# Import server (which configures logging before anything else)
from buildloop.server import initialize_lifecycle, mcp

logger = logging.getLogger(__name__)


async def main() -> None:
    """
    Main entry point.

    Initializes lifecycle (DB + workers + signals) and then runs the MCP server.
    """
    lifecycle = await initialize_lifecycle()

    logger.info("Starting MCP server on stdio transport")
    try:
        await mcp.run_stdio_async()
    finally:
        await lifecycle.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
