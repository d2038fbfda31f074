# buildloop/server.py
"""
FastMCP server instance with tool registration.

CRITICAL: configure_logging() is called first to prevent stdout pollution.
All logging goes to stderr as JSON.
"""

# Configure logging FIRST before any other imports
from buildloop.logging_config import configure_logging

configure_logging()

# Now safe to import everything else
import logging

from fastmcp import FastMCP

from buildloop.background.lifecycle import ServerLifecycle
from buildloop.config.loader import get_db_path, load_config
from buildloop.config.schema import BuildLoopConfig
from buildloop.tools.build_status import build_status as _build_status
from buildloop.tools.cancel_build import cancel_build as _cancel_build
from buildloop.tools.create_project import create_project as _create_project
from buildloop.tools.list_versions import list_versions as _list_versions
from buildloop.tools.queue_stats import queue_stats as _queue_stats
from buildloop.tools.send_message import send_message as _send_message

logger = logging.getLogger(__name__)

# Create FastMCP instance
mcp = FastMCP("buildloop")

# Load configuration
_config = load_config()
logger.info(f"Loaded configuration: provider={_config.provider}")

# Lifecycle manager (will be initialized by __main__.py)
_lifecycle: ServerLifecycle | None = None


def get_lifecycle() -> ServerLifecycle:
    """
    Get the lifecycle manager.

    Raises:
        RuntimeError: If lifecycle not initialized (should never happen)
    """
    if _lifecycle is None:
        raise RuntimeError("Server lifecycle not initialized. Call initialize_lifecycle() first.")
    return _lifecycle


async def initialize_lifecycle(config: BuildLoopConfig | None = None) -> ServerLifecycle:
    """
    Initialize the server lifecycle (DB + queues + workers + signals).

    Must be called before any tool calls. Called by __main__.py on startup.

    Args:
        config: Configuration (defaults to the module-level config)
    """
    global _lifecycle

    db_path = get_db_path()
    logger.info(f"Initializing lifecycle with db_path={db_path}")

    _lifecycle = ServerLifecycle(str(db_path), config=config or _config)
    await _lifecycle.startup()

    logger.info("Lifecycle initialized: SQLite + workers + signals ready")
    return _lifecycle


@mcp.tool()
async def create_project(name: str) -> dict:
    """Create a new, empty app project. Returns its project_id."""
    lifecycle = get_lifecycle()
    return await _create_project(name, store=lifecycle.store)


@mcp.tool()
async def send_message(
    project_id: str,
    message: str,
    model: str | None = None,
    conversation_id: str | None = None,
) -> dict:
    """Describe what to build or change. Queues a build that produces a new project version."""
    lifecycle = get_lifecycle()
    return await _send_message(
        project_id,
        message,
        model,
        conversation_id,
        store=lifecycle.store,
        queue=lifecycle.build_queue,
    )


@mcp.tool()
async def build_status(project_id: str) -> dict:
    """Check a project's build/deploy status, progress and latest jobs."""
    lifecycle = get_lifecycle()
    return await _build_status(
        project_id,
        store=lifecycle.store,
        build_queue=lifecycle.build_queue,
        deploy_queue=lifecycle.deploy_queue,
    )


@mcp.tool()
async def cancel_build(project_id: str) -> dict:
    """Cancel the queued or running build of a project. Nothing from it is saved."""
    lifecycle = get_lifecycle()
    return await _cancel_build(
        project_id, store=lifecycle.store, queue=lifecycle.build_queue, bus=lifecycle.bus
    )


@mcp.tool()
async def queue_stats() -> dict:
    """Job counts per state for the build and deploy queues."""
    lifecycle = get_lifecycle()
    return await _queue_stats(lifecycle.build_queue, lifecycle.deploy_queue)


@mcp.tool()
async def list_versions(project_id: str) -> dict:
    """List the saved versions of a project, oldest first."""
    lifecycle = get_lifecycle()
    return await _list_versions(project_id, store=lifecycle.store)


logger.info("MCP server initialized with 6 tools")
