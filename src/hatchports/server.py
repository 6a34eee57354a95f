"""MCP server exposing a workspace's ports to MCP clients."""

import atexit
from pathlib import Path
from typing import Any

from fastmcp import FastMCP

from .config_manager import ConfigManager
from .models import HatchConfig
from .utils.logging import setup_logger
from .workspace_manager import WorkspaceManager, detect_project

logger = setup_logger(__name__)

# Initialize server
mcp = FastMCP("HatchPorts")

# Global workspace (initialized in main)
workspace: WorkspaceManager


def initialize_workspace(
    project_dir: str | Path | None = None,
    project_name: str | None = None,
    home_dir: str | None = None,
) -> WorkspaceManager:
    """Initialize the workspace served by the MCP tools.

    Args:
        project_dir: Workspace directory, defaults to the current directory
        project_name: Explicit project name
        home_dir: Tool home directory, defaults to HATCH_HOME or ~/.hatch

    Returns:
        Workspace manager
    """
    global workspace

    config = HatchConfig.from_env(home_dir)
    config.ensure_directories()

    directory = Path(project_dir or Path.cwd()).resolve()
    project = detect_project(directory, project_name)
    manifest = ConfigManager(config).load_manifest(directory, project)

    workspace = WorkspaceManager(directory, manifest, config)
    workspace.prepare()

    # Register cleanup on exit
    atexit.register(cleanup)

    logger.info(f"HatchPorts MCP server initialized for workspace '{workspace.workspace_name}'")
    return workspace


def cleanup() -> None:
    """Stop dev servers started through the MCP tools."""
    logger.info("Shutting down HatchPorts...")
    workspace.stop_servers()
    logger.info("Shutdown complete")


@mcp.tool()
def resolve_port(name: str) -> int | None:
    """Resolve the host port allocated to a named resource.

    Args:
        name: Docker service, docker extra or dev server name

    Returns:
        Host port, or None if the resource is not declared
    """
    return workspace.resolve_port(name)


@mcp.tool()
def get_port_allocation() -> dict[str, Any]:
    """Get the workspace's full port allocation.

    Returns the base port and, per resource, its primary host port and the
    container-port to host-port mapping.
    """
    allocation = workspace.prepare()
    return {
        "workspace": workspace.workspace_name,
        "base_port": allocation.base_port,
        "resources": {
            name: resource.model_dump(mode="json")
            for name, resource in allocation.resources.items()
        },
        "urls": workspace.service_urls(),
    }


@mcp.tool()
def check_ports() -> dict[str, Any]:
    """Check whether the workspace's allocated ports are free on this machine.

    Ports published by this workspace's own containers are not conflicts.

    Returns:
        ok flag and the conflicting ports with what holds them
    """
    report = workspace.check_ports()
    return {
        "ok": report.ok,
        "conflicts": [
            {**conflict.model_dump(mode="json"), "description": conflict.describe()}
            for conflict in report.conflicts
        ],
    }


@mcp.tool()
def list_claims() -> list[dict[str, Any]]:
    """List every workspace's base port claim on this machine.

    Returns:
        Claim records with an 'alive' flag
    """
    return [
        {**record.model_dump(mode="json"), "alive": alive}
        for record, alive in workspace.registry.list_claims()
    ]


@mcp.tool()
def clean_registry() -> dict[str, Any]:
    """Remove claims of workspaces that are no longer running."""
    return workspace.clean_registry().model_dump(mode="json")


@mcp.tool()
def dev_server_status(probe_http: bool = False) -> list[dict[str, Any]]:
    """Get the status of the workspace's dev servers.

    Args:
        probe_http: Also report whether running servers answer HTTP requests
    """
    return [status.model_dump(mode="json") for status in workspace.status(probe_http)]


@mcp.tool()
def start_dev_servers(names: list[str] | None = None) -> list[dict[str, Any]]:
    """Start dev servers in the background on their allocated ports.

    Args:
        names: Dev servers to start, all if omitted
    """
    return [result.model_dump(mode="json") for result in workspace.start_servers(names)]


@mcp.tool()
def stop_dev_servers() -> list[dict[str, Any]]:
    """Stop every dev server of the workspace, including child processes."""
    return [result.model_dump(mode="json") for result in workspace.stop_servers()]
