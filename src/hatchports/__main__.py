"""Command line entry point for hatch-ports."""

import argparse
import logging
import sys
from collections.abc import Callable
from pathlib import Path

from .config_manager import MANIFEST_NAME, ConfigManager
from .container_runtime import ContainerRuntime
from .liveness import LivenessOracle
from .models import ConflictReport, DevServerSpec, DockerResource, HatchConfig, Manifest
from .registry import PortRegistry
from .utils.logging import PACKAGE_LOGGER, set_package_level, setup_logger
from .utils.validation import validate_command_available
from .workspace_manager import WorkspaceManager, detect_project

logger = setup_logger(f"{PACKAGE_LOGGER}.cli")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="hatch-ports",
        description="Workspace-isolated port allocation and dev server supervision",
    )
    parser.add_argument(
        "--project-dir",
        type=str,
        default=".",
        help="Workspace directory (default: current directory)",
    )
    parser.add_argument("--project", type=str, help="Project name (default: detected)")
    parser.add_argument(
        "--home",
        type=str,
        help="Tool home holding the port registry (default: $HATCH_HOME or ~/.hatch)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    setup = commands.add_parser("setup", help="Claim ports and check they are free")
    setup.add_argument(
        "--kill-conflicts",
        action="store_true",
        help="Kill processes holding our ports instead of prompting",
    )

    start = commands.add_parser("start", help="Start dev servers in the background")
    start.add_argument("names", nargs="*", help="Dev servers to start (default: all)")

    run = commands.add_parser("run", help="Run dev servers in the foreground")
    run.add_argument("names", nargs="*", help="Dev servers to run (default: all)")

    commands.add_parser("stop", help="Stop all dev servers")

    status = commands.add_parser("status", help="Show ports and dev server status")
    status.add_argument("--probe", action="store_true", help="Probe dev server URLs over HTTP")

    down = commands.add_parser("down", help="Stop dev servers and release the port claim")
    down.add_argument("--force", action="store_true", help="Do not ask for confirmation")

    commands.add_parser("ports", help="Show the port allocation")

    resolve = commands.add_parser("resolve", help="Print the port of a resource")
    resolve.add_argument("name", help="Resource name")

    registry = commands.add_parser("registry", help="List port claims of all workspaces")
    registry.add_argument("--clean", action="store_true", help="Remove abandoned claims")

    commands.add_parser("init", help=f"Create a starter {MANIFEST_NAME}")
    commands.add_parser("doctor", help="Check tools and registry health")
    commands.add_parser("mcp", help="Serve the workspace's ports over MCP")

    return parser


def load_workspace(args: argparse.Namespace, config: HatchConfig) -> WorkspaceManager:
    """Load the manifest and build the workspace manager.

    Raises:
        FileNotFoundError: If no manifest exists
        ValueError: If the manifest is invalid
    """
    project_dir = Path(args.project_dir).resolve()
    project_name = detect_project(project_dir, args.project)
    manifest = ConfigManager(config).load_manifest(project_dir, project_name)
    return WorkspaceManager(project_dir, manifest, config)


def print_conflicts(report: ConflictReport) -> None:
    """Print conflicts with attribution."""
    for conflict in report.conflicts:
        print(f"  -> {conflict.describe()}")


def ask(prompt: str) -> str | None:
    """Prompt on an interactive terminal, None when not interactive."""
    if not sys.stdin.isatty():
        return None
    try:
        return input(prompt).strip()
    except EOFError:
        return None


def cmd_setup(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Claim ports, verify them and print the service URLs."""
    print(f"Project: {workspace.manifest.project_name}")
    print(f"Workspace: {workspace.workspace_name}")
    allocation = workspace.prepare()
    print(f"Base port: {allocation.base_port}")

    report = workspace.check_ports()
    if not report.ok:
        print("\nPort conflicts detected:")
        print_conflicts(report)
        conflicting = workspace.find_conflicting_workspaces(report)

        if args.kill_conflicts:
            choice = "1"
        else:
            print("\nChoose an option:")
            print("  1) Kill conflicting processes and continue")
            if conflicting:
                print("  2) Show conflicting workspace info and abort")
            else:
                print("  2) Abort")
            choice = ask("Option [1/2]: ")
            if choice is None:
                logger.error("Non-interactive shell, cannot prompt. Aborting.")
                return 1

        if choice != "1":
            if conflicting:
                print("\nConflicting workspace(s):")
                for name in conflicting:
                    print(f"  - {name}")
                print("\nTo free their ports, run 'hatch-ports down' in their directory.")
            logger.error("Aborted.")
            return 1

        workspace.kill_conflicts(report)
        report = workspace.check_ports()
        if not report.ok:
            print_conflicts(report)
            logger.error("Some port conflicts remain after killing processes. Aborting.")
            return 1

    print("\nURLs:")
    for name, url in workspace.service_urls().items():
        print(f"  {name}: {url}")
    if workspace.manifest.dev_servers:
        print("\nTo start dev servers, run:\n  hatch-ports run")
    return 0


def cmd_start(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Start dev servers in the background."""
    results = workspace.start_servers(args.names or None)
    for result in results:
        print(f"  {result.name}: {result.message}")
    return 0 if results and all(r.success for r in results) else 1


def cmd_run(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Run dev servers in the foreground until interrupted."""
    results = workspace.run_servers(args.names or None)
    return 0 if results and all(r.success for r in results) else 1


def cmd_stop(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Stop all dev servers."""
    results = workspace.stop_servers()
    return 0 if all(r.success for r in results) else 1


def cmd_status(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Show dev server status and URLs."""
    print(f"=== {workspace.manifest.project_name} Status ===")
    statuses = workspace.status(probe_http=args.probe)
    print("\nDev Servers:")
    if not statuses:
        print("  No servers registered")
    for status in statuses:
        state = "RUNNING" if status.running else "STOPPED"
        line = f"  {status.name} (PID: {status.pid}) - {state}"
        if status.running:
            line += f" - {status.url}"
        if status.responding is not None:
            line += " - responding" if status.responding else " - not responding"
        print(line)

    print("\nAvailable URLs:")
    for name, url in workspace.service_urls().items():
        print(f"  {name}: {url}")
    return 0


def cmd_down(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Stop dev servers and release the workspace's port claim."""
    print(f"Workspace: {workspace.workspace_name}")
    print(f"Directory: {workspace.project_dir}")
    if not args.force:
        answer = ask("Continue? [y/N] ")
        if answer is not None and answer.lower() != "y":
            print("Cancelled")
            return 0
    result = workspace.down()
    print(result.message)
    return 0 if result.success else 1


def cmd_ports(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Print the port allocation."""
    allocation = workspace.prepare()
    print(f"Base port: {allocation.base_port}")
    for name, resource in allocation.resources.items():
        line = f"  {name:<24} {resource.primary_host_port:>5}  ({resource.kind.value})"
        if len(resource.host_port_by_container_port) > 1:
            mapping = ", ".join(
                f"{c}->{h}" for c, h in resource.host_port_by_container_port.items()
            )
            line += f"  [{mapping}]"
        print(line)
    return 0


def cmd_resolve(args: argparse.Namespace, workspace: WorkspaceManager) -> int:
    """Print the port of one resource."""
    port = workspace.resolve_port(args.name)
    if port is None:
        return 1
    print(port)
    return 0


def cmd_registry(args: argparse.Namespace, config: HatchConfig) -> int:
    """List (and optionally clean) the shared registry."""
    registry = PortRegistry(config, LivenessOracle(ContainerRuntime()))
    claims = registry.list_claims()
    if not claims:
        print("  (no claims)")
    for record, alive in claims:
        state = "alive" if alive else "stale"
        print(
            f"  {record.base_port:>5}  {record.workspace_name:<30} {state:<6} {record.project_dir}"
        )

    if args.clean:
        result = registry.clean()
        print(result.message)
        return 0 if result.success else 1
    return 0


def cmd_init(args: argparse.Namespace, config: HatchConfig) -> int:
    """Write a starter manifest to the project directory."""
    project_dir = Path(args.project_dir).resolve()
    path = project_dir / MANIFEST_NAME
    if path.exists():
        logger.error(f"{path} already exists")
        return 1

    manifest = Manifest(
        project_name=detect_project(project_dir, args.project),
        docker_services=[DockerResource(name="postgres", container_ports=[5432])],
        dev_servers=[
            DevServerSpec(
                name="web",
                directory=Path("."),
                command="npm run dev -- --port {PORT}",
                port_offset=10,
            )
        ],
    )
    ConfigManager(config).save_manifest(manifest, path)
    print(f"Created {path}")
    return 0


def cmd_doctor(args: argparse.Namespace, config: HatchConfig) -> int:
    """Check required tools and report the registry."""
    failed = False
    for command, required in (("git", False), ("docker", False)):
        available, error = validate_command_available(command)
        if available:
            print(f"  [ok] {command}")
        else:
            print(f"  [{'error' if required else 'warn'}] {error}")
            failed = failed or required

    print("\nPort registry:")
    if config.registry_file.exists():
        args.clean = True
        if cmd_registry(args, config) != 0:
            failed = True
    else:
        print("  (no registry file)")

    return 1 if failed else 0


def cmd_mcp(args: argparse.Namespace, config: HatchConfig) -> int:
    """Serve the workspace over MCP (stdio)."""
    from .server import initialize_workspace, mcp

    initialize_workspace(args.project_dir, args.project, str(config.home_dir))
    logger.info("Starting HatchPorts MCP server...")
    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down...")
    return 0


WORKSPACE_COMMANDS: dict[str, Callable[[argparse.Namespace, WorkspaceManager], int]] = {
    "setup": cmd_setup,
    "start": cmd_start,
    "run": cmd_run,
    "stop": cmd_stop,
    "status": cmd_status,
    "down": cmd_down,
    "ports": cmd_ports,
    "resolve": cmd_resolve,
}

GLOBAL_COMMANDS: dict[str, Callable[[argparse.Namespace, HatchConfig], int]] = {
    "registry": cmd_registry,
    "init": cmd_init,
    "doctor": cmd_doctor,
    "mcp": cmd_mcp,
}


def run(argv: list[str] | None = None) -> int:
    """Parse arguments and run a command.

    Args:
        argv: Command line arguments, sys.argv if None

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)
    set_package_level(getattr(logging, args.log_level))

    try:
        config = HatchConfig.from_env(args.home)
        config.ensure_directories()

        if args.command in GLOBAL_COMMANDS:
            return GLOBAL_COMMANDS[args.command](args, config)

        workspace = load_workspace(args, config)
        return WORKSPACE_COMMANDS[args.command](args, workspace)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1


def main() -> None:
    """Main entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
