"""Workspace-level orchestration: claim, allocate, check, supervise."""

import os
import subprocess
from pathlib import Path

from .conflict_checker import ConflictChecker
from .container_runtime import ContainerRuntime
from .liveness import LivenessOracle
from .models import (
    ConflictReport,
    HatchConfig,
    Manifest,
    PortAllocation,
    PortOwnerKind,
    ProcessStatus,
    RegistryResult,
    StartResult,
    StopResult,
)
from .port_allocator import allocate_manifest
from .port_generator import PortGenerator
from .process_manager import ProcessManager
from .registry import PortRegistry
from .utils.logging import setup_logger
from .utils.processes import terminate_tree

logger = setup_logger(__name__)

WORKSPACE_ENV_VAR = "HATCH_WORKSPACE"


def detect_project(project_dir: Path, explicit: str | None = None) -> str:
    """Detect the project name.

    Order: explicit name, the git 'origin' remote's repository name, the
    directory name.

    Args:
        project_dir: Workspace directory
        explicit: Name given by the caller

    Returns:
        Project name
    """
    if explicit:
        return explicit

    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            cwd=project_dir,
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Could not query git remote: {e}")
    else:
        remote_url = result.stdout.strip()
        if result.returncode == 0 and remote_url:
            # git@github.com:user/repo.git and https://github.com/user/repo.git
            name = remote_url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
            name = name.removesuffix(".git")
            if name:
                return name

    return project_dir.resolve().name


def resolve_workspace(project_dir: Path) -> str:
    """Workspace name: HATCH_WORKSPACE if set, else the directory name."""
    return os.environ.get(WORKSPACE_ENV_VAR) or project_dir.resolve().name


class WorkspaceManager:
    """Runs the claim -> allocate -> check -> start flow for one workspace."""

    def __init__(
        self,
        project_dir: Path,
        manifest: Manifest,
        config: HatchConfig,
        workspace_name: str | None = None,
        container_runtime: ContainerRuntime | None = None,
    ) -> None:
        """Initialize the workspace manager.

        Args:
            project_dir: Workspace directory
            manifest: Project manifest
            config: Tool configuration
            workspace_name: Workspace name, derived from the directory if None
            container_runtime: Container runtime view, Docker if None
        """
        self.project_dir = project_dir.resolve()
        self.manifest = manifest
        self.config = config
        self.workspace_name = workspace_name or resolve_workspace(self.project_dir)

        self.container_runtime = container_runtime or ContainerRuntime()
        self.liveness = LivenessOracle(self.container_runtime)
        self.registry = PortRegistry(config, self.liveness)
        self.port_generator = PortGenerator(config, self.registry)
        self.conflict_checker = ConflictChecker(self.container_runtime, self.registry)
        self.process_manager = ProcessManager(self.project_dir, config, self.conflict_checker)
        self._allocation: PortAllocation | None = None

    @property
    def is_main_workspace(self) -> bool:
        """True for the project's primary checkout."""
        return self.workspace_name == self.manifest.project_name

    def prepare(self) -> PortAllocation:
        """Generate and claim the base port, then allocate every resource.

        Returns:
            Port allocation for this invocation
        """
        if self._allocation is None:
            base_port = self.port_generator.generate_base_port(
                self.workspace_name,
                self.manifest.project_name,
                project_dir=self.project_dir,
                default_base_port=self.manifest.default_base_port,
            )
            self._allocation = allocate_manifest(
                base_port, self.manifest, self.config.port_spacing
            )
            for name, resource in self._allocation.resources.items():
                logger.info(
                    f"Allocated port for {resource.kind.value} '{name}': "
                    f"{resource.primary_host_port}"
                )
        return self._allocation

    def resolve_port(self, name: str) -> int | None:
        """Return the host port of a resource, or None if it is not declared."""
        port = self.prepare().resolve_port(name)
        if port is None:
            logger.warning(f"No port allocated for service: {name}")
        return port

    def check_ports(self) -> ConflictReport:
        """Check allocated ports, tolerating this workspace's own containers."""
        report = self.conflict_checker.check_all(
            self.prepare(), tolerant_workspace=self.workspace_name
        )
        if report.ok:
            logger.info("All allocated ports are available")
        else:
            for conflict in report.conflicts:
                logger.error(f"Port conflict: {conflict.describe()}")
        return report

    def kill_conflicts(self, report: ConflictReport) -> int:
        """Terminate the processes holding conflicting ports.

        Container-held ports are skipped; containers are not ours to stop.

        Args:
            report: Conflict report from check_ports

        Returns:
            Number of processes terminated
        """
        killed = 0
        seen: set[int] = set()
        for conflict in report.conflicts:
            if conflict.owner_kind != PortOwnerKind.PROCESS or conflict.pid is None:
                logger.warning(f"Could not find PID for port {conflict.port}, skipping")
                continue
            if conflict.pid in seen:
                continue
            seen.add(conflict.pid)
            logger.info(f"Killing PID {conflict.pid} on port {conflict.port}")
            if terminate_tree(conflict.pid, self.config.stop_grace_period):
                killed += 1
        if killed:
            logger.info(f"Killed {killed} conflicting process(es)")
        return killed

    def find_conflicting_workspaces(self, report: ConflictReport) -> list[str]:
        """Other workspaces whose port blocks contain conflicting ports."""
        found: list[str] = []
        for conflict in report.conflicts:
            record = self.registry.owner_of_port(conflict.port)
            if record is None or record.workspace_name == self.workspace_name:
                continue
            if record.workspace_name not in found:
                found.append(record.workspace_name)
        return found

    def start_servers(self, names: list[str] | None = None) -> list[StartResult]:
        """Start dev servers, all of them or the named ones.

        Args:
            names: Dev server names, None for all

        Returns:
            One result per requested server
        """
        allocation = self.prepare()
        env = allocation.as_env()
        servers = self.manifest.dev_servers
        results = []

        if names:
            unknown = [n for n in names if self.manifest.get_dev_server(n) is None]
            for name in unknown:
                logger.error(f"Unknown dev server: {name}")
                results.append(
                    StartResult(name=name, success=False, message=f"Unknown dev server: {name}")
                )
            servers = [s for s in servers if s.name in names]

        for server in servers:
            port = allocation.resolve_port(server.name)
            if port is None:
                raise ValueError(f"Failed to resolve port for {server.name}")
            results.append(
                self.process_manager.start(
                    server.name,
                    self.project_dir / server.directory,
                    server.command,
                    port,
                    env=env,
                )
            )

        if not any(r.success for r in results):
            logger.warning("No servers started")
        return results

    def run_servers(self, names: list[str] | None = None) -> list[StartResult]:
        """Start dev servers and stay in the foreground until they exit.

        An interrupt stops every server before the process exits.
        """
        results = self.start_servers(names)
        self.process_manager.run_foreground()
        return results

    def stop_servers(self) -> list[StopResult]:
        """Stop every dev server of this workspace."""
        return self.process_manager.stop_all()

    def status(self, probe_http: bool = False) -> list[ProcessStatus]:
        """Report dev server status."""
        return self.process_manager.status(probe_http=probe_http)

    def service_urls(self) -> dict[str, str]:
        """Local URL of every allocated resource, in allocation order."""
        allocation = self.prepare()
        return {
            name: f"http://localhost:{resource.primary_host_port}"
            for name, resource in allocation.resources.items()
        }

    def down(self) -> RegistryResult:
        """Stop dev servers, release the registry claim and clear runtime state.

        Returns:
            Result of releasing the claim
        """
        self.process_manager.stop_all()
        result = self.registry.release(self.workspace_name)

        for log_file in self.process_manager.state_dir.glob("*.log"):
            try:
                log_file.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove {log_file}: {e}")

        return result

    def clean_registry(self) -> RegistryResult:
        """Drop registry claims of workspaces that are no longer alive."""
        return self.registry.clean()
