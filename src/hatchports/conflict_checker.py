"""Host-level port availability checks for hatch-ports."""

import socket

import psutil

from .container_runtime import ContainerRuntime, workspace_container_prefix
from .models import (
    ConflictReport,
    ContainerInfo,
    PortAllocation,
    PortConflict,
    PortOwnerKind,
)
from .registry import PortRegistry
from .utils.logging import setup_logger

logger = setup_logger(__name__)


class ConflictChecker:
    """Finds allocated ports that something else on the host already holds.

    Docker may publish ports through iptables rules that never show up as
    a local listener, so the container runtime's port list is consulted as a
    second source of truth.
    """

    def __init__(
        self,
        container_runtime: ContainerRuntime,
        registry: PortRegistry | None = None,
        bind_host: str = "0.0.0.0",
    ) -> None:
        """Initialize the checker.

        Args:
            container_runtime: Container runtime view
            registry: Port registry, used to attribute ports to workspaces
            bind_host: Interface used for the bind probe (all interfaces)
        """
        self.container_runtime = container_runtime
        self.registry = registry
        self.bind_host = bind_host

    def check_all(
        self,
        allocation: PortAllocation,
        tolerant_workspace: str | None = None,
    ) -> ConflictReport:
        """Check every allocated host port.

        Args:
            allocation: Ports to check
            tolerant_workspace: Workspace whose own containers may hold ports

        Returns:
            Report listing every conflicting port with attribution
        """
        containers = self.container_runtime.running_containers()
        conflicts = []
        for port in allocation.host_ports():
            conflict = self._check(
                port, containers, tolerant_workspace, allocation.resource_for_port(port)
            )
            if conflict is not None:
                logger.debug(f"Port conflict: {conflict.describe()}")
                conflicts.append(conflict)
        return ConflictReport(conflicts=conflicts)

    def check_port(
        self,
        port: int,
        tolerant_workspace: str | None = None,
        resource_name: str | None = None,
    ) -> PortConflict | None:
        """Check a single port.

        Args:
            port: Host port
            tolerant_workspace: Workspace whose own containers may hold the port
            resource_name: Resource name used in the attribution

        Returns:
            Conflict, or None if the port is free
        """
        containers = self.container_runtime.running_containers()
        return self._check(port, containers, tolerant_workspace, resource_name)

    def is_port_bound(self, port: int) -> bool:
        """Check whether anything on the host holds a port."""
        return self.check_port(port) is not None

    def _check(
        self,
        port: int,
        containers: list[ContainerInfo],
        tolerant_workspace: str | None,
        resource_name: str | None,
    ) -> PortConflict | None:
        container = next((c.name for c in containers if port in c.host_ports), None)
        listeners = _listening_pids(port)
        bound = bool(listeners) or container is not None or not self._can_bind(port)
        if not bound:
            return None

        if (
            tolerant_workspace
            and container is not None
            and container.startswith(workspace_container_prefix(tolerant_workspace))
        ):
            logger.debug(f"Port {port} is held by own container {container}")
            return None

        return self._attribute(port, resource_name, listeners, container)

    def _attribute(
        self,
        port: int,
        resource_name: str | None,
        listeners: list[int | None],
        container: str | None,
    ) -> PortConflict:
        """Describe who holds a port: process, then container, then workspace."""
        conflict = PortConflict(port=port, resource_name=resource_name)

        pid = next((p for p in listeners if p), None)
        if pid is not None:
            conflict.owner_kind = PortOwnerKind.PROCESS
            conflict.pid = pid
            try:
                conflict.process_name = psutil.Process(pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
            return conflict

        if container is not None:
            conflict.owner_kind = PortOwnerKind.CONTAINER
            conflict.container_name = container
            return conflict

        if self.registry is not None:
            record = self.registry.owner_of_port(port)
            if record is not None:
                conflict.owner_kind = PortOwnerKind.WORKSPACE
                conflict.workspace_name = record.workspace_name

        return conflict

    def _can_bind(self, port: int) -> bool:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                sock.bind((self.bind_host, port))
            return True
        except OSError:
            return False


def _listening_pids(port: int) -> list[int | None]:
    """PIDs with a LISTEN socket on a port; None where the PID is hidden."""
    try:
        return [
            conn.pid
            for conn in psutil.net_connections(kind="inet")
            if conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN
        ]
    except psutil.AccessDenied:
        pass

    # System-wide listing is privileged on some platforms, fall back to
    # the processes we are allowed to inspect
    pids: list[int | None] = []
    for proc in psutil.process_iter(["pid"]):
        try:
            connections = proc.net_connections(kind="inet")
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if any(
            c.laddr and c.laddr.port == port and c.status == psutil.CONN_LISTEN
            for c in connections
        ):
            pids.append(proc.pid)
    return pids
