"""Read-only view of the local container runtime."""

from typing import Any

import docker
from docker.errors import DockerException

from .models import ContainerInfo
from .utils.logging import setup_logger

logger = setup_logger(__name__)


class ContainerRuntime:
    """Answers which containers are running and which host ports they publish.

    Nothing here starts or stops containers. An unreachable daemon is treated
    as "no containers running".
    """

    def __init__(self, client: Any | None = None) -> None:
        """Initialize the runtime view.

        Args:
            client: Docker client, created lazily from the environment if None
        """
        self._client = client
        self._unavailable = False

    def _get_client(self) -> Any | None:
        """Return a Docker client, or None if the daemon cannot be reached."""
        if self._client is None and not self._unavailable:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                logger.debug(f"Docker is not available: {e}")
                self._unavailable = True
        return self._client

    def running_containers(self) -> list[ContainerInfo]:
        """List running containers with their published host ports.

        Returns:
            Running containers, empty if Docker is unavailable
        """
        client = self._get_client()
        if client is None:
            return []

        try:
            # Containers removed between listing and inspection are skipped
            containers = client.containers.list(ignore_removed=True)
        except DockerException as e:
            logger.warning(f"Failed to list Docker containers: {e}")
            return []

        return [
            ContainerInfo(name=container.name, host_ports=self._host_ports(container.ports))
            for container in containers
        ]

    def has_running_with_prefix(self, prefix: str | tuple[str, ...]) -> bool:
        """Check whether any running container name starts with a prefix.

        Args:
            prefix: Container name prefix (e.g., 'myapp-feature-'), or a tuple of them

        Returns:
            True if at least one matching container is running
        """
        return any(c.name.startswith(prefix) for c in self.running_containers())

    def container_for_port(self, port: int) -> str | None:
        """Name of the running container publishing a host port.

        Args:
            port: Host port

        Returns:
            Container name or None
        """
        for container in self.running_containers():
            if port in container.host_ports:
                return container.name
        return None

    def workspace_owns_port(self, port: int, workspace_name: str) -> bool:
        """Check whether a host port is published by one of a workspace's containers.

        Args:
            port: Host port
            workspace_name: Workspace whose containers are named '<workspace>-*'

        Returns:
            True if the publishing container belongs to the workspace
        """
        container = self.container_for_port(port)
        return container is not None and container.startswith(
            workspace_container_prefix(workspace_name)
        )

    @staticmethod
    def _host_ports(ports: dict[str, Any] | None) -> list[int]:
        """Extract published host ports from a container's port map.

        The map looks like {'5432/tcp': [{'HostIp': '0.0.0.0', 'HostPort': '15000'}]};
        unpublished container ports map to None.
        """
        host_ports: set[int] = set()
        for bindings in (ports or {}).values():
            for binding in bindings or []:
                host_port = binding.get("HostPort")
                if host_port and host_port.isdigit():
                    host_ports.add(int(host_port))
        return sorted(host_ports)


def workspace_container_prefix(workspace_name: str) -> str:
    """Container name prefix used by a workspace's compose project."""
    return f"{workspace_name}-"
