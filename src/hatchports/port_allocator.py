"""Port allocation for a workspace's resources."""

from collections.abc import Sequence

from .models import (
    DevServerSpec,
    DockerResource,
    Manifest,
    PortAllocation,
    ResourceAllocation,
    ResourceKind,
)
from .utils.logging import setup_logger

logger = setup_logger(__name__)


def allocate(
    base_port: int,
    docker_resources: Sequence[DockerResource] = (),
    docker_extras: Sequence[DockerResource] = (),
    dev_servers: Sequence[DevServerSpec] = (),
) -> PortAllocation:
    """Assign host ports to resources relative to a base port.

    Docker resources take consecutive blocks from offset 0 in declaration
    order, one host port per container port; extras continue the same
    sequence. Dev servers use their pinned offset so adding a docker service
    never moves them. The result depends only on the arguments.

    Args:
        base_port: First port of the workspace's block
        docker_resources: Container services
        docker_extras: Additional container services
        dev_servers: Dev server processes

    Returns:
        Port allocation

    Raises:
        ValueError: If a resource name is used twice or a port exceeds 65535
    """
    allocation = PortAllocation(base_port=base_port)
    offset = 0

    sequenced = [(r, ResourceKind.DOCKER) for r in docker_resources] + [
        (r, ResourceKind.DOCKER_EXTRA) for r in docker_extras
    ]
    for resource, kind in sequenced:
        host_ports = {
            container_port: _host_port(base_port, offset + index, resource.name)
            for index, container_port in enumerate(resource.container_ports)
        }
        _add(
            allocation,
            ResourceAllocation(
                name=resource.name,
                kind=kind,
                offset=offset,
                primary_host_port=base_port + offset,
                host_port_by_container_port=host_ports,
            ),
        )
        logger.debug(
            f"Allocated {kind.value} '{resource.name}': {base_port + offset} "
            f"(container ports: {', '.join(str(p) for p in resource.container_ports)})"
        )
        offset += resource.container_port_count

    for server in dev_servers:
        port = _host_port(base_port, server.port_offset, server.name)
        _add(
            allocation,
            ResourceAllocation(
                name=server.name,
                kind=ResourceKind.DEV_SERVER,
                offset=server.port_offset,
                primary_host_port=port,
            ),
        )
        logger.debug(f"Allocated dev server '{server.name}': {port}")

    _warn_overlaps(allocation)
    return allocation


def allocate_manifest(
    base_port: int, manifest: Manifest, port_spacing: int | None = None
) -> PortAllocation:
    """Allocate every resource declared in a manifest.

    Args:
        base_port: First port of the workspace's block
        manifest: Project manifest
        port_spacing: Size of a workspace's port block; resources past it are
            reported since they reach into the next workspace's block

    Returns:
        Port allocation
    """
    allocation = allocate(
        base_port,
        manifest.docker_services,
        manifest.docker_extras,
        manifest.dev_servers,
    )
    if port_spacing is not None:
        _warn_outside_block(allocation, port_spacing)
    return allocation


def _host_port(base_port: int, offset: int, name: str) -> int:
    port = base_port + offset
    if port > 65535:
        raise ValueError(f"Port {port} for '{name}' exceeds 65535 (base port {base_port})")
    return port


def _add(allocation: PortAllocation, resource: ResourceAllocation) -> None:
    if resource.name in allocation.resources:
        raise ValueError(f"Resource '{resource.name}' is declared more than once")
    allocation.resources[resource.name] = resource


def _warn_overlaps(allocation: PortAllocation) -> None:
    """Log overlapping host ports; overlapping offsets are a manifest error."""
    owners: dict[int, str] = {}
    for resource in allocation.resources.values():
        for port in resource.host_ports:
            if port in owners:
                logger.warning(
                    f"Port {port} is assigned to both '{owners[port]}' and "
                    f"'{resource.name}'; check the manifest's port offsets"
                )
            else:
                owners[port] = resource.name


def _warn_outside_block(allocation: PortAllocation, port_spacing: int) -> None:
    """Log resources whose ports reach past the workspace's port block."""
    block_end = allocation.base_port + port_spacing
    for resource in allocation.resources.values():
        last_port = max(resource.host_ports)
        if last_port >= block_end:
            logger.warning(
                f"Port {last_port} of {resource.kind.value} '{resource.name}' lies outside "
                f"the block {allocation.base_port}-{block_end - 1} and may collide with "
                f"another workspace; keep offsets below port_spacing ({port_spacing})"
            )
