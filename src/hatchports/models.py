"""Core data models for hatch-ports."""

import os
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator

from .utils.validation import sanitize_env_name, validate_registry_field


class HatchConfig(BaseModel):
    """Tool configuration shared by every workspace on the machine."""

    home_dir: Path = Field(default=Path.home() / ".hatch")
    default_base_port: int = Field(default=1481, ge=1, le=65535)
    min_port: int = Field(default=10000, ge=1, le=65535)
    port_range: int = Field(default=50000, ge=1)
    port_spacing: int = Field(default=20, ge=1)
    max_probes: int = Field(default=10, ge=0)
    lock_wait: float = Field(default=5.0, ge=0, description="Seconds to retry the lock")
    lock_poll: float = Field(default=1.0, gt=0, description="Seconds between lock attempts")
    lock_stale_after: float = Field(
        default=30.0, ge=0, description="Lock age in seconds after which it is reclaimed"
    )
    stop_grace_period: float = Field(
        default=0.5, ge=0, description="Seconds between SIGTERM and SIGKILL"
    )
    state_dir_name: str = Field(default=".hatch")

    @field_validator("home_dir", mode="before")
    @classmethod
    def validate_home_dir(cls, v: str | Path) -> Path:
        """Convert string to Path and expand the user directory."""
        return Path(v).expanduser()

    @model_validator(mode="after")
    def validate_port_grid(self) -> "HatchConfig":
        """Validate the hashed port grid fits in the TCP port space."""
        if self.port_range < self.port_spacing:
            raise ValueError("port_range must be at least port_spacing")
        if self.min_port + self.port_range > 65536:
            raise ValueError(
                f"Port grid {self.min_port}-{self.min_port + self.port_range} exceeds 65535"
            )
        return self

    @classmethod
    def from_env(cls, home_dir: str | Path | None = None) -> "HatchConfig":
        """Build a configuration, honouring the HATCH_HOME environment variable.

        Args:
            home_dir: Explicit home directory, takes precedence over HATCH_HOME

        Returns:
            Configuration instance
        """
        home = home_dir or os.environ.get("HATCH_HOME")
        if home:
            return cls(home_dir=home)
        return cls()

    @property
    def num_buckets(self) -> int:
        """Number of base port slots on the hashed grid."""
        return self.port_range // self.port_spacing

    @property
    def registry_file(self) -> Path:
        """Shared port registry file."""
        return self.home_dir / "port-registry"

    @property
    def lock_dir(self) -> Path:
        """Directory whose existence marks the registry as locked."""
        return self.registry_file.with_name(self.registry_file.name + ".lock")

    @property
    def projects_dir(self) -> Path:
        """Per-user manifest directory."""
        return self.home_dir / "projects"

    def ensure_directories(self) -> None:
        """Create necessary directories."""
        self.home_dir.mkdir(parents=True, exist_ok=True)
        self.projects_dir.mkdir(exist_ok=True)


class ClaimRecord(BaseModel):
    """A registry record asserting a workspace owns a base port."""

    base_port: int = Field(ge=1, le=65535)
    workspace_name: str
    project_dir: Path
    claimed_at: int = Field(description="Epoch seconds")
    owner_pid: int

    @field_validator("workspace_name")
    @classmethod
    def validate_workspace_name(cls, v: str) -> str:
        """Reject names that would corrupt the registry line format."""
        return validate_registry_field(v, "workspace_name")

    @field_validator("project_dir", mode="before")
    @classmethod
    def validate_project_dir(cls, v: str | Path) -> Path:
        """Convert to an absolute Path safe to store in the registry."""
        path = Path(v) if isinstance(v, str) else v
        validate_registry_field(str(path), "project_dir")
        return path if path.is_absolute() else path.absolute()

    def to_line(self) -> str:
        """Serialize as one tab-delimited registry line (no newline)."""
        return "\t".join(
            [
                str(self.base_port),
                self.workspace_name,
                str(self.project_dir),
                str(self.claimed_at),
                str(self.owner_pid),
            ]
        )

    @classmethod
    def from_line(cls, line: str) -> "ClaimRecord":
        """Parse one registry line.

        Raises:
            ValueError: If the line is malformed
        """
        fields = line.rstrip("\r\n").split("\t")
        if len(fields) != 5:
            raise ValueError(f"Expected 5 tab-separated fields, got {len(fields)}")
        base_port, workspace_name, project_dir, claimed_at, owner_pid = fields
        return cls(
            base_port=int(base_port),
            workspace_name=workspace_name,
            project_dir=project_dir,
            claimed_at=int(claimed_at),
            owner_pid=int(owner_pid),
        )


class RegistryResult(BaseModel):
    """Result of a registry mutation."""

    success: bool
    message: str
    records: list[ClaimRecord] = Field(
        default_factory=list, description="Records affected by the mutation"
    )


class DockerResource(BaseModel):
    """A container service publishing one or more contiguous host ports."""

    name: str = Field(min_length=1)
    container_ports: list[int] = Field(
        min_length=1, description="Container ports, mapped to consecutive host ports"
    )

    @field_validator("container_ports")
    @classmethod
    def validate_container_ports(cls, v: list[int]) -> list[int]:
        """Validate container ports are in range and distinct."""
        for port in v:
            if port < 1 or port > 65535:
                raise ValueError(f"Container port must be between 1 and 65535, got {port}")
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate container ports: {v}")
        return v

    @property
    def container_port_count(self) -> int:
        """Number of host ports this resource consumes."""
        return len(self.container_ports)


class DevServerSpec(BaseModel):
    """A dev server process bound to a pinned offset from the base port."""

    name: str = Field(min_length=1)
    directory: Path = Field(description="Working directory, relative to the project")
    command: str = Field(min_length=1, description="Command template, {PORT} is substituted")
    port_offset: int = Field(ge=0, description="Offset from the base port")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject names that would corrupt the pid record format."""
        if ":" in v or "\n" in v:
            raise ValueError(f"Dev server name must not contain ':' or newlines: {v!r}")
        return v


class Manifest(BaseModel):
    """Parsed project manifest: the resources a workspace needs ports for."""

    project_name: str = Field(min_length=1)
    default_base_port: int = Field(default=1481, ge=1, le=65535)
    docker_services: list[DockerResource] = Field(default_factory=list)
    docker_extras: list[DockerResource] = Field(default_factory=list)
    dev_servers: list[DevServerSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_manifest(self) -> "Manifest":
        """Validate resources are declared and uniquely named."""
        names = self.resource_names()
        if not names:
            raise ValueError(
                "No resources declared: add docker_services, docker_extras or dev_servers"
            )
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate resource names: {', '.join(duplicates)}")
        return self

    def resource_names(self) -> list[str]:
        """All resource names in allocation order."""
        return (
            [r.name for r in self.docker_services]
            + [r.name for r in self.docker_extras]
            + [s.name for s in self.dev_servers]
        )

    def get_dev_server(self, name: str) -> DevServerSpec | None:
        """Look up a dev server by name."""
        return next((s for s in self.dev_servers if s.name == name), None)


class ResourceKind(str, Enum):
    """Where a resource's ports come from."""

    DOCKER = "docker"
    DOCKER_EXTRA = "docker_extra"
    DEV_SERVER = "dev_server"


class ResourceAllocation(BaseModel):
    """Concrete host ports assigned to one resource."""

    name: str
    kind: ResourceKind
    offset: int
    primary_host_port: int
    host_port_by_container_port: dict[int, int] = Field(default_factory=dict)

    @property
    def host_ports(self) -> list[int]:
        """Every host port of this resource, primary first."""
        if not self.host_port_by_container_port:
            return [self.primary_host_port]
        return sorted(self.host_port_by_container_port.values())


class PortAllocation(BaseModel):
    """Per-invocation mapping of resource names to host ports."""

    base_port: int
    resources: dict[str, ResourceAllocation] = Field(default_factory=dict)

    def resolve_port(self, name: str) -> int | None:
        """Return the primary host port of a resource, or None if unknown."""
        resource = self.resources.get(name)
        return resource.primary_host_port if resource else None

    def host_ports(self) -> list[int]:
        """All allocated host ports, sorted and de-duplicated."""
        ports: set[int] = set()
        for resource in self.resources.values():
            ports.update(resource.host_ports)
        return sorted(ports)

    def resource_for_port(self, port: int) -> str | None:
        """Name of the resource owning a host port, if any."""
        for resource in self.resources.values():
            if port in resource.host_ports:
                return resource.name
        return None

    def as_env(self) -> dict[str, str]:
        """Environment variables exposing every allocated port.

        Each resource gets HATCH_PORT_<name> and PORT_<name> for its primary
        port, plus HATCH_PORTMAP_<name>_<container_port> for multi-port
        resources.
        """
        env = {"HATCH_BASE_PORT": str(self.base_port)}
        for resource in self.resources.values():
            safe_name = sanitize_env_name(resource.name)
            env[f"HATCH_PORT_{safe_name}"] = str(resource.primary_host_port)
            env[f"PORT_{safe_name}"] = str(resource.primary_host_port)
            if len(resource.host_port_by_container_port) > 1:
                for container_port, host_port in resource.host_port_by_container_port.items():
                    env[f"HATCH_PORTMAP_{safe_name}_{container_port}"] = str(host_port)
        return env


class ContainerInfo(BaseModel):
    """A running container and the host ports it publishes."""

    name: str
    host_ports: list[int] = Field(default_factory=list)


class PortOwnerKind(str, Enum):
    """What was found holding a conflicting port."""

    PROCESS = "process"
    CONTAINER = "container"
    WORKSPACE = "workspace"
    UNKNOWN = "unknown"


class PortConflict(BaseModel):
    """An allocated port that is already bound on the host."""

    port: int
    resource_name: str | None = None
    owner_kind: PortOwnerKind = PortOwnerKind.UNKNOWN
    pid: int | None = None
    process_name: str | None = None
    container_name: str | None = None
    workspace_name: str | None = None

    def describe(self) -> str:
        """Human-readable attribution and remediation hint."""
        label = f"{self.resource_name} (port {self.port})" if self.resource_name else str(
            self.port
        )
        if self.owner_kind == PortOwnerKind.PROCESS:
            return (
                f"{label} is used by process {self.process_name or '?'} "
                f"(PID {self.pid}); to free: kill {self.pid}"
            )
        if self.owner_kind == PortOwnerKind.CONTAINER:
            return f"{label} is published by Docker container {self.container_name}"
        if self.owner_kind == PortOwnerKind.WORKSPACE:
            return f"{label} falls in the port block of workspace '{self.workspace_name}'"
        return f"{label} is in use, could not identify by what"


class ConflictReport(BaseModel):
    """Result of checking an allocation against the host."""

    conflicts: list[PortConflict] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when no allocated port is bound by someone else."""
        return not self.conflicts


class ProcessState(str, Enum):
    """Supervised dev server lifecycle states."""

    UNREGISTERED = "unregistered"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class ProcessRecord(BaseModel):
    """A persisted dev server entry in the workspace pid file."""

    name: str
    pid: int
    port: int
    directory: Path

    def to_line(self) -> str:
        """Serialize as a 'name:pid:port:directory' line (no newline)."""
        return f"{self.name}:{self.pid}:{self.port}:{self.directory}"

    @classmethod
    def from_line(cls, line: str) -> "ProcessRecord":
        """Parse one pid file line; the directory may itself contain ':'.

        Raises:
            ValueError: If the line is malformed
        """
        fields = line.rstrip("\r\n").split(":", 3)
        if len(fields) != 4:
            raise ValueError(f"Expected 'name:pid:port:directory', got {line!r}")
        name, pid, port, directory = fields
        return cls(name=name, pid=int(pid), port=int(port), directory=Path(directory))


class ProcessStatus(BaseModel):
    """Runtime status of a supervised dev server."""

    name: str
    pid: int
    port: int
    directory: Path
    running: bool
    state: ProcessState
    url: str
    responding: bool | None = None


class StartResult(BaseModel):
    """Result of starting a dev server."""

    name: str
    success: bool
    message: str
    pid: int | None = None
    port: int | None = None


class StopResult(BaseModel):
    """Result of stopping a dev server."""

    name: str
    success: bool
    message: str
