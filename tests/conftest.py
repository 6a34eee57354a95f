"""Pytest configuration and fixtures."""

import socket
import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

from hatchports.conflict_checker import ConflictChecker
from hatchports.container_runtime import ContainerRuntime
from hatchports.liveness import LivenessOracle
from hatchports.models import ContainerInfo, HatchConfig
from hatchports.process_manager import ProcessManager
from hatchports.registry import PortRegistry


class FakeContainerRuntime(ContainerRuntime):
    """Container runtime with a fixed, editable list of running containers."""

    def __init__(self, containers: list[ContainerInfo] | None = None) -> None:
        super().__init__(client=object())
        self.containers = containers or []

    def running_containers(self) -> list[ContainerInfo]:
        return list(self.containers)


class StubLiveness(LivenessOracle):
    """Liveness decided by project directory name instead of PID/containers."""

    def __init__(self, alive: set[str] | None = None) -> None:
        super().__init__(FakeContainerRuntime())
        self.alive = alive if alive is not None else set()

    def is_alive(
        self, project_dir: Path, owner_pid: int, workspace_name: str | None = None
    ) -> bool:
        return Path(project_dir).name in self.alive


def find_free_port() -> int:
    """Ask the OS for a currently free port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("0.0.0.0", 0))
        return int(sock.getsockname()[1])


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def hatch_config(temp_dir: Path) -> HatchConfig:
    """Create a test configuration with short lock timings."""
    config = HatchConfig(
        home_dir=temp_dir / "home",
        lock_wait=0.3,
        lock_poll=0.05,
        lock_stale_after=30.0,
        stop_grace_period=0.5,
    )
    config.ensure_directories()
    return config


@pytest.fixture
def project_dir(temp_dir: Path) -> Path:
    """Create a workspace directory."""
    path = temp_dir / "myapp"
    path.mkdir()
    return path


@pytest.fixture
def container_runtime() -> FakeContainerRuntime:
    """Create a container runtime with no running containers."""
    return FakeContainerRuntime()


@pytest.fixture
def stub_liveness() -> StubLiveness:
    """Create a liveness oracle where nothing is alive until told otherwise."""
    return StubLiveness()


@pytest.fixture
def registry(hatch_config: HatchConfig, stub_liveness: StubLiveness) -> PortRegistry:
    """Create a port registry backed by the stub liveness oracle."""
    return PortRegistry(hatch_config, stub_liveness)


@pytest.fixture
def conflict_checker(container_runtime: FakeContainerRuntime) -> ConflictChecker:
    """Create a conflict checker for testing."""
    return ConflictChecker(container_runtime)


@pytest.fixture
def process_manager(
    project_dir: Path,
    hatch_config: HatchConfig,
    conflict_checker: ConflictChecker,
) -> ProcessManager:
    """Create a process manager for testing."""
    pm = ProcessManager(project_dir, hatch_config, conflict_checker)
    yield pm
    # Cleanup: stop all processes
    pm.stop_all()


@pytest.fixture
def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


@pytest.fixture
def free_port() -> int:
    """A port that was free when the fixture ran."""
    return find_free_port()


@pytest.fixture
def test_apps_dir() -> Path:
    """Get the test applications directory."""
    return Path(__file__).parent / "fixtures" / "test_apps"


@pytest.fixture
def python_test_app(test_apps_dir: Path) -> Path:
    """Get path to Python test application."""
    return test_apps_dir / "python"
