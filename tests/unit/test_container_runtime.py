"""Tests for the container runtime view."""

from types import SimpleNamespace

import docker
from docker.errors import DockerException, NotFound

from hatchports.container_runtime import ContainerRuntime, workspace_container_prefix


class FakeContainers:
    def __init__(self, containers=None, error: Exception | None = None):
        self._containers = containers or []
        self._error = error

    def list(self, **kwargs):
        self.kwargs = kwargs
        if self._error is not None:
            raise self._error
        return self._containers


def fake_client(*containers, error: Exception | None = None) -> SimpleNamespace:
    return SimpleNamespace(containers=FakeContainers(list(containers), error))


def container(name: str, ports: dict) -> SimpleNamespace:
    return SimpleNamespace(name=name, ports=ports)


class TestContainerRuntime:
    """Tests for ContainerRuntime."""

    def test_running_containers(self):
        """Test published host ports are parsed from the port map."""
        client = fake_client(
            container(
                "myapp-minio-1",
                {
                    "9000/tcp": [
                        {"HostIp": "0.0.0.0", "HostPort": "15001"},
                        {"HostIp": "::", "HostPort": "15001"},
                    ],
                    "9001/tcp": [{"HostIp": "0.0.0.0", "HostPort": "15002"}],
                    "9002/tcp": None,
                },
            ),
            container("other-redis-1", {}),
        )
        runtime = ContainerRuntime(client)

        containers = runtime.running_containers()
        assert [(c.name, c.host_ports) for c in containers] == [
            ("myapp-minio-1", [15001, 15002]),
            ("other-redis-1", []),
        ]

    def test_port_lookups(self):
        """Test finding containers by port and workspace prefix."""
        client = fake_client(
            container("myapp-postgres-1", {"5432/tcp": [{"HostIp": "", "HostPort": "15000"}]})
        )
        runtime = ContainerRuntime(client)

        assert runtime.container_for_port(15000) == "myapp-postgres-1"
        assert runtime.container_for_port(15001) is None
        assert runtime.workspace_owns_port(15000, "myapp")
        assert not runtime.workspace_owns_port(15000, "other")
        assert runtime.has_running_with_prefix("myapp-")
        assert not runtime.has_running_with_prefix("myap-")

    def test_list_failure_means_no_containers(self):
        """Test daemon errors are treated as no running containers."""
        runtime = ContainerRuntime(fake_client(error=DockerException("daemon gone")))
        assert runtime.running_containers() == []

    def test_docker_unavailable(self, monkeypatch):
        """Test an unreachable daemon is tried once and reported as empty."""
        calls = []

        def from_env():
            calls.append(1)
            raise DockerException("Error while fetching server API version")

        monkeypatch.setattr(docker, "from_env", from_env)
        runtime = ContainerRuntime()

        assert runtime.running_containers() == []
        assert runtime.running_containers() == []
        assert len(calls) == 1

    def test_prefix(self):
        """Test the compose naming prefix."""
        assert workspace_container_prefix("myapp-feature") == "myapp-feature-"

    def test_container_removed_during_listing(self):
        """Test a container vanishing mid-listing does not hide the others."""

        class RacingContainers(FakeContainers):
            def list(self, **kwargs):
                # Without ignore_removed docker raises for containers gone before inspection
                if not kwargs.get("ignore_removed"):
                    raise NotFound("No such container: gone")
                return super().list(**kwargs)

        client = SimpleNamespace(containers=RacingContainers([container("ws-postgres-1", {})]))
        runtime = ContainerRuntime(client)

        assert [c.name for c in runtime.running_containers()] == ["ws-postgres-1"]
        assert runtime.has_running_with_prefix("ws-")

    def test_prefix_tuple(self):
        """Test any of several prefixes can match."""
        runtime = ContainerRuntime(fake_client(container("custom-ws-web-1", {})))
        assert runtime.has_running_with_prefix(("checkout-", "custom-ws-"))
        assert not runtime.has_running_with_prefix(("checkout-", "customx-"))
