"""Tests for the shared port registry."""

import os
import random
import threading
import time
from pathlib import Path

import pytest

from hatchports.liveness import LivenessOracle
from hatchports.models import ClaimRecord, ContainerInfo, HatchConfig
from hatchports.registry import DirectoryLock, LockTimeoutError, PortRegistry


class TestDirectoryLock:
    """Tests for DirectoryLock."""

    def test_acquire_release(self, temp_dir: Path):
        """Test acquiring creates the directory and releasing removes it."""
        lock = DirectoryLock(temp_dir / "reg.lock", wait=0.1, poll=0.01)
        assert lock.acquire()
        assert lock.is_locked()
        lock.release()
        assert not lock.is_locked()

    def test_timeout_when_held(self, temp_dir: Path):
        """Test a fresh lock held by someone else times out."""
        holder = DirectoryLock(temp_dir / "reg.lock")
        assert holder.acquire()

        waiter = DirectoryLock(temp_dir / "reg.lock", wait=0.1, poll=0.02, stale_after=30)
        start = time.monotonic()
        assert not waiter.acquire()
        assert time.monotonic() - start >= 0.1
        assert holder.is_locked()

    def test_stale_lock_reclaimed(self, temp_dir: Path):
        """Test a lock older than the stale threshold is taken over."""
        path = temp_dir / "reg.lock"
        path.mkdir()
        old = time.time() - 60
        os.utime(path, (old, old))

        lock = DirectoryLock(path, wait=0.05, poll=0.01, stale_after=30)
        assert lock.acquire()
        assert lock.age() < 5

    def test_hold_raises_on_timeout(self, temp_dir: Path):
        """Test hold() raises when the lock cannot be acquired."""
        (temp_dir / "reg.lock").mkdir()
        lock = DirectoryLock(temp_dir / "reg.lock", wait=0.05, poll=0.01, stale_after=30)
        with pytest.raises(LockTimeoutError):
            with lock.hold():
                pass

    def test_hold_releases_on_error(self, temp_dir: Path):
        """Test the lock is released when the block raises."""
        lock = DirectoryLock(temp_dir / "reg.lock", wait=0.05, poll=0.01)
        with pytest.raises(RuntimeError):
            with lock.hold():
                raise RuntimeError("boom")
        assert not lock.is_locked()


class TestPortRegistry:
    """Tests for PortRegistry."""

    def test_claim_and_release(self, registry: PortRegistry, hatch_config: HatchConfig, temp_dir):
        """Test claim then release leaves no record and no lock."""
        result = registry.claim(10040, "myapp-feature", temp_dir / "myapp-feature")
        assert result.success
        assert [r.workspace_name for r in registry.read_claims()] == ["myapp-feature"]

        result = registry.release("myapp-feature")
        assert result.success
        assert registry.read_claims() == []
        assert not hatch_config.lock_dir.exists()

    def test_reclaim_replaces_previous(self, registry: PortRegistry, temp_dir: Path):
        """Test claiming twice leaves exactly one record with the latest port."""
        registry.claim(10040, "ws", temp_dir / "ws")
        registry.claim(10060, "ws", temp_dir / "ws")
        claims = registry.read_claims()
        assert len(claims) == 1
        assert claims[0].base_port == 10060
        assert claims[0].owner_pid == os.getpid()

    def test_exact_name_match(self, registry: PortRegistry, temp_dir: Path):
        """Test releasing 'foo' leaves 'foobar' alone."""
        registry.claim(10040, "foo", temp_dir / "foo")
        registry.claim(10060, "foobar", temp_dir / "foobar")

        registry.release("foo")
        assert [r.workspace_name for r in registry.read_claims()] == ["foobar"]

    def test_release_absent_claim(self, registry: PortRegistry):
        """Test releasing a workspace without a claim succeeds."""
        result = registry.release("nobody")
        assert result.success
        assert result.records == []

    def test_claim_rejects_bad_name(self, registry: PortRegistry, temp_dir: Path):
        """Test names with delimiters raise before touching the file."""
        with pytest.raises(ValueError):
            registry.claim(10040, "bad\tname", temp_dir)
        assert registry.read_claims() == []

    def test_claim_lock_timeout(self, registry: PortRegistry, hatch_config, temp_dir):
        """Test a held lock turns into a failed result, not an exception."""
        hatch_config.lock_dir.mkdir()
        result = registry.claim(10040, "ws", temp_dir / "ws")
        assert not result.success
        assert registry.read_claims() == []

    def test_conflict_ignores_dead_and_self(
        self, registry: PortRegistry, stub_liveness, temp_dir: Path
    ):
        """Test only live claims of other workspaces conflict."""
        registry.claim(10040, "other", temp_dir / "other")

        assert not registry.conflict(10040, "me")
        stub_liveness.alive.add("other")
        assert registry.conflict(10040, "me")
        assert not registry.conflict(10040, "other")
        assert not registry.conflict(10060, "me")

    def test_malformed_lines_skipped(self, registry: PortRegistry, hatch_config, temp_dir):
        """Test garbage in the registry file does not break reads."""
        good = ClaimRecord(
            base_port=10040,
            workspace_name="ws",
            project_dir=temp_dir / "ws",
            claimed_at=1,
            owner_pid=1,
        )
        hatch_config.registry_file.write_text(f"garbage\n\n{good.to_line()}\n10\tx\n")
        assert registry.read_claims() == [good]

    def test_clean_keeps_live_claims(
        self, registry: PortRegistry, stub_liveness, temp_dir: Path
    ):
        """Test clean removes only dead claims."""
        registry.claim(10040, "alive", temp_dir / "alive")
        registry.claim(10060, "dead", temp_dir / "dead")
        stub_liveness.alive.add("alive")

        result = registry.clean()
        assert result.success
        assert [r.workspace_name for r in result.records] == ["dead"]
        assert [r.workspace_name for r in registry.read_claims()] == ["alive"]

    def test_clean_keeps_claim_renewed_during_check(
        self, hatch_config: HatchConfig, container_runtime, temp_dir: Path
    ):
        """Test a record re-claimed while liveness is checked survives clean."""

        class RenewingLiveness(LivenessOracle):
            def is_alive(self, project_dir: Path, owner_pid: int, workspace_name=None) -> bool:
                # The workspace comes back while clean is checking it
                registry.claim(10080, "ws", temp_dir / "ws")
                return False

        registry = PortRegistry(hatch_config, RenewingLiveness(container_runtime))
        # Write the first claim with an older timestamp so it differs
        stale = ClaimRecord(
            base_port=10040,
            workspace_name="ws",
            project_dir=temp_dir / "ws",
            claimed_at=1,
            owner_pid=1,
        )
        hatch_config.registry_file.write_text(stale.to_line() + "\n")

        result = registry.clean()
        assert result.success
        claims = registry.read_claims()
        assert len(claims) == 1
        assert claims[0].base_port == 10080

    def test_clean_keeps_claim_with_workspace_containers(
        self, hatch_config: HatchConfig, container_runtime, temp_dir: Path, dead_pid: int
    ):
        """Test a claim whose owner exited survives while its containers run."""
        container_runtime.containers = [ContainerInfo(name="custom-ws-postgres-1")]
        registry = PortRegistry(hatch_config, LivenessOracle(container_runtime))
        records = [
            ClaimRecord(
                base_port=base_port,
                workspace_name=name,
                project_dir=temp_dir / "checkout",
                claimed_at=1,
                owner_pid=dead_pid,
            )
            for base_port, name in [(10040, "custom-ws"), (10060, "gone-ws")]
        ]
        hatch_config.registry_file.write_text("".join(r.to_line() + "\n" for r in records))

        result = registry.clean()
        assert result.success
        assert [r.workspace_name for r in result.records] == ["gone-ws"]
        assert [r.workspace_name for r in registry.read_claims()] == ["custom-ws"]

    def test_owner_of_port(self, registry: PortRegistry, temp_dir: Path):
        """Test ports map to the claim whose block contains them."""
        registry.claim(10040, "ws", temp_dir / "ws")
        assert registry.owner_of_port(10040).workspace_name == "ws"
        assert registry.owner_of_port(10059).workspace_name == "ws"
        assert registry.owner_of_port(10060) is None
        assert registry.owner_of_port(10039) is None

    def test_list_claims_reports_liveness(
        self, registry: PortRegistry, stub_liveness, temp_dir: Path
    ):
        """Test listing pairs each claim with its liveness."""
        registry.claim(10040, "a", temp_dir / "a")
        registry.claim(10060, "b", temp_dir / "b")
        stub_liveness.alive.add("b")
        assert [(r.workspace_name, alive) for r, alive in registry.list_claims()] == [
            ("a", False),
            ("b", True),
        ]


class TestRegistryConcurrency:
    """Concurrent claim, release and clean on one registry file."""

    def test_no_live_claim_lost(self, temp_dir: Path, stub_liveness):
        """Test interleaved operations never drop a live workspace's claim."""
        config = HatchConfig(
            home_dir=temp_dir / "home", lock_wait=10.0, lock_poll=0.002, lock_stale_after=30
        )
        config.ensure_directories()
        live = {f"live{i}" for i in range(3)}
        liveness = stub_liveness
        liveness.alive.update(live)
        errors: list[BaseException] = []

        def live_worker(name: str) -> None:
            registry = PortRegistry(config, liveness)
            for i in range(15):
                result = registry.claim(10000 + 20 * (i % 5), name, temp_dir / name)
                if not result.success:
                    errors.append(AssertionError(result.message))

        def dead_worker(name: str) -> None:
            registry = PortRegistry(config, liveness)
            rng = random.Random(name)
            for i in range(15):
                registry.claim(20000 + 20 * i, name, temp_dir / name)
                if rng.random() < 0.5:
                    registry.release(name)

        def cleaner() -> None:
            registry = PortRegistry(config, liveness)
            for _ in range(15):
                registry.clean()

        def guard(target, *args):
            def run() -> None:
                try:
                    target(*args)
                except BaseException as e:  # noqa: BLE001
                    errors.append(e)

            return threading.Thread(target=run)

        threads = [guard(live_worker, name) for name in sorted(live)]
        threads += [guard(dead_worker, f"dead{i}") for i in range(3)]
        threads += [guard(cleaner), guard(cleaner)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert not errors
        claims = PortRegistry(config, liveness).read_claims()
        live_claims = [r for r in claims if r.workspace_name in live]
        assert sorted(r.workspace_name for r in live_claims) == sorted(live)
        assert not config.lock_dir.exists()
