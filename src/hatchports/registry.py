"""Shared port registry for hatch-ports.

All workspaces on a machine share one registry file of claim records. Every
mutation happens under a directory lock: creating a directory is atomic on
every filesystem we care about, and a crashed holder's lock can be reclaimed
once it is old enough.
"""

import os
import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .liveness import LivenessOracle
from .models import ClaimRecord, HatchConfig, RegistryResult
from .utils.logging import setup_logger

logger = setup_logger(__name__)


class LockTimeoutError(TimeoutError):
    """Raised when the registry lock could not be acquired in time."""


class DirectoryLock:
    """Cross-process mutex backed by the existence of a directory.

    Ownership is not recorded; only existence and mtime are. Reclaiming a
    stale lock is therefore a heuristic, not a guarantee.
    """

    def __init__(
        self,
        path: Path,
        wait: float = 5.0,
        poll: float = 1.0,
        stale_after: float = 30.0,
    ) -> None:
        """Initialize the lock.

        Args:
            path: Lock directory path
            wait: Seconds to keep retrying before giving up
            poll: Seconds between attempts
            stale_after: Age in seconds after which an existing lock is removed
        """
        self.path = path
        self.wait = wait
        self.poll = poll
        self.stale_after = stale_after

    def acquire(self) -> bool:
        """Acquire the lock.

        Returns:
            True if the lock is now held, False on timeout
        """
        deadline = time.monotonic() + self.wait
        while True:
            if self._try_create():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(self.poll, remaining))

        age = self.age()
        if age is None or age > self.stale_after:
            if age is not None:
                logger.warning(f"Removing stale lock {self.path} ({age:.0f}s old)")
                self._remove()
            if self._try_create():
                return True

        logger.warning(f"Timed out after {self.wait:.1f}s waiting for lock {self.path}")
        return False

    def release(self) -> None:
        """Release the lock. Safe to call when the lock is not held."""
        self._remove()

    def age(self) -> float | None:
        """Seconds since the lock directory was created, or None if absent."""
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def is_locked(self) -> bool:
        """Check whether the lock directory exists."""
        return self.path.is_dir()

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the lock for the duration of a with block.

        Raises:
            LockTimeoutError: If the lock could not be acquired
        """
        if not self.acquire():
            raise LockTimeoutError(f"Could not acquire lock {self.path}")
        try:
            yield
        finally:
            self.release()

    def _try_create(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.mkdir()
            return True
        except FileExistsError:
            return False
        except OSError as e:
            logger.warning(f"Failed to create lock {self.path}: {e}")
            return False

    def _remove(self) -> None:
        try:
            self.path.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            shutil.rmtree(self.path, ignore_errors=True)


class PortRegistry:
    """Claim, release and garbage-collect base port claims."""

    def __init__(self, config: HatchConfig, liveness: LivenessOracle) -> None:
        """Initialize the registry.

        Args:
            config: Tool configuration
            liveness: Oracle used to tell live claims from abandoned ones
        """
        self.registry_file = config.registry_file
        self.port_spacing = config.port_spacing
        self.liveness = liveness
        self.lock = DirectoryLock(
            config.lock_dir,
            wait=config.lock_wait,
            poll=config.lock_poll,
            stale_after=config.lock_stale_after,
        )

    def read_claims(self) -> list[ClaimRecord]:
        """Read every claim record.

        Unreadable files and malformed lines are logged and skipped.

        Returns:
            Claim records in file order
        """
        try:
            with open(self.registry_file, encoding="utf-8") as f:
                lines = f.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"Failed to read port registry {self.registry_file}: {e}")
            return []

        records = []
        for line_number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(ClaimRecord.from_line(line))
            except ValueError as e:
                logger.warning(f"Skipping malformed registry line {line_number}: {e}")
        return records

    def conflict(self, base_port: int, exclude_workspace: str) -> bool:
        """Check whether another live workspace holds a base port.

        Dead claimants never count, so a crashed workspace's stale claim is
        reusable without cleaning first.

        Args:
            base_port: Candidate base port
            exclude_workspace: Workspace asking, its own claim is ignored

        Returns:
            True if a different, live workspace has claimed the base port
        """
        for record in self.read_claims():
            if record.base_port != base_port:
                continue
            if record.workspace_name == exclude_workspace:
                continue
            if self.liveness.is_alive(
                record.project_dir, record.owner_pid, record.workspace_name
            ):
                logger.debug(
                    f"Base port {base_port} is held by live workspace '{record.workspace_name}'"
                )
                return True
        return False

    def claim(self, base_port: int, workspace_name: str, project_dir: Path) -> RegistryResult:
        """Record that a workspace owns a base port, replacing its previous claim.

        Args:
            base_port: Base port to claim
            workspace_name: Claiming workspace
            project_dir: Claiming workspace's directory

        Returns:
            Registry result; a lock timeout is a failure, not an exception

        Raises:
            ValueError: If the workspace name or directory cannot be stored
        """
        record = ClaimRecord(
            base_port=base_port,
            workspace_name=workspace_name,
            project_dir=project_dir,
            claimed_at=int(time.time()),
            owner_pid=os.getpid(),
        )

        try:
            with self.lock.hold():
                records = [
                    r for r in self.read_claims() if r.workspace_name != workspace_name
                ]
                records.append(record)
                self._write_claims(records)
        except LockTimeoutError as e:
            logger.warning(f"Could not claim base port {base_port} for '{workspace_name}': {e}")
            return RegistryResult(success=False, message=str(e))
        except OSError as e:
            logger.warning(f"Could not write port registry: {e}")
            return RegistryResult(success=False, message=f"Failed to write registry: {e}")

        logger.info(f"Claimed base port {base_port} for workspace '{workspace_name}'")
        return RegistryResult(
            success=True,
            message=f"Claimed base port {base_port}",
            records=[record],
        )

    def release(self, workspace_name: str) -> RegistryResult:
        """Remove a workspace's claim. Releasing an absent claim succeeds.

        Args:
            workspace_name: Workspace to release

        Returns:
            Registry result
        """
        try:
            with self.lock.hold():
                records = self.read_claims()
                removed = [r for r in records if r.workspace_name == workspace_name]
                if removed:
                    self._write_claims(
                        [r for r in records if r.workspace_name != workspace_name]
                    )
        except LockTimeoutError as e:
            logger.warning(f"Could not release claim for '{workspace_name}': {e}")
            return RegistryResult(success=False, message=str(e))
        except OSError as e:
            logger.warning(f"Could not write port registry: {e}")
            return RegistryResult(success=False, message=f"Failed to write registry: {e}")

        if not removed:
            return RegistryResult(success=True, message=f"No claim for '{workspace_name}'")

        logger.info(f"Released port claim for workspace '{workspace_name}'")
        return RegistryResult(
            success=True,
            message=f"Released base port {removed[0].base_port}",
            records=removed,
        )

    def clean(self) -> RegistryResult:
        """Remove claims whose owners are no longer alive.

        Liveness checks may query the container runtime, so they run without
        the lock: snapshot under lock, check unlocked, then re-read under
        lock and drop only records identical to the dead ones. A record
        re-claimed in between differs in timestamp or pid and survives.

        Returns:
            Registry result listing the removed records
        """
        try:
            with self.lock.hold():
                snapshot = self.read_claims()
        except LockTimeoutError as e:
            logger.warning(f"Could not clean port registry: {e}")
            return RegistryResult(success=False, message=str(e))

        dead = [
            r
            for r in snapshot
            if not self.liveness.is_alive(r.project_dir, r.owner_pid, r.workspace_name)
        ]
        if not dead:
            return RegistryResult(success=True, message="No stale claims")

        try:
            with self.lock.hold():
                current = self.read_claims()
                remaining = [r for r in current if r not in dead]
                removed = [r for r in current if r in dead]
                if removed:
                    self._write_claims(remaining)
        except LockTimeoutError as e:
            logger.warning(f"Could not clean port registry: {e}")
            return RegistryResult(success=False, message=str(e))
        except OSError as e:
            logger.warning(f"Could not write port registry: {e}")
            return RegistryResult(success=False, message=f"Failed to write registry: {e}")

        for record in removed:
            logger.info(
                f"Removed stale claim for workspace '{record.workspace_name}' "
                f"(base port {record.base_port})"
            )
        return RegistryResult(
            success=True,
            message=f"Removed {len(removed)} stale claim(s)",
            records=removed,
        )

    def list_claims(self) -> list[tuple[ClaimRecord, bool]]:
        """List every claim together with its owner's liveness."""
        return [
            (r, self.liveness.is_alive(r.project_dir, r.owner_pid, r.workspace_name))
            for r in self.read_claims()
        ]

    def owner_of_port(self, port: int) -> ClaimRecord | None:
        """Find the claim whose port block contains a port.

        Args:
            port: Host port

        Returns:
            Claim whose [base_port, base_port + spacing) block holds the port
        """
        for record in self.read_claims():
            if record.base_port <= port < record.base_port + self.port_spacing:
                return record
        return None

    def _write_claims(self, records: list[ClaimRecord]) -> None:
        """Rewrite the registry atomically via a temp file and rename."""
        self.registry_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.registry_file.with_name(
            f".{self.registry_file.name}.{os.getpid()}.tmp"
        )

        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                for record in records:
                    f.write(record.to_line() + "\n")
            temp_file.replace(self.registry_file)
        except OSError:
            temp_file.unlink(missing_ok=True)
            raise
