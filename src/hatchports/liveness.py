"""Liveness checks for workspaces holding registry claims."""

from pathlib import Path

from .container_runtime import ContainerRuntime, workspace_container_prefix
from .utils.logging import setup_logger
from .utils.processes import pid_alive

logger = setup_logger(__name__)


class LivenessOracle:
    """Decides whether a workspace that claimed a port block is still active."""

    def __init__(self, container_runtime: ContainerRuntime) -> None:
        """Initialize the oracle.

        Args:
            container_runtime: Container runtime view
        """
        self.container_runtime = container_runtime

    def is_alive(
        self,
        project_dir: Path,
        owner_pid: int,
        workspace_name: str | None = None,
    ) -> bool:
        """Check whether a claimant is still running.

        A claimant is alive if its recorded process exists, or if any
        running container is named after the workspace directory or the
        workspace name (they differ when HATCH_WORKSPACE is set). PID reuse
        is accepted as a rare false positive.

        Args:
            project_dir: Claimant's project directory
            owner_pid: Process id recorded with the claim
            workspace_name: Claimant's workspace name

        Returns:
            True if the claim should still be honoured
        """
        if pid_alive(owner_pid):
            return True

        names = {Path(project_dir).name}
        if workspace_name:
            names.add(workspace_name)
        prefixes = tuple(workspace_container_prefix(name) for name in sorted(names))
        if self.container_runtime.has_running_with_prefix(prefixes):
            return True

        logger.debug(f"Claim from {project_dir} (PID {owner_pid}) looks abandoned")
        return False
