"""Deterministic base port generation for workspaces."""

import hashlib
from pathlib import Path

from .models import HatchConfig
from .registry import PortRegistry
from .utils.logging import setup_logger

logger = setup_logger(__name__)


def workspace_hash(workspace_name: str) -> int:
    """Stable hash of a workspace name: the first 8 hex digits of its MD5."""
    digest = hashlib.md5(workspace_name.encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


class PortGenerator:
    """Maps a workspace to a reproducible base port on a fixed grid."""

    def __init__(self, config: HatchConfig, registry: PortRegistry) -> None:
        """Initialize the generator.

        Args:
            config: Tool configuration (grid shape, probe limit, default port)
            registry: Shared registry consulted for live conflicting claims
        """
        self.config = config
        self.registry = registry

    def candidate_port(self, workspace_name: str, probe: int = 0) -> int:
        """Base port for a workspace at a given probe step.

        Args:
            workspace_name: Workspace name
            probe: Linear probe count, 0 for the home bucket

        Returns:
            Base port on the grid
        """
        bucket = (workspace_hash(workspace_name) + probe) % self.config.num_buckets
        return bucket * self.config.port_spacing + self.config.min_port

    def generate_base_port(
        self,
        workspace_name: str,
        project_name: str,
        project_dir: Path | None = None,
        default_base_port: int | None = None,
    ) -> int:
        """Generate and claim the base port for a workspace.

        The main workspace (named like the project) always gets the default
        base port. Other workspaces hash onto the grid and probe linearly
        past live claims from other workspaces; when probes run out the last
        candidate is used anyway and any real clash is left to the conflict
        check.

        Args:
            workspace_name: Workspace name
            project_name: Project name
            project_dir: Workspace directory recorded with the claim
            default_base_port: Main workspace port, overrides the configured one

        Returns:
            Base port
        """
        if not workspace_name:
            raise ValueError("Workspace name must not be empty")

        if workspace_name == project_name:
            base_port = default_base_port or self.config.default_base_port
            logger.info(f"Main workspace detected, using default base port: {base_port}")
        else:
            base_port = self._probe(workspace_name)
            logger.info(f"Generated base port for workspace '{workspace_name}': {base_port}")

        if project_dir is not None:
            result = self.registry.claim(base_port, workspace_name, project_dir)
            if not result.success:
                logger.warning(
                    f"Continuing without a registry claim for '{workspace_name}': "
                    f"{result.message}"
                )

        return base_port

    def _probe(self, workspace_name: str) -> int:
        """Find the first grid slot not held by another live workspace."""
        candidate = self.candidate_port(workspace_name)
        for probe in range(self.config.max_probes + 1):
            candidate = self.candidate_port(workspace_name, probe)
            if not self.registry.conflict(candidate, workspace_name):
                if probe:
                    logger.info(
                        f"Base port probed {probe} slot(s) past collisions to {candidate}"
                    )
                return candidate

        logger.warning(
            f"All {self.config.max_probes} probes collided for workspace "
            f"'{workspace_name}', using {candidate}; port conflicts may follow"
        )
        return candidate
