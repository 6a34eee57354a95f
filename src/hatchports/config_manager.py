"""Manifest discovery and loading for hatch-ports."""

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .models import HatchConfig, Manifest
from .utils.logging import setup_logger

logger = setup_logger(__name__)

MANIFEST_NAME = "hatch.json"


class ConfigManager:
    """Finds and validates a project's manifest."""

    def __init__(self, config: HatchConfig) -> None:
        """Initialize the configuration manager.

        Args:
            config: Tool configuration
        """
        self.config = config

    def search_paths(self, project_dir: Path, project_name: str) -> list[Path]:
        """Candidate manifest locations, in search order.

        Args:
            project_dir: Workspace directory
            project_name: Project name

        Returns:
            Paths to try
        """
        return [
            project_dir / self.config.state_dir_name / MANIFEST_NAME,
            project_dir / MANIFEST_NAME,
            self.config.projects_dir / f"{project_name}.json",
        ]

    def find_manifest(self, project_dir: Path, project_name: str) -> Path | None:
        """Find the first existing manifest.

        Args:
            project_dir: Workspace directory
            project_name: Project name

        Returns:
            Manifest path or None
        """
        for path in self.search_paths(project_dir, project_name):
            if path.is_file():
                return path
        return None

    def load_manifest(self, project_dir: Path, project_name: str) -> Manifest:
        """Find and load a project's manifest.

        Args:
            project_dir: Workspace directory
            project_name: Project name

        Returns:
            Validated manifest

        Raises:
            FileNotFoundError: If no manifest exists
            ValueError: If the manifest is invalid
        """
        path = self.find_manifest(project_dir, project_name)
        if path is None:
            searched = "\n".join(
                f"  - {p}" for p in self.search_paths(project_dir, project_name)
            )
            raise FileNotFoundError(f"No {MANIFEST_NAME} found. Searched:\n{searched}")

        logger.info(f"Loading manifest: {path}")
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid manifest {path}: {e}") from e

        manifest = self.parse_manifest(data, source=str(path))
        logger.info(f"Loaded manifest for project: {manifest.project_name}")
        return manifest

    def parse_manifest(self, data: dict[str, Any], source: str = "<manifest>") -> Manifest:
        """Validate already-parsed manifest data.

        Args:
            data: Manifest dictionary
            source: Where the data came from, for error messages

        Returns:
            Validated manifest

        Raises:
            ValueError: If the manifest is invalid
        """
        try:
            return Manifest.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid manifest {source}: {e}")
            raise ValueError(f"Invalid manifest {source}: {e}") from e

    def save_manifest(self, manifest: Manifest, path: Path) -> None:
        """Save a manifest using an atomic write.

        Args:
            manifest: Manifest to save
            path: Destination file
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")

        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(manifest.model_dump(mode="json"), f, indent=2)
            temp_file.replace(path)
        except Exception as e:
            if temp_file.exists():
                temp_file.unlink()
            raise RuntimeError(f"Failed to save manifest: {e}") from e
