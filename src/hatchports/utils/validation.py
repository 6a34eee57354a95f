"""Validation utilities for hatch-ports."""

import shutil
from pathlib import Path

# Registry lines are tab-delimited, one record per line
FORBIDDEN_FIELD_CHARS = ("\t", "\n", "\r")


def validate_working_dir(path: Path) -> tuple[bool, str | None]:
    """Validate that a working directory exists and is accessible.

    Args:
        path: Path to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not path.exists():
        return False, f"Directory does not exist: {path}"

    if not path.is_dir():
        return False, f"Path is not a directory: {path}"

    if not path.is_absolute():
        return False, f"Path must be absolute: {path}"

    try:
        list(path.iterdir())
    except PermissionError:
        return False, f"Permission denied accessing directory: {path}"
    except OSError as e:
        return False, f"Error accessing directory {path}: {e}"

    return True, None


def validate_command_available(command: str) -> tuple[bool, str | None]:
    """Validate that a command is available in PATH.

    Args:
        command: Command to check (e.g., 'docker', 'npm', 'git')

    Returns:
        Tuple of (is_available, error_message)
    """
    base_command = command.split()[0] if command else ""

    if not base_command:
        return False, "Empty command"

    if shutil.which(base_command) is None:
        return (
            False,
            f"Command '{base_command}' not found in PATH. Please install it first.",
        )

    return True, None


def validate_registry_field(value: str, field_name: str) -> str:
    """Validate a value can be stored as one field of a registry line.

    Args:
        value: Field value
        field_name: Field name used in the error message

    Returns:
        The unchanged value

    Raises:
        ValueError: If the value is empty or contains a delimiter character
    """
    if not value:
        raise ValueError(f"{field_name} must not be empty")
    if any(ch in value for ch in FORBIDDEN_FIELD_CHARS):
        raise ValueError(f"{field_name} must not contain tabs or newlines: {value!r}")
    return value


def sanitize_env_name(name: str) -> str:
    """Convert a resource name into an environment variable suffix.

    Args:
        name: Resource name (e.g., 'contember-engine')

    Returns:
        Name with '-' and '.' replaced by '_'
    """
    return name.replace("-", "_").replace(".", "_")
