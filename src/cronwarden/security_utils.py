"""
Security and naming utilities for cronwarden.

Provides job-name validation, lock-name sanitization and path checks.
"""
import logging
import re
from pathlib import Path

from cronwarden.models import ConfigError

logger = logging.getLogger(__name__)


class SecurityError(ConfigError):
    """Security validation failed."""
    pass


def validate_job_name(name: str) -> str:
    """
    Validate a job name.

    Job names are free text (spaces and punctuation are fine) but they are
    used verbatim as the halt-marker file name, so they must:
    - Be between 1 and 200 characters
    - Not contain null bytes or newlines
    - Not contain path separators or be '.' / '..'

    Args:
        name: Job name to validate

    Returns:
        The validated job name

    Raises:
        SecurityError: If the name is invalid

    Example:
        >>> validate_job_name("Nightly Backup")
        'Nightly Backup'
        >>> validate_job_name("../etc/passwd")
        SecurityError: Job name cannot contain path separators
    """
    if not name or not name.strip():
        raise SecurityError("Empty job name")

    if len(name) > 200:
        raise SecurityError(f"Job name too long (max 200 chars): {name}")

    for char in ('\0', '\n', '\r'):
        if char in name:
            raise SecurityError(f"Invalid character {char!r} in job name: {name!r}")

    if '/' in name or '\\' in name or name in ('.', '..'):
        raise SecurityError(f"Job name cannot contain path separators: {name}")

    return name


def sanitize_name(value: str) -> str:
    """
    Reduce a job name or environment tag to a lock-file-safe token.

    Lower-cases, drops everything outside [a-z0-9_. -], trims, turns spaces
    into underscores and collapses runs of underscores. Names that differ
    only by case or spacing map to the same token.

    Args:
        value: Raw name

    Returns:
        Sanitized token (may be empty for names with no usable characters)

    Example:
        >>> sanitize_name("  Nightly  Backup (DB)! ")
        'nightly_backup_db'
    """
    value = value.lower()
    value = re.sub(r'[^a-z0-9_. -]+', '', value)
    value = value.strip()
    value = value.replace(' ', '_')
    value = re.sub(r'_{2,}', '_', value)
    return value


def validate_output_path(path: str, description: str = "output path") -> Path:
    """
    Validate a log destination path.

    Args:
        path: File path for stdout/stderr routing
        description: Description for error messages

    Returns:
        Path object

    Raises:
        SecurityError: If the path is empty or contains control characters
    """
    if not path:
        raise SecurityError(f"Empty {description}")

    for char in ('\0', '\n', '\r'):
        if char in path:
            raise SecurityError(f"Invalid character {char!r} in {description}: {path!r}")

    return Path(path)


def validate_run_as(user: str) -> str:
    """
    Validate a POSIX user name used for privilege drop.

    Args:
        user: User name

    Returns:
        The validated user name

    Raises:
        SecurityError: If the name is not a plausible POSIX account name
    """
    if not re.match(r'^[A-Za-z_][A-Za-z0-9_.-]{0,31}\$?$', user or ''):
        raise SecurityError(f"Invalid run_as user: {user!r}")
    return user
