"""
Host and platform helpers.

Thin wrappers around the OS so controllers and tests can swap them out.
"""
import os
import platform
import sys
import tempfile
from typing import Optional

UNIX = "unix"
WINDOWS = "windows"


def get_host() -> str:
    """Return this machine's node name."""
    return platform.node()


def get_platform() -> str:
    """Return UNIX or WINDOWS."""
    if sys.platform.startswith("win"):
        return WINDOWS
    return UNIX


def get_temp_dir() -> str:
    """Directory that holds lock files."""
    return tempfile.gettempdir()


def get_application_env() -> Optional[str]:
    """Deployment environment tag from APPLICATION_ENV, if set."""
    return os.environ.get("APPLICATION_ENV") or None


def is_privileged() -> bool:
    """True when running with an effective uid of 0."""
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0
