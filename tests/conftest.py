"""
Pytest fixtures for cronwarden tests.

Lock files, job logs and halt markers all live under pytest's tmp_path, so
tests never touch the real temp directory or each other.
"""
import sys
from datetime import datetime
from pathlib import Path

import pytest

# Add src (package) and tests (sample handlers) to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from cronwarden import system
from cronwarden.job_controller import JobController
from cronwarden.lock_manager import LockManager
from cronwarden.models import JobSpec

JOB_NAME = "name"
TEST_HOST = "testhost"
FIXED_NOW = datetime(2026, 10, 17, 12, 0, 0)


class RecordingNotifier:
    """Notifier stand-in that records calls."""

    def __init__(self):
        self.messages = []

    def notify(self, job_name: str, message: str) -> int:
        self.messages.append((job_name, message))
        return 1


def read_file(path: Path) -> str:
    """File content, or '' if the file does not exist."""
    return path.read_text() if path.exists() else ""


@pytest.fixture
def lock_dir(tmp_path) -> Path:
    """Private directory for lock files."""
    d = tmp_path / "locks"
    d.mkdir()
    return d


@pytest.fixture
def log_file(tmp_path) -> Path:
    """Job log destination (parent directory not yet created)."""
    return tmp_path / "logs" / "job.log"


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_spec(log_file):
    """Factory for JobSpec with test-friendly defaults."""
    def _make(**options) -> JobSpec:
        options.setdefault('name', JOB_NAME)
        options.setdefault('output', str(log_file))
        options.setdefault('run_on_host', TEST_HOST)
        options.setdefault('environment', None)
        if 'command' not in options and 'callable' not in options:
            options['callable'] = 'sample_handlers:echo_test'
        return JobSpec(**options)
    return _make


@pytest.fixture
def make_controller(make_spec, lock_dir, notifier):
    """Factory for JobController wired to tmp locks and a recording notifier."""
    def _make(lock_manager=None, executor=None, platform=system.UNIX, **options) -> JobController:
        spec = make_spec(**options)
        return JobController(
            spec,
            lock_manager=lock_manager or LockManager(lock_dir=str(lock_dir)),
            executor=executor,
            notifier=notifier,
            host=TEST_HOST,
            platform=platform,
            now=FIXED_NOW,
        )
    return _make
