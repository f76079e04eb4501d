"""Unit tests for logging utilities and the per-job log."""
import json
import logging
from datetime import datetime

import pytest

from cronwarden.logging_utils import (
    JobLog,
    StructuredFormatter,
    correlation_context,
    get_correlation_ids,
    setup_logging,
)


def make_record(message="hello", **fields):
    record = logging.LogRecord("cronwarden.lock_manager", logging.INFO, __file__, 1, message, None, None)
    if fields:
        record.fields = fields
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestCorrelationContext:

    def test_sets_and_restores(self):
        """IDs are set inside the context and restored on exit."""
        assert get_correlation_ids() == {'job_name': None, 'run_id': None}
        with correlation_context(job_name="backup", run_id="r1"):
            assert get_correlation_ids() == {'job_name': "backup", 'run_id': "r1"}
            with correlation_context(run_id="r2"):
                assert get_correlation_ids() == {'job_name': "backup", 'run_id': "r2"}
            assert get_correlation_ids()['run_id'] == "r1"
        assert get_correlation_ids() == {'job_name': None, 'run_id': None}


class TestStructuredFormatter:

    def test_human(self):
        """Human output carries job id and fields."""
        with correlation_context(job_name="backup"):
            line = StructuredFormatter().format(make_record(pid=42))
        assert "[INFO] [lock_manager] job=backup pid=42 hello" in line

    def test_json(self):
        """JSON output carries ids, fields and message."""
        with correlation_context(job_name="backup", run_id="r1"):
            line = StructuredFormatter(json_output=True).format(make_record(pid=42))
        entry = json.loads(line)
        assert entry["component"] == "lock_manager"
        assert entry["job_name"] == "backup"
        assert entry["run_id"] == "r1"
        assert entry["pid"] == 42
        assert entry["message"] == "hello"


class TestSetupLogging:

    def test_file_and_module_levels(self, tmp_path, restore_root_logger, monkeypatch):
        """Log file directory and per-module levels are set up."""
        monkeypatch.delenv("CRONWARDEN_LOG_LEVEL", raising=False)
        log_file = tmp_path / "logs" / "cronwarden.log"

        setup_logging(level="warning", log_file=str(log_file), module_levels={"notifier": "debug"})

        assert restore_root_logger.level == logging.WARNING
        assert logging.getLogger("cronwarden.notifier").level == logging.DEBUG
        assert log_file.parent.is_dir()
        logging.getLogger("cronwarden.notifier").setLevel(logging.NOTSET)

    def test_env_override(self, restore_root_logger, monkeypatch):
        """CRONWARDEN_LOG_LEVEL wins over the argument."""
        monkeypatch.setenv("CRONWARDEN_LOG_LEVEL", "ERROR")
        setup_logging(level="DEBUG")
        assert restore_root_logger.level == logging.ERROR

    def test_invalid_level_falls_back(self, restore_root_logger, monkeypatch):
        """Unknown levels fall back to INFO."""
        monkeypatch.delenv("CRONWARDEN_LOG_LEVEL", raising=False)
        setup_logging(level="LOUD")
        assert restore_root_logger.level == logging.INFO


class TestJobLog:

    def test_line_format(self, tmp_path):
        """Lines are '[timestamp] [job] message'."""
        path = tmp_path / "logs" / "job.log"
        log = JobLog("backup", str(path), str(path), datetime(2026, 10, 17, 12, 0, 0), "%Y-%m-%d %H:%M:%S")
        log.write("INFO: hello", 'stderr')
        assert path.read_text() == "[2026-10-17 12:00:00] [backup] INFO: hello\n"

    def test_custom_date_format(self, tmp_path):
        """The job's date format is honored."""
        path = tmp_path / "job.log"
        log = JobLog("backup", str(path), None, datetime(2026, 10, 17, 12, 0, 0), "%d.%m.%Y")
        log.write("hello")
        assert path.read_text() == "[17.10.2026] [backup] hello\n"

    def test_unrouted_stream_dropped(self, tmp_path):
        """Writes to an unrouted stream create nothing."""
        log = JobLog("backup", None, None, datetime(2026, 10, 17), "%Y")
        log.write("hello", 'stderr')
        log.append("raw", 'stdout')
        assert list(tmp_path.iterdir()) == []

    def test_append_is_verbatim(self, tmp_path):
        """append() writes text unchanged."""
        path = tmp_path / "job.log"
        log = JobLog("backup", str(path), None, datetime(2026, 10, 17), "%Y")
        log.append("a")
        log.append("b\n")
        assert path.read_text() == "ab\n"
