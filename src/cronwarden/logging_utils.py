"""
Logging utilities for cronwarden.

Provides:
- Structured diagnostic logging with key=value fields
- Correlation ID context management (job name, run id)
- Performance timing utilities
- Optional JSON output
- JobLog: the per-job operator log lines written to a job's output files
"""
import json
import logging
import os
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional

# Context variables for correlation IDs
_job_name: ContextVar[Optional[str]] = ContextVar('job_name', default=None)
_run_id: ContextVar[Optional[str]] = ContextVar('run_id', default=None)

LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class StructuredFormatter(logging.Formatter):
    """
    Formatter that adds correlation IDs and structured fields.

    Format: [timestamp] [level] [component] correlation_ids key=value message
    """

    def __init__(self, json_output: bool = False):
        """
        Initialize formatter.

        Args:
            json_output: If True, output JSON lines instead of human-readable
        """
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with correlation IDs and structured fields."""
        if self.json_output:
            return self._format_json(record)
        return self._format_human(record)

    def _timestamp(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, datefmt='%Y-%m-%dT%H:%M:%S')
        return f"{timestamp}.{int(record.msecs):03d}"

    def _format_human(self, record: logging.LogRecord) -> str:
        """Human-readable format with key=value pairs."""
        parts = [
            f"[{self._timestamp(record)}]",
            f"[{record.levelname}]",
            f"[{record.name.split('.')[-1]}]"
        ]

        job_name = _job_name.get()
        if job_name:
            parts.append(f"job={job_name}")

        run_id = _run_id.get()
        if run_id:
            parts.append(f"run={run_id}")

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            parts.extend(f"{key}={value}" for key, value in fields.items())

        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)

        return result

    def _format_json(self, record: logging.LogRecord) -> str:
        """JSON format for machine parsing."""
        log_entry = {
            "timestamp": self._timestamp(record),
            "level": record.levelname,
            "component": record.name.split('.')[-1],
            "message": record.getMessage()
        }

        job_name = _job_name.get()
        if job_name:
            log_entry["job_name"] = job_name

        run_id = _run_id.get()
        if run_id:
            log_entry["run_id"] = run_id

        fields = getattr(record, 'fields', None)
        if isinstance(fields, dict):
            log_entry.update(fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, separators=(',', ':'), default=str)


def get_correlation_ids() -> Dict[str, Optional[str]]:
    """Current correlation IDs."""
    return {
        'job_name': _job_name.get(),
        'run_id': _run_id.get(),
    }


@contextmanager
def correlation_context(job_name: Optional[str] = None, run_id: Optional[str] = None):
    """
    Context manager for temporary correlation IDs.

    IDs are restored to previous values when context exits.

    Example:
        with correlation_context(job_name="backup", run_id="backup-4711"):
            logger.info("Acquiring lock")  # IDs automatically included
    """
    job_token = _job_name.set(job_name) if job_name is not None else None
    run_token = _run_id.set(run_id) if run_id is not None else None
    try:
        yield
    finally:
        if run_token is not None:
            _run_id.reset(run_token)
        if job_token is not None:
            _job_name.reset(job_token)


@contextmanager
def log_duration(operation: str, logger: Optional[logging.Logger] = None, **extra_fields):
    """
    Context manager that logs duration of an operation.

    Example:
        with log_duration("execute", logger, action="command"):
            executor.execute(spec)
        # Logs: operation=execute duration_ms=1234 action=command
    """
    if logger is None:
        logger = logging.getLogger()

    start_time = time.time()

    try:
        yield
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        fields = {
            'operation': operation,
            'duration_ms': duration_ms,
            **extra_fields
        }
        logger.info(f"Operation completed: {operation}", extra={'fields': fields})


def log_with_fields(logger: logging.Logger, level: int, message: str, **fields):
    """
    Log a message with structured fields.

    Example:
        log_with_fields(logger, logging.INFO, "Dispatched job", job="backup", pid=4711)
    """
    logger.log(level, message, extra={'fields': fields})


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    module_levels: Optional[Dict[str, str]] = None
) -> None:
    """
    Setup diagnostic logging.

    Args:
        level: Global log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Enable JSON output instead of human-readable
        log_file: Optional log file path (in addition to stderr)
        module_levels: Per-module log levels, e.g. {'lock_manager': 'DEBUG'}

    Environment Variables:
        CRONWARDEN_LOG_LEVEL: Override log level
        CRONWARDEN_LOG_JSON: Enable JSON output (1 or 0)
    """
    level = os.getenv('CRONWARDEN_LOG_LEVEL', level).upper()
    json_output = os.getenv('CRONWARDEN_LOG_JSON', '0') == '1' or json_output

    if level not in LOG_LEVELS:
        logging.warning(f"Invalid log level '{level}', using INFO")
        level = 'INFO'

    formatter = StructuredFormatter(json_output=json_output)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            log_path = os.path.dirname(log_file)
            if log_path and not os.path.exists(log_path):
                os.makedirs(log_path, mode=0o755)

            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            logging.error(f"Failed to setup file logging: {e}")

    if module_levels:
        for module_name, module_level in module_levels.items():
            module_level_upper = module_level.upper()
            if module_level_upper in LOG_LEVELS:
                module_logger = logging.getLogger(f'cronwarden.{module_name}')
                module_logger.setLevel(getattr(logging, module_level_upper))
            else:
                logging.warning(f"Invalid log level for module {module_name}: {module_level}")

    logging.debug(f"Logging initialized: level={level}, json={json_output}, file={log_file}")


def ensure_parent_dir(path: str) -> Path:
    """Create the parent directory of a log destination if missing."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    return p


class JobLog:
    """
    Appends operator-facing lines to a job's output files.

    Line format: ``[<timestamp>] [<job-name>] <message>``. The timestamp is
    the controller's start instant, rendered with the job's date format.
    """

    def __init__(
        self,
        job_name: str,
        stdout: Optional[str],
        stderr: Optional[str],
        started_at: datetime,
        date_format: str
    ):
        self.job_name = job_name
        self.destinations = {'stdout': stdout, 'stderr': stderr}
        self.stamp = started_at.strftime(date_format)

    def path(self, stream: str = 'stdout') -> Optional[Path]:
        """Destination for a stream, parent directory created; None if unrouted."""
        destination = self.destinations[stream]
        if destination is None:
            return None
        return ensure_parent_dir(destination)

    def write(self, message: str, stream: str = 'stdout') -> None:
        """Append one log line; silently dropped when the stream is unrouted."""
        self.append(f"[{self.stamp}] [{self.job_name}] {message}\n", stream)

    def append(self, text: str, stream: str = 'stdout') -> None:
        """Append raw text verbatim."""
        path = self.path(stream)
        if path is None:
            return
        with open(path, 'a', encoding='utf-8') as f:
            f.write(text)
