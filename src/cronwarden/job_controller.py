"""
Job controller: one guarded run of one job.

Lifecycle:
    IDLE -> CHECKING_RUNTIME -> GATING -> LOCKING -> RUNNING -> UNLOCKING -> DONE

Any failed check jumps straight to DONE. Once the lock is taken it is
released on every exit path. run() always returns normally.
"""
import logging
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from cronwarden import system
from cronwarden.job_executor import JobExecutor
from cronwarden.lock_manager import LockError, LockHeldError, LockManager
from cronwarden.logging_utils import JobLog, correlation_context, log_duration
from cronwarden.models import (
    ConfigError,
    FailureKind,
    JobSpec,
    OutcomeStatus,
    RunOutcome,
)
from cronwarden.notifier import Notifier

logger = logging.getLogger(__name__)

# Leftover stdout logs at or below this size are removed after a run.
EMPTY_LOG_BYTES = 2
EMPTY_COLLECTION_MARKER = "[]"


class RuntimeExceededError(Exception):
    """A previous run of the job still holds the lock past max_runtime."""
    pass


class ControllerState(Enum):
    """Controller lifecycle states."""
    IDLE = "idle"
    CHECKING_RUNTIME = "checking_runtime"
    GATING = "gating"
    LOCKING = "locking"
    RUNNING = "running"
    UNLOCKING = "unlocking"
    DONE = "done"


class JobController:
    """
    Orchestrates runtime check, gating, locking, execution and cleanup.

    Collaborators are injectable so tests can substitute them.
    """

    def __init__(
        self,
        spec: JobSpec,
        lock_manager: Optional[LockManager] = None,
        executor: Optional[JobExecutor] = None,
        notifier: Optional[Notifier] = None,
        host: Optional[str] = None,
        platform: Optional[str] = None,
        now: Optional[datetime] = None
    ):
        """
        Initialize controller.

        Args:
            spec: Job to run
            lock_manager: Lock manager (default: temp dir, job's environment)
            executor: Action executor
            notifier: Failure notifier (default: sinks configured on the job)
            host: Current host name (default: detected)
            platform: system.UNIX or system.WINDOWS (default: detected)
            now: Start instant used for log timestamps (default: now)
        """
        self.spec = spec
        self.now = now or datetime.now()
        self.host = host or system.get_host()
        self.platform = platform or system.get_platform()
        self.locks = lock_manager or LockManager(environment=spec.environment)
        self.executor = executor or JobExecutor(platform=self.platform)
        self.notifier = notifier or Notifier.for_job(spec, self.host)

        routing = spec.output_routing
        self.log = JobLog(spec.name, routing.stdout, routing.stderr, self.now, spec.date_format)
        self.state = ControllerState.IDLE

    def run(self) -> RunOutcome:
        """
        Run the job once, if allowed.

        Returns:
            The outcome of this attempt (never raises)
        """
        run_id = f"{self.now.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"

        with correlation_context(job_name=self.spec.name, run_id=run_id):
            try:
                outcome = self._run()
            except Exception as e:
                logger.error(f"Unexpected controller error: {e}", exc_info=True)
                outcome = RunOutcome.failed(FailureKind.EXECUTION, str(e))
                self._write(f"ERROR: {outcome.message}")
                self._notify(outcome.message)

            self._transition(ControllerState.DONE)
            logger.info(f"Run finished: {outcome.status.value}")

        return outcome

    def _run(self) -> RunOutcome:
        self._transition(ControllerState.CHECKING_RUNTIME)
        try:
            self.check_max_runtime()
        except ConfigError as e:
            return self.report(RunOutcome.failed(FailureKind.CONFIG, str(e)))
        except RuntimeExceededError as e:
            return self.report(RunOutcome.failed(FailureKind.RUNTIME_EXCEEDED, str(e)))

        self._transition(ControllerState.GATING)
        if not self.should_run():
            return RunOutcome.skipped()

        self._transition(ControllerState.LOCKING)
        try:
            self.locks.acquire_lock(self.spec.name)
        except LockHeldError as e:
            return self.report(RunOutcome.skipped(str(e)))
        except LockError as e:
            return self.report(RunOutcome.failed(FailureKind.IO, str(e)))

        try:
            self._transition(ControllerState.RUNNING)
            with log_duration("execute", logger, action=self.spec.action.kind):
                try:
                    outcome = self.executor.execute(
                        self.spec.action,
                        self.spec.output_routing,
                        run_as=self.spec.run_as
                    )
                except ConfigError as e:
                    outcome = RunOutcome.failed(FailureKind.CONFIG, str(e))
                except Exception as e:
                    logger.error(f"Execution raised: {e}", exc_info=True)
                    outcome = RunOutcome.failed(FailureKind.EXECUTION, str(e))
            self.report(outcome)
        finally:
            self._transition(ControllerState.UNLOCKING)
            self.locks.release_lock(self.spec.name)
            self.remove_empty_log()

        return outcome

    def check_max_runtime(self) -> None:
        """
        Refuse to start while a previous run is over its time budget.

        Raises:
            ConfigError: If max_runtime is set on a platform without support
            RuntimeExceededError: If the live lock is at least max_runtime old
        """
        max_runtime = self.spec.max_runtime
        if max_runtime is None:
            return

        if self.platform == system.WINDOWS:
            raise ConfigError('"max_runtime" is not supported on Windows')

        runtime = self.locks.get_lock_age(self.spec.name)
        if runtime < max_runtime:
            return

        raise RuntimeExceededError(
            f"MaxRuntime of {max_runtime} secs exceeded! Current runtime: {runtime} secs"
        )

    def should_run(self) -> bool:
        """
        Enabled flag, halt marker and host affinity; all must pass.
        """
        if not self.spec.enabled:
            logger.debug("Job disabled")
            return False

        if self.spec.halt_dir is not None:
            if (Path(self.spec.halt_dir) / self.spec.name).exists():
                logger.debug(f"Halt marker present in {self.spec.halt_dir}")
                return False

        run_on_host = self.spec.run_on_host
        if run_on_host is not None and run_on_host.casefold() != self.host.casefold():
            logger.debug(f"Job pinned to host {run_on_host}, this is {self.host}")
            return False

        return True

    def report(self, outcome: RunOutcome) -> RunOutcome:
        """
        Log an outcome to the job's stderr destination and notify on failure.

        Returns:
            The same outcome, for chaining
        """
        if outcome.status == OutcomeStatus.FAILED:
            self._write(f"ERROR: {outcome.message}")
            logger.error(f"Job failed ({outcome.failure.value}): {outcome.message}")
            self._notify(outcome.message)
        elif outcome.status == OutcomeStatus.SKIPPED and outcome.message:
            self._write(f"INFO: {outcome.message}")
            logger.info(outcome.message)
        return outcome

    def remove_empty_log(self) -> bool:
        """
        Delete the stdout log if the run left nothing meaningful in it.

        Returns:
            True if a file was removed
        """
        destination = self.spec.output_routing.stdout
        if destination is None:
            return False

        path = Path(destination)
        if not path.is_file():
            return False

        try:
            if path.stat().st_size > EMPTY_LOG_BYTES:
                if path.read_text(encoding='utf-8', errors='replace').strip() != EMPTY_COLLECTION_MARKER:
                    return False
            path.unlink()
        except OSError as e:
            logger.warning(f"Could not clean up log file {path}: {e}")
            return False

        logger.debug(f"Removed empty log file {path}")
        return True

    def _write(self, message: str) -> None:
        try:
            self.log.write(message, 'stderr')
        except OSError as e:
            logger.error(f"Cannot write job log: {e}")

    def _notify(self, message: str) -> None:
        try:
            self.notifier.notify(self.spec.name, message)
        except Exception as e:
            logger.error(f"Notifier failed: {e}", exc_info=True)

    def _transition(self, state: ControllerState) -> None:
        logger.debug(f"State: {self.state.value} → {state.value}")
        self.state = state
