"""
Batch runner: evaluate every registered job once and dispatch the due ones.

Each due job runs in its own detached child process (``cronwarden.main
run-job``). The batch never waits for children; outcomes surface only through
the children's job logs and notifications.
"""
import logging
import os
import subprocess
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

from cronwarden import system
from cronwarden.job_discovery import collect_job_configs
from cronwarden.logging_utils import correlation_context, log_with_fields
from cronwarden.models import ConfigError, JobDefinition, JobSpec, RunnerConfig
from cronwarden.schedule_checker import ScheduleChecker

logger = logging.getLogger(__name__)


class ProcessLauncher:
    """Starts single-job children detached from the batch process."""

    def __init__(
        self,
        python: Optional[str] = None,
        debug: bool = False,
        debug_log: str = "debug.log"
    ):
        """
        Initialize launcher.

        Args:
            python: Interpreter for children (default: the current one)
            debug: Keep the children's own stdout/stderr in debug_log
            debug_log: File for children's stdout/stderr when debugging
        """
        self.python = python or sys.executable
        self.debug = debug
        self.debug_log = debug_log

    def build_command(self, spec: JobSpec) -> List[str]:
        """Argument vector for a single-job child."""
        return [
            self.python, '-m', 'cronwarden.main',
            'run-job', '--definition', spec.to_payload()
        ]

    def build_env(self) -> Dict[str, str]:
        """
        Child environment; the parent's import roots go on PYTHONPATH so
        callable handlers resolve the same way in the child.
        """
        env = os.environ.copy()
        roots = [p for p in sys.path if p and os.path.isdir(p)]
        existing = env.get('PYTHONPATH')
        if existing:
            roots.append(existing)
        env['PYTHONPATH'] = os.pathsep.join(dict.fromkeys(roots))
        return env

    def launch(self, spec: JobSpec) -> int:
        """
        Spawn a detached child for one job.

        Returns:
            Child PID

        Raises:
            OSError: If the process cannot be started
        """
        if system.get_platform() == system.WINDOWS:
            detach = {
                'creationflags': subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
            }
        else:
            detach = {'start_new_session': True}

        output = open(self.debug_log, 'ab') if self.debug else subprocess.DEVNULL
        try:
            process = subprocess.Popen(
                self.build_command(spec),
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT,
                close_fds=True,
                env=self.build_env(),
                **detach
            )
        finally:
            if output is not subprocess.DEVNULL:
                output.close()

        return process.pid


class BatchRunner:
    """
    Registry of jobs plus the one-shot dispatch loop.

    Example:
        runner = BatchRunner(defaults={'output': '/var/log/jobs.log'})
        runner.add('backup', {'schedule': '0 2 * * *', 'command': 'backup.sh'})
        runner.add('report', {'schedule': '*/15 * * * *', 'callable': 'mypkg.tasks:report'})
        runner.run()
    """

    def __init__(
        self,
        defaults: Optional[Dict[str, Any]] = None,
        launcher: Optional[ProcessLauncher] = None
    ):
        self.defaults = dict(defaults or {})
        self.launcher = launcher or ProcessLauncher()
        self._jobs: Dict[str, JobDefinition] = {}

    @classmethod
    def from_config(
        cls,
        config: RunnerConfig,
        launcher: Optional[ProcessLauncher] = None
    ) -> "BatchRunner":
        """
        Build a runner from a loaded config file.

        Invalid jobs are logged and left out; the rest are registered.

        Raises:
            ConfigError: If the jobs directory is unusable or names collide
        """
        launcher = launcher or ProcessLauncher(debug=config.debug, debug_log=config.debug_log)
        runner = cls(defaults=config.defaults, launcher=launcher)
        for name, options in collect_job_configs(config).items():
            try:
                runner.add(name, options)
            except ConfigError as e:
                logger.error(f"Skipping job '{name}': {e}")
        return runner

    @property
    def jobs(self) -> List[JobDefinition]:
        """Registered jobs in insertion order."""
        return list(self._jobs.values())

    def get(self, name: str) -> JobDefinition:
        """Look up a job by name."""
        try:
            return self._jobs[name]
        except KeyError:
            raise ConfigError(f"Unknown job: {name}")

    def add(self, name: str, config: Dict[str, Any]) -> JobDefinition:
        """
        Register a job; runner defaults are merged under its options.

        Args:
            name: Unique job name
            config: Job options (schedule plus command or callable)

        Returns:
            The validated JobDefinition

        Raises:
            ConfigError: If the job is invalid or the name is taken
        """
        if name in self._jobs:
            raise ConfigError(f"Job '{name}' is already registered")

        job = JobDefinition.from_config(name, {**self.defaults, **config})
        self._jobs[name] = job
        logger.debug(f"Registered job {name} ({job.action.kind})")
        return job

    def due_jobs(self, now: Optional[datetime] = None) -> List[JobDefinition]:
        """
        Jobs whose schedule matches ``now``.

        A job whose schedule cannot be evaluated is logged and left out.
        """
        checker = ScheduleChecker(now)
        due = []
        for job in self._jobs.values():
            try:
                if checker.is_due(job.schedule):
                    due.append(job)
            except ConfigError as e:
                logger.error(f"Skipping job '{job.name}': {e}")
            except Exception as e:
                logger.error(f"Schedule predicate for job '{job.name}' raised: {e}", exc_info=True)
        return due

    def run(self, now: Optional[datetime] = None) -> List[str]:
        """
        Dispatch every due job to its own detached process.

        Args:
            now: Evaluation instant (default: now)

        Returns:
            Names of the jobs dispatched
        """
        dispatched = []
        for job in self.due_jobs(now):
            with correlation_context(job_name=job.name):
                try:
                    pid = self.launcher.launch(job.spec())
                except OSError as e:
                    logger.error(f"Failed to launch job: {e}")
                    continue

                log_with_fields(logger, logging.INFO, "Dispatched job", pid=pid)
                dispatched.append(job.name)

        logger.info(f"Dispatched {len(dispatched)} of {len(self._jobs)} jobs")
        return dispatched
