"""
Job executor for cronwarden.

Runs one job action to completion and reports a RunOutcome:
- Command actions run through the shell with stdout/stderr appended to the
  routed log files (or discarded)
- Callable actions run in-process with stdout captured and appended to the
  stdout log afterwards
"""
import io
import logging
import shlex
import subprocess
from contextlib import ExitStack, redirect_stdout
from pprint import pformat
from typing import Any, Optional, Union

from cronwarden import system
from cronwarden.handlers import resolve_handler
from cronwarden.logging_utils import ensure_parent_dir, log_with_fields
from cronwarden.models import (
    CallableAction,
    CommandAction,
    ConfigError,
    FailureKind,
    OutputRouting,
    RunOutcome,
)

logger = logging.getLogger(__name__)

# Captured callable output up to this many characters is treated as noise.
TRIVIAL_OUTPUT_CHARS = 2


class JobExecutor:
    """
    Executes a single action synchronously.

    Never raises for action failures; those come back as failed outcomes.
    """

    def __init__(self, platform: Optional[str] = None, privileged: Optional[bool] = None):
        """
        Initialize job executor.

        Args:
            platform: system.UNIX or system.WINDOWS (default: detected)
            privileged: Whether we run as root (default: detected)
        """
        self.platform = platform or system.get_platform()
        self.privileged = system.is_privileged() if privileged is None else privileged

    def execute(
        self,
        action: Union[CommandAction, CallableAction],
        routing: OutputRouting,
        run_as: Optional[str] = None
    ) -> RunOutcome:
        """
        Run an action.

        Args:
            action: Command or callable action
            routing: Where stdout/stderr go
            run_as: Optional user for privilege drop (POSIX, root only)

        Returns:
            RunOutcome for this attempt
        """
        if isinstance(action, CommandAction):
            return self.run_command(action, routing, run_as)
        if isinstance(action, CallableAction):
            return self.run_callable(action, routing)
        raise ConfigError(f"Unknown action type: {type(action).__name__}")

    def build_command(self, command: str, run_as: Optional[str] = None) -> str:
        """Shell command line, wrapped in sudo when dropping privileges."""
        if run_as and self.platform == system.UNIX and self.privileged:
            return f"sudo -u {shlex.quote(run_as)} sh -c {shlex.quote(command)}"
        return command

    def run_command(
        self,
        action: CommandAction,
        routing: OutputRouting,
        run_as: Optional[str] = None
    ) -> RunOutcome:
        """
        Run a shell command in the foreground (blocks until it exits).

        Returns:
            Success for exit code 0, a COMMAND_EXIT failure otherwise
        """
        command = self.build_command(action.command, run_as)

        with ExitStack() as stack:
            try:
                stdout = self._open_destination(routing.stdout, stack)
                if routing.stderr is not None and routing.stderr == routing.stdout:
                    stderr = stdout
                else:
                    stderr = self._open_destination(routing.stderr, stack)
            except OSError as e:
                return RunOutcome.failed(FailureKind.IO, f"Unable to open log file: {e}")

            logger.debug(f"Running command: {command}")
            try:
                result = subprocess.run(
                    command,
                    shell=True,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=stderr,
                )
            except OSError as e:
                return RunOutcome.failed(FailureKind.EXECUTION, f"Unable to start command: {e}")

        log_with_fields(logger, logging.DEBUG, "Command finished", exit_code=result.returncode)

        if result.returncode != 0:
            return RunOutcome.failed(
                FailureKind.COMMAND_EXIT,
                f"Job exited with status '{result.returncode}'.",
                exit_code=result.returncode,
            )
        return RunOutcome.success(exit_code=0)

    def run_callable(self, action: CallableAction, routing: OutputRouting) -> RunOutcome:
        """
        Call a handler in-process, capturing what it prints.

        A raised exception is logged to stderr as ``Error! <message>`` and its
        message becomes the return value. Only a literal ``True`` succeeds.
        """
        try:
            handler = resolve_handler(action.handler)
        except ConfigError as e:
            return RunOutcome.failed(FailureKind.CONFIG, str(e))

        captured = io.StringIO()
        error = None
        with redirect_stdout(captured):
            try:
                retval = handler()
            except Exception as e:
                logger.debug(f"Handler {action.handler} raised", exc_info=True)
                error = e
                retval = str(e)

        try:
            if error is not None:
                self._append(routing.stderr, f"Error! {error}\n")

            content = captured.getvalue()
            if len(content) > TRIVIAL_OUTPUT_CHARS:
                self._append(routing.stdout, content)
        except OSError as e:
            return RunOutcome.failed(FailureKind.IO, f"Unable to write log file: {e}")

        if retval is not True:
            return RunOutcome.failed(
                FailureKind.CALLABLE_RESULT,
                "Closure did not return true! Returned:\n" + render_value(retval),
            )
        return RunOutcome.success()

    def _open_destination(self, path: Optional[str], stack: ExitStack):
        if path is None:
            return subprocess.DEVNULL
        return stack.enter_context(open(ensure_parent_dir(path), 'ab'))

    def _append(self, path: Optional[str], text: str) -> None:
        if path is None:
            return
        with open(ensure_parent_dir(path), 'a', encoding='utf-8') as f:
            f.write(text)


def render_value(value: Any) -> str:
    """Human-readable rendering of a handler's return value."""
    if isinstance(value, str):
        return value
    return pformat(value)
