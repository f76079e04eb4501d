"""
Data models for cronwarden.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from cronwarden import system

DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConfigError(Exception):
    """Job configuration is invalid or unsupported on this platform."""
    pass


class CommandAction(BaseModel):
    """Run an external command through the shell."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["command"] = "command"
    command: str = Field(min_length=1, description="Shell command line")


class CallableAction(BaseModel):
    """Run an importable Python callable in-process."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["callable"] = "callable"
    handler: str = Field(description="Import reference, 'package.module:function'")

    @field_validator('handler')
    @classmethod
    def validate_handler(cls, v: str) -> str:
        """Validate handler reference shape."""
        from cronwarden.handlers import validate_reference
        try:
            return validate_reference(v)
        except ConfigError as e:
            raise ValueError(str(e))


Action = Annotated[Union[CommandAction, CallableAction], Field(discriminator="kind")]


@dataclass(frozen=True)
class OutputRouting:
    """Resolved stdout/stderr destinations. None disables a stream."""
    stdout: Optional[str] = None
    stderr: Optional[str] = None


class JobSpec(BaseModel):
    """
    Everything needed to run one job, minus its schedule.

    This is what the batch runner ships to the detached child process.
    Config files use ``command:`` or ``callable:``; both are lifted into the
    tagged ``action`` field.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)

    name: str = Field(description="Job name, unique within a batch")
    action: Action

    # Resource limits
    max_runtime: Optional[int] = Field(default=None, ge=1, description="Seconds")

    # Execution policy
    enabled: bool = True
    run_on_host: Optional[str] = Field(
        default_factory=system.get_host,
        description="Only run on this host (case-insensitive); None runs anywhere"
    )
    halt_dir: Optional[str] = Field(
        default=None,
        description="A file named after the job in this directory suppresses runs"
    )
    run_as: Optional[str] = Field(default=None, description="POSIX user for sudo")
    environment: Optional[str] = Field(
        default_factory=system.get_application_env,
        description="Lock namespace tag"
    )

    # Output routing
    output: Optional[str] = None
    output_stdout: Optional[str] = None
    output_stderr: Optional[str] = None
    date_format: str = DEFAULT_DATE_FORMAT

    # Notification targets
    recipients: List[str] = Field(default_factory=list)
    mailer: Literal["sendmail", "smtp"] = "sendmail"
    smtp_host: Optional[str] = None
    smtp_port: int = 25
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_sender: str = Field(default_factory=lambda: f"cronwarden@{system.get_host()}")
    smtp_sender_name: str = "cronwarden"
    smtp_security: Optional[Literal["ssl", "tls"]] = None
    mail_subject: Optional[str] = None
    mattermost_url: Optional[str] = None
    slack_channel: Optional[str] = None
    slack_url: Optional[str] = None
    slack_sender: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def lift_action(cls, data: Any) -> Any:
        """Turn ``command``/``callable`` keys into the tagged action."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        command = data.pop('command', None)
        handler = data.pop('callable', None)

        if 'action' in data:
            if command is not None or handler is not None:
                raise ValueError("Use either 'action' or 'command'/'callable', not both")
            return data

        if (command is None) == (handler is None):
            raise ValueError("Either 'command' or 'callable' is required")

        if command is not None:
            data['action'] = {'kind': 'command', 'command': command}
        else:
            data['action'] = {'kind': 'callable', 'handler': handler}
        return data

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate job name for use in file paths."""
        from cronwarden.security_utils import validate_job_name
        try:
            return validate_job_name(v)
        except ConfigError as e:
            raise ValueError(str(e))

    @field_validator('run_as')
    @classmethod
    def validate_run_as(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        from cronwarden.security_utils import validate_run_as
        try:
            return validate_run_as(v)
        except ConfigError as e:
            raise ValueError(str(e))

    @field_validator('output', 'output_stdout', 'output_stderr')
    @classmethod
    def validate_output(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        from cronwarden.security_utils import validate_output_path
        try:
            validate_output_path(v)
        except ConfigError as e:
            raise ValueError(str(e))
        return v

    @field_validator('recipients', mode='before')
    @classmethod
    def split_recipients(cls, v: Any) -> Any:
        """Accept a comma-separated string as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return [r.strip() for r in v.split(',') if r.strip()]
        return v

    @property
    def output_routing(self) -> OutputRouting:
        """Per-stream destinations, each falling back to ``output``."""
        return OutputRouting(
            stdout=self.output_stdout if self.output_stdout is not None else self.output,
            stderr=self.output_stderr if self.output_stderr is not None else self.output,
        )

    def to_payload(self) -> str:
        """Serialize for the single-job command line."""
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str) -> "JobSpec":
        """Inverse of to_payload."""
        try:
            return cls.model_validate_json(payload)
        except ValidationError as e:
            raise ConfigError(f"Invalid job definition payload: {e}")


class JobDefinition(JobSpec):
    """A job as registered with the batch runner: a JobSpec plus its schedule."""

    schedule: Union[str, Callable[[datetime], bool]] = Field(
        description="Cron expression, 'YYYY-MM-DD HH:MM:SS' timestamp, or predicate"
    )

    @field_validator('schedule')
    @classmethod
    def validate_schedule(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError("Schedule must not be empty")
        return v

    def spec(self) -> JobSpec:
        """Drop the schedule, leaving what the child process needs."""
        return JobSpec.model_validate(self.model_dump(exclude={'schedule'}))

    @classmethod
    def from_config(cls, name: str, config: Dict[str, Any]) -> "JobDefinition":
        """
        Build a job from a (defaults-merged) configuration mapping.

        Args:
            name: Job name
            config: Job options; ``callable`` (or a callable ``command``) may
                be a module-level function and is converted to its reference

        Returns:
            JobDefinition

        Raises:
            ConfigError: If the schedule or action is missing or invalid
        """
        data = dict(config)
        data['name'] = name

        if not data.get('schedule'):
            raise ConfigError(f"'schedule' is required for '{name}' job")

        command = data.get('command')
        if command is not None and not isinstance(command, str) and callable(command):
            if data.get('callable') is not None:
                raise ConfigError(f"Either 'command' or 'callable' is required for '{name}' job")
            data['callable'] = data.pop('command')

        if (data.get('command') is None) == (data.get('callable') is None):
            raise ConfigError(f"Either 'command' or 'callable' is required for '{name}' job")

        handler = data.get('callable')
        if handler is not None and not isinstance(handler, str):
            from cronwarden.handlers import handler_reference
            data['callable'] = handler_reference(handler)

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration for '{name}' job: {e}")


class OutcomeStatus(Enum):
    """Result classes of one execution attempt."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class FailureKind(Enum):
    """Why a failed outcome failed."""
    CONFIG = "config"
    IO = "io"
    RUNTIME_EXCEEDED = "runtime_exceeded"
    COMMAND_EXIT = "command_exit"
    CALLABLE_RESULT = "callable_result"
    EXECUTION = "execution"


@dataclass(frozen=True)
class RunOutcome:
    """Result of one attempt; consumed immediately by the controller."""
    status: OutcomeStatus
    message: Optional[str] = None
    failure: Optional[FailureKind] = None
    exit_code: Optional[int] = None

    @classmethod
    def success(cls, exit_code: Optional[int] = None) -> "RunOutcome":
        return cls(OutcomeStatus.SUCCESS, exit_code=exit_code)

    @classmethod
    def skipped(cls, reason: Optional[str] = None) -> "RunOutcome":
        return cls(OutcomeStatus.SKIPPED, message=reason)

    @classmethod
    def failed(
        cls,
        failure: FailureKind,
        message: str,
        exit_code: Optional[int] = None
    ) -> "RunOutcome":
        return cls(OutcomeStatus.FAILED, message=message, failure=failure, exit_code=exit_code)

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FAILED


class RunnerConfig(BaseModel):
    """Runner configuration."""

    class LoggingConfig(BaseModel):
        level: str = Field(
            default="INFO",
            description="Global log level: DEBUG, INFO, WARNING, ERROR"
        )
        file: Optional[str] = Field(
            default=None,
            description="Optional log file path (in addition to stderr)"
        )
        json_format: bool = Field(
            default=False,
            description="Output logs in JSON format for machine parsing"
        )
        module_levels: Dict[str, str] = Field(
            default_factory=dict,
            description="Per-module log levels, e.g. {'lock_manager': 'DEBUG'}"
        )

    defaults: Dict[str, Any] = Field(
        default_factory=dict,
        description="Options merged under every job"
    )
    jobs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    jobs_dir: Optional[str] = Field(
        default=None,
        description="Directory of per-job YAML files"
    )
    debug: bool = Field(
        default=False,
        description="Keep detached children's own stdout/stderr in debug_log"
    )
    debug_log: str = "debug.log"
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class RunnerConfigFile(BaseModel):
    """Root structure of the runner config file."""
    runner: RunnerConfig
