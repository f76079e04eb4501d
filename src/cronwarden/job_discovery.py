"""
Job discovery - load the runner config and scan a jobs directory.

Per-job YAML files look like:

    job:
      name: nightly-backup        # optional, defaults to the file stem
      schedule: "0 2 * * *"
      command: /usr/local/bin/backup
"""
import logging
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from cronwarden.models import ConfigError, RunnerConfig, RunnerConfigFile

logger = logging.getLogger(__name__)


class JobDiscoveryError(ConfigError):
    """Error during job discovery."""
    pass


def load_runner_config(config_path: str) -> RunnerConfig:
    """
    Load and validate the runner config file.

    Args:
        config_path: Path to YAML config

    Returns:
        RunnerConfig

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {config_path}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML parse error in {config_path}: {e}")

    if not data or 'runner' not in data:
        raise ConfigError(f"Missing 'runner' key at root level: {config_path}")

    try:
        return RunnerConfigFile(**data).runner
    except ValidationError as e:
        raise ConfigError(f"Invalid config {config_path}: {e}")


def discover_jobs(jobs_dir: str) -> Dict[str, Dict[str, Any]]:
    """
    Recursively load all job YAML files in a directory.

    Files that fail to load are logged and skipped; duplicate names are fatal.

    Args:
        jobs_dir: Root directory to scan

    Returns:
        Mapping of job name -> raw job options

    Raises:
        JobDiscoveryError: If the directory is unusable or names collide
    """
    jobs_path = Path(jobs_dir)

    if not jobs_path.exists():
        raise JobDiscoveryError(f"Jobs directory does not exist: {jobs_dir}")

    if not jobs_path.is_dir():
        raise JobDiscoveryError(f"Jobs path is not a directory: {jobs_dir}")

    yaml_files = []
    for pattern in ['**/*.yaml', '**/*.yml']:
        yaml_files.extend(jobs_path.glob(pattern))

    logger.debug(f"Found {len(yaml_files)} YAML files in {jobs_dir}")

    jobs: Dict[str, Dict[str, Any]] = {}
    sources: Dict[str, Path] = {}

    for yaml_file in sorted(yaml_files):
        try:
            name, options = load_job_file(yaml_file)
        except ValueError as e:
            logger.error(f"Failed to load job file {yaml_file}: {e}")
            continue

        if name in jobs:
            raise JobDiscoveryError(
                f"Duplicate job name '{name}' in {yaml_file} (already defined in {sources[name]})"
            )
        jobs[name] = options
        sources[name] = yaml_file

    logger.debug(f"Loaded {len(jobs)} jobs from {jobs_dir}")
    return jobs


def load_job_file(file_path: Path):
    """
    Load a single job YAML file.

    Args:
        file_path: Path to YAML file

    Returns:
        Tuple of (job name, job options)

    Raises:
        ValueError: If file is invalid
    """
    try:
        with open(file_path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"YAML parse error: {e}")
    except OSError as e:
        raise ValueError(f"Cannot read file: {e}")

    if not data:
        raise ValueError("Empty YAML file")

    if not isinstance(data, dict) or not isinstance(data.get('job'), dict):
        raise ValueError("Missing 'job' mapping at root level")

    options = dict(data['job'])
    name = options.pop('name', None) or file_path.stem
    return str(name), options


def collect_job_configs(config: RunnerConfig) -> Dict[str, Dict[str, Any]]:
    """
    Inline jobs followed by jobs_dir jobs.

    Raises:
        JobDiscoveryError: If the same name is defined in both places
    """
    jobs = {name: dict(options or {}) for name, options in config.jobs.items()}

    if config.jobs_dir:
        for name, options in discover_jobs(config.jobs_dir).items():
            if name in jobs:
                raise JobDiscoveryError(
                    f"Duplicate job name '{name}' (defined inline and in {config.jobs_dir})"
                )
            jobs[name] = options

    return jobs
