#!/usr/bin/env python3
"""
cronwarden - Main entry point.

Crontab entry for the batch:

    * * * * * cronwarden --config /etc/cronwarden/config.yaml run
"""
import json
import logging
import sys
from datetime import datetime
from typing import Optional

import click

from cronwarden.batch_runner import BatchRunner
from cronwarden.job_controller import JobController
from cronwarden.job_discovery import load_runner_config
from cronwarden.lock_manager import LockManager
from cronwarden.logging_utils import setup_logging
from cronwarden.models import ConfigError, JobSpec, RunnerConfig
from cronwarden.schedule_checker import ScheduleChecker

# Setup logging will be called in cli()
logger = logging.getLogger(__name__)


def _load_config(ctx) -> RunnerConfig:
    """Config from the --config option; exits with status 2 if unusable."""
    config_path = ctx.obj.get('config_path')
    if not config_path:
        click.echo("ERROR: --config is required for this command", err=True)
        sys.exit(2)

    config = ctx.obj.get('config')
    if config is None:
        try:
            config = load_runner_config(config_path)
        except ConfigError as e:
            click.echo(f"ERROR: {e}", err=True)
            sys.exit(2)
        ctx.obj['config'] = config
    return config


@click.group()
@click.option(
    '--config', '-c',
    envvar='CRONWARDEN_CONFIG',
    type=click.Path(dir_okay=False),
    help='Path to runner configuration file'
)
@click.option(
    '--log-level', '-l',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='Override log level from config'
)
@click.pass_context
def cli(ctx, config, log_level):
    """cronwarden - single-host cron job runner."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config

    logging_config = RunnerConfig.LoggingConfig()
    if config:
        try:
            runner_config = load_runner_config(config)
            ctx.obj['config'] = runner_config
            logging_config = runner_config.logging
        except ConfigError:
            # Reported by the command that needs the config
            pass

    setup_logging(
        level=log_level or logging_config.level,
        json_output=logging_config.json_format,
        log_file=logging_config.file,
        module_levels=logging_config.module_levels
    )


@cli.command()
@click.pass_context
def run(ctx):
    """Evaluate all jobs once and dispatch the due ones."""
    config = _load_config(ctx)

    try:
        runner = BatchRunner.from_config(config)
    except ConfigError as e:
        logger.error(f"Invalid job configuration: {e}")
        sys.exit(2)

    runner.run()


@cli.command('run-job')
@click.option('--definition', help='Serialized job definition (JSON)')
@click.option('--job', 'job_name', help='Name of a job in the config file')
@click.pass_context
def run_job(ctx, definition: Optional[str], job_name: Optional[str]):
    """Run a single job now (used by the detached batch children)."""
    if (definition is None) == (job_name is None):
        click.echo("ERROR: exactly one of --definition or --job is required", err=True)
        sys.exit(2)

    try:
        if definition is not None:
            spec = JobSpec.from_payload(definition)
        else:
            spec = BatchRunner.from_config(_load_config(ctx)).get(job_name).spec()
    except ConfigError as e:
        logger.error(f"Invalid job definition: {e}")
        sys.exit(2)

    outcome = JobController(spec).run()
    sys.exit(0 if outcome.ok else 1)


@cli.command()
@click.option('--json', 'output_json', is_flag=True, help='Output as JSON')
@click.pass_context
def status(ctx, output_json):
    """Show configured jobs, whether they are due, and their lock age."""
    config = _load_config(ctx)

    try:
        runner = BatchRunner.from_config(config)
    except ConfigError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(2)

    now = datetime.now()
    checker = ScheduleChecker(now)
    rows = []
    for job in runner.jobs:
        try:
            due = checker.is_due(job.schedule)
        except ConfigError as e:
            due = f"error: {e}"
        locks = LockManager(environment=job.environment)
        rows.append({
            'name': job.name,
            'schedule': job.schedule if isinstance(job.schedule, str) else '<predicate>',
            'action': job.action.kind,
            'enabled': job.enabled,
            'due': due,
            'lock_age': locks.get_lock_age(job.name),
            'max_runtime': job.max_runtime,
        })

    if output_json:
        click.echo(json.dumps({'timestamp': now.isoformat(), 'jobs': rows}, indent=2))
        return

    click.echo("=" * 60)
    click.echo(f"Jobs ({len(rows)}) at {now.strftime('%Y-%m-%d %H:%M')}")
    click.echo("=" * 60)
    for row in rows:
        click.echo(f"  {row['name']}")
        click.echo(f"     Schedule: {row['schedule']} ({row['action']})")
        click.echo(f"     Enabled: {row['enabled']}  Due: {row['due']}")
        limit = f" / {row['max_runtime']}s" if row['max_runtime'] else ""
        click.echo(f"     Lock age: {row['lock_age']}s{limit}")


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
