"""Command-line interface for database anonymization."""

import logging
import signal
from contextlib import ExitStack
from pathlib import Path
from typing import Optional, Tuple

import click
import yaml
from sqlalchemy.engine import make_url

from ..report import ModelReport, RunStatus
from .db import Database
from .discovery import model_identifier
from .errors import ConfigurationError
from .pipeline import AnonymizationPipeline, RunListener
from .settings import load_settings


class ClickRunListener(RunListener):
    """Progress output on the terminal."""

    def __init__(self):
        self._stack: Optional[ExitStack] = None
        self._bar = None

    def phase(self, message: str):
        click.secho(message, fg="yellow")

    def model_started(self, report: ModelReport):
        click.secho(f"Anonymizing data of {report.table} table", fg="green")
        if report.total:
            self._stack = ExitStack()
            self._bar = self._stack.enter_context(
                click.progressbar(length=report.total, show_pos=True, show_eta=True)
            )

    def chunk_committed(self, report: ModelReport, size: int):
        if self._bar is not None:
            self._bar.update(size)

    def model_finished(self, report: ModelReport):
        self.close()
        click.secho(f" - Completed in {report.duration}", fg="green")

    def close(self):
        if self._stack is not None:
            self._stack.close()
        self._stack = None
        self._bar = None


def _settings_from_options(config_path, **overrides):
    try:
        return load_settings(config_path, **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


def _install_interrupt_handler(pipeline: AnonymizationPipeline):
    def handler(signum, frame):
        if pipeline.cancelled:
            raise KeyboardInterrupt
        click.secho(
            "\nCancelling after the current chunk (Ctrl+C again to stop now)...",
            fg="yellow",
            err=True,
        )
        pipeline.cancel()

    return signal.signal(signal.SIGINT, handler)


config_option = click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML settings file",
)
package_option = click.option(
    "--package", "-p",
    "packages",
    multiple=True,
    help="Package to scan for models (repeatable; overrides model_packages)",
)
model_option = click.option(
    "--model", "-m",
    "models",
    multiple=True,
    help="Only anonymize this model (repeatable; identifier or class name)",
)
exclude_option = click.option(
    "--exclude-model", "-x",
    "excluded",
    multiple=True,
    help="Never anonymize this model (repeatable)",
)


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Database Anonymization Tool.

    Overwrites sensitive columns of every model that inherits Anonymizable
    with fake values, chunk by chunk.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@config_option
@package_option
@model_option
@exclude_option
@click.option("--force", is_flag=True, help="Don't ask for confirmation in restricted environments")
@click.option("--env", "environment", default=None, help="Environment name (default: $APP_ENV)")
@click.option("--connection", default=None, help="Name of the database connection")
@click.option("--database-url", default=None, help="SQLAlchemy database URL (default: $DATABASE_URL)")
@click.option("--chunk-size", type=click.IntRange(min=1), default=None, help="Records per transaction")
@click.option("--locale", default=None, help="Faker locale")
@click.option("--seed", type=int, default=None, help="Seed for reproducible fake values")
@click.option(
    "--report",
    "report_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the run report as JSON to this file",
)
@click.pass_context
def anonymize(
    ctx: click.Context,
    config_path: Optional[Path],
    packages: Tuple[str, ...],
    models: Tuple[str, ...],
    excluded: Tuple[str, ...],
    force: bool,
    environment: Optional[str],
    connection: Optional[str],
    database_url: Optional[str],
    chunk_size: Optional[int],
    locale: Optional[str],
    seed: Optional[int],
    report_path: Optional[Path],
):
    """Anonymize models that inherit Anonymizable.

    Example:
        db-anon anonymize -c anonymize.yml -x app.models.AuditLog
    """
    settings = _settings_from_options(
        config_path,
        model_packages=list(packages) or None,
        environment=environment,
        connection=connection,
        database_url=database_url,
        chunk_size=chunk_size,
        locale=locale,
        seed=seed,
    )

    listener = ClickRunListener()
    with Database.from_settings(settings) as db:
        pipeline = AnonymizationPipeline(settings, db.session_factory, listener=listener)
        previous = _install_interrupt_handler(pipeline)
        try:
            report = pipeline.run(include=list(models), exclude=list(excluded), force=force)
        finally:
            signal.signal(signal.SIGINT, previous)
            listener.close()

    if report_path is not None:
        report.write(report_path)
        click.echo(f"\nRun report written to: {report_path}")

    if report.status == RunStatus.ABORTED:
        click.echo("Command cancelled.")
    else:
        pipeline.print_summary(report)
    ctx.exit(report.exit_code)


@cli.command("list-models")
@config_option
@package_option
@model_option
@exclude_option
@click.option("--show-skipped", is_flag=True, help="Also list modules that failed to import")
def list_models(
    config_path: Optional[Path],
    packages: Tuple[str, ...],
    models: Tuple[str, ...],
    excluded: Tuple[str, ...],
    show_skipped: bool,
):
    """List anonymizable models in the order they would run.

    Nothing is written to the database.

    Example:
        db-anon list-models -p app.models
    """
    settings = _settings_from_options(config_path, model_packages=list(packages) or None)
    # The session factory is never used: planning doesn't touch the database
    pipeline = AnonymizationPipeline(settings, session_factory=None)
    plan = pipeline.plan(include=list(models), exclude=list(excluded))

    if not len(plan):
        click.echo("No anonymizable models found.")
    for model, is_priority in plan:
        marker = " [priority]" if is_priority else ""
        click.echo(f"  {model_identifier(model)}{marker}")

    if show_skipped and pipeline.discovery_log.issues:
        click.echo("\nSkipped modules:")
        for issue in pipeline.discovery_log.issues:
            click.echo(f"  {issue.module}: {issue.message}")


@cli.command("show-config")
@config_option
def show_config(config_path: Optional[Path]):
    """Show the effective settings.

    Example:
        db-anon show-config -c anonymize.yml
    """
    settings = _settings_from_options(config_path)
    data = settings.model_dump()
    data["database_url"] = make_url(settings.database_url).render_as_string(hide_password=True)
    click.echo(yaml.safe_dump(data, sort_keys=False).rstrip())


def main():
    cli()


if __name__ == "__main__":
    main()
