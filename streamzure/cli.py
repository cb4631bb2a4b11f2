"""
StreamZure Command-Line Interface

Inspect and validate transfer configuration.

Author: Ayodele Oladeji
Date: 2025
"""

import json
import sys
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError

from streamzure import __version__
from streamzure.core.config_manager import ConfigManager
from streamzure.core.logging_config import setup_logging


@click.group()
@click.version_option(version=__version__, prog_name="streamzure")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level",
    show_default=True,
)
@click.pass_context
def cli(ctx, log_level: str):
    """
    StreamZure - resumable blob transfers

    Inspect and validate the configuration transfers run with.
    """
    ctx.ensure_object(dict)
    setup_logging(log_level.upper(), format_type="text")


@cli.group()
def config():
    """Configuration commands."""


@config.command("show")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
def show(config_file: Optional[Path]):
    """
    Print the effective configuration as JSON.

    Defaults, the file and STREAMZURE_* environment variables are merged in
    that order.

    Examples:
        streamzure config show
        streamzure config show --config transfer.yaml
    """
    try:
        loaded = ConfigManager().load(config_file=str(config_file) if config_file else None)
    except (ValidationError, ValueError) as e:
        click.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(loaded.model_dump(mode="json"), indent=2))


@config.command("validate")
@click.argument(
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def validate(config_file: Path):
    """
    Validate a configuration file.

    Exits non-zero and prints the validation error if the file is invalid.
    """
    try:
        ConfigManager().load(config_file=str(config_file))
    except (ValidationError, ValueError) as e:
        click.echo(f"[ERROR] {config_file} is invalid: {e}", err=True)
        sys.exit(1)
    click.echo(f"[OK] {config_file} is valid")


def main():
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
