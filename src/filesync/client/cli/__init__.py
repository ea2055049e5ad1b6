"""Command-line interface for filesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- sync: Merge local and environment changes
- push: Make the environment match the local directory
- pull: Make the local directory match the environment
- status: Show what a sync would do
- dev: Keep a directory in sync until interrupted
"""

from __future__ import annotations

import logging

import click

from filesync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_session,
    load_config,
    save_config,
)
from filesync.client.cli.dev import dev
from filesync.client.cli.sync import pull, push, status, sync


def setup_logging(verbose: bool) -> None:
    """Send filesync's log records to stderr.

    Only warnings and errors are shown unless verbose is set.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    filesync_logger = logging.getLogger("filesync")
    for existing in filesync_logger.handlers[:]:
        filesync_logger.removeHandler(existing)
    filesync_logger.addHandler(handler)
    filesync_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    # Prevent propagation to root logger
    filesync_logger.propagate = False


@click.group()
@click.version_option(package_name="filesync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging.")
def cli(verbose: bool) -> None:
    """filesync - keep a local directory and an application's files in sync."""
    setup_logging(verbose)


# One-shot commands
cli.add_command(sync)
cli.add_command(push)
cli.add_command(pull)
cli.add_command(status)

# Long-running command
cli.add_command(dev)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    "setup_logging",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_session",
    "load_config",
    "save_config",
]
