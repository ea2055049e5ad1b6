"""One-shot sync commands for the filesync CLI.

Commands:
- sync: Merge local and environment changes
- push: Make the environment match the local directory
- pull: Make the local directory match the environment
- status: Show what a sync would do
"""

from __future__ import annotations

import contextlib
import sys
import threading
from collections.abc import Iterator
from pathlib import Path

import click

from filesync.client.api import GraphQLClient
from filesync.client.cli.config import build_app_config, get_session
from filesync.client.errors import FileSyncError
from filesync.client.lock import DirectoryLock, lock_status
from filesync.client.remote import RemoteFiles
from filesync.client.state import VersionState
from filesync.client.subscriptions import SubscriptionClient
from filesync.client.sync.changes import Changes, format_changes
from filesync.client.sync.directory import Directory
from filesync.client.sync.engine import FileSync
from filesync.client.sync.strategy import (
    ConflictPreference,
    ConflictResolver,
    SyncStrategy,
    interactive_resolver,
    prefer,
)
from filesync.client.sync.types import SyncResult

DEFAULT_ENVIRONMENT = "development"

directory_argument = click.argument(
    "directory",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
)
app_option = click.option("--app", "-a", "application", help="Application to sync with.")
env_option = click.option("--env", "-e", "environment", help="Environment to sync with.")


def fail(message: str) -> None:
    """Print an error and exit with status 1."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def make_resolver(preference: str | None, per_path: bool = False) -> ConflictResolver:
    """Resolver for --prefer; prompts when it's unset and stdin is a terminal."""
    if preference is not None:
        return prefer(ConflictPreference(preference))
    if sys.stdin.isatty():
        return interactive_resolver(per_path=per_path)
    return prefer(ConflictPreference.GADGET)


@contextlib.contextmanager
def open_file_sync(
    directory_path: Path,
    application: str | None,
    environment: str | None,
    resolver: ConflictResolver | None = None,
    allow_unknown_directory: bool = False,
    allow_different_app: bool = False,
    subscriptions: bool = False,
    cancel_event: threading.Event | None = None,
) -> Iterator[FileSync]:
    """Lock the directory, load its state and connect to the environment.

    Application and environment default to the ones recorded in the
    directory's control file.
    """
    session = get_session()
    if not session:
        raise click.UsageError("No session found. Set FILESYNC_SESSION or add \"session\" to the config file.")

    directory_path.mkdir(parents=True, exist_ok=True)
    directory = Directory(directory_path)

    recorded = VersionState.read(directory)
    application = application or (recorded.application if recorded else None)
    environment = environment or (recorded.environment if recorded else DEFAULT_ENVIRONMENT)
    if not application:
        raise click.UsageError("No application given. Pass --app.")

    with DirectoryLock(directory) as lock:
        state = VersionState.load(
            directory,
            application,
            environment,
            allow_different_app=allow_different_app,
            allow_unknown_directory=allow_unknown_directory,
        )

        config = build_app_config(application, environment, session)
        client = GraphQLClient(config, cancel_event=cancel_event)
        remote = RemoteFiles(client, SubscriptionClient(config) if subscriptions else None)
        file_sync = FileSync(
            directory,
            state,
            remote,
            resolver=resolver,
            lock=lock,
            cancel_event=cancel_event,
        )
        try:
            yield file_sync
        finally:
            file_sync.close()
            remote.close()


def echo_changes(title: str, changes: Changes) -> None:
    if not changes:
        return
    click.echo(title)
    for line in format_changes(changes, limit=25):
        click.echo(line)


def echo_result(result: SyncResult) -> None:
    """Print what a cycle did."""
    if result.conflicts:
        click.echo(click.style(f"Resolved {len(result.conflicts)} conflicts.", fg="yellow"))
    echo_changes("Pulled:", result.pulled)
    echo_changes("Pushed:", result.pushed)
    if result.problems:
        click.echo(click.style("\nProblems:", fg="red"))
        for problem in result.problems:
            click.echo(f"  ✗ {problem}")

    if not result.changed:
        click.echo("Everything is up to date.")
    click.echo(f"Files version: {result.files_version}")


@click.command()
@directory_argument
@app_option
@env_option
@click.option(
    "--prefer",
    "preference",
    type=click.Choice([p.value for p in ConflictPreference]),
    help="Side that wins conflicting files (prompts when omitted).",
)
@click.option("--per-path", is_flag=True, help="Ask about each conflicting file separately.")
@click.option(
    "--strategy",
    type=click.Choice([s.value for s in SyncStrategy]),
    default=SyncStrategy.MERGE.value,
    show_default=True,
    help="merge both sides, or overwrite one side with the other.",
)
@click.option("--allow-unknown-directory", is_flag=True, help="Sync a non-empty directory never synced before.")
@click.option("--allow-different-app", is_flag=True, help="Sync a directory that belongs to another app.")
def sync(
    directory: Path,
    application: str | None,
    environment: str | None,
    preference: str | None,
    per_path: bool,
    strategy: str,
    allow_unknown_directory: bool,
    allow_different_app: bool,
) -> None:
    """Synchronize DIRECTORY with an application environment.

    Changes made on only one side are copied to the other. Files changed on
    both sides are resolved with --prefer.
    """
    try:
        with open_file_sync(
            directory,
            application,
            environment,
            resolver=make_resolver(preference, per_path),
            allow_unknown_directory=allow_unknown_directory,
            allow_different_app=allow_different_app,
        ) as file_sync:
            chosen = SyncStrategy(strategy)
            if chosen is SyncStrategy.PUSH:
                result = file_sync.push(force=True)
            elif chosen is SyncStrategy.PULL:
                result = file_sync.pull(force=True)
            else:
                result = file_sync.sync()
    except FileSyncError as e:
        fail(str(e))
        return

    echo_result(result)


@click.command()
@directory_argument
@app_option
@env_option
@click.option("--force", "-f", is_flag=True, help="Discard changes made in the environment.")
def push(directory: Path, application: str | None, environment: str | None, force: bool) -> None:
    """Make the environment's files match DIRECTORY."""
    try:
        with open_file_sync(directory, application, environment) as file_sync:
            result = file_sync.push(force=force)
    except FileSyncError as e:
        fail(str(e))
        return

    echo_result(result)


@click.command()
@directory_argument
@app_option
@env_option
@click.option("--force", "-f", is_flag=True, help="Discard local changes.")
def pull(directory: Path, application: str | None, environment: str | None, force: bool) -> None:
    """Make DIRECTORY match the environment's files."""
    try:
        with open_file_sync(directory, application, environment, allow_unknown_directory=force) as file_sync:
            result = file_sync.pull(force=force)
    except FileSyncError as e:
        fail(str(e))
        return

    echo_result(result)


@click.command()
@directory_argument
@app_option
@env_option
def status(directory: Path, application: str | None, environment: str | None) -> None:
    """Show what a sync of DIRECTORY would do."""
    running = lock_status(Directory(directory, load_ignore_file=False))
    if running.running:
        click.echo(f"filesync dev is running (PID {running.pid}, since {running.started_at}).")
        return

    try:
        with open_file_sync(directory, application, environment, allow_unknown_directory=True) as file_sync:
            hashes = file_sync.hashes()
            state = file_sync.state
    except FileSyncError as e:
        fail(str(e))
        return

    click.echo(f"Application: {state.application} ({state.environment})")
    click.echo(f"Local files version: {state.files_version}")
    click.echo(f"Environment files version: {hashes.gadget_files_version}")
    if hashes.in_sync:
        click.echo("Everything is up to date.")
        return

    echo_changes("Local changes:", hashes.local_changes)
    echo_changes("Environment changes:", hashes.gadget_changes)
