"""Long-running sync command for the filesync CLI.

Commands:
- dev: Sync once, then keep DIRECTORY and the environment in sync until Ctrl+C
"""

from __future__ import annotations

import logging
import signal
import threading
from pathlib import Path
from types import FrameType

import click

from filesync.client.cli.sync import (
    app_option,
    directory_argument,
    echo_result,
    env_option,
    fail,
    make_resolver,
    open_file_sync,
)
from filesync.client.errors import FileSyncError
from filesync.client.sync.changes import Changes
from filesync.client.sync.strategy import ConflictPreference
from filesync.client.sync.watcher import FileWatcher

logger = logging.getLogger(__name__)


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
@click.option("--allow-unknown-directory", is_flag=True, help="Sync a non-empty directory never synced before.")
@click.option("--allow-different-app", is_flag=True, help="Sync a directory that belongs to another app.")
def dev(
    directory: Path,
    application: str | None,
    environment: str | None,
    preference: str | None,
    allow_unknown_directory: bool,
    allow_different_app: bool,
) -> None:
    """Keep DIRECTORY in sync with an environment until interrupted.

    Runs one full sync, then applies environment changes as they are pushed
    and publishes local changes as they are saved.
    """
    cancel_event = threading.Event()
    stopped = threading.Event()
    failure: list[BaseException] = []

    def on_signal(signum: int, frame: FrameType | None) -> None:
        click.echo("\nStopping...")
        cancel_event.set()
        stopped.set()

    previous_handlers = {signum: signal.signal(signum, on_signal) for signum in (signal.SIGINT, signal.SIGTERM)}

    def on_error(error: BaseException) -> None:
        # a failed subscription is already torn down and a failed batch is lost
        logger.debug("Stopping after error: %s", error, exc_info=error)
        failure.append(error)
        cancel_event.set()
        stopped.set()

    def after_changes(changes: Changes) -> None:
        for path in sorted(changes):
            symbol = {"create": "+", "update": "±", "delete": "-"}[changes[path].type]
            click.echo(f"  ← {symbol} {path}")

    def on_local_changes(paths: list[str], moves: dict[str, str]) -> None:
        file_sync.merge_local_changes(paths, moves)

    try:
        with open_file_sync(
            directory,
            application,
            environment,
            resolver=make_resolver(preference),
            allow_unknown_directory=allow_unknown_directory,
            allow_different_app=allow_different_app,
            subscriptions=True,
            cancel_event=cancel_event,
        ) as file_sync:
            echo_result(file_sync.sync())

            subscription = file_sync.subscribe_to_remote_changes(on_error=on_error, after_changes=after_changes)
            with FileWatcher(file_sync.directory, on_local_changes):
                click.echo(f"Watching {file_sync.directory.path} for changes... (Ctrl+C to stop)")
                stopped.wait()

            subscription.unsubscribe()
            file_sync.idle(timeout=5.0)
    except FileSyncError as e:
        if not cancel_event.is_set():
            fail(str(e))
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)

    if failure:
        fail(str(failure[0]))
