"""Conflict resolution policies.

This module provides:
- ConflictPreference: Keep local, keep remote, or cancel
- SyncStrategy: What a one-shot sync does when both sides changed
- ConflictResolver: Callable the orchestrator consults when conflicts exist
- prefer: Silent resolver that always answers with one preference
- interactive_resolver: Resolver that asks on the terminal, in bulk or per path

The orchestrator never infers a policy from its environment; callers pass
one explicitly.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

import click

from filesync.client.sync.conflicts import Conflicts, describe_conflict, format_conflicts

logger = logging.getLogger(__name__)


class ConflictPreference(str, Enum):
    """Which side wins a conflicting path."""

    CANCEL = "cancel"
    LOCAL = "local"
    GADGET = "gadget"

    @property
    def label(self) -> str:
        return _PREFERENCE_LABELS[self]


_PREFERENCE_LABELS = {
    ConflictPreference.CANCEL: "Cancel",
    ConflictPreference.LOCAL: "Keep my conflicting changes",
    ConflictPreference.GADGET: "Keep the environment's conflicting changes",
}


class SyncStrategy(str, Enum):
    """How a one-shot sync reconciles a directory that diverged."""

    MERGE = "merge"
    PUSH = "push"
    PULL = "pull"


# Returns one preference for every conflict, or a per-path mapping
Resolution = ConflictPreference | dict[str, ConflictPreference]
ConflictResolver = Callable[[Conflicts], Resolution]


def prefer(preference: ConflictPreference = ConflictPreference.GADGET) -> ConflictResolver:
    """Build a non-interactive resolver that always picks `preference`."""

    def resolve(conflicts: Conflicts) -> Resolution:
        logger.info("Resolving %d conflicts: %s", len(conflicts), preference.value)
        return preference

    return resolve


def _choose(prompt: str, choices: list[ConflictPreference]) -> ConflictPreference:
    for index, choice in enumerate(choices, start=1):
        click.echo(f"  {index}) {choice.label}")
    index = click.prompt(prompt, type=click.IntRange(1, len(choices)), default=len(choices))
    return choices[index - 1]


def interactive_resolver(per_path: bool = False) -> ConflictResolver:
    """Build a resolver that asks the user on the terminal.

    Args:
        per_path: Ask once per conflicting path instead of once for all.
    """
    choices = [ConflictPreference.CANCEL, ConflictPreference.LOCAL, ConflictPreference.GADGET]

    def resolve(conflicts: Conflicts) -> Resolution:
        click.echo("These files were changed both locally and in your environment:")
        for line in format_conflicts(conflicts):
            click.echo(line)
        click.echo()

        if not per_path:
            return _choose("How should we resolve these conflicts?", choices)

        resolution: dict[str, ConflictPreference] = {}
        for path in sorted(conflicts):
            click.echo(f"{path} was {describe_conflict(conflicts[path])}.")
            choice = _choose(f"How should we resolve {path}?", choices)
            if choice is ConflictPreference.CANCEL:
                return ConflictPreference.CANCEL
            resolution[path] = choice
        return resolution

    return resolve
