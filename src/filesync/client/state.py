"""Persisted sync state for a directory.

This module provides:
- VersionStateData: On-disk shape of the control file
- VersionState: The last synced files version per environment
- EphemeralVersionState: A VersionState that never writes to disk
- DifferentApplicationError, UnknownDirectoryError

Architecture:
    The control file (.gadget/sync.json) records which application and
    environment a directory is synced with, and for each environment the
    files version both sides last agreed on. That version is the ancestor
    of every three-way diff, so it only ever moves forward and is written
    to disk before it is trusted again.

    An older flat shape ({"application" | "app", "filesVersion"}) is
    upgraded on load to the "development" environment.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from filesync.client.errors import FileSyncError
from filesync.client.sync.directory import Directory

logger = logging.getLogger(__name__)

STATE_PATH = ".gadget/sync.json"

LEGACY_ENVIRONMENT = "development"


class EnvironmentState(BaseModel):
    """Per-environment sync state."""

    model_config = ConfigDict(populate_by_name=True)

    files_version: str = Field(default="0", alias="filesVersion", pattern=r"^\d+$")


class VersionStateData(BaseModel):
    """Contents of the control file."""

    application: str
    environment: str
    environments: dict[str, EnvironmentState]

    @classmethod
    def fresh(cls, application: str, environment: str) -> VersionStateData:
        """State for a directory that was never synced."""
        return cls(
            application=application,
            environment=environment,
            environments={environment: EnvironmentState(files_version="0")},
        )


class LegacyVersionStateData(BaseModel):
    """Flat control-file shape written by older releases."""

    model_config = ConfigDict(populate_by_name=True)

    application: str = Field(validation_alias="app")
    files_version: str = Field(default="0", alias="filesVersion", pattern=r"^\d+$")

    def upgrade(self) -> VersionStateData:
        return VersionStateData(
            application=self.application,
            environment=LEGACY_ENVIRONMENT,
            environments={LEGACY_ENVIRONMENT: EnvironmentState(files_version=self.files_version)},
        )


def parse_state(raw: Any) -> VersionStateData | None:
    """Parse control-file JSON, upgrading the legacy shape.

    Returns:
        The parsed state, or None if the data matches neither shape.
    """
    if not isinstance(raw, dict):
        return None

    try:
        return VersionStateData.model_validate(raw)
    except ValidationError:
        pass

    try:
        state = LegacyVersionStateData.model_validate(raw).upgrade()
    except ValidationError:
        return None

    logger.info("Upgraded legacy %s for %s", STATE_PATH, state.application)
    return state


class DifferentApplicationError(FileSyncError):
    """The directory is already synced with a different application."""

    def __init__(self, directory: Directory, expected: str, actual: str, environment: str) -> None:
        self.directory = directory
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{directory.path} is synced with {actual} ({environment}), not {expected}. "
            "Pass --allow-different-app to sync it with the new application anyway."
        )


class UnknownDirectoryError(FileSyncError):
    """A non-empty directory has no (valid) control file."""

    def __init__(self, directory: Directory) -> None:
        self.directory = directory
        super().__init__(
            f'The "{STATE_PATH}" file was invalid or not found in {directory.path}. '
            "Pass --allow-unknown-directory to sync it anyway."
        )


class VersionState:
    """The files version a directory last synced to.

    Attributes:
        directory: The synced directory.
        previous_environment: Environment synced before this run switched
            environments, or None.
    """

    def __init__(
        self,
        directory: Directory,
        data: VersionStateData,
        previous_environment: str | None = None,
    ) -> None:
        if data.environment not in data.environments:
            data.environments[data.environment] = EnvironmentState(files_version="0")
        self.directory = directory
        self.previous_environment = previous_environment
        self._data = data

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(application={self.application!r}, "
            f"environment={self.environment!r}, files_version={self.files_version})"
        )

    @property
    def application(self) -> str:
        return self._data.application

    @property
    def environment(self) -> str:
        return self._data.environment

    @property
    def data(self) -> VersionStateData:
        """A copy of the state as it would be written to disk."""
        return self._data.model_copy(deep=True)

    @property
    def files_version(self) -> int:
        """Last files version both sides agreed on (0 = never synced)."""
        return int(self._data.environments[self._data.environment].files_version)

    def save(self, files_version: int | str) -> None:
        """Record a new files version and write it to disk.

        Raises:
            ValueError: If the version would move backwards.
        """
        files_version = int(files_version)
        if files_version < self.files_version:
            raise ValueError(
                f"files version can't move backwards ({self.files_version} -> {files_version})"
            )

        self._data.environments[self._data.environment].files_version = str(files_version)
        self._write()

    def _write(self) -> None:
        path = self.directory.absolute(STATE_PATH)
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(self._data.model_dump(by_alias=True), indent=2) + "\n"
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
        logger.debug("Saved %s (filesVersion=%s)", STATE_PATH, self.files_version)

    @staticmethod
    def read(directory: Directory) -> VersionStateData | None:
        """Read the control file. Missing or unparseable files read as None."""
        path = directory.absolute(STATE_PATH)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable %s: %s", path, e)
            return None
        return parse_state(raw)

    @classmethod
    def load(
        cls,
        directory: Directory,
        application: str,
        environment: str,
        *,
        allow_different_app: bool = False,
        allow_unknown_directory: bool = True,
    ) -> VersionState:
        """Load the directory's state, or initialize it.

        Args:
            directory: The synced directory.
            application: Application the caller wants to sync with.
            environment: Environment the caller wants to sync with.
            allow_different_app: Start over if the directory belongs to
                another application instead of failing.
            allow_unknown_directory: Accept a non-empty directory without
                a control file instead of failing.

        Raises:
            DifferentApplicationError: The directory belongs to another app.
            UnknownDirectoryError: Non-empty directory without a control file.
        """
        data = cls.read(directory)
        previous_environment: str | None = None

        if data is None:
            if not allow_unknown_directory and directory.has_files():
                raise UnknownDirectoryError(directory)
            logger.info("Initializing %s for %s (%s)", STATE_PATH, application, environment)
            data = VersionStateData.fresh(application, environment)
        elif data.application != application:
            if not allow_different_app:
                raise DifferentApplicationError(directory, application, data.application, data.environment)
            logger.warning("Re-targeting %s from %s to %s", directory.path, data.application, application)
            data = VersionStateData.fresh(application, environment)
        elif data.environment != environment:
            logger.info("Changing environment: %s -> %s", data.environment, environment)
            previous_environment = data.environment
            data.environment = environment
            data.environments.setdefault(environment, EnvironmentState(files_version="0"))

        state = cls(directory, data, previous_environment=previous_environment)
        state.save(state.files_version)
        return state


class EphemeralVersionState(VersionState):
    """A VersionState that keeps its files version in memory only.

    Used for environments whose state must not replace the directory's
    control file (e.g. a one-off pull from production).
    """

    def _write(self) -> None:
        logger.debug("Not saving %s for ephemeral state", STATE_PATH)
