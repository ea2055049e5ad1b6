"""Configuration utilities for the filesync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

from filesync.core.config import DEFAULT_DOMAIN, AppConfig

CONFIG_DIR_ENV = "FILESYNC_CONFIG_DIR"
SESSION_ENV = "FILESYNC_SESSION"


def get_config_dir() -> Path:
    """Get the configuration directory for filesync.

    Returns:
        $FILESYNC_CONFIG_DIR if set, otherwise ~/.filesync.
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".filesync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def get_session() -> str | None:
    """Get the session token ($FILESYNC_SESSION wins over the config file)."""
    return os.environ.get(SESSION_ENV) or load_config().get("session")


def build_app_config(application: str, environment: str, session: str) -> AppConfig:
    """Create the connection settings for an application environment."""
    config = load_config()
    return AppConfig(
        application=application,
        environment=environment,
        session=session,
        domain=config.get("domain") or DEFAULT_DOMAIN,
    )
