"""Shared types for filesync.

This module defines enums used by both the orchestrator and the transport.
"""

from __future__ import annotations

from enum import Enum


class SyncPhase(str, Enum):
    """Phase of a synchronization cycle.

    IDLE and FAILED are terminal; every other phase is transient.
    """

    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    HASHING = "hashing"
    DIFFING = "diffing"
    CONFLICT_FREE = "conflict_free"
    CONFLICTS_DETECTED = "conflicts_detected"
    RESOLVING = "resolving"
    APPLYING_LOCAL = "applying_local"
    APPLYING_REMOTE = "applying_remote"
    ADVANCING_VERSION = "advancing_version"
    FAILED = "failed"


class ConnectionStatus(str, Enum):
    """Status of the subscription connection."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
