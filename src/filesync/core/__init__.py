"""Core module - Shared config, hashing, and types."""

from filesync.core.config import AppConfig
from filesync.core.hashing import (
    SUPPORTS_PERMISSIONS,
    Hash,
    HashMap,
    compute_hash,
    hash_map_from_dict,
    hash_maps_equal,
    hashes_equal,
)
from filesync.core.types import ConnectionStatus, SyncPhase

__all__ = [
    # Config
    "AppConfig",
    # Hashing
    "Hash",
    "HashMap",
    "SUPPORTS_PERMISSIONS",
    "compute_hash",
    "hash_map_from_dict",
    "hash_maps_equal",
    "hashes_equal",
    # Types
    "ConnectionStatus",
    "SyncPhase",
]
