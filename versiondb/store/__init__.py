"""
Version store abstraction for versiondb.

This module provides a pluggable storage backend interface supporting:
- SQLite (durable, recommended)
- In-memory (for testing)

Every version of every entity is kept; superseded versions are expired,
never overwritten or deleted.

Invariants:
    - At most one current version per business key, enforced by the store
    - Mutations are durable once the call returns
    - Transactions are all-or-nothing

How to change safely:
    - New backends must implement the VersionStore protocol
    - Run the engine integration tests against every backend
"""

from .base import (
    EntityVersion,
    VersionStore,
    VersionTransaction,
    create_version_store,
    normalize_attributes,
)
from .memory import InMemoryVersionStore
from .sqlite import SqliteVersionStore

__all__ = [
    # Protocol and types
    "EntityVersion",
    "VersionStore",
    "VersionTransaction",
    # Factory
    "create_version_store",
    "normalize_attributes",
    # Implementations
    "InMemoryVersionStore",
    "SqliteVersionStore",
]
