"""
versiondb - historically versioned (slowly changing) record store.

Every version of an entity is kept. Incoming snapshots either insert a
new entity, leave an unchanged one alone, or expire the current version
and insert the one that supersedes it.

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌────────────────┐
    │  Snapshot    │────▶│   Snapshot   │────▶│  UpsertEngine  │
    │  Source      │     │   Ingestor   │     │ (per-key lock) │
    └──────────────┘     └──────────────┘     └───────┬────────┘
                                                      │
                                 ┌────────────────────┼───────────┐
                                 ▼                                ▼
                         ┌───────────────┐               ┌──────────────┐
                         │ChangeDetector │               │ VersionStore │
                         └───────────────┘               │ SQLite/memory│
                                                         └──────────────┘

Invariants:
    - At most one current version per business key
    - Versions of one key form a contiguous timeline
    - Surrogate keys are never mutated or reused
    - An unchanged snapshot never creates a version

How to change safely:
    - Store changes must keep the one-current-version guarantee inside the store
    - Changing the tracked attribute set changes what counts as a new version
"""

from ._version import __version__
from .apply import ApplyResult, ChangeDetector, Decision, UpsertEngine
from .errors import (
    ApplyError,
    ConflictError,
    InvalidSnapshotError,
    NotFoundError,
    OutOfOrderError,
    StoreUnavailableError,
    VersionDbError,
)
from .store import EntityVersion, InMemoryVersionStore, SqliteVersionStore, VersionStore

__all__ = [
    "__version__",
    "ApplyResult",
    "ChangeDetector",
    "Decision",
    "UpsertEngine",
    "ApplyError",
    "ConflictError",
    "InvalidSnapshotError",
    "NotFoundError",
    "OutOfOrderError",
    "StoreUnavailableError",
    "VersionDbError",
    "EntityVersion",
    "InMemoryVersionStore",
    "SqliteVersionStore",
    "VersionStore",
]
