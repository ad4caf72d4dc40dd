"""
Apply module for versiondb - change detection and versioned upserts.

This module handles:
- Attribute change detection against the current version
- The insert / unchanged / supersede decision per snapshot
- Driving a snapshot source through the engine

Invariants:
    - Same snapshot applied twice yields Inserted then Unchanged
    - Supersede (expire + insert) is atomic
    - Same-key snapshots are serialized, different keys are independent

How to change safely:
    - Verify idempotency by re-applying snapshots in tests
    - Keep retries in the ingest driver, not in the engine
"""

from .change_detector import ChangeDetector
from .engine import ApplyResult, Decision, UpsertEngine
from .ingest import (
    FailedSnapshot,
    InMemorySnapshotSource,
    IngestReport,
    Snapshot,
    SnapshotIngestor,
    SnapshotSource,
)

__all__ = [
    "ChangeDetector",
    "ApplyResult",
    "Decision",
    "UpsertEngine",
    "FailedSnapshot",
    "InMemorySnapshotSource",
    "IngestReport",
    "Snapshot",
    "SnapshotIngestor",
    "SnapshotSource",
]
