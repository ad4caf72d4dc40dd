"""
Upsert engine for versiondb.

The engine applies one entity snapshot at a time to a VersionStore.
For each snapshot it decides to insert a brand-new entity, leave an
unchanged entity untouched, or expire the current version and insert
the version that supersedes it.

Invariants:
    - Lookup, compare, expire and insert for one business key run as a
      critical section (per-key asyncio lock)
    - Expire + insert happen in one store transaction: both or neither
    - An unchanged snapshot never creates a version
    - Incoming attributes are normalized before comparison, so both
      backends see the same values
    - The engine never retries; every store error reaches the caller
      as an ApplyError chained to the original error

How to change safely:
    - Keep the timestamp injected by the caller; never read the clock here
    - Test every new path against both store backends
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ApplyError, InvalidSnapshotError, OutOfOrderError, VersionDbError
from ..store.base import EntityVersion, VersionStore, normalize_attributes
from .change_detector import ChangeDetector

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """Outcome of applying a snapshot."""

    INSERTED = "inserted"
    UNCHANGED = "unchanged"
    SUPERSEDED = "superseded"


@dataclass
class ApplyResult:
    """Result of applying a snapshot.

    Attributes:
        decision: What the engine did
        business_key: Key of the applied snapshot
        version: Current version after the call
        previous: The version that was expired (SUPERSEDED only)
        changed_attributes: Tracked attributes that differed
    """

    decision: Decision
    business_key: str
    version: EntityVersion
    previous: EntityVersion | None = None
    changed_attributes: list[str] = field(default_factory=list)


class _KeyLocks:
    """asyncio locks created per key on demand and dropped when idle."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
            self._holders[key] = 0
        self._holders[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]


class UpsertEngine:
    """Applies entity snapshots to a version store.

    Snapshots for different business keys may be applied concurrently.
    Snapshots for the same key are serialized in arrival order. With
    serialize_per_key=False the engine relies on the store alone, which
    rejects the loser of a race with ConflictError.

    Example:
        >>> engine = UpsertEngine(store, ChangeDetector(("name",)))
        >>> result = await engine.apply("1", {"name": "John"}, now=1730000000000)
        >>> result.decision
        <Decision.INSERTED: 'inserted'>
    """

    def __init__(
        self,
        store: VersionStore,
        detector: ChangeDetector | None = None,
        serialize_per_key: bool = True,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Version store to read and write
            detector: Change detector (compares all attributes if not provided)
            serialize_per_key: Hold a per-key lock for each apply() call
        """
        self.store = store
        self.detector = detector or ChangeDetector()
        self.serialize_per_key = serialize_per_key

        self._key_locks = _KeyLocks()
        self._counts: dict[Decision, int] = {decision: 0 for decision in Decision}
        self._error_count = 0

    async def apply(
        self,
        business_key: str,
        incoming_attributes: Mapping[str, Any],
        now: int,
    ) -> ApplyResult:
        """Apply one snapshot.

        Args:
            business_key: Stable identifier of the entity
            incoming_attributes: Attribute values observed for the entity
            now: Effective/expiry timestamp for any version written (Unix ms)

        Returns:
            ApplyResult with the decision taken

        Raises:
            ApplyError: If the store rejected or failed the operation, the
                snapshot is invalid (empty key, non-JSON values), or a
                changed snapshot predates the current version
        """
        if self.serialize_per_key:
            async with self._key_locks.hold(business_key):
                result = await self._apply(business_key, incoming_attributes, now)
        else:
            result = await self._apply(business_key, incoming_attributes, now)

        self._counts[result.decision] += 1
        logger.debug(
            "Applied snapshot",
            extra={
                "business_key": business_key,
                "decision": result.decision.value,
                "surrogate_key": result.version.surrogate_key,
                "changed": result.changed_attributes,
            },
        )
        return result

    async def _apply(
        self,
        business_key: str,
        incoming: Mapping[str, Any],
        now: int,
    ) -> ApplyResult:
        attempted: Decision | None = None
        try:
            if not business_key:
                raise InvalidSnapshotError("business_key is required", business_key)
            # Compare in stored form; tuples come back from storage as lists
            incoming = normalize_attributes(business_key, incoming)

            current = await self.store.current_version(business_key)

            if current is None:
                attempted = Decision.INSERTED
                surrogate_key = await self.store.insert_current(business_key, incoming, now)
                return ApplyResult(
                    decision=Decision.INSERTED,
                    business_key=business_key,
                    version=EntityVersion(
                        surrogate_key=surrogate_key,
                        business_key=business_key,
                        attributes=dict(incoming),
                        effective_at=now,
                    ),
                )

            changed = self.detector.changed_attributes(current.attributes, incoming)
            if not changed:
                return ApplyResult(
                    decision=Decision.UNCHANGED,
                    business_key=business_key,
                    version=current,
                )

            attempted = Decision.SUPERSEDED
            if now < current.effective_at:
                raise OutOfOrderError(
                    f"Snapshot at {now} predates current version effective at {current.effective_at}",
                    business_key,
                    effective_at=current.effective_at,
                    observed_at=now,
                )

            async with self.store.transaction() as tx:
                previous = await tx.expire(current.surrogate_key, now)
                surrogate_key = await tx.insert_current(business_key, incoming, now)

            return ApplyResult(
                decision=Decision.SUPERSEDED,
                business_key=business_key,
                version=EntityVersion(
                    surrogate_key=surrogate_key,
                    business_key=business_key,
                    attributes=dict(incoming),
                    effective_at=now,
                ),
                previous=previous,
                changed_attributes=changed,
            )

        except VersionDbError as e:
            self._error_count += 1
            logger.error(
                f"Failed to apply snapshot: {e}",
                extra={
                    "business_key": business_key,
                    "attempted": attempted.value if attempted else None,
                    "code": e.code,
                },
            )
            raise ApplyError(
                f"Failed to apply snapshot for {business_key}: {e}",
                business_key,
                attempted=attempted.value if attempted else None,
            ) from e

    @property
    def stats(self) -> dict[str, Any]:
        """Get engine statistics."""
        return {
            "inserted": self._counts[Decision.INSERTED],
            "unchanged": self._counts[Decision.UNCHANGED],
            "superseded": self._counts[Decision.SUPERSEDED],
            "error_count": self._error_count,
            "locked_keys": len(self._key_locks),
        }
