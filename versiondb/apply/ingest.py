"""
Snapshot ingestion driver for versiondb.

Reads (business_key, attributes) snapshots from a SnapshotSource and
applies them to an UpsertEngine one at a time, in source order.

Invariants:
    - Each snapshot is applied with a single timestamp, reused on retry
    - Only retryable failures (store outage, lost race) are retried
    - A failed snapshot is recorded and never stops the run

How to change safely:
    - Sources must stay restartable: snapshots() returns a fresh iterator
    - Keep retries here, never inside the engine
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..errors import ApplyError
from .engine import ApplyResult, Decision, UpsertEngine

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Snapshot:
    """One observation of an entity.

    Attributes:
        business_key: Stable identifier of the entity
        attributes: Observed attribute values
        observed_at: Observation time (Unix ms); the ingestor clock is used if None
    """

    business_key: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    observed_at: int | None = None


@runtime_checkable
class SnapshotSource(Protocol):
    """A lazy, finite, restartable sequence of snapshots."""

    def snapshots(self) -> Iterator[Snapshot]:
        """Return a new iterator over the snapshots, from the beginning."""
        ...


class InMemorySnapshotSource:
    """SnapshotSource over an in-memory list.

    Accepts Snapshot objects or (business_key, attributes) pairs.

    Example:
        >>> source = InMemorySnapshotSource([("1", {"name": "John"})])
        >>> next(source.snapshots()).business_key
        '1'
    """

    def __init__(self, snapshots: Iterable[Snapshot | tuple[str, Mapping[str, Any]]]) -> None:
        self._snapshots: list[Snapshot] = []
        for item in snapshots:
            if isinstance(item, Snapshot):
                self._snapshots.append(item)
            else:
                business_key, attributes = item
                self._snapshots.append(Snapshot(business_key, dict(attributes)))

    def __len__(self) -> int:
        return len(self._snapshots)

    def snapshots(self) -> Iterator[Snapshot]:
        return iter(list(self._snapshots))


@dataclass
class FailedSnapshot:
    """A snapshot that could not be applied (dead letter).

    Attributes:
        snapshot: The snapshot
        error: Last error raised by the engine
        attempts: Number of apply() calls made
    """

    snapshot: Snapshot
    error: ApplyError
    attempts: int


@dataclass
class IngestReport:
    """Summary of one ingestion run."""

    counts: dict[Decision, int] = field(default_factory=lambda: {d: 0 for d in Decision})
    failed: list[FailedSnapshot] = field(default_factory=list)
    retries: int = 0

    @property
    def applied(self) -> int:
        return sum(self.counts.values())

    @property
    def processed(self) -> int:
        return self.applied + len(self.failed)


class SnapshotIngestor:
    """Feeds a snapshot source through the upsert engine.

    Example:
        >>> ingestor = SnapshotIngestor(engine, source)
        >>> report = await ingestor.run()
        >>> report.counts[Decision.INSERTED]
        1
    """

    def __init__(
        self,
        engine: UpsertEngine,
        source: SnapshotSource,
        clock: Callable[[], int] | None = None,
        max_retries: int = 3,
        retry_delay_ms: int = 100,
    ) -> None:
        """Initialize the ingestor.

        Args:
            engine: Engine that applies each snapshot
            source: Where snapshots come from
            clock: Returns the current time in Unix ms
            max_retries: Retries per snapshot for retryable errors
            retry_delay_ms: Delay between retries
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.engine = engine
        self.source = source
        self.clock = clock or _now_ms
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms

    async def run(self) -> IngestReport:
        """Apply every snapshot from the source once.

        Returns:
            IngestReport with decision counts and dead letters
        """
        report = IngestReport()
        logger.info("Starting snapshot ingestion")

        for snapshot in self.source.snapshots():
            now = snapshot.observed_at if snapshot.observed_at is not None else self.clock()
            attempts = 0
            while True:
                attempts += 1
                try:
                    result = await self._apply(snapshot, now)
                except ApplyError as e:
                    if e.retryable and attempts <= self.max_retries:
                        report.retries += 1
                        logger.warning(
                            f"Retrying snapshot after error: {e}",
                            extra={"business_key": snapshot.business_key, "attempt": attempts},
                        )
                        await asyncio.sleep(self.retry_delay_ms / 1000.0)
                        continue

                    report.failed.append(FailedSnapshot(snapshot, e, attempts))
                    logger.error(
                        "Dead-lettered snapshot",
                        extra={
                            "business_key": snapshot.business_key,
                            "attempts": attempts,
                            "error": str(e),
                        },
                    )
                    break

                report.counts[result.decision] += 1
                break

        logger.info(
            "Finished snapshot ingestion",
            extra={
                "processed": report.processed,
                "failed": len(report.failed),
                "retries": report.retries,
            },
        )
        return report

    async def _apply(self, snapshot: Snapshot, now: int) -> ApplyResult:
        return await self.engine.apply(snapshot.business_key, snapshot.attributes, now)
