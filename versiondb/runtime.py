"""
Component wiring for versiondb.

Builds the store, change detector, engine and ingestor from a
VersionDbConfig, the way a driver process would at startup.

Usage:
    config = VersionDbConfig.from_env()
    setup_logging(config.observability)
    async with open_runtime(config) as runtime:
        report = await runtime.ingest(source)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from .apply import ChangeDetector, IngestReport, SnapshotIngestor, SnapshotSource, UpsertEngine
from .config import VersionDbConfig
from .store import VersionStore, create_version_store

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Initialized components sharing one store.

    Attributes:
        config: Configuration the components were built from
        store: Initialized version store
        engine: Upsert engine bound to the store
    """

    config: VersionDbConfig
    store: VersionStore
    engine: UpsertEngine

    async def ingest(self, source: SnapshotSource) -> IngestReport:
        """Apply every snapshot from source using the configured retry policy."""
        ingestor = SnapshotIngestor(
            self.engine,
            source,
            max_retries=self.config.ingest.max_retries,
            retry_delay_ms=self.config.ingest.retry_delay_ms,
        )
        return await ingestor.run()


@asynccontextmanager
async def open_runtime(config: VersionDbConfig | None = None) -> AsyncIterator[Runtime]:
    """Create and initialize all components, closing the store on exit.

    Args:
        config: Configuration (loaded from env if not provided)
    """
    config = config or VersionDbConfig.from_env()
    config.log_config()

    store = create_version_store(config.store)
    await store.initialize()

    detector = ChangeDetector(config.engine.tracked_attributes or None)
    engine = UpsertEngine(
        store,
        detector,
        serialize_per_key=config.engine.serialize_per_key,
    )
    logger.info("versiondb runtime started", extra={"backend": config.store.backend.value})

    try:
        yield Runtime(config=config, store=store, engine=engine)
    finally:
        await store.close()
        logger.info("versiondb runtime stopped", extra={"stats": engine.stats})
