"""
Configuration management for versiondb.

All configuration is done via environment variables - no config files.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Invalid values fail fast with ValueError at load time

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Adding a name to VERSIONDB_TRACKED_ATTRIBUTES changes which
      snapshots create new versions; roll it out deliberately
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported version store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class StoreConfig:
    """Version store configuration.

    Attributes:
        backend: Which backend to use
        db_path: SQLite database file
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
    """

    backend: StoreBackend = StoreBackend.SQLITE
    db_path: str = "./versiondb.sqlite3"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("VERSIONDB_BACKEND", "sqlite").lower()
        try:
            backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid VERSIONDB_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )

        return cls(
            backend=backend,
            db_path=os.getenv("VERSIONDB_DB_PATH", "./versiondb.sqlite3"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
        )


@dataclass(frozen=True)
class EngineConfig:
    """Upsert engine configuration.

    Attributes:
        tracked_attributes: Attributes compared for change detection
            (empty = every attribute present on either side)
        serialize_per_key: Hold a per-key lock for each apply
    """

    tracked_attributes: tuple[str, ...] = ()
    serialize_per_key: bool = True

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables."""
        raw = os.getenv("VERSIONDB_TRACKED_ATTRIBUTES", "")
        tracked = tuple(name.strip() for name in raw.split(",") if name.strip())
        return cls(
            tracked_attributes=tracked,
            serialize_per_key=_env_bool("VERSIONDB_SERIALIZE_PER_KEY", "true"),
        )


@dataclass(frozen=True)
class IngestConfig:
    """Snapshot ingestion configuration.

    Attributes:
        max_retries: Maximum retries for retryable errors per snapshot
        retry_delay_ms: Delay between retries
    """

    max_retries: int = 3
    retry_delay_ms: int = 100

    @classmethod
    def from_env(cls) -> IngestConfig:
        """Load configuration from environment variables."""
        return cls(
            max_retries=int(os.getenv("INGEST_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("INGEST_RETRY_DELAY_MS", "100")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class VersionDbConfig:
    """Complete configuration.

    Attributes:
        store: Version store configuration
        engine: Upsert engine configuration
        ingest: Ingestion driver configuration
        observability: Logging configuration
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> VersionDbConfig:
        """Load complete configuration from environment variables.

        Returns:
            VersionDbConfig with all sections populated from environment.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            store=StoreConfig.from_env(),
            engine=EngineConfig.from_env(),
            ingest=IngestConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store.backend == StoreBackend.SQLITE and not self.store.db_path:
            raise ValueError("VERSIONDB_DB_PATH is required when VERSIONDB_BACKEND=sqlite")

        if self.store.busy_timeout_ms < 0:
            raise ValueError("SQLITE_BUSY_TIMEOUT_MS must be >= 0")

        tracked = self.engine.tracked_attributes
        if len(set(tracked)) != len(tracked):
            raise ValueError(f"Duplicate names in VERSIONDB_TRACKED_ATTRIBUTES: {tracked}")

        if self.ingest.max_retries < 0:
            raise ValueError("INGEST_MAX_RETRIES must be >= 0")
        if self.ingest.retry_delay_ms < 0:
            raise ValueError("INGEST_RETRY_DELAY_MS must be >= 0")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        if self.store.backend == StoreBackend.SQLITE and not os.path.exists(
            os.path.dirname(os.path.abspath(self.store.db_path))
        ):
            logger.warning(
                f"Database directory does not exist for {self.store.db_path}. "
                "It will be created on initialization."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "backend": self.store.backend.value,
                "db_path": self.store.db_path
                if self.store.backend == StoreBackend.SQLITE
                else None,
                "tracked_attributes": list(self.engine.tracked_attributes) or None,
                "serialize_per_key": self.engine.serialize_per_key,
                "max_retries": self.ingest.max_retries,
                "log_level": self.observability.log_level,
            },
        )
