"""
Base protocol and types for the version store abstraction.

This module defines the VersionStore protocol that all backends must
implement, along with the EntityVersion row type.

Invariants:
    - At most one version per business_key has is_current = True
    - surrogate_key values are assigned by the store and never reused
    - Only expired_at/is_current of a superseded row are ever updated
    - Rows are never deleted
    - Stored attributes are in normalize_attributes() form

How to change safely:
    - Protocol changes require updating all implementations
    - New backends must reject a second current version on their own
      (unique index, locked check), not rely on callers
"""

from __future__ import annotations

import json
from abc import abstractmethod
from collections.abc import Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import InvalidSnapshotError

if TYPE_CHECKING:
    from ..config import StoreConfig


@dataclass(frozen=True)
class EntityVersion:
    """One row of entity history.

    Attributes:
        surrogate_key: Identity of this specific version
        business_key: Identifier of the real-world entity
        attributes: Ordered attribute values
        effective_at: When the version became active (Unix ms)
        expired_at: When the version was superseded (Unix ms), None while current
        is_current: Whether this is the current version
    """

    surrogate_key: int
    business_key: str
    attributes: dict[str, Any] = field(default_factory=dict)
    effective_at: int = 0
    expired_at: int | None = None
    is_current: bool = True

    def expired(self, expired_at: int) -> EntityVersion:
        """Return a copy retired at the given time."""
        return replace(self, expired_at=expired_at, is_current=False)

    def covers(self, at: int) -> bool:
        """Whether this version was active at the given time."""
        if at < self.effective_at:
            return False
        return self.expired_at is None or at < self.expired_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "surrogate_key": self.surrogate_key,
            "business_key": self.business_key,
            "attributes": dict(self.attributes),
            "effective_at": self.effective_at,
            "expired_at": self.expired_at,
            "is_current": self.is_current,
        }


def normalize_attributes(business_key: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
    """Return attributes as they read back from storage.

    Values pass through a JSON round trip, so tuples become lists and
    the result shares no mutable state with the input. Every backend
    stores this form and the engine compares against it.

    Raises:
        InvalidSnapshotError: If a value is not JSON-compatible
    """
    try:
        return json.loads(json.dumps(dict(attributes), allow_nan=False))
    except (TypeError, ValueError) as e:
        raise InvalidSnapshotError(
            f"Attributes for {business_key} are not JSON-compatible: {e}",
            business_key,
        ) from e


@runtime_checkable
class VersionTransaction(Protocol):
    """Mutations that commit or roll back together."""

    @abstractmethod
    async def current_version(self, business_key: str) -> EntityVersion | None:
        ...

    @abstractmethod
    async def expire(self, surrogate_key: int, expired_at: int) -> EntityVersion:
        ...

    @abstractmethod
    async def insert_current(
        self,
        business_key: str,
        attributes: Mapping[str, Any],
        effective_at: int,
    ) -> int:
        ...


@runtime_checkable
class VersionStore(Protocol):
    """Protocol for version store backends.

    Atomicity contract:
        - Work done through a transaction() block is visible to other
          readers only after the block exits without error
        - A block that raises (or is cancelled) leaves no trace
        - expire()/insert_current() called on the store directly run
          in their own single-statement transaction

    Durability contract:
        - Mutations are durable once the call (or the transaction block)
          returns successfully

    Example:
        >>> store = SqliteVersionStore("/var/lib/versiondb/customers.db")
        >>> await store.initialize()
        >>> async with store.transaction() as tx:
        ...     await tx.expire(current.surrogate_key, now)
        ...     await tx.insert_current("42", {"name": "Jon"}, now)
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (create tables, open files)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...

    @abstractmethod
    async def current_version(self, business_key: str) -> EntityVersion | None:
        """Get the current version for a business key.

        Returns:
            The unique current version, or None if the key was never seen

        Raises:
            StoreUnavailableError: If the backend cannot be read
        """
        ...

    @abstractmethod
    async def expire(self, surrogate_key: int, expired_at: int) -> EntityVersion:
        """Mark a version non-current and stamp its expiry.

        Returns:
            The expired version

        Raises:
            NotFoundError: If the version does not exist or is already expired
            StoreUnavailableError: If the backend cannot commit
        """
        ...

    @abstractmethod
    async def insert_current(
        self,
        business_key: str,
        attributes: Mapping[str, Any],
        effective_at: int,
    ) -> int:
        """Append a new current version.

        Returns:
            Surrogate key of the new version

        Raises:
            ConflictError: If a current version exists for the business key
            StoreUnavailableError: If the backend cannot commit
        """
        ...

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[VersionTransaction]:
        """Open an atomic unit of work."""
        ...

    @abstractmethod
    async def get_version(self, surrogate_key: int) -> EntityVersion | None:
        ...

    @abstractmethod
    async def history(self, business_key: str) -> list[EntityVersion]:
        """All versions of a business key, oldest first."""
        ...

    @abstractmethod
    async def version_as_of(self, business_key: str, at: int) -> EntityVersion | None:
        """The version that was active at the given time, if any."""
        ...

    @abstractmethod
    async def get_stats(self) -> dict[str, int]:
        ...


def create_version_store(config: "StoreConfig") -> VersionStore:
    """Factory function to create a version store from configuration.

    Args:
        config: Store configuration

    Returns:
        Appropriate VersionStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryVersionStore
    from .sqlite import SqliteVersionStore

    if config.backend == StoreBackend.MEMORY:
        return InMemoryVersionStore()
    elif config.backend == StoreBackend.SQLITE:
        return SqliteVersionStore(
            db_path=config.db_path,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")
