"""
In-memory version store implementation for testing.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests of the upsert engine
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Committed state changes in a single step (no await in between),
      so readers never see a half-applied transaction
    - Callers only ever receive copies of stored versions
    - Writers are serialized by one asyncio lock held for the whole
      transaction, mirroring SQLite's BEGIN IMMEDIATE

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour identical to SqliteVersionStore for every error case
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any

from ..errors import ConflictError, NotFoundError, StoreUnavailableError
from .base import EntityVersion, normalize_attributes

logger = logging.getLogger(__name__)


def _detached(version: EntityVersion) -> EntityVersion:
    """Copy handed to callers; mutating it never touches stored history."""
    return replace(version, attributes=copy.deepcopy(version.attributes))


class _MemoryTransaction:
    """Staged changes on top of the committed state.

    Nothing here touches the store until commit().
    """

    def __init__(self, store: InMemoryVersionStore) -> None:
        self._store = store
        self._versions: dict[int, EntityVersion] = {}
        self._current: dict[str, int | None] = {}
        self._appended: list[EntityVersion] = []

    def _lookup(self, surrogate_key: int) -> EntityVersion | None:
        if surrogate_key in self._versions:
            return self._versions[surrogate_key]
        return self._store._versions.get(surrogate_key)

    def _current_key(self, business_key: str) -> int | None:
        if business_key in self._current:
            return self._current[business_key]
        return self._store._current.get(business_key)

    async def current_version(self, business_key: str) -> EntityVersion | None:
        surrogate_key = self._current_key(business_key)
        if surrogate_key is None:
            return None
        return _detached(self._lookup(surrogate_key))

    async def expire(self, surrogate_key: int, expired_at: int) -> EntityVersion:
        version = self._lookup(surrogate_key)
        if version is None:
            raise NotFoundError(f"Version not found: {surrogate_key}", surrogate_key)
        if not version.is_current:
            raise NotFoundError(f"Version already expired: {surrogate_key}", surrogate_key)

        expired = version.expired(expired_at)
        self._versions[surrogate_key] = expired
        self._current[version.business_key] = None
        return _detached(expired)

    async def insert_current(
        self,
        business_key: str,
        attributes: Mapping[str, Any],
        effective_at: int,
    ) -> int:
        normalized = normalize_attributes(business_key, attributes)
        if self._current_key(business_key) is not None:
            raise ConflictError(
                f"Current version already exists for business key: {business_key}",
                business_key,
            )

        version = EntityVersion(
            surrogate_key=next(self._store._key_seq),
            business_key=business_key,
            attributes=normalized,
            effective_at=effective_at,
        )
        self._versions[version.surrogate_key] = version
        self._current[business_key] = version.surrogate_key
        self._appended.append(version)
        return version.surrogate_key

    def commit(self) -> None:
        store = self._store
        store._versions.update(self._versions)
        for business_key, surrogate_key in self._current.items():
            if surrogate_key is None:
                store._current.pop(business_key, None)
            else:
                store._current[business_key] = surrogate_key
        for version in self._appended:
            store._by_key.setdefault(version.business_key, []).append(version.surrogate_key)


class InMemoryVersionStore:
    """In-memory implementation of VersionStore for testing.

    Thread safety:
        Uses an asyncio lock for writers. Safe to use from multiple
        coroutines on one event loop.

    Example:
        >>> store = InMemoryVersionStore()
        >>> await store.initialize()
        >>> key = await store.insert_current("42", {"name": "John"}, 1000)
        >>> (await store.current_version("42")).surrogate_key == key
        True
    """

    def __init__(self) -> None:
        self._versions: dict[int, EntityVersion] = {}
        self._current: dict[str, int] = {}
        self._by_key: dict[str, list[int]] = {}
        # Shared across transactions so rolled-back keys are never handed out again
        self._key_seq = itertools.count(1)
        self._write_lock = asyncio.Lock()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def initialize(self) -> None:
        self._open = True
        logger.debug("InMemoryVersionStore initialized")

    async def close(self) -> None:
        """Close and clear all data."""
        self._open = False
        self._versions.clear()
        self._current.clear()
        self._by_key.clear()
        logger.debug("InMemoryVersionStore closed")

    def _check_open(self) -> None:
        if not self._open:
            raise StoreUnavailableError("Version store is not initialized", backend="memory")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_MemoryTransaction]:
        self._check_open()
        async with self._write_lock:
            tx = _MemoryTransaction(self)
            yield tx
            self._check_open()
            tx.commit()

    async def current_version(self, business_key: str) -> EntityVersion | None:
        self._check_open()
        surrogate_key = self._current.get(business_key)
        if surrogate_key is None:
            return None
        return _detached(self._versions[surrogate_key])

    async def expire(self, surrogate_key: int, expired_at: int) -> EntityVersion:
        async with self.transaction() as tx:
            return await tx.expire(surrogate_key, expired_at)

    async def insert_current(
        self,
        business_key: str,
        attributes: Mapping[str, Any],
        effective_at: int,
    ) -> int:
        async with self.transaction() as tx:
            return await tx.insert_current(business_key, attributes, effective_at)

    async def get_version(self, surrogate_key: int) -> EntityVersion | None:
        self._check_open()
        version = self._versions.get(surrogate_key)
        return _detached(version) if version is not None else None

    async def history(self, business_key: str) -> list[EntityVersion]:
        self._check_open()
        return [_detached(self._versions[key]) for key in self._by_key.get(business_key, [])]

    async def version_as_of(self, business_key: str, at: int) -> EntityVersion | None:
        for version in await self.history(business_key):
            if version.covers(at):
                return version
        return None

    async def get_stats(self) -> dict[str, int]:
        self._check_open()
        return {
            "versions": len(self._versions),
            "current": len(self._current),
            "business_keys": len(self._by_key),
        }

    # Testing helpers

    def all_versions(self) -> list[EntityVersion]:
        """Every stored version in surrogate key order."""
        return [_detached(self._versions[key]) for key in sorted(self._versions)]
