"""
Unit tests for the in-memory version store.

Tests cover:
- Lifecycle (initialize/close)
- insert_current / expire contracts and their errors
- Transaction commit, rollback and isolation
- History and point-in-time lookups
"""

from datetime import date

import pytest

from versiondb.errors import (
    ConflictError,
    InvalidSnapshotError,
    NotFoundError,
    StoreUnavailableError,
)
from versiondb.store.memory import InMemoryVersionStore

T0 = 1_730_000_000_000


class TestInMemoryVersionStore:
    """Tests for InMemoryVersionStore."""

    @pytest.fixture
    async def store(self):
        """Create an initialized store."""
        store = InMemoryVersionStore()
        await store.initialize()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_requires_initialize(self):
        """Operations fail until the store is initialized."""
        store = InMemoryVersionStore()
        assert not store.is_open

        with pytest.raises(StoreUnavailableError):
            await store.current_version("1")

        with pytest.raises(StoreUnavailableError):
            await store.insert_current("1", {"name": "John"}, T0)

    @pytest.mark.asyncio
    async def test_insert_current(self, store):
        """Inserted version becomes the current version."""
        key = await store.insert_current("1", {"name": "John"}, T0)

        current = await store.current_version("1")
        assert current is not None
        assert current.surrogate_key == key
        assert current.attributes == {"name": "John"}
        assert current.effective_at == T0
        assert current.expired_at is None
        assert current.is_current is True

    @pytest.mark.asyncio
    async def test_current_version_absent(self, store):
        """Unknown business key has no current version."""
        assert await store.current_version("missing") is None

    @pytest.mark.asyncio
    async def test_insert_conflict(self, store):
        """Second current version for a key is rejected."""
        await store.insert_current("1", {"name": "John"}, T0)

        with pytest.raises(ConflictError) as exc_info:
            await store.insert_current("1", {"name": "Jon"}, T0 + 1)

        assert exc_info.value.business_key == "1"
        assert exc_info.value.code == "CONFLICT"
        assert len(await store.history("1")) == 1

    @pytest.mark.asyncio
    async def test_expire(self, store):
        """Expire marks the version non-current and stamps expiry."""
        key = await store.insert_current("1", {"name": "John"}, T0)

        expired = await store.expire(key, T0 + 10)

        assert expired.surrogate_key == key
        assert expired.is_current is False
        assert expired.expired_at == T0 + 10
        assert await store.current_version("1") is None

    @pytest.mark.asyncio
    async def test_expire_unknown_key(self, store):
        """Expiring a missing version raises NotFoundError."""
        with pytest.raises(NotFoundError) as exc_info:
            await store.expire(999, T0)

        assert exc_info.value.surrogate_key == 999

    @pytest.mark.asyncio
    async def test_double_expire(self, store):
        """Expiring twice raises NotFoundError and keeps the first expiry."""
        key = await store.insert_current("1", {"name": "John"}, T0)
        await store.expire(key, T0 + 10)

        with pytest.raises(NotFoundError):
            await store.expire(key, T0 + 20)

        version = await store.get_version(key)
        assert version.expired_at == T0 + 10

    @pytest.mark.asyncio
    async def test_transaction_commits_together(self, store):
        """Expire + insert in one transaction are both applied."""
        old_key = await store.insert_current("1", {"name": "John"}, T0)

        async with store.transaction() as tx:
            await tx.expire(old_key, T0 + 10)
            new_key = await tx.insert_current("1", {"name": "Jon"}, T0 + 10)

        current = await store.current_version("1")
        assert current.surrogate_key == new_key
        assert (await store.get_version(old_key)).is_current is False

    @pytest.mark.asyncio
    async def test_transaction_rollback(self, store):
        """An error inside the transaction discards every staged change."""
        old_key = await store.insert_current("1", {"name": "John"}, T0)

        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.expire(old_key, T0 + 10)
                await tx.insert_current("1", {"name": "Jon"}, T0 + 10)
                raise RuntimeError("boom")

        current = await store.current_version("1")
        assert current.surrogate_key == old_key
        assert current.is_current is True
        assert len(await store.history("1")) == 1

    @pytest.mark.asyncio
    async def test_transaction_isolation(self, store):
        """Readers outside the transaction see only committed state."""
        old_key = await store.insert_current("1", {"name": "John"}, T0)

        async with store.transaction() as tx:
            await tx.expire(old_key, T0 + 10)
            assert await tx.current_version("1") is None

            outside = await store.current_version("1")
            assert outside.surrogate_key == old_key

            await tx.insert_current("1", {"name": "Jon"}, T0 + 10)

        assert (await store.current_version("1")).attributes == {"name": "Jon"}

    @pytest.mark.asyncio
    async def test_rolled_back_surrogate_key_not_reused(self, store):
        """Keys handed out in a rolled-back transaction are skipped."""
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                discarded = await tx.insert_current("1", {"name": "John"}, T0)
                raise RuntimeError("boom")

        key = await store.insert_current("1", {"name": "John"}, T0)
        assert key != discarded
        assert await store.get_version(discarded) is None

    @pytest.mark.asyncio
    async def test_history_and_as_of(self, store):
        """History is oldest first and as-of finds the covering version."""
        first = await store.insert_current("1", {"name": "John"}, T0)
        async with store.transaction() as tx:
            await tx.expire(first, T0 + 100)
            second = await tx.insert_current("1", {"name": "Jon"}, T0 + 100)

        history = await store.history("1")
        assert [v.surrogate_key for v in history] == [first, second]

        assert await store.version_as_of("1", T0 - 1) is None
        assert (await store.version_as_of("1", T0)).surrogate_key == first
        assert (await store.version_as_of("1", T0 + 99)).surrogate_key == first
        assert (await store.version_as_of("1", T0 + 100)).surrogate_key == second
        assert (await store.version_as_of("1", T0 + 10_000)).surrogate_key == second

    @pytest.mark.asyncio
    async def test_attributes_are_copied(self, store):
        """Mutating the caller's dict does not change the stored version."""
        attributes = {"name": "John"}
        await store.insert_current("1", attributes, T0)
        attributes["name"] = "Changed"

        assert (await store.current_version("1")).attributes == {"name": "John"}

    @pytest.mark.asyncio
    async def test_returned_versions_are_detached(self, store):
        """Mutating nested values of a returned version leaves history intact."""
        tags = ["a"]
        key = await store.insert_current("1", {"tags": tags, "address": {"city": "Oslo"}}, T0)
        tags.append("from-input")

        current = await store.current_version("1")
        current.attributes["tags"].append("b")
        current.attributes["address"]["city"] = "Bergen"
        (await store.history("1"))[0].attributes["tags"].append("c")
        (await store.get_version(key)).attributes.clear()

        assert (await store.current_version("1")).attributes == {
            "tags": ["a"],
            "address": {"city": "Oslo"},
        }

    @pytest.mark.asyncio
    async def test_attributes_stored_as_json(self, store):
        """Stored values take their JSON form, matching the SQLite backend."""
        await store.insert_current("1", {"tags": ("a", "b"), 7: "seven"}, T0)

        assert (await store.current_version("1")).attributes == {"tags": ["a", "b"], "7": "seven"}

    @pytest.mark.asyncio
    async def test_non_json_attributes_rejected(self, store):
        """Values without a JSON form are rejected before anything is staged."""
        with pytest.raises(InvalidSnapshotError) as exc_info:
            await store.insert_current("1", {"born": date(1990, 1, 1)}, T0)

        assert exc_info.value.business_key == "1"
        assert exc_info.value.retryable is False
        assert await store.current_version("1") is None
        assert (await store.get_stats())["versions"] == 0

    @pytest.mark.asyncio
    async def test_get_stats(self, store):
        """Stats count versions, current versions and keys."""
        first = await store.insert_current("1", {"name": "John"}, T0)
        await store.insert_current("2", {"name": "Mary"}, T0)
        async with store.transaction() as tx:
            await tx.expire(first, T0 + 1)
            await tx.insert_current("1", {"name": "Jon"}, T0 + 1)

        stats = await store.get_stats()
        assert stats == {"versions": 3, "current": 2, "business_keys": 2}
