"""
Shared fixtures for engine and ingestion integration tests.

Every store fixture is parametrized over the in-memory and SQLite
backends so the same behaviour is checked against both.
"""

import asyncio
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from versiondb.errors import StoreUnavailableError
from versiondb.store.memory import InMemoryVersionStore
from versiondb.store.sqlite import SqliteVersionStore

T0 = 1_730_000_000_000

BACKENDS = ["memory", "sqlite"]


class _TransactionProxy:
    """Delegates to a real transaction, letting the store intercept inserts."""

    def __init__(self, tx, store):
        self._tx = tx
        self._store = store

    async def current_version(self, business_key):
        return await self._tx.current_version(business_key)

    async def expire(self, surrogate_key, expired_at):
        return await self._tx.expire(surrogate_key, expired_at)

    async def insert_current(self, business_key, attributes, effective_at):
        await self._store.before_insert()
        return await self._tx.insert_current(business_key, attributes, effective_at)


class _InterceptInserts:
    """Mixin routing every insert through before_insert()."""

    @asynccontextmanager
    async def transaction(self):
        async with super().transaction() as tx:
            yield _TransactionProxy(tx, self)

    async def before_insert(self):
        pass


class _FlakyInserts(_InterceptInserts):
    """Fails the next `fail_inserts` inserts with StoreUnavailableError."""

    fail_inserts = 0
    insert_attempts = 0

    async def before_insert(self):
        self.insert_attempts += 1
        if self.fail_inserts > 0:
            self.fail_inserts -= 1
            raise StoreUnavailableError("injected commit failure", backend="test")


class _BlockingInserts(_InterceptInserts):
    """Parks inserts until released, so a caller can cancel mid-transaction."""

    block = False

    async def before_insert(self):
        if self.block:
            self.entered.set()
            await asyncio.Event().wait()

    @property
    def entered(self):
        if not hasattr(self, "_entered"):
            self._entered = asyncio.Event()
        return self._entered


class _SlowReads:
    """Yields to the event loop after each lookup, widening race windows."""

    async def current_version(self, business_key):
        version = await super().current_version(business_key)
        await asyncio.sleep(0)
        return version


class FlakyMemoryStore(_FlakyInserts, InMemoryVersionStore):
    pass


class FlakySqliteStore(_FlakyInserts, SqliteVersionStore):
    pass


class BlockingMemoryStore(_BlockingInserts, InMemoryVersionStore):
    pass


class BlockingSqliteStore(_BlockingInserts, SqliteVersionStore):
    pass


class SlowMemoryStore(_SlowReads, InMemoryVersionStore):
    pass


class SlowSqliteStore(_SlowReads, SqliteVersionStore):
    pass


STORE_CLASSES = {
    "plain": {"memory": InMemoryVersionStore, "sqlite": SqliteVersionStore},
    "flaky": {"memory": FlakyMemoryStore, "sqlite": FlakySqliteStore},
    "blocking": {"memory": BlockingMemoryStore, "sqlite": BlockingSqliteStore},
    "slow": {"memory": SlowMemoryStore, "sqlite": SlowSqliteStore},
}


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def make_store(data_dir):
    """Factory building an initialized store of a given kind and backend."""

    async def _make(kind, backend):
        cls = STORE_CLASSES[kind][backend]
        if backend == "memory":
            store = cls()
        else:
            store = cls(str(Path(data_dir) / f"{kind}.db"), wal_mode=False)
        await store.initialize()
        return store

    return _make


@pytest.fixture(params=BACKENDS)
def backend(request):
    return request.param


@pytest.fixture
async def store(make_store, backend):
    return await make_store("plain", backend)


@pytest.fixture
async def flaky_store(make_store, backend):
    return await make_store("flaky", backend)
