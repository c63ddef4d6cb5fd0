"""Tests for Session: startup, refresh, subscriptions and shutdown."""

import asyncio
import json

from shelfsync.config import BOOKS, BOOKS_SNAPSHOT_KEY, CATEGORIES, UNCATEGORIZED_ID
from shelfsync.errors import NotFound
from shelfsync.models.records import SyncStatus, is_temp_id
from shelfsync.session import Session
from tests.unit.fakes import FakeClock, FakeRemoteStore, FakeSleep, MemoryStorage


def _session(
    store: FakeRemoteStore,
    storage: MemoryStorage,
    clock: FakeClock,
    sleeper: FakeSleep,
    *,
    connect: bool = True,
) -> Session:
    return Session(store, storage, connect=connect, clock=clock, sleep=sleeper)


def test_online_start_loads_and_subscribes(
    seeded_store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    async def scenario() -> None:
        async with _session(seeded_store, storage, clock, sleeper) as session:
            assert session.engine.status == SyncStatus.CONNECTED
            assert len(session.categories) == 7
            assert seeded_store.subscriber_count(BOOKS) == 1
            assert seeded_store.subscriber_count(CATEGORIES) == 1
        assert seeded_store.subscriber_count(BOOKS) == 0

    asyncio.run(scenario())

    assert seeded_store.calls_to("add") == []


def test_empty_remote_gets_default_categories(
    store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    async def scenario() -> None:
        async with _session(store, storage, clock, sleeper):
            pass

    asyncio.run(scenario())

    assert set(store.data[CATEGORIES]) == {"fiction", "non-fiction", UNCATEGORIZED_ID}
    assert store.data[CATEGORIES]["non-fiction"]["path"] == "/Non-Fiction"


def test_offline_start_seeds_defaults_into_queue(
    store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    async def scenario() -> int:
        async with _session(store, storage, clock, sleeper, connect=False) as session:
            assert session.engine.status == SyncStatus.DISCONNECTED
            assert UNCATEGORIZED_ID in session.categories
            return len(session.queue)

    assert asyncio.run(scenario()) == 3
    assert store.calls == []


def test_offline_work_is_synced_by_next_online_session(
    store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    async def offline() -> None:
        async with _session(store, storage, clock, sleeper, connect=False) as session:
            await session.service.add_book("Dune", "Frank Herbert", category="fiction")

    async def online() -> Session:
        async with _session(store, storage, clock, sleeper) as session:
            return session

    asyncio.run(offline())
    stored = json.loads(storage.values[BOOKS_SNAPSHOT_KEY])
    assert is_temp_id(stored[0]["id"])

    session = asyncio.run(online())

    assert len(session.queue) == 0
    assert set(store.data[CATEGORIES]) == {"fiction", "non-fiction", UNCATEGORIZED_ID}
    (record,) = store.data[BOOKS].values()
    assert record["title"] == "Dune"
    assert record["category"] == "fiction"
    (book,) = session.books.all()
    assert book.id == record["id"]
    assert json.loads(storage.values[BOOKS_SNAPSHOT_KEY])[0]["id"] == record["id"]


def test_remote_push_updates_mirror(
    seeded_store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    async def scenario() -> None:
        async with _session(seeded_store, storage, clock, sleeper) as session:
            seeded_store.seed(BOOKS, {"id": "b7", "title": "Emma", "author": "Austen"})
            seeded_store.push(BOOKS)
            assert session.books.require("b7").title == "Emma"

    asyncio.run(scenario())


def test_snapshot_is_loaded_when_remote_is_unreachable(
    seeded_store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    async def first() -> None:
        async with _session(seeded_store, storage, clock, sleeper):
            pass

    async def second() -> tuple[SyncStatus, int]:
        seeded_store.offline = True
        async with _session(seeded_store, storage, clock, sleeper) as session:
            return session.engine.status, len(session.categories)

    asyncio.run(first())
    status, count = asyncio.run(second())

    assert status == SyncStatus.ERROR
    assert count == 7


def test_existing_uncategorized_is_adopted_under_reserved_id(
    store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    store.seed(CATEGORIES, {"id": "abc123", "name": "Uncategorized", "parentId": None})
    store.seed(CATEGORIES, {"id": "def456", "name": "Fiction", "parentId": None})
    store.seed(BOOKS, {"id": "b1", "title": "Emma", "author": "Austen", "category": "abc123"})

    async def scenario() -> Session:
        async with _session(store, storage, clock, sleeper) as session:
            assert session.engine.status == SyncStatus.CONNECTED
            return session

    session = asyncio.run(scenario())

    assert set(store.data[CATEGORIES]) == {"def456", UNCATEGORIZED_ID}
    assert store.data[CATEGORIES][UNCATEGORIZED_ID]["path"] == "/Uncategorized"
    assert store.data[BOOKS]["b1"]["category"] == UNCATEGORIZED_ID
    assert "abc123" not in session.categories
    assert session.books.require("b1").category == UNCATEGORIZED_ID
    assert len(session.queue) == 0


def test_failed_refresh_is_retried_with_backoff(
    seeded_store: FakeRemoteStore, storage: MemoryStorage, clock: FakeClock, sleeper: FakeSleep
) -> None:
    async def scenario() -> Session:
        async with _session(seeded_store, storage, clock, sleeper, connect=False) as session:
            seeded_store.fail_once("list_all", NotFound("collection missing"))
            assert not await session.engine.network_up()
            assert session.engine.status == SyncStatus.ERROR
            task = session.engine.retry_task
            assert task is not None
            await task
            assert seeded_store.subscriber_count(CATEGORIES) == 1
            return session

    session = asyncio.run(scenario())

    assert session.engine.status == SyncStatus.CONNECTED
    assert sleeper.delays == [1]
    assert len(session.queue) == 0
