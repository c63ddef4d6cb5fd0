"""Tests for the catalog write path: remote writes, offline fallback and cascades."""

import asyncio

import pytest

from shelfsync.config import BOOKS, CATEGORIES, UNCATEGORIZED_ID
from shelfsync.core.catalog.mirror import BookCatalog, CategoryCatalog
from shelfsync.core.catalog.service import CatalogService
from shelfsync.core.queue.offline_queue import OfflineQueue
from shelfsync.core.sync.engine import SyncEngine
from shelfsync.errors import CascadeDeleteFailed, NotFound, ValidationFailure
from shelfsync.models.records import Book, OperationType, SyncStatus, is_temp_id
from tests.unit.fakes import FakeClock, FakeRemoteStore


@pytest.fixture
def service(
    seeded_store: FakeRemoteStore,
    queue: OfflineQueue,
    engine: SyncEngine,
    books: BookCatalog,
    categories: CategoryCatalog,
    clock: FakeClock,
) -> CatalogService:
    return CatalogService(seeded_store, queue, engine, books, categories, clock=clock)


def _seed_book(store: FakeRemoteStore, books: BookCatalog, book: Book) -> None:
    store.seed(BOOKS, book.to_record())
    books.upsert(book)


def test_offline_add_book_is_queued_with_temp_id(
    service: CatalogService, seeded_store: FakeRemoteStore, queue: OfflineQueue
) -> None:
    book = asyncio.run(service.add_book("Dune", "Frank Herbert", category="scifi"))

    assert is_temp_id(book.id)
    assert service.books.require(book.id).title == "Dune"
    assert [op.type for op in queue.pending()] == [OperationType.ADD]
    assert queue.pending()[0].target_id == book.id
    assert seeded_store.calls_to("add") == []


def test_online_add_book_goes_remote(
    service: CatalogService, engine: SyncEngine, seeded_store: FakeRemoteStore, queue: OfflineQueue
) -> None:
    async def scenario() -> Book:
        await engine.network_up()
        return await service.add_book("  Dune ", "Frank Herbert", isbn="9780441013593")

    book = asyncio.run(scenario())

    assert book.id == "srv-1"
    assert book.title == "Dune"
    assert book.category == UNCATEGORIZED_ID
    assert seeded_store.data[BOOKS]["srv-1"]["isbn"] == "9780441013593"
    assert len(queue) == 0


@pytest.mark.parametrize(
    ("title", "author", "kwargs", "error"),
    [
        ("", "Someone", {}, ValidationFailure),
        ("Title", "   ", {}, ValidationFailure),
        ("Title", "Someone", {"category": "missing"}, NotFound),
        ("Title", "Someone", {"isbn": "123"}, ValidationFailure),
    ],
)
def test_add_book_validation(
    service: CatalogService,
    books: BookCatalog,
    queue: OfflineQueue,
    title: str,
    author: str,
    kwargs: dict[str, str],
    error: type[Exception],
) -> None:
    books.upsert(Book(id="b0", title="Existing", author="A", isbn="123"))

    with pytest.raises(error):
        asyncio.run(service.add_book(title, author, **kwargs))

    assert len(queue) == 0


def test_transport_failure_falls_back_to_queue(
    service: CatalogService, engine: SyncEngine, seeded_store: FakeRemoteStore, queue: OfflineQueue
) -> None:
    async def scenario() -> Book:
        await engine.network_up()
        seeded_store.fail_once("add")
        book = await service.add_book("Dune", "Herbert")
        assert engine.status == SyncStatus.ERROR
        assert engine.retry_task is not None
        await engine.shutdown()
        return book

    book = asyncio.run(scenario())

    assert is_temp_id(book.id)
    assert [op.target_id for op in queue.pending()] == [book.id]
    assert service.books.require(book.id).author == "Herbert"


def test_writes_queue_behind_pending_operations_on_same_target(
    service: CatalogService,
    engine: SyncEngine,
    seeded_store: FakeRemoteStore,
    books: BookCatalog,
    queue: OfflineQueue,
) -> None:
    _seed_book(seeded_store, books, Book(id="b1", title="Dune", author="Herbert"))

    async def scenario() -> None:
        await engine.network_up()
        queue.enqueue(OperationType.UPDATE, BOOKS, "b1", {"author": "F. Herbert"})
        await service.update_book("b1", title="Dune Messiah")

    asyncio.run(scenario())

    assert seeded_store.calls_to("update") == []
    assert [op.payload.get("title") for op in queue.pending()] == [None, "Dune Messiah"]
    assert books.require("b1").title == "Dune Messiah"


def test_update_book_rejects_unknown_fields(service: CatalogService) -> None:
    with pytest.raises(ValidationFailure):
        asyncio.run(service.update_book("b1", rating=5))


def test_delete_book_online(
    service: CatalogService,
    engine: SyncEngine,
    seeded_store: FakeRemoteStore,
    books: BookCatalog,
) -> None:
    _seed_book(seeded_store, books, Book(id="b1", title="Dune", author="Herbert"))

    async def scenario() -> None:
        await engine.network_up()
        await service.delete_book("b1")

    asyncio.run(scenario())

    assert "b1" not in seeded_store.data[BOOKS]
    assert "b1" not in books


def test_delete_unknown_book_raises(service: CatalogService) -> None:
    with pytest.raises(NotFound):
        asyncio.run(service.delete_book("missing"))


def test_offline_records_reconcile_to_remote_ids(
    service: CatalogService,
    engine: SyncEngine,
    seeded_store: FakeRemoteStore,
    books: BookCatalog,
    categories: CategoryCatalog,
    queue: OfflineQueue,
) -> None:
    async def scenario() -> None:
        poetry = await service.add_category("Poetry")
        await service.add_book("Odes", "Keats", category=poetry.id)
        await engine.network_up()

    asyncio.run(scenario())

    assert len(queue) == 0
    assert "srv-1" in categories
    assert not any(is_temp_id(c.id) for c in categories.all())
    (book,) = books.all()
    assert book.id == "srv-2"
    assert book.category == "srv-1"
    assert seeded_store.data[BOOKS]["srv-2"]["category"] == "srv-1"


def test_add_category_sets_level_and_path(
    service: CatalogService, engine: SyncEngine, seeded_store: FakeRemoteStore
) -> None:
    async def scenario() -> None:
        await engine.network_up()
        await service.add_category(" Cyberpunk ", "space", description="High tech, low life")

    asyncio.run(scenario())

    record = seeded_store.data[CATEGORIES]["srv-1"]
    assert record["name"] == "Cyberpunk"
    assert record["parentId"] == "space"
    assert record["level"] == 3
    assert record["path"] == "/Fiction/Sci-Fi/Space Opera/Cyberpunk"


def test_add_category_requires_name(service: CatalogService) -> None:
    with pytest.raises(ValidationFailure):
        asyncio.run(service.add_category("   "))


def test_rename_category_updates_descendants_remotely(
    service: CatalogService, engine: SyncEngine, seeded_store: FakeRemoteStore
) -> None:
    async def scenario() -> None:
        await engine.network_up()
        await service.rename_category("scifi", "Science Fiction")

    asyncio.run(scenario())

    remote = seeded_store.data[CATEGORIES]
    assert remote["scifi"]["name"] == "Science Fiction"
    assert remote["space"]["path"] == "/Fiction/Science Fiction/Space Opera"
    assert remote["military"]["path"] == "/Fiction/Science Fiction/Space Opera/Military"
    assert [c[2] for c in seeded_store.calls_to("update")] == ["scifi", "space", "military"]


def test_offline_move_category_queues_subtree(
    service: CatalogService, categories: CategoryCatalog, queue: OfflineQueue
) -> None:
    moved = asyncio.run(service.move_category("scifi", "history"))

    assert moved.path == "/Non-Fiction/History/Sci-Fi"
    assert [op.target_id for op in queue.pending()] == ["scifi", "space", "military"]
    assert categories.require("military").level == 4


def test_update_category_description(service: CatalogService, queue: OfflineQueue) -> None:
    updated = asyncio.run(service.update_category_description("fiction", "Made-up stories"))

    assert updated.description == "Made-up stories"
    assert queue.pending()[0].payload["description"] == "Made-up stories"


def test_cascade_delete_reassigns_books_first(
    service: CatalogService,
    engine: SyncEngine,
    seeded_store: FakeRemoteStore,
    books: BookCatalog,
    categories: CategoryCatalog,
) -> None:
    _seed_book(seeded_store, books, Book(id="b1", title="Dune", author="H", category="space"))
    _seed_book(seeded_store, books, Book(id="b2", title="SPQR", author="B", category="history"))
    _seed_book(seeded_store, books, Book(id="b3", title="Emma", author="A", category="fiction"))

    async def scenario() -> None:
        await engine.network_up()
        seeded_store.calls.clear()
        await service.delete_category("fiction")

    asyncio.run(scenario())

    methods = [c[0] for c in seeded_store.calls]
    assert methods == ["update", "update", "delete", "delete", "delete", "delete"]
    deleted = [c[2] for c in seeded_store.calls_to("delete")]
    assert deleted == ["military", "space", "scifi", "fiction"]

    remaining = set(seeded_store.data[CATEGORIES])
    assert remaining == {"non-fiction", "history", UNCATEGORIZED_ID}
    assert set(categories.as_map()) == remaining
    for record in seeded_store.data[BOOKS].values():
        assert record["category"] in remaining
    assert books.require("b1").category == UNCATEGORIZED_ID
    assert books.require("b2").category == "history"


def test_offline_cascade_delete_is_queued_and_applied(
    service: CatalogService,
    books: BookCatalog,
    categories: CategoryCatalog,
    queue: OfflineQueue,
) -> None:
    books.upsert(Book(id="b1", title="Dune", author="H", category="military"))

    plan = asyncio.run(service.delete_category("scifi"))

    assert plan.category_ids == ("military", "space", "scifi")
    assert books.require("b1").category == UNCATEGORIZED_ID
    assert "scifi" not in categories
    assert [(op.type, op.target_id) for op in queue.pending()] == [
        ("update", "b1"),
        ("delete", "military"),
        ("delete", "space"),
        ("delete", "scifi"),
    ]


def test_cascade_delete_failure_leaves_categories(
    service: CatalogService,
    engine: SyncEngine,
    seeded_store: FakeRemoteStore,
    books: BookCatalog,
    categories: CategoryCatalog,
) -> None:
    _seed_book(seeded_store, books, Book(id="b1", title="Dune", author="H", category="space"))

    async def scenario() -> None:
        await engine.network_up()
        seeded_store.fail_once("update", NotFound("b1 vanished"))
        await service.delete_category("fiction")

    with pytest.raises(CascadeDeleteFailed):
        asyncio.run(scenario())

    assert seeded_store.calls_to("delete") == []
    assert "fiction" in categories
    assert "fiction" in seeded_store.data[CATEGORIES]


def test_cannot_delete_uncategorized(service: CatalogService) -> None:
    with pytest.raises(ValidationFailure):
        asyncio.run(service.delete_category(UNCATEGORIZED_ID))


def test_remote_snapshot_keeps_pending_local_changes(
    service: CatalogService, books: BookCatalog
) -> None:
    local = asyncio.run(service.add_book("Draft", "Me"))

    service.apply_remote_snapshot(BOOKS, [{"id": "b5", "title": "Remote", "author": "Them"}])

    assert {b.id for b in books.all()} == {"b5", local.id}


def test_default_categories_are_seeded_with_fixed_ids(
    seeded_store: FakeRemoteStore,
    queue: OfflineQueue,
    engine: SyncEngine,
    books: BookCatalog,
    clock: FakeClock,
) -> None:
    empty = CategoryCatalog()
    service = CatalogService(seeded_store, queue, engine, books, empty, clock=clock)

    asyncio.run(service.ensure_default_categories())

    assert {c.id for c in empty.all()} == {"fiction", "non-fiction", UNCATEGORIZED_ID}
    assert [op.target_id for op in queue.pending()] == ["fiction", "non-fiction", UNCATEGORIZED_ID]


def test_missing_uncategorized_is_recreated(
    service: CatalogService, categories: CategoryCatalog
) -> None:
    categories.remove(UNCATEGORIZED_ID)

    asyncio.run(service.ensure_default_categories())

    assert categories.require(UNCATEGORIZED_ID).path == "/Uncategorized"
    assert "fiction" in categories


def _writes(store: FakeRemoteStore) -> list[tuple[str, str, str | None]]:
    return [c for c in store.calls if c[0] in {"add", "update", "delete"}]


def test_concurrent_mutations_reach_store_in_issue_order(
    service: CatalogService,
    engine: SyncEngine,
    seeded_store: FakeRemoteStore,
    books: BookCatalog,
) -> None:
    _seed_book(seeded_store, books, Book(id="b1", title="Dune", author="Herbert"))

    async def scenario() -> None:
        await engine.network_up()
        gate = asyncio.Event()
        seeded_store.write_gate = gate

        first = asyncio.create_task(service.update_book("b1", title="Dune Messiah"))
        second = asyncio.create_task(service.add_book("Emma", "Austen"))
        for _ in range(10):
            await asyncio.sleep(0)

        # The first write is suspended inside the store; the second must wait for it.
        assert _writes(seeded_store) == [("update", BOOKS, "b1")]
        gate.set()
        await asyncio.gather(first, second)

    asyncio.run(scenario())

    assert _writes(seeded_store) == [("update", BOOKS, "b1"), ("add", BOOKS, None)]
    assert books.require("b1").title == "Dune Messiah"
    assert books.require("srv-1").title == "Emma"


def test_user_mutation_waits_for_drain_on_same_target(
    service: CatalogService,
    engine: SyncEngine,
    seeded_store: FakeRemoteStore,
    books: BookCatalog,
    queue: OfflineQueue,
) -> None:
    _seed_book(seeded_store, books, Book(id="b1", title="Dune", author="Herbert", updated_at=10))

    async def scenario() -> None:
        await service.update_book("b1", title="Offline Title")
        assert len(queue) == 1

        gate = asyncio.Event()
        seeded_store.write_gate = gate
        connecting = asyncio.create_task(engine.network_up())
        while not seeded_store.calls_to("update"):
            await asyncio.sleep(0)
        assert engine.status == SyncStatus.SYNCING

        editing = asyncio.create_task(service.update_book("b1", title="Final Title"))
        for _ in range(10):
            await asyncio.sleep(0)
        assert len(seeded_store.calls_to("update")) == 1

        gate.set()
        await asyncio.gather(connecting, editing)

    asyncio.run(scenario())

    assert seeded_store.calls_to("update") == [("update", BOOKS, "b1"), ("update", BOOKS, "b1")]
    assert seeded_store.data[BOOKS]["b1"]["title"] == "Final Title"
    assert books.require("b1").title == "Final Title"
    assert len(queue) == 0
    assert engine.status == SyncStatus.CONNECTED
