"""Shared test fixtures."""

import pytest

from shelfsync.config import BOOKS, CATEGORIES
from shelfsync.core.catalog.mirror import BookCatalog, CategoryCatalog
from shelfsync.core.queue.offline_queue import OfflineQueue
from shelfsync.core.sync.engine import SyncEngine
from shelfsync.core.tree.category_tree import CategoryTree
from shelfsync.models.records import Category
from tests.unit.fakes import FakeClock, FakeRemoteStore, FakeSleep, MemoryStorage

# id, name, parent id. Levels and paths are derived below.
SAMPLE_TREE = [
    ("fiction", "Fiction", None),
    ("non-fiction", "Non-Fiction", None),
    ("uncategorized", "Uncategorized", None),
    ("scifi", "Sci-Fi", "fiction"),
    ("space", "Space Opera", "scifi"),
    ("military", "Military", "space"),
    ("history", "History", "non-fiction"),
]


def make_categories(rows: list[tuple[str, str, str | None]]) -> list[Category]:
    """Build categories with consistent level and path from (id, name, parent) rows."""
    by_id: dict[str, Category] = {}
    for category_id, name, parent_id in rows:
        parent = by_id.get(parent_id) if parent_id else None
        by_id[category_id] = Category(
            id=category_id,
            name=name,
            parent_id=parent_id,
            path=f"{parent.path if parent else ''}/{name}",
            level=parent.level + 1 if parent else 0,
            created_at=1000,
            updated_at=1000,
        )
    return list(by_id.values())


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def queue(storage: MemoryStorage, clock: FakeClock) -> OfflineQueue:
    return OfflineQueue(storage, clock=clock)


@pytest.fixture
def categories(storage: MemoryStorage) -> CategoryCatalog:
    catalog = CategoryCatalog(storage)
    catalog.replace_all(make_categories(SAMPLE_TREE))
    return catalog


@pytest.fixture
def books(storage: MemoryStorage) -> BookCatalog:
    return BookCatalog(storage)


@pytest.fixture
def tree(categories: CategoryCatalog) -> CategoryTree:
    return CategoryTree(categories)


@pytest.fixture
def seeded_store(store: FakeRemoteStore) -> FakeRemoteStore:
    """Remote store holding the sample category tree and no books."""
    for category in make_categories(SAMPLE_TREE):
        store.seed(CATEGORIES, category.to_record())
    store.data.setdefault(BOOKS, {})
    return store


@pytest.fixture
def engine(
    seeded_store: FakeRemoteStore,
    queue: OfflineQueue,
    books: BookCatalog,
    categories: CategoryCatalog,
    sleeper: FakeSleep,
    clock: FakeClock,
) -> SyncEngine:
    """Engine over the seeded store, wired to the books and categories mirrors."""
    return SyncEngine(
        seeded_store,
        queue,
        mirrors={BOOKS: books, CATEGORIES: categories},
        sleep=sleeper,
        clock=clock,
    )
