"""In-memory mirrors of the remote book and category collections."""

import dataclasses
import json
from collections.abc import Callable, Iterable
from typing import Any, Generic, TypeVar

from loguru import logger

from shelfsync.config import BOOKS, BOOKS_SNAPSHOT_KEY, CATEGORIES, CATEGORIES_SNAPSHOT_KEY
from shelfsync.errors import NotFound
from shelfsync.models.records import Book, Category
from shelfsync.protocols import LocalStorageProtocol, Record

T = TypeVar("T", Book, Category)


class CollectionMirror(Generic[T]):
    """Id -> record map for one collection.

    The mirror is the single source of truth for local reads. Listeners get
    the full record list after every change.
    """

    collection: str
    snapshot_key: str
    model: type[T]

    def __init__(self, storage: LocalStorageProtocol | None = None) -> None:
        self._storage = storage
        self._records: dict[str, T] = {}
        self._listeners: list[Callable[[list[T]], None]] = []

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def get(self, record_id: str) -> T | None:
        return self._records.get(record_id)

    def require(self, record_id: str) -> T:
        """Return the record or raise NotFound."""
        record = self._records.get(record_id)
        if record is None:
            msg = f"{self.collection} record {record_id!r} not found"
            raise NotFound(msg)
        return record

    def all(self) -> list[T]:
        return list(self._records.values())

    def upsert(self, record: T) -> None:
        self._records[record.id] = record
        self._changed()

    def remove(self, record_id: str) -> None:
        if self._records.pop(record_id, None) is not None:
            self._changed()

    def rekey(self, old_id: str, new_id: str) -> None:
        """Move a record from a temporary id to its remote-assigned id."""
        record = self._records.pop(old_id, None)
        if record is None:
            return
        self._records[new_id] = dataclasses.replace(record, id=new_id)
        self._changed()

    def replace_all(self, records: Iterable[T]) -> None:
        """Replace the mirror wholesale with an authoritative snapshot."""
        self._records = {r.id: r for r in records}
        self._changed()

    def replace_from_records(self, records: Iterable[Record]) -> None:
        self.replace_all(self.model.from_record(r) for r in records)

    def add_listener(self, callback: Callable[[list[T]], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[list[T]], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _changed(self) -> None:
        records = self.all()
        for callback in list(self._listeners):
            try:
                callback(records)
            except Exception:
                logger.exception("{} listener failed", self.collection)

    def save_snapshot(self) -> None:
        """Persist the mirror as the local fallback snapshot."""
        if self._storage is None:
            return
        data = [r.to_record() for r in self._records.values()]
        self._storage.set(self.snapshot_key, json.dumps(data))

    def load_snapshot(self) -> int:
        """Load the local fallback snapshot, returning the number of records."""
        if self._storage is None:
            return 0
        raw = self._storage.get(self.snapshot_key)
        if not raw:
            return 0
        try:
            data: list[dict[str, Any]] = json.loads(raw)
            records = [self.model.from_record(entry) for entry in data]
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring corrupt {} snapshot", self.collection, exc_info=True)
            return 0
        self.replace_all(records)
        logger.debug("Loaded {} {} from local snapshot", len(records), self.collection)
        return len(records)


class BookCatalog(CollectionMirror[Book]):
    collection = BOOKS
    snapshot_key = BOOKS_SNAPSHOT_KEY
    model = Book

    def in_categories(self, category_ids: Iterable[str]) -> list[Book]:
        ids = set(category_ids)
        return [b for b in self._records.values() if b.category in ids]

    def find_by_isbn(self, isbn: str) -> Book | None:
        if not isbn:
            return None
        return next((b for b in self._records.values() if b.isbn == isbn), None)


class CategoryCatalog(CollectionMirror[Category]):
    collection = CATEGORIES
    snapshot_key = CATEGORIES_SNAPSHOT_KEY
    model = Category

    def siblings(self, parent_id: str | None) -> list[Category]:
        """All categories sharing ``parent_id`` (the sibling set)."""
        return [c for c in self._records.values() if c.parent_id == parent_id]

    def as_map(self) -> dict[str, Category]:
        return dict(self._records)
