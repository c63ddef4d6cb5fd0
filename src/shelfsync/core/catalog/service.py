"""Local-first write path for books and categories.

Every mutation is validated against the in-memory mirrors first. It then
goes to the remote store when the engine is online; otherwise, or when the
remote write fails with TransportFailure, it is applied optimistically to
the mirror and appended to the offline queue.
"""

from collections.abc import Callable, Iterable
from typing import Any

from loguru import logger

from shelfsync.config import BOOKS, CATEGORIES, UNCATEGORIZED_ID
from shelfsync.core.catalog.mirror import BookCatalog, CategoryCatalog, CollectionMirror
from shelfsync.core.queue.offline_queue import OfflineQueue
from shelfsync.core.sync.engine import SyncEngine
from shelfsync.core.tree.category_tree import CascadePlan, CategoryTree
from shelfsync.errors import CascadeDeleteFailed, NotFound, TransportFailure, ValidationFailure
from shelfsync.models.records import (
    Book,
    Category,
    OfflineOperation,
    OperationType,
    is_temp_id,
    new_temp_id,
    now_ms,
)
from shelfsync.protocols import Record, RemoteStoreProtocol

BOOK_FIELDS = frozenset({"title", "author", "category", "cover", "isbn", "description"})

DEFAULT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("fiction", "Fiction"),
    ("non-fiction", "Non-Fiction"),
    (UNCATEGORIZED_ID, "Uncategorized"),
)


class CatalogService:
    """User-facing mutations over the book and category mirrors."""

    def __init__(
        self,
        store: RemoteStoreProtocol,
        queue: OfflineQueue,
        engine: SyncEngine,
        books: BookCatalog,
        categories: CategoryCatalog,
        *,
        tree: CategoryTree | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.queue = queue
        self.engine = engine
        self.books = books
        self.categories = categories
        self.tree = tree or CategoryTree(categories)
        self._clock = clock
        self._mirrors: dict[str, CollectionMirror[Any]] = {BOOKS: books, CATEGORIES: categories}

    # --- Plumbing ---

    def _must_queue(self, target_id: str | None, payload: Record) -> bool:
        """True if the write has to go behind pending offline operations."""
        if not self.engine.is_online:
            return True
        refs = {target_id, payload.get("category"), payload.get("parentId")}
        for ref in refs:
            if ref and (is_temp_id(ref) or self.queue.has_pending(ref)):
                return True
        return False

    def _apply_locally(self, op: OfflineOperation) -> None:
        """Optimistically apply a queued operation to its mirror."""
        mirror = self._mirrors[op.target_collection]
        if op.target_id is None:
            return
        if op.type == OperationType.ADD:
            mirror.upsert(mirror.model.from_record({**op.payload, "id": op.target_id}))
        elif op.type == OperationType.UPDATE:
            existing = mirror.get(op.target_id)
            if existing is not None:
                mirror.upsert(mirror.model.from_record({**existing.to_record(), **op.payload}))
        else:
            mirror.remove(op.target_id)

    async def _commit(
        self,
        op_type: OperationType,
        collection: str,
        target_id: str | None,
        payload: Record,
    ) -> str:
        """Write one mutation remotely, or queue it. Returns the record id.

        Must be called with the engine's write lock held.
        """
        mirror = self._mirrors[collection]

        if not self._must_queue(target_id, payload):
            try:
                if op_type == OperationType.ADD:
                    record = await self.store.add(collection, payload, doc_id=target_id)
                    record_id = str(record["id"])
                    mirror.upsert(mirror.model.from_record({**payload, **record}))
                    return record_id
                if target_id is None:
                    msg = f"{op_type} on {collection} needs a target id"
                    raise ValidationFailure(msg)
                if op_type == OperationType.UPDATE:
                    await self.store.update(collection, target_id, payload)
                    existing = mirror.require(target_id)
                    mirror.upsert(mirror.model.from_record({**existing.to_record(), **payload}))
                else:
                    try:
                        await self.store.delete(collection, target_id)
                    except NotFound:
                        logger.debug("{} {} was already deleted remotely", collection, target_id)
                    mirror.remove(target_id)
                return target_id
            except TransportFailure as e:
                logger.warning("Remote {} on {} failed, queueing: {}", op_type, collection, e)
                self.engine.report_transport_failure()

        if op_type == OperationType.ADD and target_id is None:
            target_id = new_temp_id()
        op = self.queue.enqueue(op_type, collection, target_id, payload)
        self._apply_locally(op)
        return target_id  # type: ignore[return-value]

    def apply_remote_snapshot(self, collection: str, records: Iterable[Record]) -> None:
        """Replace a mirror with a pushed snapshot, keeping pending local changes on top."""
        mirror = self._mirrors[collection]
        mirror.replace_from_records(records)
        for op in self.queue.pending():
            if op.target_collection == collection:
                self._apply_locally(op)

    # --- Books ---

    async def add_book(
        self,
        title: str,
        author: str,
        *,
        category: str | None = None,
        cover: str = "",
        isbn: str = "",
        description: str = "",
    ) -> Book:
        title, author, isbn = title.strip(), author.strip(), isbn.strip()
        if not title or not author:
            msg = "Title and author are required"
            raise ValidationFailure(msg)

        async with self.engine.write_lock:
            duplicate = self.books.find_by_isbn(isbn)
            if duplicate is not None:
                msg = f"ISBN {isbn} already exists: {duplicate.title!r}"
                raise ValidationFailure(msg)
            category = category or UNCATEGORIZED_ID
            self.categories.require(category)

            now = self._clock()
            payload = {
                "title": title,
                "author": author,
                "category": category,
                "cover": cover,
                "isbn": isbn,
                "description": description,
                "createdAt": now,
                "updatedAt": now,
            }
            book_id = await self._commit(OperationType.ADD, BOOKS, None, payload)
            logger.info("Added book {!r} ({})", title, book_id)
            return self.books.require(book_id)

    async def update_book(self, book_id: str, **changes: Any) -> Book:
        unknown = set(changes) - BOOK_FIELDS
        if unknown:
            msg = f"Unknown book fields: {sorted(unknown)!r}"
            raise ValidationFailure(msg)
        for key in ("title", "author"):
            if key in changes and not str(changes[key]).strip():
                msg = f"Book {key} can not be empty"
                raise ValidationFailure(msg)

        async with self.engine.write_lock:
            self.books.require(book_id)
            if "category" in changes:
                changes["category"] = changes["category"] or UNCATEGORIZED_ID
                self.categories.require(changes["category"])
            payload = {**changes, "updatedAt": self._clock()}
            await self._commit(OperationType.UPDATE, BOOKS, book_id, payload)
            return self.books.require(book_id)

    async def delete_book(self, book_id: str) -> None:
        async with self.engine.write_lock:
            book = self.books.require(book_id)
            await self._commit(OperationType.DELETE, BOOKS, book_id, {})
            logger.info("Deleted book {!r} ({})", book.title, book_id)

    # --- Categories ---

    async def add_category(
        self,
        name: str,
        parent_id: str | None = None,
        *,
        description: str = "",
        category_id: str | None = None,
    ) -> Category:
        """Create a category. ``category_id`` fixes the id (used for seeded defaults)."""
        name = name.strip()
        if not name:
            msg = "Category name is required"
            raise ValidationFailure(msg)

        async with self.engine.write_lock:
            self.tree.validate_create(name, parent_id)
            now = self._clock()
            payload = {
                "name": name,
                "parentId": parent_id,
                "path": self.tree.compute_path(parent_id, name),
                "level": self.tree.compute_level(parent_id),
                "description": description,
                "createdAt": now,
                "updatedAt": now,
            }
            new_id = await self._commit(OperationType.ADD, CATEGORIES, category_id, payload)
            logger.info("Added category {} ({})", payload["path"], new_id)
            return self.categories.require(new_id)

    async def _commit_tree_changes(self, changed: list[Category]) -> None:
        now = self._clock()
        for category in changed:
            payload = {
                "name": category.name,
                "parentId": category.parent_id,
                "path": category.path,
                "level": category.level,
                "updatedAt": now,
            }
            await self._commit(OperationType.UPDATE, CATEGORIES, category.id, payload)

    async def rename_category(self, category_id: str, new_name: str) -> Category:
        new_name = new_name.strip()
        if not new_name:
            msg = "Category name is required"
            raise ValidationFailure(msg)

        async with self.engine.write_lock:
            changed = self.tree.rename(category_id, new_name)
            await self._commit_tree_changes(changed)
            logger.info("Renamed category {} ({} paths updated)", category_id, len(changed))
            return self.categories.require(category_id)

    async def update_category_description(self, category_id: str, description: str) -> Category:
        async with self.engine.write_lock:
            self.categories.require(category_id)
            payload = {"description": description, "updatedAt": self._clock()}
            await self._commit(OperationType.UPDATE, CATEGORIES, category_id, payload)
            return self.categories.require(category_id)

    async def move_category(self, category_id: str, new_parent_id: str | None) -> Category:
        async with self.engine.write_lock:
            changed = self.tree.reparent(category_id, new_parent_id)
            await self._commit_tree_changes(changed)
            logger.info(
                "Moved category {} under {} ({} nodes updated)",
                category_id, new_parent_id, len(changed),
            )
            return self.categories.require(category_id)

    async def delete_category(self, category_id: str) -> CascadePlan:
        """Delete a category and its descendants, moving their books to uncategorized.

        Books are reassigned before any category is deleted. If a
        reassignment fails the whole cascade is reported as failed and no
        category is touched.
        """
        async with self.engine.write_lock:
            plan = self.tree.cascade_delete(category_id, self.books.all())
            now = self._clock()
            try:
                for book_id in plan.book_ids:
                    payload = {"category": UNCATEGORIZED_ID, "updatedAt": now}
                    await self._commit(OperationType.UPDATE, BOOKS, book_id, payload)
            except Exception as e:
                msg = f"Could not reassign books of category {category_id!r}: {e}"
                raise CascadeDeleteFailed(msg) from e

            for doomed_id in plan.category_ids:
                await self._commit(OperationType.DELETE, CATEGORIES, doomed_id, {})

            logger.info(
                "Deleted {} categories and moved {} books to {}",
                len(plan.category_ids), len(plan.book_ids), UNCATEGORIZED_ID,
            )
            return plan

    async def ensure_default_categories(self) -> None:
        """Seed the default categories into an empty catalog; keep uncategorized present."""
        if len(self.categories) == 0:
            for category_id, name in DEFAULT_CATEGORIES:
                await self.add_category(name, category_id=category_id)
            return
        if UNCATEGORIZED_ID in self.categories:
            return
        existing = next(
            (c for c in self.categories.siblings(None) if c.name.lower() == "uncategorized"),
            None,
        )
        if existing is None:
            await self.add_category("Uncategorized", category_id=UNCATEGORIZED_ID)
        else:
            await self._adopt_uncategorized(existing)

    async def _adopt_uncategorized(self, existing: Category) -> None:
        """Move a root "Uncategorized" stored under another id to the reserved id.

        Its books and subcategories follow it; the old record is deleted last.
        """
        async with self.engine.write_lock:
            now = self._clock()
            record = {
                **existing.to_record(),
                "parentId": None,
                "path": f"/{existing.name}",
                "level": 0,
                "updatedAt": now,
            }
            del record["id"]
            await self._commit(OperationType.ADD, CATEGORIES, UNCATEGORIZED_ID, record)

            for book in self.books.in_categories([existing.id]):
                payload = {"category": UNCATEGORIZED_ID, "updatedAt": now}
                await self._commit(OperationType.UPDATE, BOOKS, book.id, payload)
            for child in self.categories.siblings(existing.id):
                payload = {"parentId": UNCATEGORIZED_ID, "updatedAt": now}
                await self._commit(OperationType.UPDATE, CATEGORIES, child.id, payload)

            await self._commit(OperationType.DELETE, CATEGORIES, existing.id, {})
            logger.info("Adopted category {} as {}", existing.id, UNCATEGORIZED_ID)
