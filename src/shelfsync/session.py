"""Wiring of storage, mirrors, queue, engine and service into one session."""

from collections.abc import Callable
from types import TracebackType
from typing import Any

from loguru import logger

from shelfsync.config import BOOKS, CATEGORIES
from shelfsync.core.catalog.mirror import BookCatalog, CategoryCatalog, CollectionMirror
from shelfsync.core.catalog.service import CatalogService
from shelfsync.core.queue.offline_queue import OfflineQueue
from shelfsync.core.sync.engine import SyncEngine
from shelfsync.core.tree.category_tree import CategoryTree
from shelfsync.models.records import now_ms
from shelfsync.protocols import LocalStorageProtocol, Record, RemoteStoreProtocol


class Session:
    """A running catalog: local snapshots, offline queue and remote sync.

    Use as ``async with Session(store, storage) as session``. On entry the
    local snapshots are loaded and, when ``connect`` is set, the engine is
    brought online. On exit subscriptions are dropped, timers are stopped
    and the snapshots are written back.
    """

    def __init__(
        self,
        store: RemoteStoreProtocol,
        storage: LocalStorageProtocol,
        *,
        connect: bool = True,
        clock: Callable[[], int] = now_ms,
        **engine_options: Any,
    ) -> None:
        self.store = store
        self.storage = storage
        self.connect = connect

        self.queue = OfflineQueue(storage, clock=clock)
        self.books = BookCatalog(storage)
        self.categories = CategoryCatalog(storage)
        self.tree = CategoryTree(self.categories)
        self._mirrors: dict[str, CollectionMirror[Any]] = {
            BOOKS: self.books,
            CATEGORIES: self.categories,
        }
        self.engine = SyncEngine(
            store,
            self.queue,
            mirrors=self._mirrors,
            on_reconnect=self.refresh,
            clock=clock,
            **engine_options,
        )
        self.service = CatalogService(
            store, self.queue, self.engine, self.books, self.categories, tree=self.tree, clock=clock
        )
        self._unsubscribers: dict[str, Callable[[], None]] = {}

    async def __aenter__(self) -> "Session":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def start(self) -> None:
        for mirror in self._mirrors.values():
            mirror.load_snapshot()
            mirror.add_listener(self._snapshot_saver(mirror))

        if self.connect:
            self.engine.start_periodic_resync()
            await self.engine.network_up()
        else:
            logger.info("Working offline, {} operations pending", len(self.queue))

        await self.service.ensure_default_categories()

    @staticmethod
    def _snapshot_saver(mirror: CollectionMirror[Any]) -> Callable[[list[Any]], None]:
        def save(_records: list[Any]) -> None:
            mirror.save_snapshot()

        return save

    def _on_snapshot(self, collection: str) -> Callable[[list[Record]], None]:
        def apply(records: list[Record]) -> None:
            logger.debug("Received {} {} from remote", len(records), collection)
            self.service.apply_remote_snapshot(collection, records)

        return apply

    async def refresh(self) -> None:
        """Reload both collections from the remote store and subscribe to changes."""
        for collection in (CATEGORIES, BOOKS):
            records = await self.store.list_all(collection)
            self.service.apply_remote_snapshot(collection, records)
            if collection not in self._unsubscribers:
                self._unsubscribers[collection] = self.store.subscribe(
                    collection, self._on_snapshot(collection)
                )
        logger.info(
            "Loaded {} categories and {} books from remote", len(self.categories), len(self.books)
        )
        await self.service.ensure_default_categories()

    async def close(self) -> None:
        for unsubscribe in self._unsubscribers.values():
            unsubscribe()
        self._unsubscribers.clear()
        await self.engine.shutdown()
        for mirror in self._mirrors.values():
            mirror.save_snapshot()
