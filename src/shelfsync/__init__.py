"""Offline-tolerant book catalogue with hierarchical categories."""

from shelfsync.core.catalog.service import CatalogService
from shelfsync.core.queue.offline_queue import OfflineQueue
from shelfsync.core.storage.local import SqliteLocalStorage
from shelfsync.core.sync.engine import SyncEngine
from shelfsync.protocols import LocalStorageProtocol, RemoteStoreProtocol
from shelfsync.remote.http_store import HttpDocumentStore
from shelfsync.session import Session

__all__ = [
    "CatalogService",
    "HttpDocumentStore",
    "LocalStorageProtocol",
    "OfflineQueue",
    "RemoteStoreProtocol",
    "Session",
    "SqliteLocalStorage",
    "SyncEngine",
]
