"""Domain models for books, categories, queued operations and sync state."""

import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from shelfsync.config import TEMP_ID_PREFIX, UNCATEGORIZED_ID


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def new_temp_id() -> str:
    """Generate a local id for a record created while offline."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(record_id: str | None) -> bool:
    return record_id is not None and record_id.startswith(TEMP_ID_PREFIX)


def _timestamp(value: Any, default: int) -> int:
    """Coerce a stored timestamp (ms int, numeric string or None) to ms."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Book:
    """A catalogued book."""

    id: str
    title: str
    author: str
    category: str = UNCATEGORIZED_ID
    cover: str = ""
    isbn: str = ""
    description: str = ""
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Book":
        created = _timestamp(data.get("createdAt"), 0)
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            author=data.get("author") or "",
            category=data.get("category") or UNCATEGORIZED_ID,
            cover=data.get("cover") or "",
            isbn=data.get("isbn") or "",
            description=data.get("description") or "",
            created_at=created,
            updated_at=_timestamp(data.get("updatedAt"), created),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "cover": self.cover,
            "isbn": self.isbn,
            "description": self.description,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class Category:
    """A node of the category tree.

    ``path`` and ``level`` are derived from the ancestor chain and are
    recomputed by CategoryTree whenever ``name`` or ``parent_id`` changes.
    """

    id: str
    name: str
    parent_id: str | None = None
    path: str = ""
    level: int = 0
    description: str = ""
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Category":
        created = _timestamp(data.get("createdAt"), 0)
        name = data.get("name") or ""
        return cls(
            id=str(data["id"]),
            name=name,
            parent_id=data.get("parentId") or None,
            path=data.get("path") or f"/{name}",
            level=int(data.get("level") or 0),
            description=data.get("description") or "",
            created_at=created,
            updated_at=_timestamp(data.get("updatedAt"), created),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parentId": self.parent_id,
            "path": self.path,
            "level": self.level,
            "description": self.description,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class OperationType(StrEnum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class OfflineOperation:
    """A mutation waiting to be replayed against the remote store."""

    id: str
    type: OperationType
    target_collection: str
    target_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    enqueued_at: int = 0

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "OfflineOperation":
        return cls(
            id=str(data["id"]),
            type=OperationType(data["type"]),
            target_collection=data["targetCollection"],
            target_id=data.get("targetId"),
            payload=dict(data.get("payload") or {}),
            enqueued_at=_timestamp(data.get("enqueuedAt"), 0),
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": str(self.type),
            "targetCollection": self.target_collection,
            "targetId": self.target_id,
            "payload": self.payload,
            "enqueuedAt": self.enqueued_at,
        }

    def references(self) -> set[str]:
        """Record ids this operation depends on: its target and payload parents."""
        refs = {self.target_id, self.payload.get("category"), self.payload.get("parentId")}
        return {r for r in refs if r}


class SyncStatus(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCING = "syncing"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class SyncState:
    """Snapshot of the sync engine state, for presentation."""

    status: SyncStatus
    last_synced_at: int | None
    retry_count: int


@dataclass(frozen=True)
class SyncStatusEvent:
    status: SyncStatus
    message: str
    previous_status: SyncStatus


@dataclass(frozen=True)
class BookMetadata:
    """Book details returned by an ISBN lookup provider."""

    title: str
    author: str
    isbn: str
    cover: str | None = None
    description: str = ""
    published_date: str = ""
    page_count: int = 0
    categories: tuple[str, ...] = ()
