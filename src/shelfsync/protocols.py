"""Protocols for the external collaborators of the sync engine."""

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

Record = dict[str, Any]


@runtime_checkable
class RemoteStoreProtocol(Protocol):
    """Asynchronous keyed document store with change notifications.

    Every coroutine may raise TransportFailure.
    """

    async def get(self, collection: str, doc_id: str) -> Record | None:
        """Return one record, or None if it does not exist."""
        ...

    async def list_all(self, collection: str) -> list[Record]:
        """Return every record of a collection."""
        ...

    async def add(self, collection: str, data: Record, *, doc_id: str | None = None) -> Record:
        """Create a record and return it with its id."""
        ...

    async def update(self, collection: str, doc_id: str, partial: Record) -> None:
        """Merge fields into an existing record. Raises NotFound if it is missing."""
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a record. Raises NotFound if it is missing."""
        ...

    def subscribe(
        self, collection: str, on_change: Callable[[list[Record]], None]
    ) -> Callable[[], None]:
        """Call on_change with full snapshots of the collection; return an unsubscribe."""
        ...


@runtime_checkable
class LocalStorageProtocol(Protocol):
    """Synchronous durable key -> string storage."""

    def get(self, key: str) -> str | None:
        """Return the stored value, or None."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        ...

    def remove(self, key: str) -> None:
        """Remove a key if present."""
        ...
