"""Durable FIFO of mutations that could not be applied to the remote store."""

import json
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from shelfsync.config import OFFLINE_QUEUE_KEY
from shelfsync.models.records import OfflineOperation, OperationType, is_temp_id, now_ms
from shelfsync.protocols import LocalStorageProtocol

# Returns the remote-assigned id for a replayed add, None otherwise.
ApplyFn = Callable[[OfflineOperation], Awaitable[str | None]]


@dataclass
class DrainReport:
    """Outcome of one drain. Partial success is normal."""

    succeeded: list[OfflineOperation] = field(default_factory=list)
    failed: list[OfflineOperation] = field(default_factory=list)
    # Failure cause per operation id; deferred operations have no entry.
    errors: dict[str, Exception] = field(default_factory=dict)


class OfflineQueue:
    """Pending operations, persisted as one JSON list under a single storage key.

    Every change rewrites the whole list, so the stored queue is always a
    consistent snapshot. The queue is reloaded from storage on construction.
    """

    def __init__(
        self,
        storage: LocalStorageProtocol,
        *,
        key: str = OFFLINE_QUEUE_KEY,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._storage = storage
        self._key = key
        self._clock = clock
        self._listeners: list[Callable[[int], None]] = []
        self._operations: list[OfflineOperation] = self._load()

    def __len__(self) -> int:
        return len(self._operations)

    def _load(self) -> list[OfflineOperation]:
        raw = self._storage.get(self._key)
        if not raw:
            return []
        try:
            entries: list[dict[str, Any]] = json.loads(raw)
        except ValueError:
            logger.warning("Offline queue storage is not valid JSON, starting empty", exc_info=True)
            return []

        operations: list[OfflineOperation] = []
        for entry in entries:
            try:
                operations.append(OfflineOperation.from_record(entry))
            except (KeyError, ValueError, TypeError):
                logger.warning("Skipping malformed offline operation: {!r}", entry)
        if operations:
            logger.info("Restored {} pending offline operations", len(operations))
        return operations

    def _persist(self) -> None:
        self._storage.set(self._key, json.dumps([op.to_record() for op in self._operations]))
        self._notify()

    def _notify(self) -> None:
        count = len(self._operations)
        for callback in list(self._listeners):
            try:
                callback(count)
            except Exception:
                logger.exception("Offline queue listener failed")

    def add_listener(self, callback: Callable[[int], None]) -> None:
        """Register a callback receiving the pending count after every change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[int], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def pending(self) -> list[OfflineOperation]:
        return list(self._operations)

    def has_pending(self, target_id: str) -> bool:
        """True if any queued operation targets or references ``target_id``."""
        return any(target_id in op.references() for op in self._operations)

    def enqueue(
        self,
        op_type: OperationType,
        collection: str,
        target_id: str | None,
        payload: dict[str, Any] | None = None,
    ) -> OfflineOperation:
        """Append an operation and persist the queue."""
        op = OfflineOperation(
            id=uuid.uuid4().hex,
            type=op_type,
            target_collection=collection,
            target_id=target_id,
            payload=dict(payload or {}),
            enqueued_at=self._clock(),
        )
        self._operations.append(op)
        self._persist()
        logger.info(
            "Queued offline {} on {} {} ({} pending)",
            op_type, collection, target_id, len(self._operations),
        )
        return op

    def discard(self, op_id: str) -> bool:
        """Drop a queued operation by id. Returns False if it was not queued."""
        before = len(self._operations)
        self._operations = [op for op in self._operations if op.id != op_id]
        if len(self._operations) == before:
            return False
        self._persist()
        return True

    def clear(self) -> None:
        self._operations = []
        self._persist()

    def _remap_id(self, old_id: str, new_id: str) -> None:
        """Point queued operations at a remote id instead of a temporary one."""
        remapped: list[OfflineOperation] = []
        for op in self._operations:
            payload = dict(op.payload)
            for key in ("category", "parentId"):
                if payload.get(key) == old_id:
                    payload[key] = new_id
            target_id = new_id if op.target_id == old_id else op.target_id
            remapped.append(
                OfflineOperation(
                    id=op.id,
                    type=op.type,
                    target_collection=op.target_collection,
                    target_id=target_id,
                    payload=payload,
                    enqueued_at=op.enqueued_at,
                )
            )
        self._operations = remapped

    async def drain(self, apply_fn: ApplyFn) -> DrainReport:
        """Replay queued operations in enqueue order.

        Succeeded operations are removed and the queue is persisted after
        each one. Failed operations stay queued. Once an operation fails,
        later operations on the same target (or referencing it) are deferred
        so that per-target order is preserved.
        """
        report = DrainReport()
        blocked: set[str] = set()
        snapshot_ids = [op.id for op in self._operations]

        for op_id in snapshot_ids:
            # Re-read: earlier iterations may have remapped ids.
            op = next((o for o in self._operations if o.id == op_id), None)
            if op is None:
                continue

            if op.references() & blocked:
                report.failed.append(op)
                if op.target_id:
                    blocked.add(op.target_id)
                logger.debug("Deferring {} on {} behind a failed operation", op.type, op.target_id)
                continue

            try:
                new_id = await apply_fn(op)
            except Exception as e:
                report.failed.append(op)
                report.errors[op.id] = e
                if op.target_id:
                    blocked.add(op.target_id)
                logger.warning(
                    "Offline {} on {} {} failed: {}", op.type, op.target_collection, op.target_id, e
                )
                continue

            self._operations = [o for o in self._operations if o.id != op.id]
            if new_id and op.target_id and is_temp_id(op.target_id) and new_id != op.target_id:
                self._remap_id(op.target_id, new_id)
            self._persist()
            report.succeeded.append(op)

        logger.info(
            "Offline drain complete: {} succeeded, {} failed",
            len(report.succeeded), len(report.failed),
        )
        return report
