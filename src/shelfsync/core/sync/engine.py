"""Connectivity state machine, reconnect backoff and offline queue replay."""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from loguru import logger

from shelfsync.config import (
    MAX_RETRIES,
    PROBE_COLLECTION,
    PROBE_DOC_ID,
    RESYNC_INTERVAL,
    RETRY_BASE_MS,
    RETRY_CAP_MS,
)
from shelfsync.core.catalog.mirror import CollectionMirror
from shelfsync.core.queue.offline_queue import DrainReport, OfflineQueue
from shelfsync.core.sync.conflict import Resolution, modified_at, resolve_conflict
from shelfsync.errors import NotFound, TransportFailure, ValidationFailure
from shelfsync.models.records import (
    OfflineOperation,
    OperationType,
    SyncState,
    SyncStatus,
    SyncStatusEvent,
    is_temp_id,
    now_ms,
)
from shelfsync.protocols import Record, RemoteStoreProtocol

StatusListener = Callable[[SyncStatusEvent], None]


def compute_retry_delay(
    retry_count: int, *, base_ms: int = RETRY_BASE_MS, cap_ms: int = RETRY_CAP_MS
) -> int:
    """Backoff delay in ms before retry number ``retry_count`` (0-based)."""
    return min(base_ms * 2**retry_count, cap_ms)


class SyncEngine:
    """Owns connectivity state and drains the offline queue when connected.

    States: disconnected -> connecting -> (connected | error), and
    connected -> syncing -> connected. ``network_up`` and ``network_down``
    are the external signals; everything else is driven from them.

    A probe that completes after a newer signal arrived is discarded. At
    most one retry timer and one resync timer exist at any time.
    """

    def __init__(
        self,
        store: RemoteStoreProtocol,
        queue: OfflineQueue,
        *,
        mirrors: Mapping[str, CollectionMirror[Any]] | None = None,
        on_reconnect: Callable[[], Awaitable[None]] | None = None,
        retry_base_ms: int = RETRY_BASE_MS,
        retry_cap_ms: int = RETRY_CAP_MS,
        max_retries: int = MAX_RETRIES,
        resync_interval: float = RESYNC_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._queue = queue
        self._mirrors = dict(mirrors or {})
        self._on_reconnect = on_reconnect
        self._retry_base_ms = retry_base_ms
        self._retry_cap_ms = retry_cap_ms
        self._max_retries = max_retries
        self._resync_interval = resync_interval
        self._sleep = sleep
        self._clock = clock

        self._status = SyncStatus.DISCONNECTED
        self._last_synced_at: int | None = None
        self._retry_count = 0
        # Bumped by every external signal; stale probe results compare against it.
        self._generation = 0
        self._retry_task: asyncio.Task[None] | None = None
        self._resync_task: asyncio.Task[None] | None = None
        self._listeners: list[StatusListener] = []

        # Serializes user mutations and queue drains.
        self.write_lock = asyncio.Lock()

    # --- State ---

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def state(self) -> SyncState:
        return SyncState(
            status=self._status,
            last_synced_at=self._last_synced_at,
            retry_count=self._retry_count,
        )

    @property
    def is_online(self) -> bool:
        return self._status in (SyncStatus.CONNECTED, SyncStatus.SYNCING)

    @property
    def retry_task(self) -> asyncio.Task[None] | None:
        return self._retry_task

    def add_listener(self, callback: StatusListener) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: StatusListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _set_status(self, status: SyncStatus, message: str = "") -> None:
        previous = self._status
        self._status = status
        logger.info("Sync status: {} -> {} {}", previous, status, message)

        if status == SyncStatus.CONNECTED:
            self._last_synced_at = self._clock()
            self._retry_count = 0
            self._cancel_retry()

        event = SyncStatusEvent(status=status, message=message, previous_status=previous)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Sync status listener failed")

    def _superseded(self, generation: int) -> bool:
        return generation != self._generation or self._status == SyncStatus.DISCONNECTED

    # --- Timers ---

    def _cancel_retry(self) -> None:
        task, self._retry_task = self._retry_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _arm_retry(self) -> None:
        self._cancel_retry()
        self._retry_task = asyncio.create_task(self._retry_loop(self._generation))

    def _cancel_resync(self) -> None:
        task, self._resync_task = self._resync_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def start_periodic_resync(self) -> None:
        """Arm the periodic connection check and drain."""
        self._cancel_resync()
        self._resync_task = asyncio.create_task(self._resync_loop())

    async def shutdown(self) -> None:
        """Cancel every timer and wait for them to finish."""
        tasks = [t for t in (self._retry_task, self._resync_task) if t is not None]
        self._cancel_retry()
        self._cancel_resync()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # --- Signals ---

    async def network_up(self) -> bool:
        """Handle a network-up signal: probe, then drain. Returns True if connected."""
        self._generation += 1
        generation = self._generation
        self._cancel_retry()
        self._retry_count = 0

        connected = await self._attempt(generation)
        if not connected and not self._superseded(generation):
            self._arm_retry()
        return connected

    def network_down(self) -> None:
        """Handle a network-down signal from any state."""
        self._generation += 1
        self._cancel_retry()
        self._set_status(SyncStatus.DISCONNECTED, "Network lost, storing changes locally")

    def report_transport_failure(self) -> None:
        """A direct write failed: treat the connection as broken and start retrying."""
        if self._status != SyncStatus.CONNECTED:
            return
        self._set_status(SyncStatus.ERROR, "Remote write failed")
        self._arm_retry()

    # --- Connection attempts ---

    async def _probe(self) -> None:
        await self._store.get(PROBE_COLLECTION, PROBE_DOC_ID)

    async def _attempt(self, generation: int) -> bool:
        """Probe, refresh and drain. Returns True if the engine ends up connected."""
        self._set_status(SyncStatus.CONNECTING, "Connecting to remote store")
        try:
            await self._probe()
        except Exception as e:
            if self._superseded(generation):
                logger.debug("Discarding probe failure from a superseded attempt")
                return False
            self._set_status(SyncStatus.ERROR, f"Connection failed: {e}")
            return False

        if self._superseded(generation):
            logger.debug("Discarding probe result from a superseded attempt")
            return False

        self._set_status(SyncStatus.CONNECTED, "Connected to remote store")

        if self._on_reconnect is not None:
            try:
                await self._on_reconnect()
            except Exception as e:
                logger.warning("Refreshing data after reconnect failed", exc_info=True)
                if not self._superseded(generation):
                    self._set_status(SyncStatus.ERROR, f"Refreshing data failed: {e}")
                return False

        await self.sync_now()
        return self._status == SyncStatus.CONNECTED

    async def _retry_loop(self, generation: int) -> None:
        while self._retry_count < self._max_retries:
            delay_ms = compute_retry_delay(
                self._retry_count, base_ms=self._retry_base_ms, cap_ms=self._retry_cap_ms
            )
            self._retry_count += 1
            logger.info(
                "Reconnect attempt {}/{} in {} ms", self._retry_count, self._max_retries, delay_ms
            )
            await self._sleep(delay_ms / 1000)
            if self._superseded(generation):
                return
            if await self._attempt(generation):
                return
            if self._superseded(generation):
                return

        logger.warning("Giving up after {} reconnect attempts", self._max_retries)
        self._set_status(SyncStatus.ERROR, "Connection failed, waiting for the network to return")

    async def _resync_loop(self) -> None:
        while True:
            await self._sleep(self._resync_interval)
            await self.check_connection()

    async def check_connection(self) -> None:
        """Periodic check: while connected, re-probe and drain anything pending."""
        if self._status != SyncStatus.CONNECTED:
            return
        generation = self._generation
        try:
            await self._probe()
        except Exception as e:
            if not self._superseded(generation):
                self._set_status(SyncStatus.ERROR, f"Connection unstable: {e}")
                self._arm_retry()
            return

        if self._superseded(generation):
            return
        await self.sync_now()
        if self._status == SyncStatus.ERROR:
            self._arm_retry()

    # --- Drain ---

    async def sync_now(self) -> DrainReport | None:
        """Drain the offline queue. Does nothing unless connected."""
        if self._status != SyncStatus.CONNECTED:
            return None

        async with self.write_lock:
            if self._status != SyncStatus.CONNECTED:
                return None
            self._set_status(SyncStatus.SYNCING, f"Syncing {len(self._queue)} offline operations")
            report = await self._queue.drain(self._replay)

        if self._status != SyncStatus.SYNCING:
            # A network-down arrived while draining.
            return report

        transport_errors = [
            e for e in report.errors.values() if isinstance(e, TransportFailure)
        ]
        if transport_errors:
            self._set_status(
                SyncStatus.ERROR,
                f"{len(report.succeeded)} operations synced, {len(report.failed)} failed",
            )
        elif report.succeeded or report.failed:
            self._set_status(
                SyncStatus.CONNECTED,
                f"{len(report.succeeded)} operations synced, {len(report.failed)} still pending",
            )
        else:
            self._set_status(SyncStatus.CONNECTED)
        return report

    async def _replay(self, op: OfflineOperation) -> str | None:
        mirror = self._mirrors.get(op.target_collection)
        if op.type == OperationType.ADD:
            return await self._replay_add(op, mirror)

        if not op.target_id:
            msg = f"Offline {op.type} operation {op.id} has no target id"
            raise ValidationFailure(msg)
        if op.type == OperationType.UPDATE:
            await self._replay_update(op, op.target_id, mirror)
        else:
            await self._replay_delete(op, op.target_id, mirror)
        return None

    async def _replay_add(
        self, op: OfflineOperation, mirror: CollectionMirror[Any] | None
    ) -> str:
        data = {k: v for k, v in op.payload.items() if k != "id"}
        fixed_id = op.target_id if op.target_id and not is_temp_id(op.target_id) else None
        record = await self._store.add(op.target_collection, data, doc_id=fixed_id)
        new_id = str(record["id"])

        if mirror is not None:
            if op.target_id and op.target_id != new_id:
                mirror.rekey(op.target_id, new_id)
            mirror.upsert(mirror.model.from_record({**data, **record}))
        logger.debug("Replayed add {} -> {}", op.target_id, new_id)
        return new_id

    async def _replay_update(
        self, op: OfflineOperation, target_id: str, mirror: CollectionMirror[Any] | None
    ) -> None:
        server = await self._store.get(op.target_collection, target_id)
        if server is None:
            logger.warning(
                "{} {} was deleted remotely, dropping queued update",
                op.target_collection, target_id,
            )
            if mirror is not None:
                mirror.remove(target_id)
            return

        if modified_at(server) > op.enqueued_at:
            local: Record = {
                **server,
                **op.payload,
                "updatedAt": op.payload.get("updatedAt", op.enqueued_at),
            }
            result = resolve_conflict(local, server, now=self._clock())
            logger.info(
                "Conflict on {} {} resolved as {}",
                op.target_collection, target_id, result.resolution,
            )
            if result.resolution != Resolution.SERVER:
                partial = {k: v for k, v in result.record.items() if k != "id"}
                await self._store.update(op.target_collection, target_id, partial)
            self._mirror_upsert(mirror, {**result.record, "id": target_id})
            return

        await self._store.update(op.target_collection, target_id, op.payload)
        self._mirror_upsert(mirror, {**server, **op.payload, "id": target_id})

    async def _replay_delete(
        self, op: OfflineOperation, target_id: str, mirror: CollectionMirror[Any] | None
    ) -> None:
        server = await self._store.get(op.target_collection, target_id)
        if server is None:
            logger.debug("{} {} already deleted", op.target_collection, target_id)
            if mirror is not None:
                mirror.remove(target_id)
            return

        if modified_at(server) > op.enqueued_at:
            local: Record = {**server, "updatedAt": op.enqueued_at}
            result = resolve_conflict(local, server, now=self._clock())
            if result.resolution == Resolution.SERVER:
                logger.info(
                    "{} {} changed remotely after the delete was queued, keeping it",
                    op.target_collection, target_id,
                )
                self._mirror_upsert(mirror, server)
                return

        try:
            await self._store.delete(op.target_collection, target_id)
        except NotFound:
            logger.debug("{} {} vanished before delete", op.target_collection, target_id)
        if mirror is not None:
            mirror.remove(target_id)

    @staticmethod
    def _mirror_upsert(mirror: CollectionMirror[Any] | None, record: Record) -> None:
        if mirror is not None:
            mirror.upsert(mirror.model.from_record(record))
