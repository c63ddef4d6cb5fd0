"""Remote document store over a JSON REST API."""

import asyncio
import contextlib
from collections.abc import Callable
from typing import Any

import requests
from loguru import logger

from shelfsync.config import POLL_INTERVAL, REQUEST_TIMEOUT
from shelfsync.errors import NotFound, TransportFailure, ValidationFailure
from shelfsync.protocols import Record


class HttpDocumentStore:
    """Keyed document store behind ``{base_url}/{collection}/{id}`` endpoints.

    Blocking ``requests`` calls run in a worker thread so the event loop
    stays responsive. Subscriptions poll the collection and report a new
    snapshot whenever it changed.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.sess = session or requests.Session()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._pollers: set[asyncio.Task[None]] = set()

    def _url(self, collection: str, doc_id: str | None = None) -> str:
        if doc_id is None:
            return f"{self.base_url}/{collection}"
        return f"{self.base_url}/{collection}/{doc_id}"

    def _request(self, method: str, url: str, body: Record | None = None) -> requests.Response:
        logger.debug("Making request: {} {}", method, url)
        try:
            r = self.sess.request(method, url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            msg = f"{method} {url} failed: {e}"
            raise TransportFailure(msg) from e

        if r.status_code == 404:
            msg = f"{method} {url}: not found"
            raise NotFound(msg)
        if r.status_code >= 500:
            msg = f"{method} {url} -> HTTP {r.status_code}"
            raise TransportFailure(msg)
        try:
            r.raise_for_status()
        except requests.HTTPError as e:
            msg = f"{method} {url} rejected: HTTP {r.status_code}"
            raise ValidationFailure(msg) from e
        return r

    async def _call(self, method: str, url: str, body: Record | None = None) -> Any:
        r = await asyncio.to_thread(self._request, method, url, body)
        if not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            msg = f"{method} {url} returned invalid JSON"
            raise TransportFailure(msg) from e

    async def get(self, collection: str, doc_id: str) -> Record | None:
        try:
            data: Record = await self._call("GET", self._url(collection, doc_id))
        except NotFound:
            return None
        return {**data, "id": doc_id}

    async def list_all(self, collection: str) -> list[Record]:
        data: list[Record] = await self._call("GET", self._url(collection)) or []
        return data

    async def add(self, collection: str, data: Record, *, doc_id: str | None = None) -> Record:
        if doc_id is None:
            created: Record = await self._call("POST", self._url(collection), data) or {}
        else:
            created = await self._call("PUT", self._url(collection, doc_id), data) or {}
            created.setdefault("id", doc_id)
        if "id" not in created:
            msg = f"POST {self._url(collection)} returned no id"
            raise TransportFailure(msg)
        return {**data, **created}

    async def update(self, collection: str, doc_id: str, partial: Record) -> None:
        await self._call("PATCH", self._url(collection, doc_id), partial)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._call("DELETE", self._url(collection, doc_id))

    async def _poll(self, collection: str, on_change: Callable[[list[Record]], None]) -> None:
        last: list[Record] | None = None
        while True:
            try:
                snapshot = await self.list_all(collection)
            except TransportFailure as e:
                logger.debug("Polling {} failed: {}", collection, e)
            else:
                if snapshot != last:
                    last = snapshot
                    try:
                        on_change(snapshot)
                    except Exception:
                        logger.exception("{} subscriber failed", collection)
            await asyncio.sleep(self.poll_interval)

    def subscribe(
        self, collection: str, on_change: Callable[[list[Record]], None]
    ) -> Callable[[], None]:
        task = asyncio.create_task(self._poll(collection, on_change))
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def close(self) -> None:
        """Stop all pollers and close the HTTP session."""
        for task in list(self._pollers):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.sess.close()


class DetachedStore:
    """Stand-in store for local-only mode: every call is a transport failure."""

    @staticmethod
    def _failure() -> TransportFailure:
        return TransportFailure("No remote store configured")

    async def get(self, collection: str, doc_id: str) -> Record | None:
        raise self._failure()

    async def list_all(self, collection: str) -> list[Record]:
        raise self._failure()

    async def add(self, collection: str, data: Record, *, doc_id: str | None = None) -> Record:
        raise self._failure()

    async def update(self, collection: str, doc_id: str, partial: Record) -> None:
        raise self._failure()

    async def delete(self, collection: str, doc_id: str) -> None:
        raise self._failure()

    def subscribe(
        self, collection: str, on_change: Callable[[list[Record]], None]
    ) -> Callable[[], None]:
        return lambda: None

    async def close(self) -> None:
        return None
