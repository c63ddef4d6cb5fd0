"""ISBN metadata lookup against public book APIs.

Providers are tried in order: Google Books first, then Open Library. A
provider that errors is logged and skipped.
"""

import re
from typing import Any, Protocol

import requests
from loguru import logger

from shelfsync.config import GOOGLE_BOOKS_API_KEY, REQUEST_TIMEOUT
from shelfsync.errors import ValidationFailure
from shelfsync.models.records import BookMetadata

ISBN_RE = re.compile(r"^(97[89])?\d{9}[\dX]$")

GOOGLE_BOOKS_URL = "https://www.googleapis.com/books/v1/volumes"
OPEN_LIBRARY_URL = "https://openlibrary.org/api/books"

# Largest first.
_GOOGLE_IMAGE_SIZES = ("extraLarge", "large", "medium", "small", "thumbnail", "smallThumbnail")
_ZOOM_RE = re.compile(r"&zoom=\d+")


def normalize_isbn(raw: str) -> str:
    """Strip spaces and hyphens and validate an ISBN-10 or ISBN-13."""
    isbn = re.sub(r"[-\s]", "", raw).upper()
    if not ISBN_RE.match(isbn):
        msg = f"Invalid ISBN: {raw!r}"
        raise ValidationFailure(msg)
    return isbn


class MetadataProvider(Protocol):
    name: str

    def fetch(self, isbn: str) -> BookMetadata | None: ...


class GoogleBooksProvider:
    name = "google-books"

    def __init__(
        self, session: requests.Session | None = None, *, api_key: str = GOOGLE_BOOKS_API_KEY
    ) -> None:
        self.sess = session or requests.Session()
        self.api_key = api_key

    @staticmethod
    def _cover(image_links: dict[str, str]) -> str | None:
        url = next((image_links[k] for k in _GOOGLE_IMAGE_SIZES if image_links.get(k)), None)
        if url is None:
            return None
        return _ZOOM_RE.sub("", url.replace("http://", "https://"))

    def fetch(self, isbn: str) -> BookMetadata | None:
        params = {"q": f"isbn:{isbn}"}
        if self.api_key:
            params["key"] = self.api_key
        r = self.sess.get(GOOGLE_BOOKS_URL, params=params, timeout=REQUEST_TIMEOUT)
        r.raise_for_status()
        items: list[dict[str, Any]] = r.json().get("items") or []
        if not items:
            return None

        info = items[0].get("volumeInfo", {})
        return BookMetadata(
            title=info.get("title") or "Unknown Title",
            author=", ".join(info.get("authors") or []) or "Unknown Author",
            isbn=isbn,
            cover=self._cover(info.get("imageLinks") or {}),
            description=info.get("description") or "",
            published_date=info.get("publishedDate") or "",
            page_count=int(info.get("pageCount") or 0),
            categories=tuple(info.get("categories") or ()),
        )


class OpenLibraryProvider:
    name = "open-library"

    def __init__(self, session: requests.Session | None = None) -> None:
        self.sess = session or requests.Session()

    def fetch(self, isbn: str) -> BookMetadata | None:
        key = f"ISBN:{isbn}"
        r = self.sess.get(
            OPEN_LIBRARY_URL,
            params={"bibkeys": key, "format": "json", "jscmd": "data"},
            timeout=REQUEST_TIMEOUT,
        )
        r.raise_for_status()
        book: dict[str, Any] | None = r.json().get(key)
        if not book:
            return None

        cover = book.get("cover") or {}
        authors = ", ".join(a.get("name", "") for a in book.get("authors") or [])
        description = book.get("description") or ""
        if isinstance(description, dict):
            description = description.get("value", "")
        return BookMetadata(
            title=book.get("title") or "Unknown Title",
            author=authors or "Unknown Author",
            isbn=isbn,
            cover=cover.get("medium") or cover.get("large") or cover.get("small"),
            description=description,
            published_date=book.get("publish_date") or "",
            page_count=int(book.get("number_of_pages") or 0),
        )


class IsbnLookup:
    """Query metadata providers in order; the first hit wins."""

    def __init__(self, providers: list[MetadataProvider] | None = None) -> None:
        if providers is None:
            sess = requests.Session()
            providers = [GoogleBooksProvider(sess), OpenLibraryProvider(sess)]
        self.providers = providers

    def lookup(self, raw_isbn: str) -> BookMetadata | None:
        isbn = normalize_isbn(raw_isbn)
        for provider in self.providers:
            try:
                metadata = provider.fetch(isbn)
            except (requests.RequestException, ValueError):
                logger.warning("{} lookup for {} failed", provider.name, isbn, exc_info=True)
                continue
            if metadata is not None:
                logger.debug("{} found {} for {}", provider.name, metadata.title, isbn)
                return metadata
            logger.debug("{} has no match for {}", provider.name, isbn)
        return None
