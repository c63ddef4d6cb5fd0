"""Configuration constants for shelfsync."""

import os
from pathlib import Path

# Directory holding the local storage database. First directory which exists is used.
DATA_DIRECTORIES: list[Path] = [
    Path("~/.local/share/shelfsync").expanduser(),
    Path("~/.shelfsync").expanduser(),
    Path("~/.config/shelfsync").expanduser(),
]

# Base URL of the remote document store. Empty means local-only mode.
REMOTE_URL: str = os.environ.get("SHELFSYNC_REMOTE_URL", "")

GOOGLE_BOOKS_API_KEY: str = os.environ.get("GOOGLE_BOOKS_API_KEY", "")

# Local storage keys. Kept compatible with snapshots written by the web front-end.
OFFLINE_QUEUE_KEY = "offlineOperations"
BOOKS_SNAPSHOT_KEY = "myBookTrackerBooks"
CATEGORIES_SNAPSHOT_KEY = "myBookTrackerCategories"

BOOKS = "books"
CATEGORIES = "categories"
COLLECTIONS = (BOOKS, CATEGORIES)

UNCATEGORIZED_ID = "uncategorized"
MAX_CATEGORY_LEVEL = 4
TEMP_ID_PREFIX = "local-"

# Reconnect backoff: delay = min(RETRY_BASE_MS * 2**retry_count, RETRY_CAP_MS)
RETRY_BASE_MS = 1000
RETRY_CAP_MS = 30000
MAX_RETRIES = 8

# Seconds between periodic resyncs while connected.
RESYNC_INTERVAL = 60

# Seconds between polls of the remote store by subscriptions.
POLL_INTERVAL = 5

REQUEST_TIMEOUT = 10

# Liveness probe reads this document; it does not need to exist.
PROBE_COLLECTION = "test"
PROBE_DOC_ID = "connection"


def resolve_data_directory() -> Path:
    """Return the data directory: $SHELFSYNC_DATA_DIR, else first existing candidate."""
    override = os.environ.get("SHELFSYNC_DATA_DIR")
    if override:
        return Path(override).expanduser()
    for candidate in DATA_DIRECTORIES:
        if candidate.is_dir():
            return candidate
    return DATA_DIRECTORIES[0]
