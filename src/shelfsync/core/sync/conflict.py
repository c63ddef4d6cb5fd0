"""Conflict resolution between a locally queued record and its server version."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from loguru import logger

from shelfsync.protocols import Record

# Fields where the longer value is kept on a timestamp tie.
_LONGER_WINS_FIELDS = ("title", "name", "description")


class Resolution(StrEnum):
    SERVER = "server"
    LOCAL = "local"
    MERGE = "merge"


@dataclass(frozen=True)
class ConflictResolution:
    resolution: Resolution
    record: Record


def modified_at(record: Record) -> int:
    """Modification time of a record: updatedAt, falling back to createdAt."""
    value: Any = record.get("updatedAt") or record.get("createdAt") or 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def merge_records(local: Record, server: Record, *, now: int) -> Record:
    """Merge two versions with identical timestamps.

    Starts from the server record. For name, title and description the
    longer string wins, as a proxy for the more complete value. The merged
    record is stamped with ``now``.
    """
    merged = dict(server)
    for key in _LONGER_WINS_FIELDS:
        local_value = local.get(key)
        server_value = server.get(key) or ""
        if isinstance(local_value, str) and len(local_value) > len(str(server_value)):
            merged[key] = local_value
    merged["updatedAt"] = now
    return merged


def resolve_conflict(local: Record, server: Record, *, now: int) -> ConflictResolution:
    """Last-writer-wins on ``updatedAt``, field merge on an exact tie."""
    local_time = modified_at(local)
    server_time = modified_at(server)

    if server_time > local_time:
        logger.debug("Conflict on {}: server version is newer", server.get("id"))
        return ConflictResolution(Resolution.SERVER, dict(server))
    if local_time > server_time:
        logger.debug("Conflict on {}: local version is newer", server.get("id"))
        return ConflictResolution(Resolution.LOCAL, dict(local))

    logger.debug("Conflict on {}: equal timestamps, merging", server.get("id"))
    return ConflictResolution(Resolution.MERGE, merge_records(local, server, now=now))
