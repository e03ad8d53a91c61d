"""Deduplication logic for offline record reconciliation.

Before a record has a server id, "the same real-world record" is recognised
by a composite key built from a few fields of the record.

Dedup keys:
    - activities:   (name, start_time as epoch millis)
    - locations:    (latitude, longitude) formatted to 6 decimal places
    - achievements: (type, name)

Server ids are canonical dashed UUIDs.  Client-generated ids never match
that format, which is how an already-synced local record is recognised
without a network round trip.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

logger = logging.getLogger("explorable.memories.sync.dedup")

DedupKey = tuple

_SERVER_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_server_id(record_id: str | None) -> bool:
    """Return True if ``record_id`` has the server-assigned UUID format."""
    return bool(record_id) and _SERVER_ID_RE.match(record_id) is not None


def epoch_millis(value: datetime) -> int:
    """Exact milliseconds since the Unix epoch (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(milliseconds=1)


def activity_key(name: str, start_time: datetime) -> DedupKey:
    """Dedup key for an activity: ``(name, start millis)``."""
    return ("activity", name, epoch_millis(start_time))


def spot_key(latitude: float, longitude: float) -> DedupKey:
    """Dedup key for a saved spot: coordinates to 6 decimal places.

    Formatting rather than ``round()`` keeps the key stable for values that
    print identically but differ in the last binary digit.
    """
    return ("spot", f"{float(latitude):.6f}", f"{float(longitude):.6f}")


def achievement_key(achievement_type: str, name: str) -> DedupKey:
    """Dedup key for an achievement: ``(type, name)``."""
    return ("achievement", achievement_type, name)


class RemoteKeyIndex:
    """DedupKey → remote id map for one kind during one reconciliation pass.

    Seeded from the remote rows, then extended with every successful insert
    so two local records with the same key never both get pushed.

    Usage::

        index = RemoteKeyIndex()
        index.add(key, remote_id)
        if (existing := index.get(key)) is not None:
            record.rebind(existing)
    """

    def __init__(self) -> None:
        self._ids: dict[DedupKey, str] = {}

    def add(self, key: DedupKey, remote_id: str) -> None:
        # First writer wins; a later duplicate row never replaces the original.
        self._ids.setdefault(key, remote_id)

    def get(self, key: DedupKey) -> str | None:
        return self._ids.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._ids

    def __len__(self) -> int:
        return len(self._ids)
