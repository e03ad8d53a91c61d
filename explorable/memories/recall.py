"""Recall ("on this day") detection.

For each of the last ``max_years`` years, collect the activities, saved
spots and trips dated on today's month/day, tagged with how many years ago
they happened.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone

from explorable.memories.base import (
    Coordinate,
    MemoryItem,
    MemoryKind,
    QueryFilter,
    RemoteKind,
    RemoteStore,
    RemoteStoreError,
    to_utc,
)
from explorable.memories.config_loader import MemoriesConfig, get_memories_config

logger = logging.getLogger("explorable.memories.recall")

# kind → (table, date column); rows without the date never match the day window
_SOURCES: dict[MemoryKind, tuple[RemoteKind, str]] = {
    MemoryKind.ACTIVITY: (RemoteKind.ACTIVITIES, "start_time"),
    MemoryKind.SPOT: (RemoteKind.LOCATIONS, "location_date"),
    MemoryKind.TRIP: (RemoteKind.TRIPS, "start_date"),
}


def same_day_years_ago(today: date, years_ago: int) -> date:
    """Today's month/day ``years_ago`` years back; 29 Feb falls back to 28 Feb."""
    year = today.year - years_ago
    try:
        return today.replace(year=year)
    except ValueError:
        return date(year, 2, 28)


def day_window(day: date) -> tuple[datetime, datetime]:
    """Inclusive UTC bounds of one calendar day."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


def _describe_activity(row: dict) -> str | None:
    distance = row.get("distance")
    duration = row.get("duration")
    if distance is None or duration is None:
        return None
    return f"{distance}km in {duration}"


def _memory_from_row(kind: MemoryKind, row: dict, years_ago: int, column: str):
    occurred_at = to_utc(row.get(column))
    if occurred_at is None or row.get("id") is None:
        logger.warning("Skipping %s %r without a date", kind.value, row.get("id"))
        return None

    if kind is MemoryKind.ACTIVITY:
        title = row.get("name") or f"{row.get('type') or 'an'} activity"
        route = row.get("route") or []
        coordinate = Coordinate.from_json(route[0]) if route else None
        description = _describe_activity(row)
    elif kind is MemoryKind.SPOT:
        title = row.get("name") or "a saved spot"
        coordinate = Coordinate.from_json(row)
        description = row.get("description")
    else:
        title = row.get("name") or "a trip"
        coordinate = None
        description = row.get("description")

    return MemoryItem(
        id=str(row["id"]),
        kind=kind,
        title=title,
        occurred_at=occurred_at,
        years_ago=years_ago,
        description=description,
        coordinate=coordinate,
    )


class RecallDetector:
    """Find records dated on this calendar day in previous years."""

    def __init__(self, remote: RemoteStore, config: MemoriesConfig | None = None) -> None:
        self._remote = remote
        self._config = config or get_memories_config()

    async def detect_recall(self, owner_id: str, today: date) -> dict[int, list[MemoryItem]]:
        """Return memories grouped by years-ago (only non-empty groups).

        A failed query for one year is logged and the remaining years still
        run; a memory is better late than never.
        """
        groups: dict[int, list[MemoryItem]] = {}
        for years_ago in range(1, self._config.recall.max_years + 1):
            day = same_day_years_ago(today, years_ago)
            try:
                items = await self._collect_day(owner_id, day, years_ago)
            except RemoteStoreError as exc:
                logger.warning(
                    "Error fetching memories from %d year(s) ago for %s: %s",
                    years_ago, owner_id, exc,
                )
                continue
            if items:
                groups[years_ago] = items

        logger.info(
            "Recall for %s on %s: %d item(s) across %d year(s)",
            owner_id, today, sum(len(v) for v in groups.values()), len(groups),
        )
        return groups

    async def _collect_day(self, owner_id: str, day: date, years_ago: int) -> list[MemoryItem]:
        start, end = day_window(day)
        items: list[MemoryItem] = []
        for kind, (table, column) in _SOURCES.items():
            rows = await self._remote.query(
                table,
                QueryFilter(owner_id=owner_id, gte={column: start}, lte={column: end}),
            )
            for row in rows:
                item = _memory_from_row(kind, row, years_ago, column)
                if item is not None:
                    items.append(item)
        return items
