"""Capability interfaces and core data types for the memories engine.

The reconciliation engine, detectors and scheduler never talk to the mobile
platform or the backend directly.  Everything external is reached through the
abstract capabilities below; the host application (or a test) supplies the
concrete implementations.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger("explorable.memories")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RemoteStoreError(RuntimeError):
    """A remote read or write failed (network, timeout, rejected write)."""


class DispatchError(RuntimeError):
    """The durable in-app notification row could not be written."""


# ---------------------------------------------------------------------------
# Shared value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 point in decimal degrees."""

    latitude: float
    longitude: float

    def to_json(self) -> dict:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_json(cls, data: Any) -> "Coordinate | None":
        """Build a Coordinate from ``{"latitude", "longitude"}``.

        Returns None when the value is missing or not numeric.
        """
        if not isinstance(data, dict):
            return None
        lat = data.get("latitude")
        lon = data.get("longitude")
        if lat is None or lon is None:
            return None
        try:
            return cls(float(lat), float(lon))
        except (TypeError, ValueError):
            return None


class RemoteKind(str, Enum):
    """Tables of the remote store the core reads or writes."""

    ACTIVITIES = "activities"
    LOCATIONS = "locations"
    ACHIEVEMENTS = "achievements"
    TRIPS = "trips"
    NOTIFICATIONS = "notifications"
    PROFILES = "profiles"


@dataclass
class QueryFilter:
    """Narrow filter language understood by every RemoteStore.

    Attributes:
        owner_id:  Rows must belong to this user (``user_id`` column, or ``id``
                   for profiles).
        columns:   Columns to return (None = all).
        equals:    column → value equality conditions.
        gte:       column → inclusive lower bound.
        lte:       column → inclusive upper bound.
        not_null:  Columns that must be non-null.
    """

    owner_id: str
    columns: list[str] | None = None
    equals: dict[str, Any] = field(default_factory=dict)
    gte: dict[str, Any] = field(default_factory=dict)
    lte: dict[str, Any] = field(default_factory=dict)
    not_null: list[str] = field(default_factory=list)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: Any) -> datetime | None:
    """Coerce an ISO string or datetime to an aware UTC datetime.

    Naive datetimes are assumed to be UTC.  Returns None for empty or
    unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse datetime string: %r", value)
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return utc_now()


class RemoteStore(ABC):
    """Row-level access to the hosted backend."""

    @abstractmethod
    async def query(self, kind: RemoteKind, flt: QueryFilter) -> list[dict]:
        """Return matching rows as plain dicts.

        Raises:
            RemoteStoreError: On any transport or database failure.
        """

    @abstractmethod
    async def insert(self, kind: RemoteKind, record: dict) -> str | None:
        """Insert one row and return its server-assigned id (if known).

        Raises:
            RemoteStoreError: On any transport or database failure.
        """

    @abstractmethod
    async def update(self, kind: RemoteKind, row_id: str, patch: dict) -> None:
        """Apply a partial update to one row.

        Raises:
            RemoteStoreError: On any transport or database failure.
        """


class LocalStore(ABC):
    """String-keyed persistent blob storage on the device."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the stored blob or None if the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store a blob, replacing any previous value."""

    @abstractmethod
    async def remove(self, key: str) -> None:
        """Delete a key; a missing key is not an error."""


class PushChannel(ABC):
    @abstractmethod
    async def send(
        self,
        token: str,
        title: str,
        body: str,
        payload: dict,
        category: str,
    ) -> bool:
        """Deliver a push message.  Returns False when delivery was rejected."""


class Permissions(ABC):
    @abstractmethod
    async def request_foreground_location(self) -> bool:
        """Ask for "while in use" location access.  True when granted."""

    @abstractmethod
    async def request_background_location(self) -> bool:
        """Ask for "always" location access.  True when granted."""


class LocationProvider(ABC):
    @abstractmethod
    async def current_position(self) -> Coordinate | None:
        """Return a fresh position fix, or None if none is available."""


LocationTaskHandler = Callable[[list[Coordinate]], Awaitable[None]]
PeriodicTaskHandler = Callable[[], Awaitable[None]]


class BackgroundTasks(ABC):
    """OS-level background task registration (location updates, fetch)."""

    @abstractmethod
    async def register_location_task(
        self,
        name: str,
        handler: LocationTaskHandler,
        *,
        time_interval_s: int,
        distance_interval_m: int,
    ) -> None:
        """Register a task the OS invokes with new location samples."""

    @abstractmethod
    async def register_periodic_task(
        self, name: str, handler: PeriodicTaskHandler, *, interval_s: int
    ) -> None:
        """Register a task the OS invokes roughly every ``interval_s``."""

    @abstractmethod
    async def unregister(self, name: str) -> None:
        """Remove a previously registered task; unknown names are ignored."""


# ---------------------------------------------------------------------------
# Detector output
# ---------------------------------------------------------------------------


class PlaceKind(str, Enum):
    SPOT = "spot"
    ACTIVITY_START = "activity_start"
    ACTIVITY_END = "activity_end"


@dataclass
class ProximityPlace:
    """A previously visited place near the current position.

    Attributes:
        id:           Remote id of the spot or activity.
        kind:         Where the coordinate came from.
        name:         Display name.
        coordinate:   Position of the place.
        last_visited: When the user was last there.
        visit_count:  Number of recorded visits (1 for activities).
        distance_m:   Distance from the current position.
    """

    id: str
    kind: PlaceKind
    name: str
    coordinate: Coordinate
    last_visited: datetime
    visit_count: int
    distance_m: float

    @property
    def place_key(self) -> str:
        return f"{self.kind.value}-{self.id}"


class MemoryKind(str, Enum):
    ACTIVITY = "activity"
    SPOT = "spot"
    TRIP = "trip"


@dataclass
class MemoryItem:
    """Something that happened on this calendar day in a past year."""

    id: str
    kind: MemoryKind
    title: str
    occurred_at: datetime
    years_ago: int
    description: str | None = None
    coordinate: Coordinate | None = None
