"""Pydantic models for records authored on the device while offline.

The app stores each collection as a JSON array under its own local-storage
key.  Every kind is a separate model with its own dedup key and its own
remote row shape; the original JSON dict is kept alongside the parsed model
so rebinding an id rewrites only that field and never drops app-specific keys.
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import Field, PrivateAttr

from explorable.memories.base import RemoteKind, to_utc
from explorable.memories.sync.dedup import (
    DedupKey,
    achievement_key,
    activity_key,
    is_server_id,
    spot_key,
)
from explorable.models.base import ExplorableBase


class RecordKind(str, Enum):
    ACTIVITY = "activities"
    SPOT = "locations"
    ACHIEVEMENT = "achievements"


class LatLng(ExplorableBase):
    latitude: float
    longitude: float


class RoutePoint(LatLng):
    altitude: float | None = None
    timestamp: datetime | None = None


class LocalRecord(ExplorableBase):
    """Common behaviour for every locally authored record."""

    KIND: ClassVar[RecordKind]
    LOCAL_KEY: ClassVar[str]
    REMOTE_KIND: ClassVar[RemoteKind]
    REMOTE_KEY_COLUMNS: ClassVar[list[str]]

    id: str | None = None

    _raw: dict = PrivateAttr(default_factory=dict)

    @classmethod
    def from_local(cls, raw: dict) -> "LocalRecord":
        """Parse one element of the local JSON array.

        Raises:
            ValidationError: If required fields are missing or malformed.
        """
        record = cls.model_validate(raw)
        record._raw = raw
        return record

    @property
    def raw(self) -> dict:
        return self._raw

    @property
    def is_synced(self) -> bool:
        return is_server_id(self.id)

    def rebind(self, server_id: str) -> None:
        """Replace the local id with the server id, in the model and the raw JSON."""
        self.id = server_id
        self._raw["id"] = server_id

    @abstractmethod
    def occurred_at(self) -> datetime | None:
        """When the record happened, used against the sync watermark."""

    @abstractmethod
    def dedup_key(self) -> DedupKey:
        """Natural key matched against remote rows of the same kind."""

    @classmethod
    @abstractmethod
    def remote_dedup_key(cls, row: dict) -> DedupKey | None:
        """Dedup key of a remote row, or None if the row lacks the fields."""

    @abstractmethod
    def to_remote_row(self, owner_id: str, occurred_at: datetime) -> dict[str, Any]:
        """Row to insert remotely for ``owner_id``."""


class LocalActivity(LocalRecord):
    KIND = RecordKind.ACTIVITY
    LOCAL_KEY = "activities"
    REMOTE_KIND = RemoteKind.ACTIVITIES
    REMOTE_KEY_COLUMNS = ["id", "name", "start_time"]

    name: str
    type: str | None = None
    start_time: datetime
    end_time: datetime | None = None
    duration: float | None = None
    distance: float | None = None
    average_speed: float | None = None
    max_speed: float | None = None
    elevation_gain: float | None = None
    route: list[RoutePoint] | None = None
    notes: str | None = None
    photos: list[str] = Field(default_factory=list)
    is_manual_entry: bool | None = None

    def occurred_at(self) -> datetime | None:
        return to_utc(self.start_time)

    def dedup_key(self) -> DedupKey:
        return activity_key(self.name, self.start_time)

    @classmethod
    def remote_dedup_key(cls, row: dict) -> DedupKey | None:
        start = to_utc(row.get("start_time"))
        if row.get("name") is None or start is None:
            return None
        return activity_key(row["name"], start)

    def to_remote_row(self, owner_id: str, occurred_at: datetime) -> dict[str, Any]:
        return {
            "user_id": owner_id,
            "name": self.name,
            "type": self.type,
            "start_time": to_utc(self.start_time),
            "end_time": to_utc(self.end_time),
            "duration": self.duration,
            "distance": self.distance,
            "average_speed": self.average_speed,
            "max_speed": self.max_speed,
            "elevation_gain": self.elevation_gain,
            "route": [p.model_dump(mode="json", exclude_none=True) for p in self.route or []],
            "notes": self.notes,
            "photos": self.photos,
            "is_manual_entry": bool(self.is_manual_entry),
        }


class LocalSpot(LocalRecord):
    KIND = RecordKind.SPOT
    LOCAL_KEY = "savedSpots"
    REMOTE_KIND = RemoteKind.LOCATIONS
    REMOTE_KEY_COLUMNS = ["id", "latitude", "longitude"]

    name: str
    location: LatLng
    description: str | None = None
    category: str | None = None
    rating: float | None = None
    photos: list[str] = Field(default_factory=list)
    timestamp: datetime | None = None

    def occurred_at(self) -> datetime | None:
        return to_utc(self.timestamp)

    def dedup_key(self) -> DedupKey:
        return spot_key(self.location.latitude, self.location.longitude)

    @classmethod
    def remote_dedup_key(cls, row: dict) -> DedupKey | None:
        if row.get("latitude") is None or row.get("longitude") is None:
            return None
        return spot_key(row["latitude"], row["longitude"])

    def to_remote_row(self, owner_id: str, occurred_at: datetime) -> dict[str, Any]:
        return {
            "user_id": owner_id,
            "name": self.name,
            "latitude": self.location.latitude,
            "longitude": self.location.longitude,
            "description": self.description,
            "category": self.category,
            "rating": self.rating,
            "photos": self.photos,
            "created_at": occurred_at,
        }


class LocalAchievement(LocalRecord):
    KIND = RecordKind.ACHIEVEMENT
    LOCAL_KEY = "achievements"
    REMOTE_KIND = RemoteKind.ACHIEVEMENTS
    REMOTE_KEY_COLUMNS = ["id", "type", "name"]

    type: str
    name: str
    description: str | None = None
    icon: str | None = None
    earned_at: datetime | None = None
    data: dict[str, Any] | None = None

    def occurred_at(self) -> datetime | None:
        return to_utc(self.earned_at)

    def dedup_key(self) -> DedupKey:
        return achievement_key(self.type, self.name)

    @classmethod
    def remote_dedup_key(cls, row: dict) -> DedupKey | None:
        if row.get("type") is None or row.get("name") is None:
            return None
        return achievement_key(row["type"], row["name"])

    def to_remote_row(self, owner_id: str, occurred_at: datetime) -> dict[str, Any]:
        return {
            "user_id": owner_id,
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "earned_at": occurred_at,
            "data": self.data,
        }


# Reconciliation order
RECORD_MODELS: list[type[LocalRecord]] = [LocalActivity, LocalSpot, LocalAchievement]

__all__ = [
    "LocalAchievement",
    "LocalActivity",
    "LocalRecord",
    "LocalSpot",
    "RECORD_MODELS",
    "RecordKind",
]
