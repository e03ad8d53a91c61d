"""Explicit detection state carried between proximity passes.

Nothing here lives in module globals.  The caller loads a DetectionState at
the start of an execution context (foreground session or OS background
task), passes it into every detector call, and persists it afterwards.
Foreground and background contexts may both write; ``merge`` keeps the
newest value per place key so neither context erases the other's cooldowns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from explorable.memories.base import Coordinate, to_utc

logger = logging.getLogger("explorable.memories.state")


@dataclass(frozen=True)
class HomeZone:
    """The user's home and the radius inside which alerts are suppressed.

    Attributes:
        coordinate: Home position.
        radius_m:   Suppression radius in meters.
        source:     'explicit' (set by the user) or 'inferred' (most-visited spot).
    """

    coordinate: Coordinate
    radius_m: float
    source: str = "explicit"

    def to_json(self) -> dict:
        return {
            "coordinate": self.coordinate.to_json(),
            "radius_m": self.radius_m,
            "source": self.source,
        }

    @classmethod
    def from_json(cls, data: dict) -> "HomeZone | None":
        coordinate = Coordinate.from_json(data.get("coordinate"))
        if coordinate is None:
            return None
        try:
            radius = float(data.get("radius_m"))
        except (TypeError, ValueError):
            return None
        return cls(coordinate=coordinate, radius_m=radius, source=str(data.get("source", "explicit")))


@dataclass
class DetectionState:
    """Cooldowns, rate-limit timestamp and resolved home for one user.

    Attributes:
        cooldowns:      place key → last time a notification included it.
        last_check_at:  When the last querying proximity pass ran.
        home:           Resolved home zone (not persisted here; see HomeZoneEstimator).
    """

    cooldowns: dict[str, datetime] = field(default_factory=dict)
    last_check_at: datetime | None = None
    home: HomeZone | None = None

    def is_cooling_down(self, place_key: str, now: datetime, window: timedelta) -> bool:
        notified_at = self.cooldowns.get(place_key)
        return notified_at is not None and now - notified_at < window

    def mark_notified(self, place_keys: list[str], now: datetime) -> None:
        for key in place_keys:
            self.cooldowns[key] = now

    def prune(self, now: datetime, window: timedelta) -> int:
        """Drop cooldown entries older than ``window``.  Returns the number removed."""
        expired = [k for k, t in self.cooldowns.items() if now - t >= window]
        for key in expired:
            del self.cooldowns[key]
        return len(expired)

    def merge(self, other: "DetectionState") -> None:
        """Fold another context's state into this one, newest value wins."""
        for key, ts in other.cooldowns.items():
            current = self.cooldowns.get(key)
            if current is None or ts > current:
                self.cooldowns[key] = ts
        if other.last_check_at and (
            self.last_check_at is None or other.last_check_at > self.last_check_at
        ):
            self.last_check_at = other.last_check_at

    def to_json(self) -> dict:
        return {
            "cooldowns": {k: t.isoformat() for k, t in self.cooldowns.items()},
            "last_check_at": self.last_check_at.isoformat() if self.last_check_at else None,
        }

    @classmethod
    def from_json(cls, data: dict) -> "DetectionState":
        state = cls()
        for key, value in (data.get("cooldowns") or {}).items():
            ts = to_utc(value)
            if ts is not None:
                state.cooldowns[key] = ts
        state.last_check_at = to_utc(data.get("last_check_at"))
        return state
