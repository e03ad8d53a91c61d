"""Home-zone resolution.

Proximity alerts are pointless around the user's own home, so every
detection pass first checks a suppression radius around a home coordinate.
That coordinate is either set explicitly in the profile or inferred as the
user's most-visited saved spot.

Resolution order:
    1. In-process cache (one lookup per session)
    2. Local store cache (survives process restarts for background tasks)
    3. Profile ``home_location`` / ``home_radius`` (km)
    4. Most-visited saved spot, ties broken by most recent visit
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from explorable.memories.base import (
    Coordinate,
    QueryFilter,
    RemoteKind,
    RemoteStore,
    RemoteStoreError,
    to_utc,
)
from explorable.memories.config_loader import MemoriesConfig, get_memories_config
from explorable.memories.local_store import LocalEntityStore
from explorable.memories.state import HomeZone

logger = logging.getLogger("explorable.memories.home")

_MIN_DATETIME = datetime.min.replace(tzinfo=timezone.utc)


def spot_last_visited(row: dict) -> datetime | None:
    """Most recent visit timestamp recorded on a ``locations`` row."""
    return to_utc(row.get("last_visited_at") or row.get("location_date") or row.get("created_at"))


def spot_visit_count(row: dict) -> int:
    try:
        return max(int(row.get("visit_count") or 1), 1)
    except (TypeError, ValueError):
        return 1


class HomeZoneEstimator:
    """Resolve and cache the home zone for each user."""

    def __init__(
        self,
        remote: RemoteStore,
        local: LocalEntityStore,
        config: MemoriesConfig | None = None,
    ) -> None:
        self._remote = remote
        self._local = local
        self._config = config or get_memories_config()
        self._cache: dict[str, HomeZone | None] = {}

    async def resolve_home(self, owner_id: str) -> HomeZone | None:
        """Return the user's home zone, or None if none can be determined.

        Remote failures are logged and yield None without caching, so the
        next session tries again.
        """
        if owner_id in self._cache:
            return self._cache[owner_id]

        home = await self._local.get_home(owner_id)
        if home is not None:
            logger.debug("Home for %s loaded from local cache (%s)", owner_id, home.source)
            self._cache[owner_id] = home
            return home

        try:
            home = await self._from_profile(owner_id)
            if home is None:
                home = await self._infer_from_spots(owner_id)
        except RemoteStoreError as exc:
            logger.warning("Could not resolve home for %s: %s", owner_id, exc)
            return None

        self._cache[owner_id] = home
        if home is not None:
            await self._local.set_home(owner_id, home)
            logger.info(
                "Resolved %s home for %s (radius %.0fm)", home.source, owner_id, home.radius_m
            )
        else:
            logger.info("No home location for %s", owner_id)
        return home

    async def set_home(
        self, owner_id: str, coordinate: Coordinate, radius_m: float | None = None
    ) -> HomeZone:
        """Store an explicit home in the profile and replace every cache."""
        radius = radius_m if radius_m is not None else self._config.proximity.home_radius_m
        await self._remote.update(
            RemoteKind.PROFILES,
            owner_id,
            {"home_location": coordinate.to_json(), "home_radius": radius / 1000.0},
        )
        home = HomeZone(coordinate=coordinate, radius_m=radius, source="explicit")
        self._cache[owner_id] = home
        await self._local.set_home(owner_id, home)
        logger.info("Home location updated for %s", owner_id)
        return home

    async def clear_home(self, owner_id: str) -> None:
        """Remove the explicit home; the next resolve may infer one from spots."""
        await self._remote.update(RemoteKind.PROFILES, owner_id, {"home_location": None})
        await self.invalidate(owner_id)
        logger.info("Home location cleared for %s", owner_id)

    async def invalidate(self, owner_id: str) -> None:
        self._cache.pop(owner_id, None)
        await self._local.set_home(owner_id, None)

    async def _from_profile(self, owner_id: str) -> HomeZone | None:
        rows = await self._remote.query(
            RemoteKind.PROFILES,
            QueryFilter(owner_id=owner_id, columns=["home_location", "home_radius"]),
        )
        if not rows:
            return None
        profile = rows[0]
        coordinate = Coordinate.from_json(profile.get("home_location"))
        if coordinate is None:
            return None
        return HomeZone(
            coordinate=coordinate,
            radius_m=self._radius_m(profile.get("home_radius")),
            source="explicit",
        )

    async def _infer_from_spots(self, owner_id: str) -> HomeZone | None:
        rows = await self._remote.query(
            RemoteKind.LOCATIONS,
            QueryFilter(owner_id=owner_id),
        )
        best: tuple[int, datetime] | None = None
        best_coordinate: Coordinate | None = None
        for row in rows:
            coordinate = Coordinate.from_json(row)
            if coordinate is None:
                continue
            rank = (spot_visit_count(row), spot_last_visited(row) or _MIN_DATETIME)
            if best is None or rank > best:
                best, best_coordinate = rank, coordinate
        if best_coordinate is None:
            return None
        return HomeZone(
            coordinate=best_coordinate,
            radius_m=self._config.proximity.home_radius_m,
            source="inferred",
        )

    def _radius_m(self, home_radius_km) -> float:
        try:
            km = float(home_radius_km)
        except (TypeError, ValueError):
            return self._config.proximity.home_radius_m
        return km * 1000.0 if km > 0 else self._config.proximity.home_radius_m
