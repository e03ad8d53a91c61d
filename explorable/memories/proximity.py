"""Proximity detection: "you are near a place you visited a while ago".

A pass compares the current position against every saved spot and every
activity start/end point of the user.  A place qualifies when all of these
hold:

* it lies between the dead zone and the outer threshold
* it has not been visited recently (7 days for spots, 30 for activities)
* it is outside the home zone
* no notification included it within the cooldown window
* for activity end points, the end is far from that activity's start

Passes are rate limited through ``DetectionState.last_check_at`` and skipped
entirely while the user is at home.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from explorable.memories.base import (
    Clock,
    Coordinate,
    PlaceKind,
    ProximityPlace,
    QueryFilter,
    RemoteKind,
    RemoteStore,
    SystemClock,
    to_utc,
)
from explorable.memories.config_loader import MemoriesConfig, get_memories_config
from explorable.memories.geo import haversine_m, is_within
from explorable.memories.home import spot_last_visited, spot_visit_count
from explorable.memories.state import DetectionState

logger = logging.getLogger("explorable.memories.proximity")


class ProximityDetector:
    """Find previously visited places near a coordinate.

    Stateless apart from configuration: cooldowns, the rate-limit timestamp
    and the resolved home all come in through ``DetectionState``.
    """

    def __init__(
        self,
        remote: RemoteStore,
        config: MemoriesConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._remote = remote
        self._config = config or get_memories_config()
        self._clock = clock or SystemClock()

    async def detect(
        self,
        current: Coordinate,
        owner_id: str,
        state: DetectionState,
        outer_threshold_m: float | None = None,
    ) -> list[ProximityPlace]:
        """Return up to ``max_results`` nearby places, closest first.

        Args:
            current:           Current position.
            owner_id:          User whose places are checked.
            state:             Detection state; ``last_check_at`` is updated
                               once the remote queries succeed.
            outer_threshold_m: Per-user override of the outer threshold.

        Raises:
            RemoteStoreError: If the remote queries fail.
        """
        cfg = self._config.proximity
        now = self._clock.now()

        home = state.home
        if home is not None and is_within(current, home.coordinate, home.radius_m):
            logger.debug("Skipping proximity pass for %s: at home", owner_id)
            return []

        if state.last_check_at is not None and now - state.last_check_at < cfg.check_interval:
            logger.debug(
                "Skipping proximity pass for %s: last check %s", owner_id, state.last_check_at
            )
            return []

        outer = outer_threshold_m if outer_threshold_m else cfg.outer_threshold_m

        spots = await self._remote.query(RemoteKind.LOCATIONS, QueryFilter(owner_id=owner_id))
        activities = await self._remote.query(
            RemoteKind.ACTIVITIES,
            QueryFilter(
                owner_id=owner_id,
                columns=["id", "name", "type", "route", "start_time", "created_at"],
                not_null=["route"],
            ),
        )
        # A failed query leaves last_check_at untouched.
        state.last_check_at = now

        candidates = list(self._spot_candidates(spots, current))
        candidates.extend(self._activity_candidates(activities, current))

        nearby: list[ProximityPlace] = []
        for place in candidates:
            if not (cfg.dead_zone_m < place.distance_m <= outer):
                continue
            min_age = (
                cfg.spot_min_days_since_visit
                if place.kind is PlaceKind.SPOT
                else cfg.activity_min_days_since_visit
            )
            if now - place.last_visited < timedelta(days=min_age):
                continue
            if home is not None and is_within(place.coordinate, home.coordinate, home.radius_m):
                continue
            if state.is_cooling_down(place.place_key, now, cfg.cooldown):
                continue
            nearby.append(place)

        nearby.sort(key=lambda p: p.distance_m)
        result = nearby[: cfg.max_results]
        logger.info(
            "Proximity pass for %s: %d candidates, %d qualifying, returning %d",
            owner_id, len(candidates), len(nearby), len(result),
        )
        return result

    def _spot_candidates(self, rows: list[dict], current: Coordinate):
        for row in rows:
            coordinate = Coordinate.from_json(row)
            last_visited = spot_last_visited(row)
            if coordinate is None or last_visited is None or row.get("id") is None:
                logger.warning("Skipping malformed location row %r", row.get("id"))
                continue
            yield ProximityPlace(
                id=str(row["id"]),
                kind=PlaceKind.SPOT,
                name=row.get("name") or "a saved spot",
                coordinate=coordinate,
                last_visited=last_visited,
                visit_count=spot_visit_count(row),
                distance_m=haversine_m(current, coordinate),
            )

    def _activity_candidates(self, rows: list[dict], current: Coordinate):
        min_separation = self._config.proximity.activity_end_min_separation_m
        for row in rows:
            route = row.get("route") or []
            start = Coordinate.from_json(route[0]) if route else None
            end = Coordinate.from_json(route[-1]) if route else None
            last_visited = to_utc(row.get("start_time") or row.get("created_at"))
            if start is None or end is None or last_visited is None or row.get("id") is None:
                logger.warning("Skipping activity %r without usable route", row.get("id"))
                continue
            label = row.get("name") or f"{row.get('type') or 'your'} activity"
            yield ProximityPlace(
                id=str(row["id"]),
                kind=PlaceKind.ACTIVITY_START,
                name=f"Start of {label}",
                coordinate=start,
                last_visited=last_visited,
                visit_count=1,
                distance_m=haversine_m(current, start),
            )
            if haversine_m(start, end) > min_separation:
                yield ProximityPlace(
                    id=str(row["id"]),
                    kind=PlaceKind.ACTIVITY_END,
                    name=f"End of {label}",
                    coordinate=end,
                    last_visited=last_visited,
                    visit_count=1,
                    distance_m=haversine_m(current, end),
                )

