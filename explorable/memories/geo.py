"""Great-circle distance helpers."""

from __future__ import annotations

import math

from explorable.memories.base import Coordinate

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius


def haversine_m(a: Coordinate, b: Coordinate) -> float:
    """Return the haversine distance in meters between two coordinates.

    Args:
        a: First point.
        b: Second point.

    Returns:
        Distance in meters.
    """
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    d_phi = math.radians(b.latitude - a.latitude)
    d_lambda = math.radians(b.longitude - a.longitude)

    h = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))
    return EARTH_RADIUS_M * c


def is_within(point: Coordinate, center: Coordinate, radius_m: float) -> bool:
    """Check whether a point is inside or on the boundary of a circle."""
    return haversine_m(point, center) <= radius_m
