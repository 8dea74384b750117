"""Great-circle distance and radius filtering."""

from __future__ import annotations

import math
from typing import Any, Iterable, List, Mapping, Tuple, TypeVar

EARTH_RADIUS_MILES = 3958.8

T = TypeVar("T")


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
	"""Return the great-circle distance between two points in miles."""

	if lat1 == lat2 and lng1 == lng2:
		return 0.0
	phi1, phi2 = math.radians(lat1), math.radians(lat2)
	dphi = math.radians(lat2 - lat1)
	dlambda = math.radians(lng2 - lng1)
	a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
	# Rounding can push a a hair outside [0, 1] for antipodal points.
	a = min(1.0, max(0.0, a))
	return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def coordinates_of(entity: Any) -> Tuple[float, float]:
	if isinstance(entity, Mapping):
		return float(entity["latitude"]), float(entity["longitude"])
	return float(entity.latitude), float(entity.longitude)


def within_radius(latitude: float, longitude: float, radius_miles: float, candidates: Iterable[T]) -> List[T]:
	"""Keep candidates whose distance from the given point is at most ``radius_miles``.

	The comparison is inclusive and input order is preserved.
	"""

	kept: List[T] = []
	for candidate in candidates:
		lat, lng = coordinates_of(candidate)
		if haversine_miles(latitude, longitude, lat, lng) <= radius_miles:
			kept.append(candidate)
	return kept
