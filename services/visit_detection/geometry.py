"""
GPS-accuracy-aware geometry for visit detection.

  accuracy gate     reject a ping whose reported accuracy exceeds the
                    configured threshold (0 disables the gate)
  effective radius  clamp(accuracy * multiplier, min, max); when accuracy is
                    unknown, fall back per missing_accuracy_radius_policy
  lookup radius     effective radius capped by the max search radius so a
                    large multiplier cannot force an unbounded spatial scan
"""

from __future__ import annotations

import math

from services.visit_detection.config import DetectionSettings

_EARTH_RADIUS_M = 6_371_000.0


def should_reject_for_accuracy(accuracy_meters: float | None, settings: DetectionSettings) -> bool:
    threshold = settings.visited_accuracy_reject_meters
    if threshold <= 0:
        return False
    return accuracy_meters is not None and accuracy_meters > threshold


def effective_radius(accuracy_meters: float | None, settings: DetectionSettings) -> float:
    """Accuracy-adjusted distance within which a ping counts as "at" a place."""
    lo = settings.visited_min_radius_meters
    hi = settings.visited_max_radius_meters
    if accuracy_meters is None:
        return hi if settings.missing_accuracy_radius_policy == "max" else lo
    return min(hi, max(lo, accuracy_meters * settings.visited_accuracy_multiplier))


def lookup_radius(accuracy_meters: float | None, settings: DetectionSettings) -> float:
    return min(effective_radius(accuracy_meters, settings), settings.visited_max_search_radius_meters)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres. Matches PostGIS geography distance to ~0.5%."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * _EARTH_RADIUS_M * math.asin(math.sqrt(a))
