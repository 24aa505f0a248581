"""
Nearest-place lookup, scoped to the calling user's trips.

Contract:
    await locator.find_nearest_place(user_id, location, max_radius_meters, uow=None)
        -> NearestPlace | None

Returns the single closest place within ``max_radius_meters`` (great-circle
metres), or None. Only places reachable through Place -> Region -> Trip
owned by ``user_id`` are considered. Ties break on place id so repeated
lookups are deterministic.

``uow`` is the caller's open unit of work, if any. Locators that share the
visit store's database run on its connection rather than a fresh one.

PostgisPlaceLocator
    asyncpg + PostGIS geography distance. ST_DWithin prunes via the GiST
    index on the place point, ST_Distance orders the survivors. Inside a
    PostgresUnitOfWork the query runs on ``uow.conn`` and never takes a
    second connection from the pool.

InMemoryPlaceLocator
    Haversine scan over a registered catalog. Used by tests and by
    single-process deployments that load the catalog up front.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import asyncpg

from services.visit_detection.errors import LocatorUnavailableError
from services.visit_detection.geometry import haversine_m
from services.visit_detection.models import Coordinate, NearestPlace

logger = logging.getLogger(__name__)


class NearestPlaceLocator(Protocol):
    async def find_nearest_place(
        self,
        user_id: str,
        location: Coordinate,
        max_radius_meters: float,
        uow: Any = None,
    ) -> NearestPlace | None: ...


# ---------------------------------------------------------------------------
# PostGIS
# ---------------------------------------------------------------------------

_NEAREST_PLACE_SQL = """
    SELECT
        p.id                AS "placeId",
        p.name              AS "placeName",
        p.latitude          AS latitude,
        p.longitude         AS longitude,
        p."iconName"        AS "iconName",
        p."markerColor"     AS "markerColor",
        p.notes             AS notes,
        r.name              AS "regionName",
        t.id                AS "tripId",
        t.name              AS "tripName",
        ST_Distance(
            ST_SetSRID(ST_MakePoint(p.longitude, p.latitude), 4326)::geography,
            ST_SetSRID(ST_MakePoint($2, $3), 4326)::geography
        ) AS distance
    FROM "Place" p
    JOIN "Region" r ON p."regionId" = r.id
    JOIN "Trip" t ON r."tripId" = t.id
    WHERE t."userId" = $1
      AND p.latitude IS NOT NULL
      AND p.longitude IS NOT NULL
      AND ST_DWithin(
          ST_SetSRID(ST_MakePoint(p.longitude, p.latitude), 4326)::geography,
          ST_SetSRID(ST_MakePoint($2, $3), 4326)::geography,
          $4
      )
    ORDER BY distance ASC, p.id ASC
    LIMIT 1
"""


class PostgisPlaceLocator:
    """
    Nearest-place lookup against the trip catalog tables.

    Injected dependencies for testability:
      pool: asyncpg pool (``acquire()`` as an async context manager), used
            only for lookups made outside a unit of work
    """

    def __init__(self, pool: Any = None) -> None:
        self._pool = pool

    async def find_nearest_place(
        self,
        user_id: str,
        location: Coordinate,
        max_radius_meters: float,
        uow: Any = None,
    ) -> NearestPlace | None:
        args = (user_id, location.longitude, location.latitude, max_radius_meters)
        conn = getattr(uow, "conn", None)
        try:
            if conn is not None:
                row = await conn.fetchrow(_NEAREST_PLACE_SQL, *args)
            elif self._pool is not None:
                async with self._pool.acquire() as pooled:
                    row = await pooled.fetchrow(_NEAREST_PLACE_SQL, *args)
            else:
                raise LocatorUnavailableError("no database connection for nearest place lookup")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.warning(
                "place locator unavailable: user=%s radius=%.1f error=%s",
                user_id, max_radius_meters, exc,
            )
            raise LocatorUnavailableError(f"nearest place lookup failed: {exc}") from exc

        if row is None:
            return None

        return NearestPlace(
            place_id=row["placeId"],
            distance_meters=float(row["distance"]),
            trip_id=row["tripId"],
            trip_name=row["tripName"] or "",
            region_name=row["regionName"] or "",
            place_name=row["placeName"] or "",
            latitude=row["latitude"],
            longitude=row["longitude"],
            icon_name=row["iconName"],
            marker_color=row["markerColor"],
            notes_html=row["notes"],
        )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CatalogPlace:
    """One place of a user's trip, flattened with its region and trip names."""

    place_id: str
    user_id: str
    latitude: float
    longitude: float
    trip_id: str | None = None
    trip_name: str = ""
    region_name: str = ""
    place_name: str = ""
    icon_name: str | None = None
    marker_color: str | None = None
    notes_html: str | None = None


class InMemoryPlaceLocator:
    def __init__(self, places: list[CatalogPlace] | None = None) -> None:
        self._places: dict[str, CatalogPlace] = {}
        for place in places or []:
            self.add(place)

    def add(self, place: CatalogPlace) -> None:
        self._places[place.place_id] = place

    def remove(self, place_id: str) -> None:
        self._places.pop(place_id, None)

    async def find_nearest_place(
        self,
        user_id: str,
        location: Coordinate,
        max_radius_meters: float,
        uow: Any = None,
    ) -> NearestPlace | None:
        best: tuple[float, str] | None = None
        best_place: CatalogPlace | None = None

        for place in self._places.values():
            if place.user_id != user_id:
                continue
            distance = haversine_m(location.latitude, location.longitude, place.latitude, place.longitude)
            if distance > max_radius_meters:
                continue
            key = (distance, place.place_id)
            if best is None or key < best:
                best, best_place = key, place

        if best_place is None:
            return None

        return NearestPlace(
            place_id=best_place.place_id,
            distance_meters=best[0],
            trip_id=best_place.trip_id,
            trip_name=best_place.trip_name,
            region_name=best_place.region_name,
            place_name=best_place.place_name,
            latitude=best_place.latitude,
            longitude=best_place.longitude,
            icon_name=best_place.icon_name,
            marker_color=best_place.marker_color,
            notes_html=best_place.notes_html,
        )
