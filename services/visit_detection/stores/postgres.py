"""
asyncpg storage backend.

Tables (see db/schema.sql):
  place_visit_candidates  PK ("userId", "placeId")
  place_visit_events      PK id; partial unique index allows at most one
                          open visit per ("userId", "placeId")

Each unit of work acquires a pool connection, opens a transaction and takes
a transaction-scoped advisory lock keyed on the user id:

    SELECT pg_advisory_xact_lock(hashtext($1))

so concurrent pings for one user (possibly on different API replicas) queue
behind each other while other users are unaffected. The lock is released
automatically at COMMIT / ROLLBACK.

Driver errors (asyncpg.PostgresError, InterfaceError, OSError) are re-raised
as StoreUnavailableError. Retries belong to the ingestion caller.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg

from services.visit_detection.errors import StoreUnavailableError
from services.visit_detection.models import PlaceVisitCandidate, PlaceVisitEvent

logger = logging.getLogger(__name__)

_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

# ---------------------------------------------------------------------------
# SQL (asyncpg-style $N placeholders)
# ---------------------------------------------------------------------------

_SQL_LOCK_USER = "SELECT pg_advisory_xact_lock(hashtext($1))"

_CANDIDATE_COLUMNS = '"userId", "placeId", "firstHitUtc", "lastHitUtc", "consecutiveHits"'

_SQL_GET_CANDIDATE = f"""
    SELECT {_CANDIDATE_COLUMNS}
    FROM place_visit_candidates
    WHERE "userId" = $1 AND "placeId" = $2
"""

_SQL_UPSERT_CANDIDATE = f"""
    INSERT INTO place_visit_candidates ({_CANDIDATE_COLUMNS})
    VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT ("userId", "placeId") DO UPDATE SET
        "firstHitUtc" = EXCLUDED."firstHitUtc",
        "lastHitUtc" = EXCLUDED."lastHitUtc",
        "consecutiveHits" = EXCLUDED."consecutiveHits"
"""

_SQL_DELETE_CANDIDATE = """
    DELETE FROM place_visit_candidates
    WHERE "userId" = $1 AND "placeId" = $2
"""

_SQL_STALE_CANDIDATES = f"""
    SELECT {_CANDIDATE_COLUMNS}
    FROM place_visit_candidates
    WHERE "userId" = $1 AND "lastHitUtc" < $2
"""

_VISIT_COLUMNS = """
    id, "userId", "placeId",
    "arrivedAtUtc", "lastSeenAtUtc", "endedAtUtc",
    "tripIdSnapshot", "tripNameSnapshot", "regionNameSnapshot", "placeNameSnapshot",
    "placeLatitudeSnapshot", "placeLongitudeSnapshot",
    "iconNameSnapshot", "markerColorSnapshot", "notesHtml"
"""

_SQL_OPEN_VISITS_FOR_PLACE = f"""
    SELECT {_VISIT_COLUMNS}
    FROM place_visit_events
    WHERE "userId" = $1 AND "placeId" = $2 AND "endedAtUtc" IS NULL
"""

_SQL_OPEN_VISITS = f"""
    SELECT {_VISIT_COLUMNS}
    FROM place_visit_events
    WHERE "userId" = $1 AND "endedAtUtc" IS NULL
"""

_SQL_STALE_OPEN_VISITS = f"""
    SELECT {_VISIT_COLUMNS}
    FROM place_visit_events
    WHERE "userId" = $1 AND "endedAtUtc" IS NULL AND "lastSeenAtUtc" < $2
"""

_SQL_UPSERT_VISIT = f"""
    INSERT INTO place_visit_events ({_VISIT_COLUMNS})
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
    ON CONFLICT (id) DO UPDATE SET
        "placeId" = EXCLUDED."placeId",
        "lastSeenAtUtc" = EXCLUDED."lastSeenAtUtc",
        "endedAtUtc" = EXCLUDED."endedAtUtc"
"""

_SQL_HAS_RECENT_VISIT = """
    SELECT 1
    FROM place_visit_events
    WHERE "userId" = $1
      AND "placeId" = $2
      AND "lastSeenAtUtc" >= $3
      AND ($4::text IS NULL OR id <> $4::text)
    LIMIT 1
"""

_SQL_RECENT_VISITS = f"""
    SELECT {_VISIT_COLUMNS}
    FROM place_visit_events
    WHERE "userId" = $1 AND "lastSeenAtUtc" >= $2
    ORDER BY "lastSeenAtUtc" DESC
"""


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _candidate_from_row(row: Any) -> PlaceVisitCandidate:
    return PlaceVisitCandidate(
        user_id=row["userId"],
        place_id=row["placeId"],
        first_hit_utc=row["firstHitUtc"],
        last_hit_utc=row["lastHitUtc"],
        consecutive_hits=row["consecutiveHits"],
    )


def _visit_from_row(row: Any) -> PlaceVisitEvent:
    return PlaceVisitEvent(
        id=row["id"],
        user_id=row["userId"],
        place_id=row["placeId"],
        arrived_at_utc=row["arrivedAtUtc"],
        last_seen_at_utc=row["lastSeenAtUtc"],
        ended_at_utc=row["endedAtUtc"],
        trip_id_snapshot=row["tripIdSnapshot"],
        trip_name_snapshot=row["tripNameSnapshot"] or "",
        region_name_snapshot=row["regionNameSnapshot"] or "",
        place_name_snapshot=row["placeNameSnapshot"] or "",
        place_latitude_snapshot=row["placeLatitudeSnapshot"],
        place_longitude_snapshot=row["placeLongitudeSnapshot"],
        icon_name_snapshot=row["iconNameSnapshot"],
        marker_color_snapshot=row["markerColorSnapshot"],
        notes_html=row["notesHtml"],
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class _ConnRepository:
    def __init__(self, conn: Any) -> None:
        self._conn = conn

    async def _fetch(self, sql: str, *args: Any) -> list:
        try:
            return await self._conn.fetch(sql, *args)
        except _DRIVER_ERRORS as exc:
            raise StoreUnavailableError(f"visit store query failed: {exc}") from exc

    async def _fetchrow(self, sql: str, *args: Any) -> Any:
        try:
            return await self._conn.fetchrow(sql, *args)
        except _DRIVER_ERRORS as exc:
            raise StoreUnavailableError(f"visit store query failed: {exc}") from exc

    async def _execute(self, sql: str, *args: Any) -> None:
        try:
            await self._conn.execute(sql, *args)
        except _DRIVER_ERRORS as exc:
            raise StoreUnavailableError(f"visit store write failed: {exc}") from exc


class PostgresCandidateRepository(_ConnRepository):
    async def get(self, user_id: str, place_id: str) -> PlaceVisitCandidate | None:
        row = await self._fetchrow(_SQL_GET_CANDIDATE, user_id, place_id)
        return _candidate_from_row(row) if row else None

    async def upsert(self, candidate: PlaceVisitCandidate) -> None:
        await self._execute(
            _SQL_UPSERT_CANDIDATE,
            candidate.user_id,
            candidate.place_id,
            candidate.first_hit_utc,
            candidate.last_hit_utc,
            candidate.consecutive_hits,
        )

    async def delete(self, user_id: str, place_id: str) -> None:
        await self._execute(_SQL_DELETE_CANDIDATE, user_id, place_id)

    async def list_stale(self, user_id: str, cutoff: datetime) -> list[PlaceVisitCandidate]:
        rows = await self._fetch(_SQL_STALE_CANDIDATES, user_id, cutoff)
        return [_candidate_from_row(r) for r in rows]


class PostgresVisitRepository(_ConnRepository):
    async def find_open(self, user_id: str, place_id: str) -> list[PlaceVisitEvent]:
        rows = await self._fetch(_SQL_OPEN_VISITS_FOR_PLACE, user_id, place_id)
        return [_visit_from_row(r) for r in rows]

    async def list_open(self, user_id: str) -> list[PlaceVisitEvent]:
        rows = await self._fetch(_SQL_OPEN_VISITS, user_id)
        return [_visit_from_row(r) for r in rows]

    async def list_stale_open(self, user_id: str, cutoff: datetime) -> list[PlaceVisitEvent]:
        rows = await self._fetch(_SQL_STALE_OPEN_VISITS, user_id, cutoff)
        return [_visit_from_row(r) for r in rows]

    async def upsert(self, visit: PlaceVisitEvent) -> None:
        await self._execute(
            _SQL_UPSERT_VISIT,
            visit.id,                           # $1
            visit.user_id,                      # $2
            visit.place_id,                     # $3
            visit.arrived_at_utc,               # $4
            visit.last_seen_at_utc,             # $5
            visit.ended_at_utc,                 # $6
            visit.trip_id_snapshot,             # $7
            visit.trip_name_snapshot,           # $8
            visit.region_name_snapshot,         # $9
            visit.place_name_snapshot,          # $10
            visit.place_latitude_snapshot,      # $11
            visit.place_longitude_snapshot,     # $12
            visit.icon_name_snapshot,           # $13
            visit.marker_color_snapshot,        # $14
            visit.notes_html,                   # $15
        )

    async def has_recent_visit(
        self,
        user_id: str,
        place_id: str,
        since: datetime,
        exclude_visit_id: str | None = None,
    ) -> bool:
        row = await self._fetchrow(_SQL_HAS_RECENT_VISIT, user_id, place_id, since, exclude_visit_id)
        return row is not None

    async def list_recent(self, user_id: str, since: datetime) -> list[PlaceVisitEvent]:
        rows = await self._fetch(_SQL_RECENT_VISITS, user_id, since)
        return [_visit_from_row(r) for r in rows]


class PostgresUnitOfWork:
    """
    Repositories bound to one transaction.

    ``conn`` is the transaction's connection; the place locator reads the
    catalog through it.
    """

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self.candidates = PostgresCandidateRepository(conn)
        self.visits = PostgresVisitRepository(conn)


class PostgresVisitStorage:
    """
    VisitStorage over an asyncpg pool.

    Injected dependencies for testability:
      pool: asyncpg pool (must support ``acquire()`` as an async context manager)
    """

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    @asynccontextmanager
    async def unit_of_work(self, user_id: str) -> AsyncIterator[PostgresUnitOfWork]:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(_SQL_LOCK_USER, user_id)
                    yield PostgresUnitOfWork(conn)
        except _DRIVER_ERRORS as exc:
            logger.warning("visit store unavailable: user=%s error=%s", user_id, exc)
            raise StoreUnavailableError(f"visit store unavailable: {exc}") from exc
