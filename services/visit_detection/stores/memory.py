"""
In-process storage backend.

Rows live in per-user tables guarded by one ``asyncio.Lock`` per user, so a
burst of pings for the same user is serialized while other users proceed in
parallel. Each unit of work snapshots the user's tables on entry and restores
them if the body raises, giving the same all-or-nothing behaviour as a
database transaction.

Reads hand out copies: mutating a returned record has no effect until it is
passed back through ``upsert``, the same as a row fetched from SQL.

Used by the test suite and for single-process deployments.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import AsyncIterator

from services.visit_detection.models import PlaceVisitCandidate, PlaceVisitEvent

logger = logging.getLogger(__name__)


@dataclass
class _UserTables:
    candidates: dict[str, PlaceVisitCandidate] = field(default_factory=dict)  # place_id ->
    visits: dict[str, PlaceVisitEvent] = field(default_factory=dict)  # visit id ->

    def copy(self) -> "_UserTables":
        return _UserTables(
            candidates={k: replace(v) for k, v in self.candidates.items()},
            visits={k: replace(v) for k, v in self.visits.items()},
        )


def _check_scope(scope_user_id: str, user_id: str) -> None:
    if user_id != scope_user_id:
        raise ValueError(
            f"unit of work for user {scope_user_id!r} cannot touch rows of user {user_id!r}"
        )


class InMemoryCandidateRepository:
    def __init__(self, user_id: str, tables: _UserTables) -> None:
        self._user_id = user_id
        self._tables = tables

    async def get(self, user_id: str, place_id: str) -> PlaceVisitCandidate | None:
        _check_scope(self._user_id, user_id)
        row = self._tables.candidates.get(place_id)
        return replace(row) if row is not None else None

    async def upsert(self, candidate: PlaceVisitCandidate) -> None:
        _check_scope(self._user_id, candidate.user_id)
        self._tables.candidates[candidate.place_id] = replace(candidate)

    async def delete(self, user_id: str, place_id: str) -> None:
        _check_scope(self._user_id, user_id)
        self._tables.candidates.pop(place_id, None)

    async def list_stale(self, user_id: str, cutoff: datetime) -> list[PlaceVisitCandidate]:
        _check_scope(self._user_id, user_id)
        return [replace(c) for c in self._tables.candidates.values() if c.last_hit_utc < cutoff]


class InMemoryVisitRepository:
    def __init__(self, user_id: str, tables: _UserTables) -> None:
        self._user_id = user_id
        self._tables = tables

    async def find_open(self, user_id: str, place_id: str) -> list[PlaceVisitEvent]:
        _check_scope(self._user_id, user_id)
        return [
            replace(v)
            for v in self._tables.visits.values()
            if v.place_id == place_id and v.is_open
        ]

    async def list_open(self, user_id: str) -> list[PlaceVisitEvent]:
        _check_scope(self._user_id, user_id)
        return [replace(v) for v in self._tables.visits.values() if v.is_open]

    async def list_stale_open(self, user_id: str, cutoff: datetime) -> list[PlaceVisitEvent]:
        _check_scope(self._user_id, user_id)
        return [
            replace(v)
            for v in self._tables.visits.values()
            if v.is_open and v.last_seen_at_utc < cutoff
        ]

    async def upsert(self, visit: PlaceVisitEvent) -> None:
        _check_scope(self._user_id, visit.user_id)
        self._tables.visits[visit.id] = replace(visit)

    async def has_recent_visit(
        self,
        user_id: str,
        place_id: str,
        since: datetime,
        exclude_visit_id: str | None = None,
    ) -> bool:
        _check_scope(self._user_id, user_id)
        return any(
            v.place_id == place_id
            and v.id != exclude_visit_id
            and v.last_seen_at_utc >= since
            for v in self._tables.visits.values()
        )

    async def list_recent(self, user_id: str, since: datetime) -> list[PlaceVisitEvent]:
        _check_scope(self._user_id, user_id)
        recent = [replace(v) for v in self._tables.visits.values() if v.last_seen_at_utc >= since]
        recent.sort(key=lambda v: v.last_seen_at_utc, reverse=True)
        return recent


class InMemoryUnitOfWork:
    def __init__(self, user_id: str, tables: _UserTables) -> None:
        self.user_id = user_id
        self.candidates = InMemoryCandidateRepository(user_id, tables)
        self.visits = InMemoryVisitRepository(user_id, tables)


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0  # tasks holding or waiting on ``lock``


class InMemoryVisitStorage:
    """
    Dict-backed VisitStorage with per-user locking and rollback.

    A user's lock is dropped once no unit of work holds or awaits it. Rows
    are the store itself and are kept for the life of the process.
    """

    def __init__(self) -> None:
        self._tables: dict[str, _UserTables] = {}
        self._locks: dict[str, _UserLock] = {}

    @asynccontextmanager
    async def unit_of_work(self, user_id: str) -> AsyncIterator[InMemoryUnitOfWork]:
        entry = self._locks.setdefault(user_id, _UserLock())
        entry.holders += 1
        try:
            async with entry.lock:
                tables = self._tables.setdefault(user_id, _UserTables())
                snapshot = tables.copy()
                try:
                    yield InMemoryUnitOfWork(user_id, tables)
                except BaseException:
                    self._tables[user_id] = snapshot
                    logger.debug("in-memory unit of work rolled back: user=%s", user_id)
                    raise
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[user_id]

    # ------------------------------------------------------------------
    # Direct access (seeding / inspection), bypasses the lock
    # ------------------------------------------------------------------

    def seed_candidate(self, candidate: PlaceVisitCandidate) -> None:
        tables = self._tables.setdefault(candidate.user_id, _UserTables())
        tables.candidates[candidate.place_id] = replace(candidate)

    def seed_visit(self, visit: PlaceVisitEvent) -> None:
        tables = self._tables.setdefault(visit.user_id, _UserTables())
        tables.visits[visit.id] = replace(visit)

    def candidates_for(self, user_id: str) -> list[PlaceVisitCandidate]:
        tables = self._tables.get(user_id)
        return [replace(c) for c in tables.candidates.values()] if tables else []

    def visits_for(self, user_id: str) -> list[PlaceVisitEvent]:
        tables = self._tables.get(user_id)
        return [replace(v) for v in tables.visits.values()] if tables else []

    def active_locks(self) -> int:
        return len(self._locks)
