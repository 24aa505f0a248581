"""
Persistence boundary for candidates and visits.

Every ping runs its sweeps and transitions inside ONE unit of work scoped to
the calling user:

    async with storage.unit_of_work(user_id) as uow:
        await uow.candidates.get(user_id, place_id)
        ...

Implementations must guarantee:
  - per-user serialization: two units of work for the same user never
    overlap; different users may run concurrently
  - atomicity: if the body raises (including asyncio cancellation) none of
    its writes are visible afterwards

Stale queries use strict cutoffs: a row is stale when its timestamp is
older than ``cutoff`` (i.e. ``now - ts > threshold``).
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Protocol

from services.visit_detection.models import PlaceVisitCandidate, PlaceVisitEvent


class CandidateRepository(Protocol):
    async def get(self, user_id: str, place_id: str) -> PlaceVisitCandidate | None: ...

    async def upsert(self, candidate: PlaceVisitCandidate) -> None: ...

    async def delete(self, user_id: str, place_id: str) -> None: ...

    async def list_stale(self, user_id: str, cutoff: datetime) -> list[PlaceVisitCandidate]: ...


class VisitRepository(Protocol):
    async def find_open(self, user_id: str, place_id: str) -> list[PlaceVisitEvent]: ...

    async def list_open(self, user_id: str) -> list[PlaceVisitEvent]: ...

    async def list_stale_open(self, user_id: str, cutoff: datetime) -> list[PlaceVisitEvent]: ...

    async def upsert(self, visit: PlaceVisitEvent) -> None: ...

    async def has_recent_visit(
        self,
        user_id: str,
        place_id: str,
        since: datetime,
        exclude_visit_id: str | None = None,
    ) -> bool: ...

    async def list_recent(self, user_id: str, since: datetime) -> list[PlaceVisitEvent]: ...


class UnitOfWork(Protocol):
    candidates: CandidateRepository
    visits: VisitRepository


class VisitStorage(Protocol):
    def unit_of_work(self, user_id: str) -> AsyncContextManager[UnitOfWork]: ...
