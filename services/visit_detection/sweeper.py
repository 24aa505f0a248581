"""
Per-user staleness sweep, run on every accepted ping before the lookup.

  visits      open and ``now - last_seen > end_visit_after`` -> closed with
              ended = last_seen
  candidates  ``now - last_hit > candidate_stale`` -> deleted

Both rules are time-only: a candidate is never evicted because the user
moved away, only because it went quiet. Users who stop pinging entirely are
handled by jobs/visit_cleanup.py.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from services.visit_detection.config import DetectionSettings
from services.visit_detection.lifecycle import VisitLifecycleManager
from services.visit_detection.stores.base import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    closed_visits: int = 0
    deleted_candidates: int = 0


class StalenessSweeper:
    def __init__(self, settings: DetectionSettings, lifecycle: VisitLifecycleManager | None = None) -> None:
        self._settings = settings
        self._lifecycle = lifecycle or VisitLifecycleManager(settings)

    async def close_stale_visits(self, uow: UnitOfWork, user_id: str, now: datetime) -> int:
        cutoff = now - timedelta(minutes=self._settings.end_visit_after_minutes)
        stale = await uow.visits.list_stale_open(user_id, cutoff)
        for visit in stale:
            await self._lifecycle.close(uow, visit)
        return len(stale)

    async def evict_stale_candidates(self, uow: UnitOfWork, user_id: str, now: datetime) -> int:
        cutoff = now - timedelta(minutes=self._settings.candidate_stale_minutes)
        stale = await uow.candidates.list_stale(user_id, cutoff)
        for candidate in stale:
            await uow.candidates.delete(user_id, candidate.place_id)
        return len(stale)

    async def sweep(self, uow: UnitOfWork, user_id: str, now: datetime) -> SweepResult:
        result = SweepResult(
            closed_visits=await self.close_stale_visits(uow, user_id, now),
            deleted_candidates=await self.evict_stale_candidates(uow, user_id, now),
        )
        if result.closed_visits or result.deleted_candidates:
            logger.debug(
                "sweep: user=%s closed_visits=%d deleted_candidates=%d",
                user_id, result.closed_visits, result.deleted_candidates,
            )
        return result
