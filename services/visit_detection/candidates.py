"""
Candidate tracker: debounces proximity hits into a confirmed arrival.

A candidate is reinforced only while ``now - last_hit_utc <= hit_window``.
A hit after a longer gap discards the old streak and starts again at 1, so
drive-bys and GPS jitter never accumulate into a visit. Once the streak
reaches ``visited_required_hits`` the caller promotes it (lifecycle.py).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from services.visit_detection.config import DetectionSettings
from services.visit_detection.errors import InvariantViolationError
from services.visit_detection.models import PingOutcome, PlaceVisitCandidate
from services.visit_detection.stores.base import UnitOfWork

logger = logging.getLogger(__name__)


@dataclass
class CandidateHit:
    candidate: PlaceVisitCandidate
    outcome: PingOutcome
    ready_for_promotion: bool


class CandidateTracker:
    def __init__(self, settings: DetectionSettings) -> None:
        self._settings = settings

    def is_reinforceable(self, candidate: PlaceVisitCandidate, now: datetime) -> bool:
        return now - candidate.last_hit_utc <= timedelta(minutes=self._settings.hit_window_minutes)

    async def record_hit(
        self,
        uow: UnitOfWork,
        existing: PlaceVisitCandidate | None,
        user_id: str,
        place_id: str,
        now: datetime,
    ) -> CandidateHit:
        """
        Apply one proximity hit for (user, place).

        ``existing`` is the stored candidate for the pair (already loaded by
        the caller inside ``uow``), or None. The candidate is persisted unless
        it is ready for promotion, in which case the caller deletes it as part
        of opening the visit.
        """
        required = self._settings.visited_required_hits

        if existing is not None and existing.consecutive_hits > required:
            raise InvariantViolationError(
                f"candidate has {existing.consecutive_hits} hits but only {required} are required",
                user_id=user_id,
                place_id=place_id,
            )

        if existing is None:
            candidate = PlaceVisitCandidate.first_hit(user_id, place_id, now)
            outcome = PingOutcome.CANDIDATE_STARTED
        elif self.is_reinforceable(existing, now):
            candidate = existing
            candidate.record_hit(now)
            outcome = PingOutcome.CANDIDATE_REINFORCED
        else:
            gap = (now - existing.last_hit_utc).total_seconds() / 60.0
            logger.debug(
                "candidate reset: user=%s place=%s gap_min=%.1f window_min=%.1f",
                user_id, place_id, gap, self._settings.hit_window_minutes,
            )
            candidate = PlaceVisitCandidate.first_hit(user_id, place_id, now)
            outcome = PingOutcome.CANDIDATE_RESET

        ready = candidate.consecutive_hits >= required
        if not ready:
            await uow.candidates.upsert(candidate)
            logger.debug(
                "candidate hit: user=%s place=%s hits=%d/%d",
                user_id, place_id, candidate.consecutive_hits, required,
            )

        return CandidateHit(candidate=candidate, outcome=outcome, ready_for_promotion=ready)
