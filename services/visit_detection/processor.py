"""
Ping processor: the single entry point of the visit detection engine.

For each GPS ping:

  1. accuracy gate        rejected pings stop here with no side effects
  2. stale-visit sweep    close this user's visits that went quiet
  3. stale-candidate GC   drop this user's candidates that went quiet
  4. effective radius     accuracy-adjusted, capped by max search radius
  5. nearest place        scoped to the user's trips; none -> stop
  6. update               resolve the (user, place) VisitState, then extend
                          the open visit, or record a candidate hit and
                          promote it when it reaches the required hits

Steps 2-6 run in ONE unit of work scoped to the user, so concurrent pings
for the same user are serialized and a failure (or cancellation) anywhere in
them leaves storage untouched. The place lookup is handed the unit of work
so a database-backed locator reuses its connection instead of taking a
second one from the pool. Confirmation notifications are published only
after the unit of work commits.

Normal non-events (no place nearby, not yet at threshold, accuracy rejected,
nothing stale) are silent. Collaborator failures propagate as
CollaboratorUnavailableError subclasses without retry. Invariant violations
are reported and re-raised.

Usage:
    processor = PingProcessor(storage, locator, StaticSettingsProvider(), notifier)
    await processor.process_ping(user_id, Coordinate(lat, lon), accuracy_meters=12.0)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from services.visit_detection.candidates import CandidateTracker
from services.visit_detection.config import SettingsProvider
from services.visit_detection.errors import InvariantViolationError
from services.visit_detection.geometry import lookup_radius, should_reject_for_accuracy
from services.visit_detection.lifecycle import VisitLifecycleManager
from services.visit_detection.locator import NearestPlaceLocator
from services.visit_detection.models import (
    Coordinate,
    PingOutcome,
    VisitConfirmed,
    VisitState,
    resolve_state,
)
from services.visit_detection.notifier import Notifier, NullNotifier
from services.visit_detection.reporting import report_invariant_violation
from services.visit_detection.stores.base import VisitStorage
from services.visit_detection.sweeper import StalenessSweeper

logger = logging.getLogger(__name__)


class PingProcessor:
    """
    Injected dependencies for testability:
      storage:            VisitStorage (unit of work per user)
      locator:            NearestPlaceLocator
      settings_provider:  read once per ping
      notifier:           receives VisitConfirmed after commit (default: discard)
    """

    def __init__(
        self,
        storage: VisitStorage,
        locator: NearestPlaceLocator,
        settings_provider: SettingsProvider,
        notifier: Notifier | None = None,
    ) -> None:
        self._storage = storage
        self._locator = locator
        self._settings_provider = settings_provider
        self._notifier = notifier or NullNotifier()

    async def process_ping(
        self,
        user_id: str,
        location: Coordinate,
        accuracy_meters: float | None = None,
        now: datetime | None = None,
    ) -> None:
        await self.handle_ping(user_id, location, accuracy_meters, now)

    async def handle_ping(
        self,
        user_id: str,
        location: Coordinate,
        accuracy_meters: float | None = None,
        now: datetime | None = None,
    ) -> PingOutcome:
        """Same as ``process_ping`` but reports what the ping did."""
        now = now or datetime.now(timezone.utc)
        settings = self._settings_provider.get_settings()

        if should_reject_for_accuracy(accuracy_meters, settings):
            logger.debug(
                "ping rejected: user=%s accuracy=%.1f threshold=%.1f",
                user_id, accuracy_meters, settings.visited_accuracy_reject_meters,
            )
            return PingOutcome.REJECTED_ACCURACY

        lifecycle = VisitLifecycleManager(settings)
        tracker = CandidateTracker(settings)
        sweeper = StalenessSweeper(settings, lifecycle)
        confirmed: VisitConfirmed | None = None

        try:
            async with self._storage.unit_of_work(user_id) as uow:
                await sweeper.sweep(uow, user_id, now)

                radius = lookup_radius(accuracy_meters, settings)
                place = await self._locator.find_nearest_place(user_id, location, radius, uow=uow)

                if place is None:
                    outcome = PingOutcome.NO_PLACE
                else:
                    visit = await lifecycle.find_open(uow, user_id, place.place_id)
                    candidate = await uow.candidates.get(user_id, place.place_id)
                    state = resolve_state(candidate, visit)

                    if state is VisitState.OPEN:
                        # An open visit absorbs the hit; the candidate table is not touched
                        await lifecycle.extend(uow, visit, now)
                        outcome = PingOutcome.VISIT_EXTENDED
                    else:
                        hit = await tracker.record_hit(uow, candidate, user_id, place.place_id, now)
                        outcome = hit.outcome
                        if hit.ready_for_promotion:
                            visit, notify = await lifecycle.promote(uow, hit.candidate, place, now)
                            outcome = PingOutcome.VISIT_OPENED
                            if notify:
                                confirmed = VisitConfirmed.from_visit(visit)

                    logger.debug(
                        "place matched: user=%s place=%s state=%s distance=%.1f",
                        user_id, place.place_id, state.value, place.distance_meters,
                    )
        except InvariantViolationError as exc:
            report_invariant_violation(exc)
            raise

        logger.debug(
            "ping processed: user=%s outcome=%s radius=%.1f",
            user_id, outcome.value, radius,
        )

        if confirmed is not None:
            await self._publish(confirmed)

        return outcome

    async def _publish(self, event: VisitConfirmed) -> None:
        try:
            await self._notifier.publish(event)
        except Exception:
            logger.warning(
                "visit notifier failed: user=%s visit=%s",
                event.user_id, event.visit_id, exc_info=True,
            )
