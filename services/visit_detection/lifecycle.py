"""
Visit lifecycle: NoVisit -> Open -> Closed.

  NoVisit -> Open    promote(): only from a candidate that reached the
                     required hit count
  Open    -> Open    extend(): last_seen = now, candidates untouched
  Open    -> Closed  close(): ended = last_seen, driven by the staleness
                     sweeper (or by the close_on_arrival cross-place policy)

Closed is terminal. A later return to the same place opens a new visit.

At most one open visit may exist per (user, place); find_open() raises
InvariantViolationError when storage says otherwise.

Snapshots (trip, region, place names, location, icon, colour, notes) are
copied from the catalog at promotion time and never refreshed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from services.visit_detection.config import DetectionSettings
from services.visit_detection.errors import InvariantViolationError
from services.visit_detection.models import NearestPlace, PlaceVisitCandidate, PlaceVisitEvent
from services.visit_detection.stores.base import UnitOfWork

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "…"


def truncate_notes(notes: str | None, max_chars: int) -> str | None:
    """Cap notes at ``max_chars`` characters, marker included."""
    if not notes or len(notes) <= max_chars:
        return notes
    return notes[: max_chars - 1] + TRUNCATION_MARKER


class VisitLifecycleManager:
    def __init__(self, settings: DetectionSettings) -> None:
        self._settings = settings

    async def find_open(self, uow: UnitOfWork, user_id: str, place_id: str) -> PlaceVisitEvent | None:
        visits = await uow.visits.find_open(user_id, place_id)
        if len(visits) > 1:
            raise InvariantViolationError(
                f"{len(visits)} open visits for the same place",
                user_id=user_id,
                place_id=place_id,
            )
        return visits[0] if visits else None

    async def extend(self, uow: UnitOfWork, visit: PlaceVisitEvent, now: datetime) -> None:
        visit.extend(now)
        await uow.visits.upsert(visit)
        logger.debug("visit extended: user=%s visit=%s last_seen=%s", visit.user_id, visit.id, now)

    async def close(self, uow: UnitOfWork, visit: PlaceVisitEvent) -> None:
        visit.close()
        await uow.visits.upsert(visit)
        logger.info(
            "visit closed: user=%s visit=%s place=%s dwell_min=%s",
            visit.user_id, visit.id, visit.place_id, visit.observed_dwell_minutes,
        )

    async def promote(
        self,
        uow: UnitOfWork,
        candidate: PlaceVisitCandidate,
        place: NearestPlace,
        now: datetime,
    ) -> tuple[PlaceVisitEvent, bool]:
        """
        Turn a ripe candidate into an open visit.

        Returns the new visit and whether a confirmation should be published
        (see should_notify).
        """
        user_id = candidate.user_id
        await uow.candidates.delete(user_id, candidate.place_id)

        if self._settings.cross_place_policy == "close_on_arrival":
            for other in await uow.visits.list_open(user_id):
                if other.place_id != place.place_id:
                    await self.close(uow, other)

        visit = PlaceVisitEvent(
            user_id=user_id,
            place_id=place.place_id,
            arrived_at_utc=candidate.first_hit_utc,
            last_seen_at_utc=now,
            trip_id_snapshot=place.trip_id,
            trip_name_snapshot=place.trip_name,
            region_name_snapshot=place.region_name,
            place_name_snapshot=place.place_name,
            place_latitude_snapshot=place.latitude,
            place_longitude_snapshot=place.longitude,
            icon_name_snapshot=place.icon_name,
            marker_color_snapshot=place.marker_color,
            notes_html=truncate_notes(
                place.notes_html, self._settings.visited_place_notes_snapshot_max_html_chars
            ),
        )
        await uow.visits.upsert(visit)

        notify = await self.should_notify(uow, visit, now)
        logger.info(
            "visit confirmed: user=%s visit=%s place=%s trip=%s hits=%d notify=%s",
            user_id, visit.id, place.place_name, place.trip_name,
            candidate.consecutive_hits, notify,
        )
        return visit, notify

    async def should_notify(self, uow: UnitOfWork, visit: PlaceVisitEvent, now: datetime) -> bool:
        """
        Cooldown gate for confirmation notifications.

        -1 disables notifications, 0 always notifies, >0 suppresses when
        another visit to the same place was last seen within that many hours.
        """
        hours = self._settings.visit_notification_cooldown_hours
        if hours < 0:
            return False
        if hours == 0:
            return True
        since = now - timedelta(hours=hours)
        recent = await uow.visits.has_recent_visit(
            visit.user_id, visit.place_id, since, exclude_visit_id=visit.id
        )
        return not recent
