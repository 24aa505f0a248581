"""
Visit confirmation fan-out.

The engine hands every confirmed visit to a Notifier after the unit of work
commits. Publishing is fire-and-forget: a failed publish is logged and never
undoes the committed visit.

RedisVisitNotifier publishes a ``visit_started`` JSON payload on the per-user
pub/sub channel ``user-visits-{user_id}``; the SSE endpoint subscribes to that
channel and relays messages verbatim. The same payload shape is returned by
the recent-visits polling fallback (see recent.py).

Graceful degradation: publish is a no-op when redis is None.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal, Protocol

from pydantic import BaseModel

from services.visit_detection.models import PlaceVisitEvent, VisitConfirmed

logger = logging.getLogger(__name__)


def visit_channel(user_id: str) -> str:
    return f"user-visits-{user_id}"


class VisitSseEvent(BaseModel):
    """Wire payload for visit notifications. Optional fields are omitted when None."""

    type: Literal["visit_started"] = "visit_started"
    visitId: str
    tripId: str | None = None
    tripName: str = ""
    placeId: str | None = None
    placeName: str = ""
    regionName: str = ""
    arrivedAtUtc: datetime
    latitude: float | None = None
    longitude: float | None = None
    iconName: str | None = None
    markerColor: str | None = None

    @classmethod
    def from_visit(cls, visit: PlaceVisitEvent) -> "VisitSseEvent":
        return cls(
            visitId=visit.id,
            tripId=visit.trip_id_snapshot,
            tripName=visit.trip_name_snapshot or "",
            placeId=visit.place_id,
            placeName=visit.place_name_snapshot or "",
            regionName=visit.region_name_snapshot or "",
            arrivedAtUtc=visit.arrived_at_utc,
            latitude=visit.place_latitude_snapshot,
            longitude=visit.place_longitude_snapshot,
            iconName=visit.icon_name_snapshot,
            markerColor=visit.marker_color_snapshot,
        )

    @classmethod
    def from_confirmed(cls, event: VisitConfirmed) -> "VisitSseEvent":
        return cls(
            visitId=event.visit_id,
            tripId=event.trip_id,
            tripName=event.trip_name,
            placeId=event.place_id,
            placeName=event.place_name,
            regionName=event.region_name,
            arrivedAtUtc=event.arrived_at_utc,
            latitude=event.latitude,
            longitude=event.longitude,
            iconName=event.icon_name,
            markerColor=event.marker_color,
        )

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)


class Notifier(Protocol):
    async def publish(self, event: VisitConfirmed) -> None: ...


class NullNotifier:
    """Discards every event. Used when fan-out is not configured."""

    async def publish(self, event: VisitConfirmed) -> None:
        return None


class RedisVisitNotifier:
    """
    Publishes visit confirmations to redis pub/sub.

    Usage:
        notifier = RedisVisitNotifier(redis_client)
        await notifier.publish(VisitConfirmed.from_visit(visit))
    """

    def __init__(self, redis: Any) -> None:
        """
        Args:
            redis: An async Redis client (redis.asyncio compatible).
                   May be None, in which case publish does nothing.
        """
        self._redis = redis

    async def publish(self, event: VisitConfirmed) -> None:
        if self._redis is None:
            return

        channel = visit_channel(event.user_id)
        payload = VisitSseEvent.from_confirmed(event).to_json()
        try:
            receivers = await self._redis.publish(channel, payload)
            logger.debug(
                "visit notification published: channel=%s visit=%s receivers=%s",
                channel, event.visit_id, receivers,
            )
        except Exception:
            logger.warning(
                "visit notification publish failed: channel=%s visit=%s",
                channel, event.visit_id, exc_info=True,
            )
