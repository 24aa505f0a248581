"""
Domain records for place visit detection.

PlaceVisitCandidate
    Unconfirmed streak of proximity hits for a (user, place) pair. Ephemeral:
    deleted on promotion or when stale.

PlaceVisitEvent
    Confirmed dwell period. Open while ``ended_at_utc`` is None. Carries
    denormalized trip/region/place snapshots so later catalog renames or
    deletes do not rewrite history.

VisitState
    The lifecycle as an explicit enum, even though it is persisted across two
    tables. ``resolve_state`` derives it from whatever rows exist.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Coordinate:
    """WGS84 point in decimal degrees."""

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass
class PlaceVisitCandidate:
    user_id: str
    place_id: str
    first_hit_utc: datetime
    last_hit_utc: datetime
    consecutive_hits: int = 0

    def record_hit(self, now: datetime) -> None:
        self.consecutive_hits += 1
        # Out-of-order pings never move the streak backwards
        self.last_hit_utc = max(self.last_hit_utc, now)

    @classmethod
    def first_hit(cls, user_id: str, place_id: str, now: datetime) -> "PlaceVisitCandidate":
        return cls(
            user_id=user_id,
            place_id=place_id,
            first_hit_utc=now,
            last_hit_utc=now,
            consecutive_hits=1,
        )


@dataclass
class PlaceVisitEvent:
    user_id: str
    place_id: str | None
    arrived_at_utc: datetime
    last_seen_at_utc: datetime
    ended_at_utc: datetime | None = None

    # Snapshots (captured at confirmation time)
    trip_id_snapshot: str | None = None
    trip_name_snapshot: str = ""
    region_name_snapshot: str = ""
    place_name_snapshot: str = ""
    place_latitude_snapshot: float | None = None
    place_longitude_snapshot: float | None = None
    icon_name_snapshot: str | None = None
    marker_color_snapshot: str | None = None
    notes_html: str | None = None

    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_open(self) -> bool:
        return self.ended_at_utc is None

    @property
    def observed_dwell_minutes(self) -> float | None:
        """Minutes between arrival and last sighting (0.0 for a single-sighting visit)."""
        if self.arrived_at_utc is None or self.last_seen_at_utc is None:
            return None
        return (self.last_seen_at_utc - self.arrived_at_utc).total_seconds() / 60.0

    def extend(self, now: datetime) -> None:
        self.last_seen_at_utc = max(self.last_seen_at_utc, now)

    def close(self) -> None:
        # Freeze at the last true observation, never at "now"
        self.ended_at_utc = self.last_seen_at_utc


@dataclass(frozen=True)
class NearestPlace:
    """Result of a nearest-place lookup, with the catalog names to snapshot."""

    place_id: str
    distance_meters: float
    trip_id: str | None
    trip_name: str
    region_name: str
    place_name: str
    latitude: float | None = None
    longitude: float | None = None
    icon_name: str | None = None
    marker_color: str | None = None
    notes_html: str | None = None


@dataclass(frozen=True)
class VisitConfirmed:
    """Notification emitted when a candidate is promoted to a visit."""

    user_id: str
    place_id: str | None
    visit_id: str
    arrived_at_utc: datetime
    trip_id: str | None = None
    trip_name: str = ""
    region_name: str = ""
    place_name: str = ""
    latitude: float | None = None
    longitude: float | None = None
    icon_name: str | None = None
    marker_color: str | None = None

    @classmethod
    def from_visit(cls, visit: PlaceVisitEvent) -> "VisitConfirmed":
        return cls(
            user_id=visit.user_id,
            place_id=visit.place_id,
            visit_id=visit.id,
            arrived_at_utc=visit.arrived_at_utc,
            trip_id=visit.trip_id_snapshot,
            trip_name=visit.trip_name_snapshot,
            region_name=visit.region_name_snapshot,
            place_name=visit.place_name_snapshot,
            latitude=visit.place_latitude_snapshot,
            longitude=visit.place_longitude_snapshot,
            icon_name=visit.icon_name_snapshot,
            marker_color=visit.marker_color_snapshot,
        )


class VisitState(str, enum.Enum):
    NO_VISIT = "no_visit"
    CANDIDATE = "candidate"
    OPEN = "open"
    CLOSED = "closed"


def resolve_state(
    candidate: PlaceVisitCandidate | None,
    visit: PlaceVisitEvent | None,
) -> VisitState:
    """Collapse the candidate/visit rows for one (user, place) into a single state.

    An open visit wins over everything; a candidate wins over a closed visit
    (the user is working toward a revisit).
    """
    if visit is not None and visit.is_open:
        return VisitState.OPEN
    if candidate is not None and candidate.consecutive_hits > 0:
        return VisitState.CANDIDATE
    if visit is not None:
        return VisitState.CLOSED
    return VisitState.NO_VISIT


class PingOutcome(str, enum.Enum):
    """What a single ping ended up doing. Logged, and returned to tests."""

    REJECTED_ACCURACY = "rejected_accuracy"
    NO_PLACE = "no_place"
    CANDIDATE_STARTED = "candidate_started"
    CANDIDATE_RESET = "candidate_reset"
    CANDIDATE_REINFORCED = "candidate_reinforced"
    VISIT_OPENED = "visit_opened"
    VISIT_EXTENDED = "visit_extended"
