"""
Error taxonomy for the visit detection engine.

Expected non-events (no nearby place, candidate below threshold, accuracy
rejected, nothing stale) are NOT errors and never raise.

CollaboratorUnavailableError
    A locator / store call failed. Propagates to the ingestion caller, which
    owns retry policy. The engine never retries itself (a retried ping would
    double-count hits).

InvariantViolationError
    Storage is in a state the lifecycle forbids (e.g. two open visits for the
    same user+place). Reported and raised; never repaired in place.
"""

from __future__ import annotations


class VisitDetectionError(Exception):
    """Base class for all engine failures."""


class CollaboratorUnavailableError(VisitDetectionError):
    """A backing collaborator (locator, store) could not be reached."""


class LocatorUnavailableError(CollaboratorUnavailableError):
    pass


class StoreUnavailableError(CollaboratorUnavailableError):
    pass


class InvariantViolationError(VisitDetectionError):
    """Corrupted or impossible per-user state."""

    def __init__(self, message: str, *, user_id: str, place_id: str | None = None) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.place_id = place_id
