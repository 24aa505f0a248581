"""
Polling fallback for clients that cannot hold an SSE connection open.

Returns the user's visits seen within the last ``since_seconds`` (clamped to
1..300, default 30), newest first, in the same payload shape the push
channel uses.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from services.visit_detection.notifier import VisitSseEvent
from services.visit_detection.stores.base import VisitStorage

logger = logging.getLogger(__name__)

DEFAULT_SINCE_SECONDS = 30
MIN_SINCE_SECONDS = 1
MAX_SINCE_SECONDS = 300


def clamp_since_seconds(since_seconds: int | None) -> int:
    if since_seconds is None:
        return DEFAULT_SINCE_SECONDS
    return max(MIN_SINCE_SECONDS, min(MAX_SINCE_SECONDS, since_seconds))


async def recent_visit_events(
    storage: VisitStorage,
    user_id: str,
    since_seconds: int | None = DEFAULT_SINCE_SECONDS,
    now: datetime | None = None,
) -> list[VisitSseEvent]:
    now = now or datetime.now(timezone.utc)
    window = clamp_since_seconds(since_seconds)
    cutoff = now - timedelta(seconds=window)

    async with storage.unit_of_work(user_id) as uow:
        visits = await uow.visits.list_recent(user_id, cutoff)

    logger.debug("recent visits: user=%s window_s=%d count=%d", user_id, window, len(visits))
    return [VisitSseEvent.from_visit(v) for v in visits]
