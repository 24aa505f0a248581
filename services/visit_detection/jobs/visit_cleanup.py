"""
Global visit cleanup.

Per-ping sweeps only touch the user who sent the ping, so a user who turns
off tracking mid-visit would keep an open visit forever. This job applies
the same staleness rules across all users:

  place_visit_events      open and lastSeenAtUtc < now - end_visit_after
                          -> endedAtUtc = lastSeenAtUtc
  place_visit_candidates  lastHitUtc < now - candidate_stale -> deleted

Both statements run in one transaction. Closure freezes the visit at its
last observation, never at the job's run time.

Entry point:
    async def run_visit_cleanup(pool, settings, now=None)
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any

from services.visit_detection.config import DetectionSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_CLOSE_STALE_VISITS_SQL = """
    UPDATE place_visit_events
    SET "endedAtUtc" = "lastSeenAtUtc"
    WHERE "endedAtUtc" IS NULL
      AND "lastSeenAtUtc" < $1
"""

_DELETE_STALE_CANDIDATES_SQL = """
    DELETE FROM place_visit_candidates
    WHERE "lastHitUtc" < $1
"""


def _rowcount(status: str | None) -> int:
    """Parse the affected-row count from an asyncpg status tag ("UPDATE 3")."""
    if not status:
        return 0
    try:
        return int(status.rsplit(" ", 1)[-1])
    except ValueError:
        return 0


async def run_visit_cleanup(
    pool: Any,
    settings: DetectionSettings,
    now: datetime | None = None,
) -> dict[str, int]:
    """
    Close stale open visits and delete stale candidates for every user.

    Returns:
        {"closed_visits": n, "deleted_candidates": m, "duration_ms": d}
    """
    now = now or datetime.now(timezone.utc)
    start_ts = time.monotonic()

    visit_cutoff = now - timedelta(minutes=settings.end_visit_after_minutes)
    candidate_cutoff = now - timedelta(minutes=settings.candidate_stale_minutes)

    async with pool.acquire() as conn:
        try:
            async with conn.transaction():
                closed = _rowcount(await conn.execute(_CLOSE_STALE_VISITS_SQL, visit_cutoff))
                deleted = _rowcount(await conn.execute(_DELETE_STALE_CANDIDATES_SQL, candidate_cutoff))
        except Exception as exc:
            duration_ms = int((time.monotonic() - start_ts) * 1000)
            logger.error(
                "visit_cleanup: failed after %dms: %s", duration_ms, exc, exc_info=True
            )
            raise

    duration_ms = int((time.monotonic() - start_ts) * 1000)
    logger.info(
        "visit_cleanup: complete closed_visits=%d deleted_candidates=%d duration_ms=%d",
        closed, deleted, duration_ms,
    )
    return {
        "closed_visits": closed,
        "deleted_candidates": deleted,
        "duration_ms": duration_ms,
    }


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Standalone entry point for running from cron or Cloud Run Job."""
    import asyncpg

    from services.visit_detection.config import settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    pool = await asyncpg.create_pool(settings.database_url, min_size=1, max_size=2)
    try:
        result = await run_visit_cleanup(pool, settings.detection_settings())
        print(f"visit_cleanup complete: {result}")
    finally:
        await pool.close()


if __name__ == "__main__":
    asyncio.run(main())
