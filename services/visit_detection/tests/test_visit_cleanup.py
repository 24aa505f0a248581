"""
Tests for services/visit_detection/jobs/visit_cleanup.py (global sweep).
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from services.visit_detection.jobs.visit_cleanup import _rowcount, run_visit_cleanup
from services.visit_detection.tests.conftest import T0, make_conn, make_pool, make_settings, minutes


class TestRowcount:
    @pytest.mark.parametrize(
        "status,expected",
        [("UPDATE 3", 3), ("DELETE 0", 0), ("DELETE 12", 12), (None, 0), ("", 0), ("OK", 0)],
    )
    def test_parses_status_tag(self, status, expected):
        assert _rowcount(status) == expected


@pytest.mark.asyncio
class TestRunVisitCleanup:
    async def test_returns_counts(self):
        conn = make_conn()
        conn.execute = AsyncMock(side_effect=["UPDATE 2", "DELETE 5"])

        result = await run_visit_cleanup(make_pool(conn), make_settings(), now=T0)

        assert result["closed_visits"] == 2
        assert result["deleted_candidates"] == 5
        assert "duration_ms" in result
        conn.transaction.assert_called_once()

    async def test_cutoffs_follow_settings(self):
        conn = make_conn()
        conn.execute = AsyncMock(side_effect=["UPDATE 0", "DELETE 0"])

        await run_visit_cleanup(make_pool(conn), make_settings(location_time_threshold_minutes=10), now=T0)

        close_call, delete_call = conn.execute.call_args_list
        close_sql, visit_cutoff = close_call.args
        delete_sql, candidate_cutoff = delete_call.args
        assert '"endedAtUtc" = "lastSeenAtUtc"' in close_sql
        assert visit_cutoff == T0 - minutes(90)
        assert "DELETE FROM place_visit_candidates" in delete_sql
        assert candidate_cutoff == T0 - minutes(120)

    async def test_failure_propagates(self):
        conn = make_conn()
        conn.execute = AsyncMock(side_effect=OSError("connection reset"))

        with pytest.raises(OSError):
            await run_visit_cleanup(make_pool(conn), make_settings(), now=T0)
