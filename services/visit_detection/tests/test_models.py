"""
Tests for services/visit_detection/models.py.
"""

from __future__ import annotations

import pytest

from services.visit_detection.models import (
    Coordinate,
    PlaceVisitCandidate,
    VisitConfirmed,
    VisitState,
    resolve_state,
)
from services.visit_detection.tests.conftest import T0, make_candidate, make_visit, minutes


class TestCoordinate:
    @pytest.mark.parametrize("lat,lon", [(91, 0), (-90.5, 0), (0, 181), (0, -180.1)])
    def test_out_of_range_rejected(self, lat, lon):
        with pytest.raises(ValueError):
            Coordinate(lat, lon)

    def test_poles_and_antimeridian_allowed(self):
        Coordinate(90, 180)
        Coordinate(-90, -180)


class TestCandidate:
    def test_new_candidate_has_zero_hits(self):
        c = PlaceVisitCandidate(user_id="u", place_id="p", first_hit_utc=T0, last_hit_utc=T0)
        assert c.consecutive_hits == 0

    def test_first_hit(self):
        c = PlaceVisitCandidate.first_hit("u", "p", T0)
        assert c.consecutive_hits == 1
        assert c.first_hit_utc == c.last_hit_utc == T0

    def test_record_hit_advances(self):
        c = make_candidate()
        c.record_hit(T0 + minutes(3))
        assert c.consecutive_hits == 2
        assert c.last_hit_utc == T0 + minutes(3)
        assert c.first_hit_utc == T0

    def test_out_of_order_hit_does_not_rewind(self):
        c = make_candidate(first_hit_utc=T0, last_hit_utc=T0 + minutes(5))
        c.record_hit(T0 + minutes(2))
        assert c.last_hit_utc == T0 + minutes(5)


class TestVisit:
    def test_open_until_closed(self):
        v = make_visit()
        assert v.is_open
        v.close()
        assert not v.is_open

    def test_close_freezes_at_last_seen(self):
        v = make_visit(last_seen_at_utc=T0 + minutes(17))
        v.close()
        assert v.ended_at_utc == T0 + minutes(17)

    def test_observed_dwell_minutes(self):
        v = make_visit(arrived_at_utc=T0, last_seen_at_utc=T0 + minutes(42))
        assert v.observed_dwell_minutes == pytest.approx(42)

    def test_observed_dwell_zero_for_single_sighting(self):
        v = make_visit(arrived_at_utc=T0, last_seen_at_utc=T0)
        assert v.observed_dwell_minutes == 0.0

    def test_extend_moves_last_seen_forward_only(self):
        v = make_visit(last_seen_at_utc=T0 + minutes(10))
        v.extend(T0 + minutes(20))
        assert v.last_seen_at_utc == T0 + minutes(20)
        v.extend(T0 + minutes(15))
        assert v.last_seen_at_utc == T0 + minutes(20)

    def test_ids_are_unique(self):
        assert make_visit().id != make_visit().id

    def test_confirmed_carries_snapshots(self):
        v = make_visit(icon_name_snapshot="museum", marker_color_snapshot="bg-red")
        event = VisitConfirmed.from_visit(v)
        assert event.visit_id == v.id
        assert event.arrived_at_utc == v.arrived_at_utc
        assert event.place_name == "Praça do Comércio"
        assert event.icon_name == "museum"
        assert event.marker_color == "bg-red"


class TestResolveState:
    def test_nothing(self):
        assert resolve_state(None, None) is VisitState.NO_VISIT

    def test_candidate(self):
        assert resolve_state(make_candidate(), None) is VisitState.CANDIDATE

    def test_zero_hit_candidate_is_not_a_candidate(self):
        assert resolve_state(make_candidate(consecutive_hits=0), None) is VisitState.NO_VISIT

    def test_open_visit_wins(self):
        assert resolve_state(make_candidate(), make_visit()) is VisitState.OPEN

    def test_closed_visit(self):
        v = make_visit()
        v.close()
        assert resolve_state(None, v) is VisitState.CLOSED

    def test_candidate_wins_over_closed_visit(self):
        v = make_visit()
        v.close()
        assert resolve_state(make_candidate(), v) is VisitState.CANDIDATE
