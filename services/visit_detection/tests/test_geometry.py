"""
Tests for services/visit_detection/geometry.py.
"""

from __future__ import annotations

import pytest

from services.visit_detection.geometry import (
    effective_radius,
    haversine_m,
    lookup_radius,
    should_reject_for_accuracy,
)
from services.visit_detection.tests.conftest import ORIGIN, make_settings, offset


class TestAccuracyGate:
    def test_rejects_above_threshold(self):
        assert should_reject_for_accuracy(150, make_settings(visited_accuracy_reject_meters=100))

    def test_keeps_at_threshold(self):
        assert not should_reject_for_accuracy(100, make_settings(visited_accuracy_reject_meters=100))

    def test_zero_threshold_disables_gate(self):
        assert not should_reject_for_accuracy(5000, make_settings(visited_accuracy_reject_meters=0))

    def test_missing_accuracy_never_rejected(self):
        assert not should_reject_for_accuracy(None, make_settings(visited_accuracy_reject_meters=10))


class TestEffectiveRadius:
    @pytest.mark.parametrize(
        "accuracy,expected",
        [
            (5, 35),     # 10 m clamps up to min
            (20, 40),    # 40 m passes through
            (80, 100),   # 160 m clamps down to max
            (0, 35),
        ],
    )
    def test_clamped_between_min_and_max(self, accuracy, expected):
        assert effective_radius(accuracy, make_settings()) == pytest.approx(expected)

    def test_missing_accuracy_defaults_to_max(self):
        assert effective_radius(None, make_settings()) == 100

    def test_missing_accuracy_min_policy(self):
        s = make_settings(missing_accuracy_radius_policy="min")
        assert effective_radius(None, s) == 35

    def test_multiplier_applied(self):
        s = make_settings(visited_accuracy_multiplier=3.0)
        assert effective_radius(20, s) == pytest.approx(60)


class TestLookupRadius:
    def test_capped_by_search_radius(self):
        s = make_settings(
            visited_max_radius_meters=300,
            visited_max_search_radius_meters=300,
        )
        assert lookup_radius(400, s) == 300

    def test_equals_effective_radius_when_below_cap(self):
        assert lookup_radius(20, make_settings()) == pytest.approx(40)


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_m(ORIGIN.latitude, ORIGIN.longitude, ORIGIN.latitude, ORIGIN.longitude) == 0

    def test_offset_helper_roughly_matches(self):
        moved = offset(ORIGIN, north_m=30, east_m=40)
        d = haversine_m(ORIGIN.latitude, ORIGIN.longitude, moved.latitude, moved.longitude)
        assert d == pytest.approx(50, rel=0.01)

    def test_one_degree_latitude(self):
        assert haversine_m(0, 0, 1, 0) == pytest.approx(111_195, rel=0.001)
