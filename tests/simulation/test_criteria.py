"""Unit tests for CriteriaEvaluator and CoverageGrid."""
from __future__ import annotations

import pytest

from fleetsim.geo import GeoReference
from fleetsim.simulation.criteria import CoverageGrid, CriteriaEvaluator
from fleetsim.simulation.models import FlightMode

GEO = GeoReference(lat=37.0, lon=-122.0)

AREA = {"kind": "area_coverage",
        "south_west": {"lat": 36.9995, "lon": -122.0006},
        "north_east": {"lat": 37.0005, "lon": -121.9994},
        "cell_size_m": 10, "threshold": 0.9}


class FixedQualityRadio:
    def __init__(self, quality: float) -> None:
        self.quality = quality

    def link_quality(self, a: str, b: str) -> float:
        return self.quality


@pytest.mark.unit
class TestCoverageGrid:
    def test_starts_empty(self):
        assert CoverageGrid(0.0, 0.0, 100.0, 100.0, 10.0).fraction == 0.0

    def test_sweep_marks_cells_within_radius(self):
        grid = CoverageGrid(0.0, 0.0, 100.0, 100.0, 10.0)
        grid.sweep(5.0, 5.0, 1.0)
        assert grid.fraction == pytest.approx(0.01)

    def test_full_sweep(self):
        grid = CoverageGrid(0.0, 0.0, 100.0, 100.0, 10.0)
        grid.sweep(50.0, 50.0, 100.0)
        assert grid.fraction == 1.0

    def test_zero_radius_is_ignored(self):
        grid = CoverageGrid(0.0, 0.0, 10.0, 10.0, 10.0)
        grid.sweep(5.0, 5.0, 0.0)
        assert grid.fraction == 0.0


@pytest.mark.unit
class TestSuccessCriteria:
    def test_no_criteria_never_succeeds(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(make_definition(), GEO)
        assert not evaluator.has_success_criteria
        assert evaluator.success_reason([drone_factory()]) is None

    def test_all_landed(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(make_definition(success=[{"kind": "all_landed"}]), GEO)
        landed = drone_factory("a", position=(0.0, 0.0, 0.0), mode=FlightMode.LANDED)
        flying = drone_factory("b")
        crashed = drone_factory("c", position=(0.0, 0.0, 0.0), mode=FlightMode.CRASHED, target=None)
        assert evaluator.success_reason([landed, flying]) is None
        assert evaluator.success_reason([landed, crashed]) == "success criteria met: all_landed"
        assert evaluator.success_reason([crashed]) is None

    def test_reach_position(self, make_definition, drone_factory):
        criterion = {"kind": "reach_position", "drone_id": "d1",
                     "position": {"lat": 37.0, "lon": -122.0, "alt": 20.0}, "radius_m": 2.0}
        evaluator = CriteriaEvaluator(make_definition(success=[criterion]), GEO)
        assert evaluator.success_reason([drone_factory(position=(0.0, 1.0, 20.0))]) is not None
        assert evaluator.success_reason([drone_factory(position=(0.0, 5.0, 20.0))]) is None

    def test_target_detection_latches(self, make_definition, drone_factory):
        criterion = {"kind": "target_detected", "target": {"lat": 37.0002, "lon": -122.0}}
        evaluator = CriteriaEvaluator(make_definition(success=[criterion]), GEO)
        far = drone_factory(position=(0.0, -200.0, 20.0))
        evaluator.update([far], FixedQualityRadio(1.0), 0.1)
        assert evaluator.success_reason([far]) is None
        near = drone_factory(position=(0.0, 0.0, 20.0))
        evaluator.update([near], FixedQualityRadio(1.0), 0.2)
        assert evaluator.success_reason([far]) == "success criteria met: target_detected"

    def test_detection_needs_matching_sensor(self, make_definition, drone_factory):
        criterion = {"kind": "target_detected", "sensor": "thermal",
                     "target": {"lat": 37.0, "lon": -122.0}}
        evaluator = CriteriaEvaluator(make_definition(success=[criterion]), GEO)
        quad = drone_factory(position=(0.0, 0.0, 20.0))
        evaluator.update([quad], FixedQualityRadio(1.0), 0.1)
        assert evaluator.success_reason([quad]) is None

    def test_grounded_drone_does_not_observe(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(make_definition(success=[AREA]), GEO)
        evaluator.update([drone_factory(position=(0.0, 0.0, 0.0), mode=FlightMode.IDLE)],
                         FixedQualityRadio(1.0), 0.1)
        assert evaluator.coverage_fraction(0) == 0.0

    def test_coverage_accumulates(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(make_definition(success=[AREA]), GEO)
        radio = FixedQualityRadio(1.0)
        evaluator.update([drone_factory(position=(-30.0, -30.0, 20.0))], radio, 0.1)
        first = evaluator.coverage_fraction(0)
        evaluator.update([drone_factory(position=(30.0, 30.0, 20.0))], radio, 0.2)
        second = evaluator.coverage_fraction(0)
        assert 0.0 < first < second < 0.9
        for x in (-30.0, 30.0):
            for y in (-30.0, 30.0):
                evaluator.update([drone_factory(position=(x, y, 20.0))], radio, 0.3)
        evaluator.update([drone_factory(position=(0.0, 0.0, 20.0))], radio, 0.4)
        assert evaluator.coverage_fraction(0) >= 0.9
        assert evaluator.success_reason([]) == "success criteria met: area_coverage"

    def test_any_mode(self, make_definition, drone_factory):
        definition = make_definition(success=[{"kind": "all_landed"}, AREA], success_mode="any")
        evaluator = CriteriaEvaluator(definition, GEO)
        landed = drone_factory(position=(0.0, 0.0, 0.0), mode=FlightMode.LANDED)
        assert evaluator.success_reason([landed]) == "success criteria met: all_landed"


@pytest.mark.unit
class TestFailureCriteria:
    def test_all_crashed_is_implicit(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(make_definition(), GEO)
        crashed = drone_factory(position=(0.0, 0.0, 0.0), mode=FlightMode.CRASHED, target=None)
        assert evaluator.failure_reason([crashed], 1.0) == "all drones crashed"
        assert evaluator.failure_reason([crashed, drone_factory("d2")], 1.0) is None

    def test_any_crashed(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(make_definition(failure=[{"kind": "any_crashed"}]), GEO)
        crashed = drone_factory("d2", position=(0.0, 0.0, 0.0), mode=FlightMode.CRASHED, target=None)
        assert evaluator.failure_reason([drone_factory(), crashed], 1.0) == "drone crashed: d2"

    def test_battery_below(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(
            make_definition(failure=[{"kind": "battery_below", "pct": 20}]), GEO)
        assert evaluator.failure_reason([drone_factory(battery_pct=25.0)], 1.0) is None
        assert evaluator.failure_reason([drone_factory(battery_pct=15.0)], 1.0) == \
            "d1 battery below 20%"

    def test_link_lost_after_grace(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(
            make_definition(failure=[{"kind": "link_lost", "grace_s": 5.0}]), GEO)
        drone = drone_factory()
        weak = FixedQualityRadio(0.1)
        evaluator.update([drone], weak, 1.0)
        evaluator.update([drone], weak, 5.0)
        assert evaluator.failure_reason([drone], 5.0) is None
        evaluator.update([drone], weak, 6.0)
        assert evaluator.failure_reason([drone], 6.0) == "d1 lost its link to the bridge"

    def test_link_recovery_resets_timer(self, make_definition, drone_factory):
        evaluator = CriteriaEvaluator(
            make_definition(failure=[{"kind": "link_lost", "grace_s": 5.0}]), GEO)
        drone = drone_factory()
        evaluator.update([drone], FixedQualityRadio(0.1), 1.0)
        evaluator.update([drone], FixedQualityRadio(0.9), 3.0)
        evaluator.update([drone], FixedQualityRadio(0.1), 4.0)
        assert evaluator.failure_reason([drone], 8.0) is None
        assert evaluator.failure_reason([drone], 9.0) is not None
