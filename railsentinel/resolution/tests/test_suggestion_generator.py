"""
Tests for corrective suggestion generation and ranking.
"""

from datetime import timedelta

import pytest

from railsentinel.models import (
    CongestionTrend, CorrectiveSuggestion, EmergencyStopAction, HoldAtStationAction,
    MovementKind, RiskAssessment, RouteModificationAction, ScheduledMovement,
    SignalAdjustmentAction, SignalAspect, SpeedReductionAction, Strategy, TrendDirection,
)
from railsentinel.orchestration.orchestrator import RiskOrchestrator
from railsentinel.resolution.suggestion_generator import (
    ALL_INBOUND, CAUTION_SPEED_KMH, SuggestionGenerator, rank,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def orchestrator():
    orchestrator = RiskOrchestrator()
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def generator():
    return SuggestionGenerator()


@pytest.fixture
def assess(orchestrator):
    return orchestrator.run_cycle


def forecast_assessment(t0, snapshot_id=1):
    trend = CongestionTrend(
        segment_id="S2",
        current_level=0.0,
        projected_level=1.5,
        peak_level=1.5,
        net_flow_per_min=0.1,
        trend=TrendDirection.RISING,
        minutes_to_overload=16.0,
        points=((0, 0.0), (30, 3.0)),
        explanation="3 arrivals and 0 departures in the next 30 min",
    )
    return RiskAssessment("RA-F", snapshot_id, t0, 37.5, congestion_forecast=(trend,))


def strategies(suggestions):
    return [s.strategy for s in suggestions]


# =============================================================================
# Per finding
# =============================================================================

class TestCollisionSuggestions:

    def test_critical_collision_offers_emergency_stop(self, generator, assess, head_on_snapshot):
        suggestions = generator.generate(assess(head_on_snapshot), head_on_snapshot)

        assert strategies(suggestions) == [Strategy.EMERGENCY_STOP, Strategy.SPEED_REDUCTION]
        assert [s.priority for s in suggestions] == [1, 2]
        stop, slow = suggestions
        assert stop.actions == (EmergencyStopAction("T-A"), EmergencyStopAction("T-B"))
        assert stop.implementation_time_seconds == pytest.approx(60 / 3.6 / 1.2, abs=0.1)
        assert slow.actions == (SpeedReductionAction("T-A", 30.0), SpeedReductionAction("T-B", 30.0))
        assert stop.finding_key == "collision_scenario:T-A|T-B"

    def test_without_snapshot_uses_caution_speed(self, generator, assess, head_on_snapshot):
        suggestions = generator.generate(assess(head_on_snapshot))

        slow = next(s for s in suggestions if s.strategy == Strategy.SPEED_REDUCTION)
        assert {a.target_speed_kmh for a in slow.actions} == {CAUTION_SPEED_KMH}

    def test_mismatched_snapshot_is_ignored(self, generator, assess, head_on_snapshot, make_snapshot, caplog):
        later = make_snapshot(snapshot_id=2)

        suggestions = generator.generate(assess(head_on_snapshot), later)

        slow = next(s for s in suggestions if s.strategy == Strategy.SPEED_REDUCTION)
        assert {a.target_speed_kmh for a in slow.actions} == {CAUTION_SPEED_KMH}
        assert "does not match" in caplog.text


class TestSignalSuggestions:

    def test_signal_conflict(self, generator, assess, make_entity, make_signal, make_snapshot):
        snapshot = make_snapshot(
            [make_entity("T-A", "S1", 5800.0), make_entity("T-B", "S4", 1900.0)],
            [make_signal("SIG-1", "green", "S2", ["T-A"]), make_signal("SIG-2", "green", "S2", ["T-B"])],
        )

        suggestions = generator.generate(assess(snapshot), snapshot)

        assert strategies(suggestions) == [Strategy.SIGNAL_ADJUSTMENT, Strategy.SPEED_REDUCTION]
        assert suggestions[0].actions == (SignalAdjustmentAction("SIG-2", SignalAspect.RED),)

    def test_signal_overrun(self, generator, assess, make_entity, make_signal, make_snapshot):
        snapshot = make_snapshot(
            [make_entity("T-C", "S2", 150.0, 45.0)],
            [make_signal("SIG-3", "red", "S2", ["T-C"]), make_signal("SIG-4", "green", "S2")],
        )

        suggestions = generator.generate(assess(snapshot), snapshot)

        assert strategies(suggestions) == [Strategy.EMERGENCY_STOP, Strategy.SIGNAL_ADJUSTMENT]
        assert suggestions[0].actions == (EmergencyStopAction("T-C"),)
        assert suggestions[1].actions == (SignalAdjustmentAction("SIG-4", SignalAspect.RED),)

    def test_speed_limit(self, generator, assess, make_entity, make_snapshot):
        snapshot = make_snapshot([make_entity("T-S", "S2", 500.0, 100.0)])

        suggestions = generator.generate(assess(snapshot), snapshot)

        assert len(suggestions) == 1
        assert suggestions[0].actions == (SpeedReductionAction("T-S", 80.0),)
        assert suggestions[0].implementation_time_seconds == pytest.approx(11.1)


class TestCongestionSuggestions:

    def test_over_capacity(self, generator, assess, over_capacity_snapshot):
        suggestions = generator.generate(assess(over_capacity_snapshot), over_capacity_snapshot)

        assert strategies(suggestions) == [
            Strategy.HOLD_AT_STATION, Strategy.HOLD_AT_STATION,
            Strategy.ROUTE_MODIFICATION, Strategy.ROUTE_MODIFICATION,
        ]
        capacity_hold = suggestions[0]
        assert capacity_hold.finding_key.startswith("track_capacity:S1")
        assert capacity_hold.actions == (HoldAtStationAction("T-1", "ST2", 180),)
        capacity_reroute = suggestions[2]
        assert capacity_reroute.actions == (RouteModificationAction("T-1", ("S1",), ("S3", "S4")),)
        assert len(suggestions[1].actions) == 4

    def test_forecast_without_entities_holds_all_inbound(self, generator, t0):
        suggestions = generator.generate(forecast_assessment(t0))

        assert len(suggestions) == 1
        assert suggestions[0].actions == (HoldAtStationAction(ALL_INBOUND, None, 180),)
        assert suggestions[0].affected_entity_ids == ()

    def test_forecast_targets_scheduled_arrivals(self, generator, t0, make_snapshot):
        snapshot = make_snapshot(movements=[
            ScheduledMovement("T-7", "S2", MovementKind.ARRIVAL, t0 + timedelta(minutes=4)),
        ])

        suggestions = generator.generate(forecast_assessment(t0), snapshot)

        hold = next(s for s in suggestions if s.strategy == Strategy.HOLD_AT_STATION)
        reroute = next(s for s in suggestions if s.strategy == Strategy.ROUTE_MODIFICATION)
        assert hold.actions == (HoldAtStationAction("T-7", "ST1", 180),)
        # No way from B to C except S2
        assert reroute.actions == (RouteModificationAction("T-7", ("S2",), ()),)
        assert reroute.effectiveness == pytest.approx(0.30)


# =============================================================================
# Ranking
# =============================================================================

class TestRanking:

    def test_no_findings_no_suggestions(self, generator, t0):
        assert generator.generate(RiskAssessment("RA-0", 1, t0, 0.0)) == []

    def test_generation_is_deterministic(self, generator, assess, over_capacity_snapshot):
        assessment = assess(over_capacity_snapshot)

        first = generator.generate(assessment, over_capacity_snapshot)
        second = generator.generate(assessment, over_capacity_snapshot)

        assert first == second

    def test_rank_orders_and_numbers(self):
        def suggestion(sid, effectiveness, seconds):
            return CorrectiveSuggestion(
                id=sid,
                finding_key="k",
                strategy=Strategy.SPEED_REDUCTION,
                affected_entity_ids=("T-1",),
                actions=(SpeedReductionAction("T-1", 40.0),),
                effectiveness=effectiveness,
                implementation_time_seconds=seconds,
            )

        ranked = rank([
            suggestion("c", 0.5, 10.0),
            suggestion("b", 0.9, 30.0),
            suggestion("a", 0.9, 30.0),
            suggestion("d", 0.9, 5.0),
        ])

        assert [s.id for s in ranked] == ["d", "a", "b", "c"]
        assert [s.priority for s in ranked] == [1, 2, 3, 4]
