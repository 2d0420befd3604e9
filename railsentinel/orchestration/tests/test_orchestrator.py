"""
Tests for the Risk Orchestrator.
Validates concurrent evaluation, score fusion, degradation and the predictor contract.
"""

import logging
import math
import threading

import pytest

from railsentinel.config import CycleConfig, SentinelConfig
from railsentinel.detection.engine import RuleEngine
from railsentinel.detection.rules import SafetyRule, default_rules
from railsentinel.errors import ConfigurationError
from railsentinel.models import (
    AnomalyScore, CollisionPrediction, CongestionMetrics, CongestionState, RoutingRisk,
    RuleViolation, Severity, ViolationType,
)
from railsentinel.orchestration.orchestrator import RiskOrchestrator, fuse_scores
from railsentinel.prediction.port import PredictiveRiskPort


# =============================================================================
# Test Doubles
# =============================================================================

class StubPredictor(PredictiveRiskPort):
    def __init__(self, collisions=(), anomalies=(), error=None, block=None):
        self.collisions = list(collisions)
        self.anomalies = list(anomalies)
        self.error = error
        self.block = block

    def predict_collisions(self, snapshot, horizon_seconds):
        if self.block is not None:
            self.block.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return list(self.collisions)

    def detect_anomalies(self, entity):
        return AnomalyScore(entity.id, 0.0, 1.0)

    def detect_all_anomalies(self, snapshot):
        return list(self.anomalies)


class LegacyPredictor(StubPredictor):
    contract_version = "0.9"


class BrokenRule(SafetyRule):
    rule_id = "TEST_BROKEN"
    description = "Always raises"
    violation_type = ViolationType.SPEED_LIMIT

    def evaluate(self, snapshot):
        raise ValueError("bad geometry")


def prediction(a, b, probability, confidence=0.9):
    return CollisionPrediction(
        entity_pair_id=CollisionPrediction.pair_id(a, b),
        entity_ids=tuple(sorted((a, b))),
        probability=probability,
        confidence=confidence,
        time_horizon_seconds=300.0,
        time_to_collision_s=100.0,
    )


@pytest.fixture
def fast_config():
    return SentinelConfig(cycle=CycleConfig(
        cycle_period_seconds=5.0,
        cycle_budget_seconds=1.0,
        rules_deadline_seconds=0.3,
        predictor_deadline_seconds=0.2,
        congestion_deadline_seconds=0.3,
    ))


@pytest.fixture
def orchestrator():
    orchestrator = RiskOrchestrator()
    yield orchestrator
    orchestrator.shutdown()


# =============================================================================
# Fusion
# =============================================================================

class TestFuseScores:

    def test_empty_is_zero(self, config):
        assert fuse_scores((), (), (), (), config) == 0.0

    def test_maximum_of_weighted_categories(self, config):
        collisions = (prediction("A", "B", 0.6),)
        routing = (RoutingRisk("R1", ("A",), 40.0, 0.0, 0.0, 0.0),)
        congestion = (CongestionMetrics("S1", 1, 2, 0.5, CongestionState.BUSY),)

        assert fuse_scores((), collisions, routing, congestion, config) == pytest.approx(60.0)

    def test_critical_violation_dominates(self, t0, config):
        violation = RuleViolation(
            "SIGNAL_CONFLICT_001", ViolationType.SIGNAL_CONFLICT, ("A", "B"), Severity.CRITICAL, t0
        )
        assert fuse_scores((violation,), (), (), (), config) == 100.0

    def test_congestion_is_capped_and_weighted(self, config):
        congestion = (CongestionMetrics("S1", 4, 3, 4 / 3, CongestionState.OVERLOAD),)
        assert fuse_scores((), (), (), congestion, config) == pytest.approx(75.0)

    def test_non_finite_level_is_maximum_risk(self, config):
        congestion = (CongestionMetrics("S1", 1, 0, math.inf, CongestionState.OVERLOAD),)
        assert fuse_scores((), (), (), congestion, config) == 100.0


# =============================================================================
# Cycle
# =============================================================================

class TestRunCycle:

    def test_head_on_assessment(self, orchestrator, head_on_snapshot):
        assessment = orchestrator.run_cycle(head_on_snapshot)

        assert assessment.assessment_id == "RA-00000001"
        assert assessment.snapshot_id == 1
        assert assessment.evaluated_at == head_on_snapshot.taken_at
        assert not assessment.degraded
        assert len(assessment.collision_scenarios) == 1
        assert assessment.collision_scenarios[0].probability > 0.7
        assert assessment.overall_risk_score == pytest.approx(
            100.0 * assessment.collision_scenarios[0].probability
        )
        assert [c.segment_id for c in assessment.congestion] == ["S1", "S2", "S3", "S4", "S5"]
        assert {name for name, _ in assessment.component_ms} == {"rules", "predictor", "congestion"}
        assert orchestrator.last_known_good is assessment

    def test_over_capacity_assessment(self, orchestrator, over_capacity_snapshot):
        assessment = orchestrator.run_cycle(over_capacity_snapshot)

        assert [v.rule_id for v in assessment.rule_violations] == ["TRACK_CAPACITY_001"]
        assert assessment.collision_scenarios == ()
        assert assessment.overall_risk_score == pytest.approx(75.0)

    def test_same_snapshot_same_content(self, orchestrator, head_on_snapshot):
        first = orchestrator.run_cycle(head_on_snapshot)
        second = orchestrator.run_cycle(head_on_snapshot)

        assert first.to_dict(include_metadata=False) == second.to_dict(include_metadata=False)

    def test_signal_conflicts_exposed(self, orchestrator, make_entity, make_signal, make_snapshot):
        snapshot = make_snapshot(
            [make_entity("T-A", "S1", 5800.0), make_entity("T-B", "S4", 1900.0)],
            [make_signal("SIG-1", "green", "S2", ["T-A"]), make_signal("SIG-2", "green", "S2", ["T-B"])],
        )

        assessment = orchestrator.run_cycle(snapshot)

        assert len(assessment.signal_conflicts) == 1
        assert assessment.overall_risk_score == 100.0


# =============================================================================
# Degradation
# =============================================================================

class TestDegradation:

    def test_failing_predictor(self, over_capacity_snapshot):
        orchestrator = RiskOrchestrator(predictor=StubPredictor(error=RuntimeError("model down")))
        try:
            assessment = orchestrator.run_cycle(over_capacity_snapshot)
        finally:
            orchestrator.shutdown()

        assert assessment.degraded
        assert any(r.startswith("predictor error") for r in assessment.degraded_reasons)
        assert assessment.collision_scenarios == ()
        assert [v.rule_id for v in assessment.rule_violations] == ["TRACK_CAPACITY_001"]
        assert dict(assessment.component_ms)["predictor"] >= 0.0

    def test_predictor_timeout(self, fast_config, over_capacity_snapshot, caplog):
        release = threading.Event()
        orchestrator = RiskOrchestrator(predictor=StubPredictor(block=release), config=fast_config)
        try:
            with caplog.at_level(logging.ERROR):
                assessment = orchestrator.run_cycle(over_capacity_snapshot)
        finally:
            release.set()
            orchestrator.shutdown()

        assert assessment.degraded
        assert any(r.startswith("predictor timeout") for r in assessment.degraded_reasons)
        assert assessment.rule_violations
        assert assessment.congestion
        assert "subcomponent_timeout[predictor" in caplog.text

    def test_hung_predictor_never_starves_rules(self, make_entity, make_signal, make_snapshot):
        release = threading.Event()
        config = SentinelConfig(cycle=CycleConfig(
            cycle_budget_seconds=1.0,
            rules_deadline_seconds=0.3,
            predictor_deadline_seconds=0.2,
            congestion_deadline_seconds=0.3,
            max_workers=3,
        ))
        orchestrator = RiskOrchestrator(predictor=StubPredictor(block=release), config=config)
        snapshot = make_snapshot(
            [make_entity("T-A", "S1", 5800.0), make_entity("T-B", "S4", 1900.0)],
            [make_signal("SIG-1", "green", "S2", ["T-A"]), make_signal("SIG-2", "green", "S2", ["T-B"])],
        )
        try:
            assessments = [orchestrator.run_cycle(snapshot) for _ in range(8)]
        finally:
            release.set()
            orchestrator.shutdown()

        for assessment in assessments:
            assert len(assessment.signal_conflicts) == 1
            assert [r.split(":")[0] for r in assessment.degraded_reasons] == ["predictor timeout"]
        assert "still running from an earlier cycle" in assessments[-1].degraded_reasons[0]

    def test_rule_failure_degrades(self, over_capacity_snapshot):
        engine = RuleEngine(rules=default_rules() + [BrokenRule()])
        orchestrator = RiskOrchestrator(rule_engine=engine)
        try:
            assessment = orchestrator.run_cycle(over_capacity_snapshot)
        finally:
            orchestrator.shutdown()

        assert assessment.degraded
        assert any("TEST_BROKEN" in r for r in assessment.degraded_reasons)
        assert [v.rule_id for v in assessment.rule_violations] == ["TRACK_CAPACITY_001"]

    def test_excluded_entities_degrade(self, orchestrator, make_entity, make_snapshot):
        snapshot = make_snapshot([make_entity("T-1", "S1", 100.0)], excluded=["T-BAD"])

        assessment = orchestrator.run_cycle(snapshot)

        assert assessment.degraded
        assert assessment.excluded_entity_ids == ("T-BAD",)
        assert orchestrator.last_known_good is None

    def test_contract_violations_discarded(self, head_on_snapshot, caplog):
        predictor = StubPredictor(
            collisions=[
                prediction("T-A", "T-B", 0.4),
                prediction("T-A", "T-B", math.nan),
                prediction("T-A", "T-B", 1.7),
                prediction("T-A", "T-B", 0.5, confidence=-0.1),
                prediction("T-A", "T-GHOST", 0.5),
            ],
            anomalies=[AnomalyScore("T-A", 0.2, 0.9), AnomalyScore("T-B", 3.0, 0.9)],
        )
        orchestrator = RiskOrchestrator(predictor=predictor)
        try:
            assessment = orchestrator.run_cycle(head_on_snapshot)
        finally:
            orchestrator.shutdown()

        assert [p.probability for p in assessment.collision_scenarios] == [0.4]
        assert [a.entity_id for a in assessment.anomalies] == ["T-A"]
        assert orchestrator.get_statistics()["contract_violations"] == 5
        assert "contract_violation" in caplog.text

    def test_contract_version_mismatch_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            orchestrator = RiskOrchestrator(predictor=LegacyPredictor())
        orchestrator.shutdown()
        assert "contract 0.9" in caplog.text


# =============================================================================
# Snapshot unavailable
# =============================================================================

class TestSnapshotUnavailable:

    def test_no_prior_assessment_is_maximum_risk(self, orchestrator):
        assessment = orchestrator.run_cycle(None)

        assert assessment.overall_risk_score == 100.0
        assert assessment.snapshot_id == 0
        assert assessment.degraded
        assert assessment.assessment_id == "RA-UNAVAILABLE-0001"

    def test_reuses_last_known_good(self, orchestrator, head_on_snapshot):
        good = orchestrator.run_cycle(head_on_snapshot)

        fallback = orchestrator.run_cycle(None)

        assert fallback.assessment_id == good.assessment_id
        assert fallback.overall_risk_score == good.overall_risk_score
        assert fallback.degraded
        assert "snapshot unavailable" in fallback.degraded_reasons[0]
        assert orchestrator.get_statistics()["snapshots_unavailable"] == 1

    def test_fallback_carries_newest_snapshot_id(self, orchestrator, make_entity, make_snapshot):
        orchestrator.run_cycle(make_snapshot([make_entity("T-1", "S3", 100.0)], snapshot_id=4, excluded=["T-BAD"]))

        fallback = orchestrator.run_cycle(None)

        assert fallback.snapshot_id == 4
        assert fallback.overall_risk_score == 100.0
        assert fallback.degraded_reasons == ("snapshot unavailable; no last known good assessment",)

    def test_invalid_config_rejected(self):
        bad = SentinelConfig(cycle=CycleConfig(rules_deadline_seconds=3.0))
        with pytest.raises(ConfigurationError):
            RiskOrchestrator(config=bad)
