"""
Tests for the kinematic and ensemble collision predictors.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from railsentinel.config import PredictionConfig
from railsentinel.models import Direction, EntityStatus
from railsentinel.prediction.port import PORT_CONTRACT_VERSION, PredictiveRiskPort
from railsentinel.prediction.predictor import EnsembleRiskPredictor, KinematicRiskPredictor

HEAD_ON_PROBABILITY = 1.0 / (1.0 + np.exp((147.0 - 240.0) / 60.0))


@pytest.fixture
def predictor():
    return KinematicRiskPredictor()


# =============================================================================
# Kinematic predictor
# =============================================================================

class TestKinematicCollisions:

    def test_implements_port(self, predictor):
        assert isinstance(predictor, PredictiveRiskPort)
        assert predictor.contract_version == PORT_CONTRACT_VERSION

    def test_head_on_within_horizon(self, predictor, head_on_snapshot):
        predictions = predictor.predict_collisions(head_on_snapshot, 300.0)

        assert len(predictions) == 1
        prediction = predictions[0]
        assert prediction.entity_pair_id == "T-A|T-B"
        assert prediction.time_to_collision_s == pytest.approx(147.0)
        assert prediction.probability == pytest.approx(HEAD_ON_PROBABILITY)
        assert prediction.probability > 0.7
        assert prediction.model_used == "kinematic"
        assert prediction.time_horizon_seconds == 300.0
        features = {f.name: f.value for f in prediction.contributing_features}
        assert features["distance_m"] == pytest.approx(4900.0)

    def test_beyond_horizon_is_not_reported(self, predictor, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-A", "S1", 100.0, 10.0, direction=Direction.FORWARD),
            make_entity("T-B", "S1", 5000.0, 10.0, direction=Direction.REVERSE),
        ])
        assert predictor.predict_collisions(snapshot, 300.0) == []

    def test_same_direction_same_speed_is_safe(self, predictor, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-A", "S1", 100.0, 80.0),
            make_entity("T-B", "S1", 2000.0, 80.0),
        ])
        assert predictor.predict_collisions(snapshot, 300.0) == []

    def test_red_signal_reduces_probability(self, predictor, head_on_snapshot, make_signal, make_snapshot):
        protected = make_snapshot(
            head_on_snapshot.entities.values(),
            [make_signal("SIG-1", "red", "S1", ["T-B"])],
        )

        prediction = predictor.predict_collisions(protected, 300.0)[0]

        assert prediction.probability == pytest.approx(HEAD_ON_PROBABILITY * 0.3)

    def test_confidence_without_history(self, predictor, head_on_snapshot):
        prediction = predictor.predict_collisions(head_on_snapshot, 300.0)[0]
        assert prediction.confidence == pytest.approx(0.72)

    def test_confidence_capped_when_connection_lost(self, predictor, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-A", "S1", 100.0, 60.0),
            make_entity("T-B", "S1", 5000.0, 60.0, direction=Direction.REVERSE,
                        status=EntityStatus.CONNECTION_LOST),
        ])

        prediction = predictor.predict_collisions(snapshot, 300.0)[0]

        assert prediction.confidence <= 0.4

    def test_confidence_decays_with_staleness(self, t0, predictor, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-A", "S1", 100.0, 60.0, last_update=t0 - timedelta(seconds=60)),
            make_entity("T-B", "S1", 5000.0, 60.0, direction=Direction.REVERSE),
        ])

        prediction = predictor.predict_collisions(snapshot, 300.0)[0]

        assert prediction.confidence == pytest.approx(0.72 * 30.0 / 60.0)

    def test_ttc_probability_is_monotonic(self, predictor):
        values = [predictor.ttc_probability(t) for t in (0.0, 60.0, 240.0, 600.0, 1e9)]
        assert values == sorted(values, reverse=True)
        assert values[2] == pytest.approx(0.5)
        assert 0.0 <= values[-1] <= values[0] <= 1.0


class TestKinematicAnomalies:

    def test_clean_entity(self, predictor, make_entity, trajectory):
        entity = make_entity(
            "T-A", trajectory=trajectory((0, "S1", 0.0, 36.0), (10, "S1", 100.0, 36.0))
        )

        score = predictor.detect_anomalies(entity)

        assert score.score == 0.0
        assert score.reasons == ()
        assert score.confidence == pytest.approx(0.7)

    def test_implausible_acceleration_and_jump(self, predictor, make_entity, trajectory):
        entity = make_entity(
            "T-A",
            trajectory=trajectory((0, "S1", 100.0, 0.0), (1, "S1", 100.0, 100.0), (11, "S1", 2100.0, 100.0)),
        )

        score = predictor.detect_anomalies(entity)

        assert score.score == 1.0
        assert any(r.startswith("implausible_acceleration") for r in score.reasons)
        assert any(r.startswith("position_jump") for r in score.reasons)

    def test_stale_and_disconnected(self, t0, predictor, make_entity):
        entity = make_entity(
            "T-A", status=EntityStatus.CONNECTION_LOST, last_update=t0 - timedelta(seconds=90)
        )

        score = predictor.detect_anomalies(entity, reference_time=t0)

        assert score.score == pytest.approx(0.7)
        assert score.reasons[0].startswith("stale_data")
        assert score.reasons[1] == "connection_lost"

    def test_detect_all_uses_snapshot_time(self, t0, predictor, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-B", last_update=t0 - timedelta(seconds=45)),
            make_entity("T-A", "S3"),
        ])

        scores = predictor.detect_all_anomalies(snapshot)

        assert [s.entity_id for s in scores] == ["T-A", "T-B"]
        assert scores[0].score == 0.0
        assert scores[1].score == pytest.approx(0.3)


# =============================================================================
# Ensemble predictor
# =============================================================================

class TestEnsemblePredictor:

    def test_without_model_uses_heuristic(self, head_on_snapshot):
        prediction = EnsembleRiskPredictor().predict_collisions(head_on_snapshot, 300.0)[0]

        assert prediction.model_used == "heuristic"
        assert prediction.probability == pytest.approx(HEAD_ON_PROBABILITY)

    def test_agreement_boost_is_capped(self, head_on_snapshot):
        model = MagicMock()
        model.predict_proba.return_value = np.array([[0.1, 0.9]])

        prediction = EnsembleRiskPredictor(model=model).predict_collisions(head_on_snapshot, 300.0)[0]

        assert prediction.model_used == "ensemble"
        assert prediction.probability == pytest.approx(0.95)
        args, _ = model.predict_proba.call_args
        assert args[0].shape == (1, 10)

    def test_weighted_blend_without_agreement(self, head_on_snapshot):
        model = MagicMock()
        model.predict_proba.return_value = np.array([[0.8, 0.2]])

        prediction = EnsembleRiskPredictor(model=model).predict_collisions(head_on_snapshot, 300.0)[0]

        assert prediction.probability == pytest.approx(0.7 * 0.2 + 0.3 * HEAD_ON_PROBABILITY)

    @pytest.mark.parametrize("behaviour", [
        {"side_effect": RuntimeError("model crashed")},
        {"return_value": np.array([[np.nan, np.nan]])},
    ])
    def test_model_failure_falls_back(self, head_on_snapshot, behaviour):
        model = MagicMock()
        model.predict_proba.configure_mock(**behaviour)

        prediction = EnsembleRiskPredictor(model=model).predict_collisions(head_on_snapshot, 300.0)[0]

        assert prediction.model_used == "heuristic_fallback"
        assert prediction.probability == pytest.approx(HEAD_ON_PROBABILITY)

    def test_missing_model_file(self, tmp_path):
        predictor = EnsembleRiskPredictor(model_path=tmp_path / "missing.joblib")
        assert predictor.model is None

    def test_model_loaded_with_joblib(self, tmp_path):
        path = tmp_path / "collision.joblib"
        path.write_bytes(b"placeholder")
        loaded = MagicMock()

        with patch("railsentinel.prediction.predictor.joblib.load", return_value=loaded) as load:
            predictor = EnsembleRiskPredictor(PredictionConfig(model_path=str(path)))

        load.assert_called_once_with(path)
        assert predictor.model is loaded

    def test_corrupt_model_file(self, tmp_path):
        path = tmp_path / "collision.joblib"
        path.write_bytes(b"not a pickle")

        with patch("railsentinel.prediction.predictor.joblib.load", side_effect=EOFError("truncated")):
            predictor = EnsembleRiskPredictor(model_path=path)

        assert predictor.model is None
