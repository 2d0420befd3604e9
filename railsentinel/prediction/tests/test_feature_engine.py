"""
Tests for pairwise collision features.
"""

from datetime import timedelta

import numpy as np
import pytest

from railsentinel.models import Direction, EntityStatus
from railsentinel.prediction.feature_engine import FEATURE_NAMES, FeatureEngine


@pytest.fixture
def engine():
    return FeatureEngine()


class TestCandidatePairs:

    def test_same_segment_pair(self, engine, head_on_snapshot):
        pairs = engine.candidate_pairs(head_on_snapshot)
        assert [(a.id, b.id) for a, b in pairs] == [("T-A", "T-B")]

    def test_adjacent_segments_pair_but_distant_do_not(self, engine, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-A", "S1", 5500.0, 72.0),
            make_entity("T-C", "S2", 300.0, 36.0, direction=Direction.REVERSE),
            make_entity("T-Z", "S5", 500.0, 10.0),
        ])

        pairs = engine.candidate_pairs(snapshot)

        assert [(a.id, b.id) for a, b in pairs] == [("T-A", "T-C"), ("T-C", "T-Z")]


class TestPairFeatures:

    def test_head_on_same_segment(self, engine, head_on_snapshot):
        a, b = head_on_snapshot.entities["T-A"], head_on_snapshot.entities["T-B"]

        features = engine.compute_pair_features(head_on_snapshot, a, b)

        assert features.entity_ids == ("T-A", "T-B")
        assert features.same_segment and not features.adjacent_segment
        assert features.distance_m == pytest.approx(4900.0)
        assert features.closing_speed_ms == pytest.approx(120.0 / 3.6)
        assert features.time_to_collision_s == pytest.approx(147.0)

    def test_converging_across_shared_node(self, engine, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-A", "S1", 5500.0, 72.0),
            make_entity("T-C", "S2", 300.0, 36.0, direction=Direction.REVERSE),
        ])

        features = engine.compute_pair_features(
            snapshot, snapshot.entities["T-A"], snapshot.entities["T-C"]
        )

        assert features.adjacent_segment
        assert features.distance_m == pytest.approx(800.0)
        assert features.closing_speed_ms == pytest.approx(30.0)
        assert features.time_to_collision_s == pytest.approx(800.0 / 30.0)

    def test_diverging_pair_has_no_time_to_collision(self, engine, make_entity, make_snapshot):
        snapshot = make_snapshot([
            make_entity("T-A", "S1", 1000.0, 60.0, direction=Direction.REVERSE),
            make_entity("T-B", "S1", 3000.0, 60.0, direction=Direction.FORWARD),
        ])

        features = engine.compute_all(snapshot)[0]

        assert features.closing_speed_ms < 0
        assert features.time_to_collision_s is None

    def test_unconnected_segments(self, engine, make_entity, make_snapshot):
        snapshot = make_snapshot([make_entity("T-A", "S3", 10.0), make_entity("T-B", "S2", 10.0)])
        assert engine.compute_pair_features(
            snapshot, snapshot.entities["T-A"], snapshot.entities["T-B"]
        ) is None

    def test_signal_protection_staleness_and_connection(
        self, t0, engine, make_entity, make_signal, make_snapshot
    ):
        snapshot = make_snapshot(
            [
                make_entity("T-A", "S1", 100.0, 60.0, last_update=t0 - timedelta(seconds=40)),
                make_entity("T-B", "S1", 900.0, 0.0, status=EntityStatus.CONNECTION_LOST),
            ],
            [make_signal("SIG-1", "red", "S1", ["T-A"])],
        )

        features = engine.compute_all(snapshot)[0]

        assert features.signal_protected
        assert features.staleness_s == pytest.approx(40.0)
        assert features.connection_lost

    def test_speed_trend_from_trajectory(self, engine, make_entity, trajectory):
        entity = make_entity(
            "T-A", trajectory=trajectory((0, "S1", 0.0, 36.0), (10, "S1", 125.0, 54.0), (20, "S1", 300.0, 72.0))
        )
        assert engine.speed_trend(entity) == pytest.approx(0.5)

    def test_speed_trend_without_history(self, engine, make_entity):
        assert engine.speed_trend(make_entity("T-A")) == 0.0


class TestFeatureMatrix:

    def test_matrix_layout(self, engine, head_on_snapshot):
        features = engine.compute_all(head_on_snapshot)

        matrix = engine.features_to_matrix(features)

        assert matrix.shape == (1, len(FEATURE_NAMES))
        assert matrix[0, FEATURE_NAMES.index("distance_m")] == pytest.approx(4900.0)
        assert np.isfinite(matrix).all()

    def test_empty_matrix(self, engine):
        assert engine.features_to_matrix([]).shape == (0, len(FEATURE_NAMES))

    def test_as_dict_follows_names(self, engine, head_on_snapshot):
        features = engine.compute_all(head_on_snapshot)[0]
        assert tuple(features.as_dict()) == FEATURE_NAMES
