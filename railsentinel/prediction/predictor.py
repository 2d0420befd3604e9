"""
Collision Risk Predictors
=========================

Default implementations of the Predictive Risk Port.

KinematicRiskPredictor is a deterministic heuristic built on time to
collision. EnsembleRiskPredictor blends a trained estimator loaded with
joblib into the heuristic and falls back to it when the model fails.
"""

import logging
import math
from pathlib import Path
from typing import List, Optional, Tuple

import joblib
import numpy as np

from ..config import PredictionConfig, prediction_config
from ..models import (
    AnomalyScore, CollisionPrediction, EntityState, EntityStatus,
    FeatureContribution, NetworkSnapshot,
)
from .feature_engine import FeatureEngine, PairFeatures
from .port import PredictiveRiskPort

logger = logging.getLogger(__name__)


class KinematicRiskPredictor(PredictiveRiskPort):
    """
    Heuristic collision predictor.

    probability = logistic(ttc) x proximity factor x protection factor

    where the logistic falls from 1 to 0 around ttc_midpoint_s, the proximity
    factor is 1.0 on a shared segment and 0.6 across a shared node, and a RED
    signal governing either entity scales the result by 0.3.
    """

    model_name = "kinematic"

    def __init__(self, config: PredictionConfig = prediction_config):
        self.config = config
        self.feature_engine = FeatureEngine()

    # =========================================================================
    # Collisions
    # =========================================================================

    def predict_collisions(
        self, snapshot: NetworkSnapshot, horizon_seconds: float
    ) -> List[CollisionPrediction]:
        predictions = []
        for features in self.feature_engine.compute_all(snapshot):
            ttc = features.time_to_collision_s
            if ttc is None or ttc > horizon_seconds:
                continue
            probability, model_used = self._probability(features)
            predictions.append(self._build_prediction(features, probability, horizon_seconds, model_used))
        return predictions

    def _probability(self, features: PairFeatures) -> Tuple[float, str]:
        return self.heuristic_probability(features), self.model_name

    def heuristic_probability(self, features: PairFeatures) -> float:
        ttc = features.time_to_collision_s
        if ttc is None:
            return 0.0
        return self.ttc_probability(ttc) * self._proximity_factor(features) * self._protection_factor(features)

    def ttc_probability(self, ttc: float) -> float:
        z = (ttc - self.config.ttc_midpoint_s) / self.config.ttc_scale_s
        return float(1.0 / (1.0 + np.exp(np.clip(z, -50.0, 50.0))))

    def _proximity_factor(self, features: PairFeatures) -> float:
        if features.same_segment:
            return self.config.same_segment_factor
        return self.config.adjacent_segment_factor

    def _protection_factor(self, features: PairFeatures) -> float:
        return self.config.signal_protection_factor if features.signal_protected else 1.0

    def _build_prediction(
        self,
        features: PairFeatures,
        probability: float,
        horizon_seconds: float,
        model_used: str,
    ) -> CollisionPrediction:
        ttc = features.time_to_collision_s
        contributions = (
            FeatureContribution("time_to_collision_s", ttc),
            FeatureContribution("distance_m", features.distance_m),
            FeatureContribution("closing_speed_ms", features.closing_speed_ms),
            FeatureContribution("proximity_factor", self._proximity_factor(features)),
            FeatureContribution("protection_factor", self._protection_factor(features)),
            FeatureContribution("staleness_s", features.staleness_s),
        )
        return CollisionPrediction(
            entity_pair_id=CollisionPrediction.pair_id(*features.entity_ids),
            entity_ids=features.entity_ids,
            probability=probability,
            confidence=self._confidence(features),
            time_horizon_seconds=horizon_seconds,
            time_to_collision_s=ttc,
            contributing_features=contributions,
            model_used=model_used,
        )

    def _confidence(self, features: PairFeatures) -> float:
        """Confidence decays with data staleness and lost connections."""
        confidence = 0.9
        if features.history_samples < 2:
            confidence *= 0.8
        if features.staleness_s > self.config.stale_after_seconds:
            confidence *= self.config.stale_after_seconds / features.staleness_s
        if features.connection_lost:
            confidence = min(confidence, self.config.connection_lost_confidence)
        return float(np.clip(confidence, 0.0, 1.0))

    # =========================================================================
    # Anomalies
    # =========================================================================

    def detect_anomalies(self, entity: EntityState, reference_time=None) -> AnomalyScore:
        """
        Score implausible behaviour from the entity's trajectory.

        reference_time, when given, is used to judge data staleness.
        """
        reasons = []
        score = 0.0
        points = sorted(entity.trajectory, key=lambda p: p.at)

        max_accel = 0.0
        max_jump = 0.0
        for previous, current in zip(points, points[1:]):
            dt = (current.at - previous.at).total_seconds()
            if dt <= 0:
                continue
            accel = abs(current.speed_kmh - previous.speed_kmh) / 3.6 / dt
            max_accel = max(max_accel, accel)
            if current.segment_id == previous.segment_id:
                expected = (current.speed_kmh + previous.speed_kmh) / 2 / 3.6 * dt
                jump = abs(current.offset_m - previous.offset_m) - expected
                max_jump = max(max_jump, jump)

        if max_accel > self.config.max_plausible_accel_ms2:
            reasons.append(f"implausible_acceleration:{max_accel:.1f}m/s2")
            score += 0.5
        if max_jump > self.config.max_plausible_jump_m:
            reasons.append(f"position_jump:{max_jump:.0f}m")
            score += 0.5
        if reference_time is not None:
            age = (reference_time - entity.last_update).total_seconds()
            if age > self.config.stale_after_seconds:
                reasons.append(f"stale_data:{age:.0f}s")
                score += 0.3
        if entity.status == EntityStatus.CONNECTION_LOST:
            reasons.append("connection_lost")
            score += 0.4

        confidence = min(1.0, 0.5 + 0.1 * len(points))
        return AnomalyScore(
            entity_id=entity.id,
            score=min(score, 1.0),
            confidence=confidence,
            reasons=tuple(reasons),
        )

    def detect_all_anomalies(self, snapshot: NetworkSnapshot) -> List[AnomalyScore]:
        return [
            self.detect_anomalies(snapshot.entities[eid], reference_time=snapshot.taken_at)
            for eid in sorted(snapshot.entities)
        ]


class EnsembleRiskPredictor(KinematicRiskPredictor):
    """
    Trained model + heuristic ensemble.

    The model is any estimator exposing predict_proba over the PairFeatures
    vector. Weighted combination:
        p = ml_weight * p_model + heuristic_weight * p_heuristic
    boosted by agreement_boost when both exceed agreement_threshold.
    """

    model_name = "ensemble"

    def __init__(
        self,
        config: PredictionConfig = prediction_config,
        model=None,
        model_path: Optional[Path] = None,
    ):
        super().__init__(config)
        self.model = model
        path = model_path or config.model_path
        if self.model is None and path:
            self.load_model(Path(path))

    def load_model(self, path: Path) -> bool:
        if not path.exists():
            logger.warning(f"Model file not found at {path}, using heuristics only")
            return False
        try:
            self.model = joblib.load(path)
        except Exception as e:
            logger.error(f"Failed to load model from {path}: {e}")
            self.model = None
            return False
        logger.info(f"Loaded collision model from {path}")
        return True

    def _probability(self, features: PairFeatures) -> Tuple[float, str]:
        heuristic = self.heuristic_probability(features)
        if self.model is None:
            return heuristic, "heuristic"

        try:
            ml = float(self.model.predict_proba(features.to_array().reshape(1, -1))[0, 1])
            if not math.isfinite(ml):
                raise ValueError(f"model returned {ml}")
        except Exception as e:
            logger.warning(f"ML prediction failed for {'|'.join(features.entity_ids)}, using heuristics: {e}")
            return heuristic, "heuristic_fallback"

        probability = self.config.ml_weight * ml + self.config.heuristic_weight * heuristic
        if ml > self.config.agreement_threshold and heuristic > self.config.agreement_threshold:
            probability = min(0.95, probability * self.config.agreement_boost)
        return float(np.clip(probability, 0.0, 1.0)), self.model_name
