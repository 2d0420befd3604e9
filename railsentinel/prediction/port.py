"""
Predictive Risk Port
====================

Contract between the orchestrator and any probabilistic risk model.
Implementations are synchronous and must return probabilities and
confidences within [0, 1]; the orchestrator discards anything else.
"""

from abc import ABC, abstractmethod
from typing import List

from ..models import AnomalyScore, CollisionPrediction, EntityState, NetworkSnapshot

PORT_CONTRACT_VERSION = "1.0"


class PredictiveRiskPort(ABC):
    """Pluggable collision and anomaly predictor."""

    contract_version: str = PORT_CONTRACT_VERSION

    @abstractmethod
    def predict_collisions(
        self, snapshot: NetworkSnapshot, horizon_seconds: float
    ) -> List[CollisionPrediction]:
        """Collision scenarios for entity pairs within the horizon."""
        pass

    @abstractmethod
    def detect_anomalies(self, entity: EntityState) -> AnomalyScore:
        """Behavioural anomaly score of one entity."""
        pass

    def detect_all_anomalies(self, snapshot: NetworkSnapshot) -> List[AnomalyScore]:
        return [self.detect_anomalies(snapshot.entities[eid]) for eid in sorted(snapshot.entities)]
