"""
Feature Engineering Pipeline
============================

Computes pairwise features for collision prediction from a snapshot.

Only pairs that can physically meet are considered: entities on the same
segment, or on two segments sharing a node. The feature vector layout is
versioned by FEATURE_SCHEMA_VERSION and ordered by FEATURE_NAMES.
"""

import math
from dataclasses import dataclass
from itertools import combinations
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..models import EntityState, EntityStatus, NetworkSnapshot, SignalAspect

FEATURE_SCHEMA_VERSION = "1.0"

FEATURE_NAMES = (
    "distance_m",
    "closing_speed_ms",
    "convergence_angle_deg",
    "same_segment",
    "adjacent_segment",
    "speed_trend_ms2",
    "history_samples",
    "signal_protected",
    "staleness_s",
    "connection_lost",
)


@dataclass(frozen=True)
class PairFeatures:
    """Features of one entity pair, entity_ids sorted."""
    entity_ids: Tuple[str, str]
    distance_m: float
    closing_speed_ms: float
    convergence_angle_deg: float
    same_segment: bool
    adjacent_segment: bool
    speed_trend_ms2: float
    history_samples: int
    signal_protected: bool
    staleness_s: float
    connection_lost: bool
    schema_version: str = FEATURE_SCHEMA_VERSION

    @property
    def time_to_collision_s(self) -> Optional[float]:
        if self.closing_speed_ms <= 0:
            return None
        return self.distance_m / self.closing_speed_ms

    def as_dict(self) -> Dict[str, float]:
        return {name: float(getattr(self, name)) for name in FEATURE_NAMES}

    def to_array(self) -> np.ndarray:
        """Feature vector in FEATURE_NAMES order, non-finite values zeroed."""
        values = np.array([float(getattr(self, name)) for name in FEATURE_NAMES])
        return np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0)


class FeatureEngine:
    """
    Pairwise feature computation.

    Stateless: every call works on the snapshot it is given.
    """

    def candidate_pairs(self, snapshot: NetworkSnapshot) -> List[Tuple[EntityState, EntityState]]:
        """Entity pairs on the same or adjacent segments, in a stable order."""
        pairs = []
        seen = set()
        topology = snapshot.topology

        for segment_id in snapshot.occupied_segment_ids:
            local = snapshot.entities_on_segment(segment_id)
            for a, b in combinations(local, 2):
                pairs.append(self._ordered(a, b))
                seen.add(frozenset((a.id, b.id)))

            for other_id in topology.adjacent_segments(segment_id):
                if other_id <= segment_id:
                    continue
                for a in local:
                    for b in snapshot.entities_on_segment(other_id):
                        key = frozenset((a.id, b.id))
                        if key in seen:
                            continue
                        seen.add(key)
                        pairs.append(self._ordered(a, b))

        pairs.sort(key=lambda p: (p[0].id, p[1].id))
        return pairs

    def compute_pair_features(
        self, snapshot: NetworkSnapshot, a: EntityState, b: EntityState
    ) -> Optional[PairFeatures]:
        """Features for one pair, or None when the pair cannot meet."""
        a, b = self._ordered(a, b)
        topology = snapshot.topology

        if a.segment_id == b.segment_id:
            rear, front = (a, b) if (a.offset_m, a.id) <= (b.offset_m, b.id) else (b, a)
            distance = front.offset_m - rear.offset_m
            closing = rear.signed_speed_ms - front.signed_speed_ms
            same, adjacent = True, False
        else:
            node = topology.shared_node(a.segment_id, b.segment_id)
            if node is None:
                return None
            seg_a = topology.segments[a.segment_id]
            seg_b = topology.segments[b.segment_id]
            distance = a.distance_to_node(seg_a, node) + b.distance_to_node(seg_b, node)
            closing = a.speed_towards_node(seg_a, node) + b.speed_towards_node(seg_b, node)
            same, adjacent = False, True

        staleness = max(
            (snapshot.taken_at - a.last_update).total_seconds(),
            (snapshot.taken_at - b.last_update).total_seconds(),
            0.0,
        )

        return PairFeatures(
            entity_ids=(a.id, b.id),
            distance_m=max(distance, 0.0),
            closing_speed_ms=closing,
            convergence_angle_deg=self._convergence_angle(a.heading_deg, b.heading_deg),
            same_segment=same,
            adjacent_segment=adjacent,
            speed_trend_ms2=max(self.speed_trend(a), self.speed_trend(b), key=abs),
            history_samples=min(len(a.trajectory), len(b.trajectory)),
            signal_protected=self._signal_protected(snapshot, a, b),
            staleness_s=staleness,
            connection_lost=EntityStatus.CONNECTION_LOST in (a.status, b.status),
        )

    def compute_all(self, snapshot: NetworkSnapshot) -> List[PairFeatures]:
        features = []
        for a, b in self.candidate_pairs(snapshot):
            pair = self.compute_pair_features(snapshot, a, b)
            if pair is not None:
                features.append(pair)
        return features

    def features_to_matrix(self, features: List[PairFeatures]) -> np.ndarray:
        """Stack feature vectors into an (n_pairs, n_features) array."""
        if not features:
            return np.array([]).reshape(0, len(FEATURE_NAMES))
        return np.vstack([f.to_array() for f in features])

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def speed_trend(entity: EntityState) -> float:
        """Least-squares slope of speed over the trajectory, in m/s^2."""
        points = sorted(entity.trajectory, key=lambda p: p.at)
        if len(points) < 2:
            return 0.0
        start = points[0].at
        t = np.array([(p.at - start).total_seconds() for p in points])
        v = np.array([p.speed_kmh / 3.6 for p in points])
        if np.ptp(t) == 0:
            return 0.0
        slope = float(np.polyfit(t, v, 1)[0])
        return slope if math.isfinite(slope) else 0.0

    @staticmethod
    def _convergence_angle(heading_a: float, heading_b: float) -> float:
        diff = abs((heading_a - heading_b + 180.0) % 360.0 - 180.0)
        return diff

    @staticmethod
    def _signal_protected(snapshot: NetworkSnapshot, a: EntityState, b: EntityState) -> bool:
        for signal in snapshot.signals.values():
            if signal.aspect != SignalAspect.RED:
                continue
            if a.id in signal.affected_entity_ids or b.id in signal.affected_entity_ids:
                return True
        return False

    @staticmethod
    def _ordered(a: EntityState, b: EntityState) -> Tuple[EntityState, EntityState]:
        return (a, b) if a.id <= b.id else (b, a)
