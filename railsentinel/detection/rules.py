"""
Safety Rules
Deterministic rule-based detection of safety violations.

Each rule:
- Has a unique identifier
- Checks a specific condition
- Returns zero or more RuleViolation objects
- Is stateless (operates only on the snapshot it is given)

The rule set is closed and versioned: DEFAULT_RULES is the registry shipped
with RULESET_VERSION, and changes go through RuleEngine.reload().
"""

from abc import ABC, abstractmethod
from itertools import combinations
from typing import List, Optional, Tuple

from ..config import RuleConfig, rule_config
from ..models import (
    EntityState, NetworkSnapshot, RuleViolation, Severity,
    SignalAspect, SignalState, ViolationType,
)

RULESET_VERSION = "2024.1"


class SafetyRule(ABC):
    """Base class for all safety rules."""

    rule_id: str
    description: str
    violation_type: ViolationType

    def __init__(self, config: RuleConfig = rule_config):
        self.config = config

    @abstractmethod
    def evaluate(self, snapshot: NetworkSnapshot) -> List[RuleViolation]:
        """Evaluate rule against a snapshot. Returns list of violations."""
        pass

    def _violation(
        self,
        snapshot: NetworkSnapshot,
        severity: Severity,
        entity_ids: Tuple[str, ...],
        segment_id: Optional[str],
        explanation: str,
        **details: float,
    ) -> RuleViolation:
        return RuleViolation(
            rule_id=self.rule_id,
            violation_type=self.violation_type,
            affected_entity_ids=tuple(sorted(entity_ids)),
            severity=severity,
            detected_at=snapshot.taken_at,
            segment_id=segment_id,
            explanation=explanation,
            details=tuple(sorted((k, float(v)) for k, v in details.items())),
        )


# =============================================================================
# SIGNAL RULES
# =============================================================================

class SignalConflictRule(SafetyRule):
    """
    Rule: SIGNAL_CONFLICT_001
    Detects GREEN signals admitting entities onto the same segment from
    different signals, placing them on converging paths.

    Trigger: two GREEN signals guard the same segment, each with a present
             affected entity, and the entities differ
    Severity: CRITICAL
    """

    rule_id = "SIGNAL_CONFLICT_001"
    description = "Conflicting green signals on converging paths"
    violation_type = ViolationType.SIGNAL_CONFLICT

    def evaluate(self, snapshot: NetworkSnapshot) -> List[RuleViolation]:
        violations = []

        greens_by_segment = {}
        for signal in snapshot.signals.values():
            if signal.aspect == SignalAspect.GREEN:
                greens_by_segment.setdefault(signal.segment_id, []).append(signal)

        for segment_id in sorted(greens_by_segment):
            signals = sorted(greens_by_segment[segment_id], key=lambda s: s.id)
            if len(signals) < 2:
                continue

            seen_pairs = set()
            for sig_a, sig_b in combinations(signals, 2):
                for entity_a in self._present(snapshot, sig_a):
                    for entity_b in self._present(snapshot, sig_b):
                        if entity_a == entity_b:
                            continue
                        pair = tuple(sorted((entity_a, entity_b)))
                        if pair in seen_pairs:
                            continue
                        seen_pairs.add(pair)
                        violations.append(self._violation(
                            snapshot,
                            Severity.CRITICAL,
                            pair,
                            segment_id,
                            (
                                f"CRITICAL: signals {sig_a.id} and {sig_b.id} are both GREEN into "
                                f"{segment_id}, admitting {pair[0]} and {pair[1]} on converging paths"
                            ),
                            magnitude=1.0,
                        ))

        return violations

    @staticmethod
    def _present(snapshot: NetworkSnapshot, signal: SignalState) -> List[str]:
        return sorted(e for e in signal.affected_entity_ids if e in snapshot.entities)


class SignalOverrunRule(SafetyRule):
    """
    Rule: SIGNAL_OVERRUN_001
    Detects entities that passed a RED signal.

    Trigger: an entity governed by a RED signal is found on the guarded
             segment, or its trajectory shows it entered the guarded segment
             after the signal turned RED
    Severity: CRITICAL
    """

    rule_id = "SIGNAL_OVERRUN_001"
    description = "Signal passed at danger"
    violation_type = ViolationType.SIGNAL_OVERRUN

    def evaluate(self, snapshot: NetworkSnapshot) -> List[RuleViolation]:
        violations = []

        for signal in sorted(snapshot.signals.values(), key=lambda s: s.id):
            if signal.aspect != SignalAspect.RED:
                continue

            for entity in snapshot.entities_on_segment(signal.segment_id):
                governed = entity.id in signal.affected_entity_ids
                crossed = self._crossed_after_red(entity, signal)
                if not (governed or crossed):
                    continue

                violations.append(self._violation(
                    snapshot,
                    Severity.CRITICAL,
                    (entity.id,),
                    signal.segment_id,
                    (
                        f"CRITICAL: {entity.id} is on {signal.segment_id} past RED signal "
                        f"{signal.id} at {entity.speed_kmh:.0f}km/h"
                    ),
                    magnitude=1.0,
                    speed_kmh=entity.speed_kmh,
                ))

        return violations

    @staticmethod
    def _crossed_after_red(entity: EntityState, signal: SignalState) -> bool:
        """True when the trajectory shows entry into the guarded segment after the RED aspect."""
        if signal.changed_at is None or len(entity.trajectory) < 2:
            return False
        points = sorted(entity.trajectory, key=lambda p: p.at)
        for previous, current in zip(points, points[1:]):
            if (previous.segment_id != signal.segment_id
                    and current.segment_id == signal.segment_id
                    and current.at >= signal.changed_at):
                return True
        return False


# =============================================================================
# MOVEMENT RULES
# =============================================================================

class SpeedLimitRule(SafetyRule):
    """
    Rule: SPEED_LIMIT_001
    Detects entities faster than their segment's limit.

    Trigger: speed_kmh > segment.speed_limit_kmh
    Severity: MEDIUM up to 120% of the limit, HIGH above
    """

    rule_id = "SPEED_LIMIT_001"
    description = "Speed limit violation detection"
    violation_type = ViolationType.SPEED_LIMIT

    def evaluate(self, snapshot: NetworkSnapshot) -> List[RuleViolation]:
        violations = []

        for entity_id in sorted(snapshot.entities):
            entity = snapshot.entities[entity_id]
            segment = snapshot.topology.segments.get(entity.segment_id)
            if segment is None or segment.speed_limit_kmh <= 0:
                continue

            if entity.speed_kmh > segment.speed_limit_kmh:
                ratio = entity.speed_kmh / segment.speed_limit_kmh
                severity = (
                    Severity.HIGH if ratio > self.config.speed_overage_high_ratio
                    else Severity.MEDIUM
                )
                violations.append(self._violation(
                    snapshot,
                    severity,
                    (entity_id,),
                    segment.id,
                    (
                        f"{entity_id} at {entity.speed_kmh:.0f}km/h on {segment.id}, "
                        f"limit {segment.speed_limit_kmh:.0f}km/h ({ratio:.0%})"
                    ),
                    magnitude=ratio,
                    speed_kmh=entity.speed_kmh,
                    limit_kmh=segment.speed_limit_kmh,
                ))

        return violations


class TrackCapacityRule(SafetyRule):
    """
    Rule: TRACK_CAPACITY_001
    Detects segments holding more entities than their capacity.

    Trigger: entities assigned to segment > capacity
    Severity: HIGH
    """

    rule_id = "TRACK_CAPACITY_001"
    description = "Track capacity overflow detection"
    violation_type = ViolationType.TRACK_CAPACITY

    def evaluate(self, snapshot: NetworkSnapshot) -> List[RuleViolation]:
        violations = []

        for segment_id in snapshot.occupied_segment_ids:
            segment = snapshot.topology.segments.get(segment_id)
            if segment is None:
                continue
            entities = snapshot.entities_on_segment(segment_id)

            if len(entities) > segment.capacity:
                violations.append(self._violation(
                    snapshot,
                    Severity.HIGH,
                    tuple(e.id for e in entities),
                    segment_id,
                    (
                        f"Segment {segment_id} has {len(entities)} entities "
                        f"but capacity is {segment.capacity}"
                    ),
                    magnitude=len(entities) / max(segment.capacity, 1),
                    assigned=len(entities),
                    capacity=segment.capacity,
                ))

        return violations


class MinimumSeparationRule(SafetyRule):
    """
    Rule: MIN_SEPARATION_001
    Detects entities closer than the minimum along-track separation.

    Trigger: gap between neighbours on the same segment < min_separation_m
    Severity: CRITICAL below hard_floor_m, HIGH below half the minimum,
              MEDIUM otherwise
    """

    rule_id = "MIN_SEPARATION_001"
    description = "Minimum separation violation detection"
    violation_type = ViolationType.MINIMUM_SEPARATION

    def evaluate(self, snapshot: NetworkSnapshot) -> List[RuleViolation]:
        violations = []
        minimum = self.config.min_separation_m

        for segment_id in snapshot.occupied_segment_ids:
            entities = snapshot.entities_on_segment(segment_id)

            # Sorted by offset, so only neighbours need checking
            for rear, front in zip(entities, entities[1:]):
                gap = front.offset_m - rear.offset_m
                if gap >= minimum:
                    continue

                if gap < self.config.hard_floor_m:
                    severity = Severity.CRITICAL
                elif gap < minimum / 2:
                    severity = Severity.HIGH
                else:
                    severity = Severity.MEDIUM

                violations.append(self._violation(
                    snapshot,
                    severity,
                    (rear.id, front.id),
                    segment_id,
                    (
                        f"{rear.id} and {front.id} are {gap:.0f}m apart on {segment_id}, "
                        f"minimum is {minimum:.0f}m"
                    ),
                    magnitude=gap,
                    gap_m=gap,
                    minimum_m=minimum,
                ))

        return violations


# =============================================================================
# RULE REGISTRY
# =============================================================================

def default_rules(config: RuleConfig = rule_config) -> List[SafetyRule]:
    return [
        SignalConflictRule(config),
        SignalOverrunRule(config),
        SpeedLimitRule(config),
        TrackCapacityRule(config),
        MinimumSeparationRule(config),
    ]


DEFAULT_RULES: List[SafetyRule] = default_rules()


def get_rule_by_id(rule_id: str) -> Optional[SafetyRule]:
    """Get a specific default rule by its ID."""
    for rule in DEFAULT_RULES:
        if rule.rule_id == rule_id:
            return rule
    return None
