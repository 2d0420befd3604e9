"""
Suggestion Generator
====================

Turns the findings of a RiskAssessment into ranked corrective suggestions.

Strategies per finding:

    signal conflict      SIGNAL_ADJUSTMENT, SPEED_REDUCTION
    signal overrun       EMERGENCY_STOP, SIGNAL_ADJUSTMENT
    speed limit          SPEED_REDUCTION
    minimum separation   SPEED_REDUCTION (+ EMERGENCY_STOP when CRITICAL)
    collision scenario   SPEED_REDUCTION (+ EMERGENCY_STOP when CRITICAL)
    track capacity       HOLD_AT_STATION, ROUTE_MODIFICATION
    routing risk         ROUTE_MODIFICATION, HOLD_AT_STATION
    network overload     HOLD_AT_STATION, ROUTE_MODIFICATION

Ranking: effectiveness desc, implementation time asc, id asc.
"""

import logging
import time
import uuid
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from ..config import AlertConfig, SuggestionConfig, alert_config, suggestion_config
from ..models import (
    CorrectiveSuggestion, EmergencyStopAction, EntityState, Finding, FindingKind,
    HoldAtStationAction, MovementKind, NetworkSnapshot, RiskAssessment,
    RouteModificationAction, Severity, SignalAdjustmentAction, SignalAspect,
    SpeedReductionAction, Strategy,
)
from ..severity import derive_findings

logger = logging.getLogger(__name__)

SUGGESTION_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "railsentinel/suggestions")

# Target for entities whose current speed is unknown
CAUTION_SPEED_KMH = 40.0

# Hold target meaning every entity about to enter the segment
ALL_INBOUND = "*"

SIGNAL_CHANGE_SECONDS = 5.0
REROUTE_SECONDS = 120.0

# (effectiveness, implementation seconds) before entity-specific timing
STRATEGY_PROFILES: Dict[Tuple[FindingKind, Strategy], Tuple[float, float]] = {
    (FindingKind.SIGNAL_CONFLICT, Strategy.SIGNAL_ADJUSTMENT): (0.95, SIGNAL_CHANGE_SECONDS),
    (FindingKind.SIGNAL_CONFLICT, Strategy.SPEED_REDUCTION): (0.60, 0.0),
    (FindingKind.SIGNAL_OVERRUN, Strategy.EMERGENCY_STOP): (0.98, 0.0),
    (FindingKind.SIGNAL_OVERRUN, Strategy.SIGNAL_ADJUSTMENT): (0.70, SIGNAL_CHANGE_SECONDS),
    (FindingKind.SPEED_LIMIT, Strategy.SPEED_REDUCTION): (0.90, 0.0),
    (FindingKind.MINIMUM_SEPARATION, Strategy.SPEED_REDUCTION): (0.75, 0.0),
    (FindingKind.MINIMUM_SEPARATION, Strategy.EMERGENCY_STOP): (0.97, 0.0),
    (FindingKind.COLLISION_SCENARIO, Strategy.SPEED_REDUCTION): (0.80, 0.0),
    (FindingKind.COLLISION_SCENARIO, Strategy.EMERGENCY_STOP): (0.97, 0.0),
    (FindingKind.TRACK_CAPACITY, Strategy.HOLD_AT_STATION): (0.70, 30.0),
    (FindingKind.TRACK_CAPACITY, Strategy.ROUTE_MODIFICATION): (0.60, REROUTE_SECONDS),
    (FindingKind.ROUTING_RISK, Strategy.ROUTE_MODIFICATION): (0.70, REROUTE_SECONDS),
    (FindingKind.ROUTING_RISK, Strategy.HOLD_AT_STATION): (0.55, 30.0),
    (FindingKind.NETWORK_OVERLOAD, Strategy.HOLD_AT_STATION): (0.65, 30.0),
    (FindingKind.NETWORK_OVERLOAD, Strategy.ROUTE_MODIFICATION): (0.50, REROUTE_SECONDS),
}


def suggestion_id(finding_key: str, strategy: Strategy) -> str:
    return str(uuid.uuid5(SUGGESTION_NAMESPACE, f"{finding_key}|{strategy.value}"))


def rank(suggestions: List[CorrectiveSuggestion]) -> List[CorrectiveSuggestion]:
    """Order suggestions and assign unique priorities 1..n."""
    ordered = sorted(
        suggestions,
        key=lambda s: (-s.effectiveness, s.implementation_time_seconds, s.id),
    )
    return [replace(s, priority=i) for i, s in enumerate(ordered, start=1)]


class SuggestionGenerator:
    """
    Generates at least one suggestion per finding.

    The snapshot the assessment was computed from is optional; without it,
    actions fall back to conservative defaults (caution speed, no signals).
    """

    def __init__(
        self,
        config: SuggestionConfig = suggestion_config,
        alerts: AlertConfig = alert_config,
    ):
        self.config = config
        self.alerts = alerts
        self._builders: Dict[FindingKind, Callable] = {
            FindingKind.SIGNAL_CONFLICT: self._for_signal_conflict,
            FindingKind.SIGNAL_OVERRUN: self._for_signal_overrun,
            FindingKind.SPEED_LIMIT: self._for_speed_limit,
            FindingKind.MINIMUM_SEPARATION: self._for_close_approach,
            FindingKind.COLLISION_SCENARIO: self._for_close_approach,
            FindingKind.TRACK_CAPACITY: self._for_congestion,
            FindingKind.ROUTING_RISK: self._for_congestion,
            FindingKind.NETWORK_OVERLOAD: self._for_congestion,
        }

    def generate(
        self, assessment: RiskAssessment, snapshot: Optional[NetworkSnapshot] = None
    ) -> List[CorrectiveSuggestion]:
        start = time.perf_counter()
        if snapshot is not None and snapshot.snapshot_id != assessment.snapshot_id:
            logger.warning(
                f"Snapshot {snapshot.snapshot_id} does not match assessment "
                f"{assessment.assessment_id}; generating without it"
            )
            snapshot = None

        suggestions: Dict[str, CorrectiveSuggestion] = {}
        for finding in derive_findings(assessment, self.alerts):
            for suggestion in self.for_finding(finding, snapshot):
                suggestions.setdefault(suggestion.id, suggestion)

        ranked = rank(list(suggestions.values()))

        elapsed = time.perf_counter() - start
        if elapsed > self.config.suggestion_budget_seconds:
            logger.warning(
                f"Suggestion generation for {assessment.assessment_id} took {elapsed:.2f}s "
                f"(budget {self.config.suggestion_budget_seconds:.1f}s)"
            )
        logger.debug(f"Generated {len(ranked)} suggestions for {assessment.assessment_id}")
        return ranked

    def for_finding(
        self, finding: Finding, snapshot: Optional[NetworkSnapshot] = None
    ) -> List[CorrectiveSuggestion]:
        """Unranked suggestions for one finding."""
        candidates = self._builders[finding.kind](finding, snapshot)
        return [s for s in candidates if s is not None]

    # =========================================================================
    # Per finding kind
    # =========================================================================

    def _for_signal_conflict(self, finding, snapshot):
        signal_ids = self._conflicting_greens(finding, snapshot)
        return [
            self._build(
                finding, Strategy.SIGNAL_ADJUSTMENT,
                [SignalAdjustmentAction(sid, SignalAspect.RED) for sid in signal_ids],
                f"Set {', '.join(signal_ids)} to RED so only one entity is admitted to {finding.segment_id}",
            ),
            self._speed_reduction(finding, snapshot),
        ]

    def _for_signal_overrun(self, finding, snapshot):
        signal_ids = []
        if snapshot is not None and finding.segment_id:
            signal_ids = sorted(
                s.id for s in snapshot.signals.values()
                if s.segment_id == finding.segment_id and s.aspect != SignalAspect.RED
            )
        return [
            self._emergency_stop(finding, snapshot),
            self._build(
                finding, Strategy.SIGNAL_ADJUSTMENT,
                [SignalAdjustmentAction(sid, SignalAspect.RED) for sid in signal_ids],
                f"Protect {finding.segment_id} by setting {', '.join(signal_ids)} to RED",
            ),
        ]

    def _for_speed_limit(self, finding, snapshot):
        return [self._speed_reduction(finding, snapshot)]

    def _for_close_approach(self, finding, snapshot):
        suggestions = [self._speed_reduction(finding, snapshot)]
        if finding.severity == Severity.CRITICAL:
            suggestions.append(self._emergency_stop(finding, snapshot))
        return suggestions

    def _for_congestion(self, finding, snapshot):
        hold = self._hold(finding, snapshot)
        reroute = self._reroute(finding, snapshot)
        if finding.kind == FindingKind.ROUTING_RISK:
            return [reroute, hold]
        return [hold, reroute]

    # =========================================================================
    # Strategies
    # =========================================================================

    def _speed_reduction(self, finding, snapshot) -> Optional[CorrectiveSuggestion]:
        actions = []
        slowest_change = 0.0
        for entity_id in finding.entity_ids:
            entity = self._entity(snapshot, entity_id)
            if entity is None:
                actions.append(SpeedReductionAction(entity_id, CAUTION_SPEED_KMH))
                continue
            target = self._target_speed(finding, entity, snapshot)
            actions.append(SpeedReductionAction(entity_id, round(target, 1)))
            slowest_change = max(slowest_change, (entity.speed_kmh - target) / 3.6 / self.config.service_decel_ms2)
        return self._build(
            finding, Strategy.SPEED_REDUCTION, actions,
            f"Reduce speed of {', '.join(finding.entity_ids)} to open the gap",
            extra_seconds=slowest_change,
        )

    def _target_speed(self, finding: Finding, entity: EntityState, snapshot: NetworkSnapshot) -> float:
        if finding.kind == FindingKind.SPEED_LIMIT:
            segment = snapshot.topology.segments.get(entity.segment_id)
            if segment is not None:
                return min(entity.speed_kmh, segment.speed_limit_kmh)
        return entity.speed_kmh * self.config.speed_reduction_ratio

    def _emergency_stop(self, finding, snapshot) -> Optional[CorrectiveSuggestion]:
        entities = [self._entity(snapshot, eid) for eid in finding.entity_ids]
        moving = [e.id for e in entities if e is not None and e.speed_kmh > 0]
        targets = moving or list(finding.entity_ids)
        stopping = max(
            (e.speed_ms / self.config.emergency_decel_ms2 for e in entities if e is not None),
            default=0.0,
        )
        return self._build(
            finding, Strategy.EMERGENCY_STOP,
            [EmergencyStopAction(eid) for eid in targets],
            f"Emergency stop {', '.join(targets)}: {finding.summary}",
            extra_seconds=stopping,
        )

    def _hold(self, finding, snapshot) -> Optional[CorrectiveSuggestion]:
        targets = self._entities_to_divert(finding, snapshot)
        actions = [
            HoldAtStationAction(eid, self._hold_station(eid, finding, snapshot), self.config.default_hold_seconds)
            for eid in targets
        ]
        return self._build(
            finding, Strategy.HOLD_AT_STATION, actions,
            f"Hold {', '.join(targets)} for {self.config.default_hold_seconds}s to relieve "
            f"{finding.segment_id or 'the route'}",
        )

    def _reroute(self, finding, snapshot) -> Optional[CorrectiveSuggestion]:
        avoid = self._segments_to_avoid(finding, snapshot)
        targets = [t for t in self._entities_to_divert(finding, snapshot) if t != ALL_INBOUND]
        actions = []
        for entity_id in targets:
            via = self._alternative(entity_id, avoid, snapshot)
            actions.append(RouteModificationAction(entity_id, tuple(avoid), tuple(via)))
        found = any(a.via_segment_ids for a in actions)
        effectiveness_penalty = 0.0 if found else 0.2
        return self._build(
            finding, Strategy.ROUTE_MODIFICATION, actions,
            f"Route {', '.join(targets) or 'traffic'} around {', '.join(avoid) or 'the conflict'}"
            + ("" if found else " (no alternative path known, operator routing needed)"),
            effectiveness_penalty=effectiveness_penalty,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _build(
        self,
        finding: Finding,
        strategy: Strategy,
        actions: List,
        rationale: str,
        extra_seconds: float = 0.0,
        effectiveness_penalty: float = 0.0,
    ) -> Optional[CorrectiveSuggestion]:
        if not actions:
            return None
        effectiveness, base_seconds = STRATEGY_PROFILES[(finding.kind, strategy)]
        return CorrectiveSuggestion(
            id=suggestion_id(finding.key, strategy),
            finding_key=finding.key,
            strategy=strategy,
            affected_entity_ids=tuple(sorted({
                a.entity_id for a in actions
                if getattr(a, "entity_id", ALL_INBOUND) != ALL_INBOUND
            } or set(finding.entity_ids))),
            actions=tuple(actions),
            effectiveness=max(effectiveness - effectiveness_penalty, 0.0),
            implementation_time_seconds=round(base_seconds + max(extra_seconds, 0.0), 1),
            rationale=rationale,
        )

    @staticmethod
    def _entity(snapshot: Optional[NetworkSnapshot], entity_id: str) -> Optional[EntityState]:
        if snapshot is None:
            return None
        return snapshot.entities.get(entity_id)

    @staticmethod
    def _conflicting_greens(finding: Finding, snapshot: Optional[NetworkSnapshot]) -> List[str]:
        """GREEN signals admitting the finding's entities, keeping the first one open."""
        if snapshot is None or not finding.segment_id:
            return []
        greens = sorted(
            s.id for s in snapshot.signals.values()
            if s.segment_id == finding.segment_id
            and s.aspect == SignalAspect.GREEN
            and set(s.affected_entity_ids) & set(finding.entity_ids)
        )
        return greens[1:]

    def _entities_to_divert(self, finding: Finding, snapshot: Optional[NetworkSnapshot]) -> List[str]:
        if finding.kind == FindingKind.TRACK_CAPACITY and snapshot is not None and finding.segment_id:
            segment = snapshot.topology.segments.get(finding.segment_id)
            on_segment = snapshot.entities_on_segment(finding.segment_id)
            if segment is not None and len(on_segment) > segment.capacity:
                # Entities nearest the segment entry are the easiest to move
                excess = len(on_segment) - segment.capacity
                return sorted(e.id for e in on_segment[:excess])
        if finding.entity_ids:
            return list(finding.entity_ids)
        if snapshot is not None and finding.segment_id:
            inbound = sorted({
                m.entity_id for m in snapshot.scheduled_movements
                if m.segment_id == finding.segment_id and m.kind == MovementKind.ARRIVAL
            })
            if inbound:
                return inbound
        return [ALL_INBOUND]

    @staticmethod
    def _hold_station(entity_id: str, finding: Finding, snapshot: Optional[NetworkSnapshot]) -> Optional[str]:
        if snapshot is None:
            return None
        entity = snapshot.entities.get(entity_id)
        segment_id = entity.segment_id if entity is not None else finding.segment_id
        if segment_id is None:
            return None
        stations = snapshot.topology.stations_on_segment(segment_id)
        return stations[0].id if stations else None

    @staticmethod
    def _segments_to_avoid(finding: Finding, snapshot: Optional[NetworkSnapshot]) -> List[str]:
        if finding.segment_id:
            return [finding.segment_id]
        if finding.kind == FindingKind.ROUTING_RISK and snapshot is not None:
            route_id = finding.key.split(":", 1)[1]
            route = snapshot.topology.routes.get(route_id)
            if route is not None:
                others = set()
                for entity in snapshot.entities.values():
                    if entity.route_id and entity.route_id != route_id:
                        other = snapshot.topology.routes.get(entity.route_id)
                        if other is not None:
                            others |= set(other.segment_ids)
                return sorted(set(route.segment_ids) & others)
        return []

    @staticmethod
    def _alternative(entity_id: str, avoid: List[str], snapshot: Optional[NetworkSnapshot]) -> List[str]:
        if snapshot is None or not avoid:
            return []
        topology = snapshot.topology
        blocked = topology.segments.get(avoid[0])
        if blocked is None:
            return []
        path = topology.find_alternative_path(blocked.from_node, blocked.to_node, avoid)
        return path or []
