"""
Data models for the risk evaluation pipeline.

Everything here is an immutable value object: one NetworkSnapshot is built per
cycle and shared read-only by the rule engine, the predictor and the
congestion monitor, and every finding they emit is frozen once created.
"""

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import networkx as nx


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# Enums
# =============================================================================

class EntityStatus(Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    DELAYED = "delayed"
    CONNECTION_LOST = "connection_lost"


class SignalAspect(Enum):
    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"


class Direction(Enum):
    FORWARD = "forward"  # towards the segment's to_node
    REVERSE = "reverse"  # towards the segment's from_node


class SwitchPosition(Enum):
    NORMAL = "normal"
    REVERSE = "reverse"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class ViolationType(Enum):
    SIGNAL_CONFLICT = "signal_conflict"
    SPEED_LIMIT = "speed_limit"
    TRACK_CAPACITY = "track_capacity"
    MINIMUM_SEPARATION = "minimum_separation"
    SIGNAL_OVERRUN = "signal_overrun"


class Strategy(Enum):
    SIGNAL_ADJUSTMENT = "signal_adjustment"
    SPEED_REDUCTION = "speed_reduction"
    ROUTE_MODIFICATION = "route_modification"
    HOLD_AT_STATION = "hold_at_station"
    EMERGENCY_STOP = "emergency_stop"


class AlertKind(Enum):
    SIGNAL_CONFLICT = "signal_conflict"
    COLLISION_SCENARIO = "collision_scenario"
    ROUTING_RISK = "routing_risk"
    NETWORK_OVERLOAD = "network_overload"


class AlertStatus(Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class CongestionState(Enum):
    NORMAL = "normal"
    BUSY = "busy"
    OVERLOAD = "overload"


class TrendDirection(Enum):
    RISING = "rising"
    STABLE = "stable"
    FALLING = "falling"


class MovementKind(Enum):
    ARRIVAL = "arrival"
    DEPARTURE = "departure"


class FindingKind(Enum):
    SIGNAL_CONFLICT = "signal_conflict"
    SPEED_LIMIT = "speed_limit"
    TRACK_CAPACITY = "track_capacity"
    MINIMUM_SEPARATION = "minimum_separation"
    SIGNAL_OVERRUN = "signal_overrun"
    COLLISION_SCENARIO = "collision_scenario"
    ROUTING_RISK = "routing_risk"
    NETWORK_OVERLOAD = "network_overload"


# =============================================================================
# Static topology
# =============================================================================

@dataclass(frozen=True)
class Segment:
    """A track segment between two nodes (junctions or stations)."""
    id: str
    from_node: str
    to_node: str
    length_m: float
    speed_limit_kmh: float
    capacity: int
    occupancy: int = 0  # declared baseline occupancy

    def other_node(self, node: str) -> str:
        return self.to_node if node == self.from_node else self.from_node


@dataclass(frozen=True)
class Junction:
    id: str
    switch_position: SwitchPosition
    segment_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Station:
    id: str
    name: str
    segment_id: str
    platforms: int = 1


@dataclass(frozen=True)
class StationDwell:
    station_id: str
    arrive_at: datetime
    depart_at: datetime

    def overlaps(self, other: "StationDwell") -> bool:
        return (
            self.station_id == other.station_id
            and self.arrive_at < other.depart_at
            and other.arrive_at < self.depart_at
        )


@dataclass(frozen=True)
class Route:
    id: str
    segment_ids: Tuple[str, ...]
    junction_requirements: Tuple[Tuple[str, SwitchPosition], ...] = ()
    station_dwells: Tuple[StationDwell, ...] = ()

    @property
    def requirements(self) -> Dict[str, SwitchPosition]:
        return dict(self.junction_requirements)


@dataclass(frozen=True)
class RouteTopology:
    """
    Static network description.

    Segments are edges of an undirected multigraph whose nodes are the
    junction/station ids at segment ends; the graph is built once at
    construction and only read afterwards.
    """
    segments: Mapping[str, Segment] = field(default_factory=dict)
    junctions: Mapping[str, Junction] = field(default_factory=dict)
    stations: Mapping[str, Station] = field(default_factory=dict)
    routes: Mapping[str, Route] = field(default_factory=dict)

    def __post_init__(self):
        for name in ("segments", "junctions", "stations", "routes"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        graph = nx.MultiGraph()
        for segment in self.segments.values():
            graph.add_edge(
                segment.from_node, segment.to_node,
                key=segment.id, length_m=segment.length_m,
            )
        object.__setattr__(self, "_graph", graph)

    @classmethod
    def build(
        cls,
        segments: Iterable[Segment] = (),
        junctions: Iterable[Junction] = (),
        stations: Iterable[Station] = (),
        routes: Iterable[Route] = (),
    ) -> "RouteTopology":
        return cls(
            segments={s.id: s for s in segments},
            junctions={j.id: j for j in junctions},
            stations={s.id: s for s in stations},
            routes={r.id: r for r in routes},
        )

    @property
    def graph(self) -> nx.MultiGraph:
        return self._graph

    def shared_node(self, segment_a: str, segment_b: str) -> Optional[str]:
        a = self.segments.get(segment_a)
        b = self.segments.get(segment_b)
        if a is None or b is None or a.id == b.id:
            return None
        for node in (a.from_node, a.to_node):
            if node in (b.from_node, b.to_node):
                return node
        return None

    def adjacent_segments(self, segment_id: str) -> List[str]:
        segment = self.segments.get(segment_id)
        if segment is None:
            return []
        adjacent = set()
        for node in (segment.from_node, segment.to_node):
            for _, _, key in self._graph.edges(node, keys=True):
                if key != segment_id:
                    adjacent.add(key)
        return sorted(adjacent)

    def stations_on_segment(self, segment_id: str) -> List[Station]:
        return sorted(
            (s for s in self.stations.values() if s.segment_id == segment_id),
            key=lambda s: s.id,
        )

    def find_alternative_path(
        self, from_node: str, to_node: str, avoid_segment_ids: Iterable[str] = ()
    ) -> Optional[List[str]]:
        """Shortest segment path between two nodes that avoids the given segments."""
        avoid = set(avoid_segment_ids)
        graph = nx.MultiGraph()
        graph.add_nodes_from(self._graph.nodes)
        for u, v, key, data in self._graph.edges(keys=True, data=True):
            if key not in avoid:
                graph.add_edge(u, v, key=key, **data)
        try:
            nodes = nx.shortest_path(graph, from_node, to_node, weight="length_m")
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return None

        path = []
        for u, v in zip(nodes, nodes[1:]):
            edges = graph.get_edge_data(u, v)
            key = min(edges, key=lambda k: (edges[k]["length_m"], k))
            path.append(key)
        return path


# =============================================================================
# Dynamic state
# =============================================================================

@dataclass(frozen=True)
class TrajectoryPoint:
    at: datetime
    segment_id: str
    offset_m: float
    speed_kmh: float


@dataclass(frozen=True)
class EntityState:
    """Runtime state of one vehicle as seen by a single snapshot."""
    id: str
    segment_id: str
    offset_m: float  # along-track distance from the segment's from_node
    speed_kmh: float
    direction: Direction
    route_id: Optional[str]
    status: EntityStatus
    last_update: datetime
    heading_deg: float = 0.0
    trajectory: Tuple[TrajectoryPoint, ...] = ()

    @property
    def speed_ms(self) -> float:
        return self.speed_kmh / 3.6

    @property
    def signed_speed_ms(self) -> float:
        """Speed along the segment axis, positive towards to_node."""
        return self.speed_ms if self.direction == Direction.FORWARD else -self.speed_ms

    def distance_to_node(self, segment: Segment, node: str) -> float:
        if node == segment.to_node:
            return max(segment.length_m - self.offset_m, 0.0)
        return max(self.offset_m, 0.0)

    def speed_towards_node(self, segment: Segment, node: str) -> float:
        """Positive when moving towards node, negative when moving away."""
        return self.signed_speed_ms if node == segment.to_node else -self.signed_speed_ms

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "segment_id": self.segment_id,
            "offset_m": self.offset_m,
            "speed_kmh": self.speed_kmh,
            "direction": self.direction.value,
            "heading_deg": self.heading_deg,
            "route_id": self.route_id,
            "status": self.status.value,
            "last_update": _iso(self.last_update),
        }


@dataclass(frozen=True)
class SignalState:
    id: str
    aspect: SignalAspect
    segment_id: str  # segment whose entry this signal guards
    affected_entity_ids: Tuple[str, ...] = ()
    changed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScheduledMovement:
    entity_id: str
    segment_id: str
    kind: MovementKind
    at: datetime


@dataclass(frozen=True)
class NetworkSnapshot:
    """Immutable point-in-time view used as input to exactly one cycle."""
    snapshot_id: int
    taken_at: datetime
    entities: Mapping[str, EntityState]
    signals: Mapping[str, SignalState]
    topology: RouteTopology
    scheduled_movements: Tuple[ScheduledMovement, ...] = ()
    excluded_entity_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "entities", MappingProxyType(dict(self.entities)))
        object.__setattr__(self, "signals", MappingProxyType(dict(self.signals)))
        by_segment: Dict[str, List[EntityState]] = {}
        for entity in self.entities.values():
            by_segment.setdefault(entity.segment_id, []).append(entity)
        for entities in by_segment.values():
            entities.sort(key=lambda e: (e.offset_m, e.id))
        object.__setattr__(
            self, "_by_segment",
            MappingProxyType({k: tuple(v) for k, v in by_segment.items()}),
        )

    def entities_on_segment(self, segment_id: str) -> Tuple[EntityState, ...]:
        """Entities on a segment ordered by along-track offset."""
        return self._by_segment.get(segment_id, ())

    @property
    def occupied_segment_ids(self) -> List[str]:
        return sorted(self._by_segment)

    def signals_for_entity(self, entity_id: str) -> List[SignalState]:
        return [s for s in self.signals.values() if entity_id in s.affected_entity_ids]


# =============================================================================
# Findings
# =============================================================================

@dataclass(frozen=True)
class RuleViolation:
    """A violation produced by exactly one rule."""
    rule_id: str
    violation_type: ViolationType
    affected_entity_ids: Tuple[str, ...]
    severity: Severity
    detected_at: datetime
    segment_id: Optional[str] = None
    explanation: str = ""
    details: Tuple[Tuple[str, float], ...] = ()

    def __post_init__(self):
        if not self.affected_entity_ids:
            raise ValueError(f"{self.rule_id}: a violation needs at least one entity")

    @property
    def sort_key(self) -> Tuple:
        return (self.rule_id, self.segment_id or "", self.affected_entity_ids)

    def to_dict(self) -> Dict:
        return {
            "rule_id": self.rule_id,
            "violation_type": self.violation_type.value,
            "affected_entity_ids": list(self.affected_entity_ids),
            "severity": self.severity.value,
            "detected_at": _iso(self.detected_at),
            "segment_id": self.segment_id,
            "explanation": self.explanation,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class FeatureContribution:
    name: str
    value: float


@dataclass(frozen=True)
class CollisionPrediction:
    entity_pair_id: str
    entity_ids: Tuple[str, str]
    probability: float
    confidence: float
    time_horizon_seconds: float
    time_to_collision_s: Optional[float] = None
    contributing_features: Tuple[FeatureContribution, ...] = ()
    model_used: str = "kinematic"

    @staticmethod
    def pair_id(entity_a: str, entity_b: str) -> str:
        return "|".join(sorted((entity_a, entity_b)))

    def to_dict(self) -> Dict:
        return {
            "entity_pair_id": self.entity_pair_id,
            "entity_ids": list(self.entity_ids),
            "probability": float(self.probability),
            "confidence": float(self.confidence),
            "time_horizon_seconds": self.time_horizon_seconds,
            "time_to_collision_s": self.time_to_collision_s,
            "contributing_features": {f.name: float(f.value) for f in self.contributing_features},
            "model_used": self.model_used,
        }


@dataclass(frozen=True)
class AnomalyScore:
    entity_id: str
    score: float
    confidence: float
    reasons: Tuple[str, ...] = ()

    def to_dict(self) -> Dict:
        return {
            "entity_id": self.entity_id,
            "score": float(self.score),
            "confidence": float(self.confidence),
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class CongestionMetrics:
    segment_id: str
    occupancy: int
    capacity: int
    level: float
    state: CongestionState
    entity_ids: Tuple[str, ...] = ()

    @property
    def overloaded(self) -> bool:
        return self.state == CongestionState.OVERLOAD

    def to_dict(self) -> Dict:
        return {
            "segment_id": self.segment_id,
            "occupancy": self.occupancy,
            "capacity": self.capacity,
            "level": self.level,
            "state": self.state.value,
            "overloaded": self.overloaded,
            "entity_ids": list(self.entity_ids),
        }


@dataclass(frozen=True)
class CongestionTrend:
    segment_id: str
    current_level: float
    projected_level: float
    peak_level: float
    net_flow_per_min: float
    trend: TrendDirection
    minutes_to_overload: Optional[float]
    points: Tuple[Tuple[int, float], ...]
    explanation: str

    def to_dict(self) -> Dict:
        return {
            "segment_id": self.segment_id,
            "current_level": self.current_level,
            "projected_level": self.projected_level,
            "peak_level": self.peak_level,
            "net_flow_per_min": self.net_flow_per_min,
            "trend": self.trend.value,
            "minutes_to_overload": self.minutes_to_overload,
            "points": [list(p) for p in self.points],
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class RoutingRisk:
    route_id: str
    entity_ids: Tuple[str, ...]
    score: float
    shared_segment_score: float
    junction_score: float
    dwell_overlap_score: float
    conflicting_route_ids: Tuple[str, ...] = ()
    shared_segment_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict:
        return {
            "route_id": self.route_id,
            "entity_ids": list(self.entity_ids),
            "score": self.score,
            "shared_segment_score": self.shared_segment_score,
            "junction_score": self.junction_score,
            "dwell_overlap_score": self.dwell_overlap_score,
            "conflicting_route_ids": list(self.conflicting_route_ids),
            "shared_segment_ids": list(self.shared_segment_ids),
        }


@dataclass(frozen=True)
class Finding:
    """A rule violation, collision scenario, routing risk or congestion condition."""
    key: str
    kind: FindingKind
    alert_kind: AlertKind
    severity: Severity
    entity_ids: Tuple[str, ...]
    segment_id: Optional[str] = None
    magnitude: float = 0.0
    summary: str = ""

    def to_dict(self) -> Dict:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "alert_kind": self.alert_kind.value,
            "severity": self.severity.value,
            "entity_ids": list(self.entity_ids),
            "segment_id": self.segment_id,
            "magnitude": self.magnitude,
            "summary": self.summary,
        }


# =============================================================================
# Risk Assessment
# =============================================================================

@dataclass(frozen=True)
class RiskAssessment:
    assessment_id: str
    snapshot_id: int
    evaluated_at: datetime
    overall_risk_score: float
    rule_violations: Tuple[RuleViolation, ...] = ()
    collision_scenarios: Tuple[CollisionPrediction, ...] = ()
    routing_risks: Tuple[RoutingRisk, ...] = ()
    congestion: Tuple[CongestionMetrics, ...] = ()
    congestion_forecast: Tuple[CongestionTrend, ...] = ()
    anomalies: Tuple[AnomalyScore, ...] = ()
    degraded: bool = False
    degraded_reasons: Tuple[str, ...] = ()
    excluded_entity_ids: Tuple[str, ...] = ()
    # wall-clock metadata, excluded from content comparisons
    processing_ms: float = 0.0
    component_ms: Tuple[Tuple[str, float], ...] = ()

    def __post_init__(self):
        score = self.overall_risk_score
        if not math.isfinite(score) or not 0.0 <= score <= 100.0:
            raise ValueError(f"overall_risk_score out of range: {score}")
        for risk in self.routing_risks:
            if not math.isfinite(risk.score) or not 0.0 <= risk.score <= 100.0:
                raise ValueError(f"routing risk score out of range: {risk.score}")

    @property
    def signal_conflicts(self) -> Tuple[RuleViolation, ...]:
        return tuple(
            v for v in self.rule_violations
            if v.violation_type == ViolationType.SIGNAL_CONFLICT
        )

    def with_degradation(self, reasons: Iterable[str]) -> "RiskAssessment":
        merged = tuple(dict.fromkeys(self.degraded_reasons + tuple(reasons)))
        return replace(self, degraded=True, degraded_reasons=merged)

    def to_dict(self, include_metadata: bool = True) -> Dict:
        data = {
            "assessment_id": self.assessment_id,
            "snapshot_id": self.snapshot_id,
            "evaluated_at": _iso(self.evaluated_at),
            "overall_risk_score": self.overall_risk_score,
            "rule_violations": [v.to_dict() for v in self.rule_violations],
            "signal_conflicts": [v.to_dict() for v in self.signal_conflicts],
            "collision_scenarios": [p.to_dict() for p in self.collision_scenarios],
            "routing_risks": [r.to_dict() for r in self.routing_risks],
            "congestion": [c.to_dict() for c in self.congestion],
            "congestion_forecast": [t.to_dict() for t in self.congestion_forecast],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "degraded": self.degraded,
            "degraded_reasons": list(self.degraded_reasons),
            "excluded_entity_ids": list(self.excluded_entity_ids),
        }
        if include_metadata:
            data["processing_ms"] = self.processing_ms
            data["component_ms"] = dict(self.component_ms)
        return data


# =============================================================================
# Corrective Suggestions
# =============================================================================

ACTION_SCHEMA_VERSION = "1.0"


@dataclass(frozen=True)
class SignalAdjustmentAction:
    signal_id: str
    target_aspect: SignalAspect
    action_type: Strategy = field(default=Strategy.SIGNAL_ADJUSTMENT, init=False)
    schema_version: str = field(default=ACTION_SCHEMA_VERSION, init=False)

    def to_dict(self) -> Dict:
        return {
            "action_type": self.action_type.value,
            "schema_version": self.schema_version,
            "signal_id": self.signal_id,
            "target_aspect": self.target_aspect.value,
        }


@dataclass(frozen=True)
class SpeedReductionAction:
    entity_id: str
    target_speed_kmh: float
    action_type: Strategy = field(default=Strategy.SPEED_REDUCTION, init=False)
    schema_version: str = field(default=ACTION_SCHEMA_VERSION, init=False)

    def to_dict(self) -> Dict:
        return {
            "action_type": self.action_type.value,
            "schema_version": self.schema_version,
            "entity_id": self.entity_id,
            "target_speed_kmh": self.target_speed_kmh,
        }


@dataclass(frozen=True)
class RouteModificationAction:
    entity_id: str
    avoid_segment_ids: Tuple[str, ...]
    via_segment_ids: Tuple[str, ...] = ()
    action_type: Strategy = field(default=Strategy.ROUTE_MODIFICATION, init=False)
    schema_version: str = field(default=ACTION_SCHEMA_VERSION, init=False)

    def to_dict(self) -> Dict:
        return {
            "action_type": self.action_type.value,
            "schema_version": self.schema_version,
            "entity_id": self.entity_id,
            "avoid_segment_ids": list(self.avoid_segment_ids),
            "via_segment_ids": list(self.via_segment_ids),
        }


@dataclass(frozen=True)
class HoldAtStationAction:
    entity_id: str
    station_id: Optional[str]
    hold_seconds: int
    action_type: Strategy = field(default=Strategy.HOLD_AT_STATION, init=False)
    schema_version: str = field(default=ACTION_SCHEMA_VERSION, init=False)

    def to_dict(self) -> Dict:
        return {
            "action_type": self.action_type.value,
            "schema_version": self.schema_version,
            "entity_id": self.entity_id,
            "station_id": self.station_id,
            "hold_seconds": self.hold_seconds,
        }


@dataclass(frozen=True)
class EmergencyStopAction:
    entity_id: str
    action_type: Strategy = field(default=Strategy.EMERGENCY_STOP, init=False)
    schema_version: str = field(default=ACTION_SCHEMA_VERSION, init=False)

    def to_dict(self) -> Dict:
        return {
            "action_type": self.action_type.value,
            "schema_version": self.schema_version,
            "entity_id": self.entity_id,
        }


SuggestionAction = Union[
    SignalAdjustmentAction,
    SpeedReductionAction,
    RouteModificationAction,
    HoldAtStationAction,
    EmergencyStopAction,
]


@dataclass(frozen=True)
class CorrectiveSuggestion:
    id: str
    finding_key: str
    strategy: Strategy
    affected_entity_ids: Tuple[str, ...]
    actions: Tuple[SuggestionAction, ...]
    effectiveness: float
    implementation_time_seconds: float
    priority: int = 0
    rationale: str = ""

    def __post_init__(self):
        if not self.actions:
            raise ValueError(f"suggestion {self.id} has no actions")
        if not 0.0 <= self.effectiveness <= 1.0:
            raise ValueError(f"effectiveness out of range: {self.effectiveness}")
        if self.implementation_time_seconds < 0:
            raise ValueError("implementation time must be non-negative")

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "finding_key": self.finding_key,
            "strategy": self.strategy.value,
            "affected_entity_ids": list(self.affected_entity_ids),
            "actions": [a.to_dict() for a in self.actions],
            "effectiveness": self.effectiveness,
            "implementation_time_seconds": self.implementation_time_seconds,
            "priority": self.priority,
            "rationale": self.rationale,
        }


# =============================================================================
# Alerts
# =============================================================================

@dataclass(frozen=True)
class Resolution:
    actions: Tuple[str, ...]
    notes: str = ""
    resolved_by: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "actions": list(self.actions),
            "notes": self.notes,
            "resolved_by": self.resolved_by,
        }


@dataclass(frozen=True)
class Alert:
    id: str
    kind: AlertKind
    severity: Severity
    status: AlertStatus
    created_at: datetime
    affected_entity_ids: Tuple[str, ...]
    finding_key: str
    summary: str = ""
    suggestions: Tuple[CorrectiveSuggestion, ...] = ()
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    operator_id: Optional[str] = None
    resolution: Optional[Resolution] = None
    snapshot_id: Optional[int] = None
    last_seen_at: Optional[datetime] = None
    occurrences: int = 1

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "resolved_at": _iso(self.resolved_at),
            "affected_entity_ids": list(self.affected_entity_ids),
            "finding_key": self.finding_key,
            "summary": self.summary,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "operator_id": self.operator_id,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "snapshot_id": self.snapshot_id,
            "last_seen_at": _iso(self.last_seen_at),
            "occurrences": self.occurrences,
        }
