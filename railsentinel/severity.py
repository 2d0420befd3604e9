"""
Severity mapping and finding derivation.

The mapping from finding magnitude to severity is fixed:

    Signal conflict     any instance        CRITICAL
    Collision scenario  probability > 0.70  CRITICAL
    Routing risk        score > 60          HIGH
    Network overload    level >= 0.80       MEDIUM

Every finding maps to exactly one alert kind.
"""

import math
from typing import List, Optional

from .config import AlertConfig, alert_config
from .models import (
    AlertKind, CollisionPrediction, CongestionMetrics, CongestionTrend,
    Finding, FindingKind, RiskAssessment, RoutingRisk, RuleViolation,
    Severity, ViolationType,
)

COLLISION_CRITICAL_PROBABILITY = 0.70
COLLISION_HIGH_PROBABILITY = 0.50
ROUTING_HIGH_SCORE = 60.0
OVERLOAD_LEVEL = 0.80


ALERT_KIND_BY_FINDING = {
    FindingKind.SIGNAL_CONFLICT: AlertKind.SIGNAL_CONFLICT,
    FindingKind.SIGNAL_OVERRUN: AlertKind.SIGNAL_CONFLICT,
    FindingKind.MINIMUM_SEPARATION: AlertKind.COLLISION_SCENARIO,
    FindingKind.COLLISION_SCENARIO: AlertKind.COLLISION_SCENARIO,
    FindingKind.SPEED_LIMIT: AlertKind.ROUTING_RISK,
    FindingKind.TRACK_CAPACITY: AlertKind.ROUTING_RISK,
    FindingKind.ROUTING_RISK: AlertKind.ROUTING_RISK,
    FindingKind.NETWORK_OVERLOAD: AlertKind.NETWORK_OVERLOAD,
}

FINDING_KIND_BY_VIOLATION = {
    ViolationType.SIGNAL_CONFLICT: FindingKind.SIGNAL_CONFLICT,
    ViolationType.SPEED_LIMIT: FindingKind.SPEED_LIMIT,
    ViolationType.TRACK_CAPACITY: FindingKind.TRACK_CAPACITY,
    ViolationType.MINIMUM_SEPARATION: FindingKind.MINIMUM_SEPARATION,
    ViolationType.SIGNAL_OVERRUN: FindingKind.SIGNAL_OVERRUN,
}


# =============================================================================
# Severity table
# =============================================================================

def collision_severity(probability: float, config: AlertConfig = alert_config) -> Optional[Severity]:
    """Severity of a collision scenario, or None below the alerting floor."""
    if not math.isfinite(probability):
        return Severity.CRITICAL
    if probability > COLLISION_CRITICAL_PROBABILITY:
        return Severity.CRITICAL
    if probability > COLLISION_HIGH_PROBABILITY:
        return Severity.HIGH
    if probability >= config.min_collision_probability:
        return Severity.MEDIUM
    return None


def routing_severity(score: float, config: AlertConfig = alert_config) -> Optional[Severity]:
    if not math.isfinite(score):
        return Severity.HIGH
    if score > ROUTING_HIGH_SCORE:
        return Severity.HIGH
    if score > config.min_routing_score:
        return Severity.MEDIUM
    return None


def overload_severity(level: float) -> Optional[Severity]:
    if not math.isfinite(level) or level >= OVERLOAD_LEVEL:
        return Severity.MEDIUM
    return None


def violation_severity(violation: RuleViolation) -> Severity:
    if violation.violation_type == ViolationType.SIGNAL_CONFLICT:
        return Severity.CRITICAL
    return violation.severity


# =============================================================================
# Findings
# =============================================================================

def _violation_finding(violation: RuleViolation) -> Finding:
    kind = FINDING_KIND_BY_VIOLATION[violation.violation_type]
    key = f"{kind.value}:{violation.segment_id or '-'}:{'+'.join(violation.affected_entity_ids)}"
    return Finding(
        key=key,
        kind=kind,
        alert_kind=ALERT_KIND_BY_FINDING[kind],
        severity=violation_severity(violation),
        entity_ids=violation.affected_entity_ids,
        segment_id=violation.segment_id,
        magnitude=dict(violation.details).get("magnitude", 0.0),
        summary=violation.explanation,
    )


def _collision_finding(prediction: CollisionPrediction, config: AlertConfig) -> Optional[Finding]:
    severity = collision_severity(prediction.probability, config)
    if severity is None:
        return None
    ttc = prediction.time_to_collision_s
    ttc_text = f"{ttc:.0f}s" if ttc is not None else "unknown"
    return Finding(
        key=f"{FindingKind.COLLISION_SCENARIO.value}:{prediction.entity_pair_id}",
        kind=FindingKind.COLLISION_SCENARIO,
        alert_kind=AlertKind.COLLISION_SCENARIO,
        severity=severity,
        entity_ids=tuple(prediction.entity_ids),
        magnitude=prediction.probability,
        summary=(
            f"Collision risk {prediction.probability:.0%} between "
            f"{' and '.join(prediction.entity_ids)}, time to collision {ttc_text}"
        ),
    )


def _routing_finding(risk: RoutingRisk, config: AlertConfig) -> Optional[Finding]:
    severity = routing_severity(risk.score, config)
    if severity is None:
        return None
    return Finding(
        key=f"{FindingKind.ROUTING_RISK.value}:{risk.route_id}",
        kind=FindingKind.ROUTING_RISK,
        alert_kind=AlertKind.ROUTING_RISK,
        severity=severity,
        entity_ids=risk.entity_ids,
        magnitude=risk.score,
        summary=(
            f"Route {risk.route_id} risk score {risk.score:.0f} "
            f"(conflicts with {', '.join(risk.conflicting_route_ids) or 'no route'})"
        ),
    )


def _overload_finding(metrics: CongestionMetrics) -> Optional[Finding]:
    severity = overload_severity(metrics.level)
    if severity is None:
        return None
    return Finding(
        key=f"{FindingKind.NETWORK_OVERLOAD.value}:{metrics.segment_id}",
        kind=FindingKind.NETWORK_OVERLOAD,
        alert_kind=AlertKind.NETWORK_OVERLOAD,
        severity=severity,
        entity_ids=metrics.entity_ids,
        segment_id=metrics.segment_id,
        magnitude=metrics.level,
        summary=(
            f"Segment {metrics.segment_id} at {metrics.level:.0%} of capacity "
            f"({metrics.occupancy}/{metrics.capacity})"
        ),
    )


def _forecast_finding(trend: CongestionTrend) -> Optional[Finding]:
    if overload_severity(trend.peak_level) is None:
        return None
    return Finding(
        key=f"{FindingKind.NETWORK_OVERLOAD.value}:{trend.segment_id}:forecast",
        kind=FindingKind.NETWORK_OVERLOAD,
        alert_kind=AlertKind.NETWORK_OVERLOAD,
        severity=Severity.MEDIUM,
        entity_ids=(),
        segment_id=trend.segment_id,
        magnitude=trend.peak_level,
        summary=f"Forecast overload on {trend.segment_id}: {trend.explanation}",
    )


def derive_findings(assessment: RiskAssessment, config: AlertConfig = alert_config) -> List[Finding]:
    """
    All findings of an assessment in a deterministic order.

    A segment currently overloaded does not also produce a forecast finding.
    """
    findings: List[Finding] = [_violation_finding(v) for v in assessment.rule_violations]

    for prediction in assessment.collision_scenarios:
        finding = _collision_finding(prediction, config)
        if finding:
            findings.append(finding)

    for risk in assessment.routing_risks:
        finding = _routing_finding(risk, config)
        if finding:
            findings.append(finding)

    overloaded = set()
    for metrics in assessment.congestion:
        finding = _overload_finding(metrics)
        if finding:
            overloaded.add(metrics.segment_id)
            findings.append(finding)

    for trend in assessment.congestion_forecast:
        if trend.segment_id in overloaded:
            continue
        finding = _forecast_finding(trend)
        if finding:
            findings.append(finding)

    return findings
