"""
Alert Manager
=============

Converts findings into alerts and owns their lifecycle:

    ACTIVE --acknowledge(operator_id)--> ACKNOWLEDGED --resolve(resolution)--> RESOLVED
    ACTIVE --resolve(resolution)--> RESOLVED

Transitions only move forward. Alerts are never deleted. While an alert for
a finding is open, the same finding updates it instead of raising a new one.
Mutations are serialized per alert id.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from ..config import AlertConfig, alert_config
from ..errors import AlertNotFound, InvalidTransition
from ..models import (
    Alert, AlertKind, AlertStatus, CorrectiveSuggestion, Finding, Resolution,
    RiskAssessment, Severity,
)
from ..severity import derive_findings

logger = logging.getLogger(__name__)

OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)


@dataclass(frozen=True)
class AlertFilter:
    kinds: Tuple[AlertKind, ...] = ()
    min_severity: Optional[Severity] = None
    entity_id: Optional[str] = None
    statuses: Tuple[AlertStatus, ...] = OPEN_STATUSES

    def matches(self, alert: Alert) -> bool:
        if self.kinds and alert.kind not in self.kinds:
            return False
        if self.min_severity is not None and alert.severity < self.min_severity:
            return False
        if self.entity_id is not None and self.entity_id not in alert.affected_entity_ids:
            return False
        if self.statuses and alert.status not in self.statuses:
            return False
        return True


def alert_sort_key(alert: Alert):
    """Severity desc, then created_at desc, then id."""
    return (-alert.severity.rank, -alert.created_at.timestamp(), alert.id)


class AlertManager:
    def __init__(
        self,
        config: AlertConfig = alert_config,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._alerts: Dict[str, Alert] = {}
        self._open_by_key: Dict[str, str] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._last_snapshot_id: Optional[int] = None

    # =========================================================================
    # Creation
    # =========================================================================

    def process(
        self, assessment: RiskAssessment, suggestions: List[CorrectiveSuggestion]
    ) -> List[Alert]:
        """
        Raise or refresh one alert per finding of the assessment.

        Returns the alerts created or updated, in query order. Assessments
        older than one already applied are ignored.
        """
        with self._registry_lock:
            if self._last_snapshot_id is not None and assessment.snapshot_id < self._last_snapshot_id:
                logger.warning(
                    f"Ignoring assessment {assessment.assessment_id}: snapshot "
                    f"{assessment.snapshot_id} is older than applied {self._last_snapshot_id}"
                )
                return []
            self._last_snapshot_id = assessment.snapshot_id

        by_finding: Dict[str, List[CorrectiveSuggestion]] = {}
        for suggestion in suggestions:
            by_finding.setdefault(suggestion.finding_key, []).append(suggestion)

        touched = []
        for finding in derive_findings(assessment, self.config):
            related = tuple(sorted(by_finding.get(finding.key, []), key=lambda s: s.priority))
            touched.append(self._raise(finding, related, assessment.snapshot_id))

        touched.sort(key=alert_sort_key)
        return touched

    def _raise(
        self, finding: Finding, suggestions: Tuple[CorrectiveSuggestion, ...], snapshot_id: int
    ) -> Alert:
        now = self._clock()

        with self._registry_lock:
            alert_id = self._open_by_key.get(finding.key)
            if alert_id is None:
                alert = Alert(
                    id=str(uuid.uuid4()),
                    kind=finding.alert_kind,
                    severity=finding.severity,
                    status=AlertStatus.ACTIVE,
                    created_at=now,
                    affected_entity_ids=finding.entity_ids,
                    finding_key=finding.key,
                    summary=finding.summary,
                    suggestions=suggestions,
                    snapshot_id=snapshot_id,
                    last_seen_at=now,
                )
                self._alerts[alert.id] = alert
                self._open_by_key[finding.key] = alert.id
                self._locks[alert.id] = threading.Lock()
                log = logger.critical if alert.severity == Severity.CRITICAL else logger.warning
                log(f"[{alert.severity.value.upper()}] {alert.kind.value} alert {alert.id}: {alert.summary}")
                return alert

        with self._lock_for(alert_id):
            current = self._alerts[alert_id]
            if not current.is_open:
                # Resolved between the lookup and the lock
                with self._registry_lock:
                    self._open_by_key.pop(finding.key, None)
                return self._raise(finding, suggestions, snapshot_id)

            updated = replace(
                current,
                severity=max(current.severity, finding.severity),
                summary=finding.summary,
                suggestions=suggestions,
                snapshot_id=snapshot_id,
                last_seen_at=now,
                occurrences=current.occurrences + 1,
            )
            self._alerts[alert_id] = updated
            if updated.severity > current.severity:
                logger.warning(
                    f"Alert {alert_id} escalated {current.severity.value} -> {updated.severity.value}"
                )
            return updated

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def acknowledge(self, alert_id: str, operator_id: str) -> Alert:
        with self._lock_for(alert_id):
            alert = self._alerts[alert_id]
            if alert.status != AlertStatus.ACTIVE:
                raise InvalidTransition(
                    f"cannot acknowledge a {alert.status.value} alert", [alert_id]
                )
            updated = replace(
                alert,
                status=AlertStatus.ACKNOWLEDGED,
                acknowledged_at=self._clock(),
                operator_id=operator_id,
            )
            self._alerts[alert_id] = updated
        logger.info(f"Alert {alert_id} acknowledged by {operator_id}")
        return updated

    def resolve(self, alert_id: str, resolution: Resolution) -> Alert:
        with self._lock_for(alert_id):
            alert = self._alerts[alert_id]
            if alert.status not in OPEN_STATUSES:
                raise InvalidTransition(
                    f"cannot resolve a {alert.status.value} alert", [alert_id]
                )
            updated = replace(
                alert,
                status=AlertStatus.RESOLVED,
                resolved_at=self._clock(),
                resolution=resolution,
                operator_id=alert.operator_id or resolution.resolved_by,
            )
            self._alerts[alert_id] = updated
            with self._registry_lock:
                if self._open_by_key.get(alert.finding_key) == alert_id:
                    del self._open_by_key[alert.finding_key]
        logger.info(
            f"Alert {alert_id} resolved by {resolution.resolved_by or 'unknown'}: "
            f"{', '.join(resolution.actions) or 'no actions recorded'}"
        )
        return updated

    def _lock_for(self, alert_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(alert_id)
        if lock is None:
            raise AlertNotFound(f"no alert with id {alert_id}", [alert_id])
        return lock

    # =========================================================================
    # Queries
    # =========================================================================

    def get_alert(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFound(f"no alert with id {alert_id}", [alert_id])
        return alert

    def get_active_alerts(self, filters: Optional[AlertFilter] = None) -> List[Alert]:
        filters = filters or AlertFilter()
        with self._registry_lock:
            alerts = list(self._alerts.values())
        return sorted((a for a in alerts if filters.matches(a)), key=alert_sort_key)

    def get_alert_history(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[Alert]:
        """All alerts created within [start, end], any status."""
        with self._registry_lock:
            alerts = list(self._alerts.values())
        selected = [
            a for a in alerts
            if (start is None or a.created_at >= start) and (end is None or a.created_at <= end)
        ]
        return sorted(selected, key=alert_sort_key)

    def get_statistics(self) -> Dict:
        with self._registry_lock:
            alerts = list(self._alerts.values())
        stats = {
            "total": len(alerts),
            "by_status": {},
            "by_kind": {},
            "by_severity": {},
        }
        for alert in alerts:
            stats["by_status"][alert.status.value] = stats["by_status"].get(alert.status.value, 0) + 1
            stats["by_kind"][alert.kind.value] = stats["by_kind"].get(alert.kind.value, 0) + 1
            stats["by_severity"][alert.severity.value] = stats["by_severity"].get(alert.severity.value, 0) + 1
        return stats
