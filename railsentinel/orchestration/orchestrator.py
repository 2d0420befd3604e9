"""
Risk Orchestrator
=================

Runs one evaluation cycle over a snapshot:

    Snapshot --> Rule Engine -------------+
             --> Predictive Risk Port ----+--> fusion --> RiskAssessment
             --> Congestion + Routing ----+

The three components run concurrently on a thread pool, each under its own
sub-deadline inside the cycle budget. A component that times out or fails
marks the assessment degraded; its outputs are omitted, never zeroed.
A component whose previous call is still running is not resubmitted, so a
hung predictor holds one worker and never delays the rules.
"""

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import SentinelConfig
from ..congestion.monitor import CongestionMonitor
from ..congestion.routing import RoutingRiskAnalyzer
from ..detection.engine import RuleEngine
from ..errors import (
    ContractViolation, SnapshotUnavailable, SubcomponentFailure, SubcomponentTimeout,
)
from ..models import (
    AnomalyScore, CollisionPrediction, CongestionMetrics, NetworkSnapshot,
    RiskAssessment, RoutingRisk, RuleViolation,
)
from ..prediction.port import PORT_CONTRACT_VERSION, PredictiveRiskPort
from ..prediction.predictor import KinematicRiskPredictor
from ..severity import violation_severity

logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ComponentResult:
    """Result from a single component execution."""
    name: str
    status: str  # "ok", "error", "timeout"
    execution_ms: float
    value: Optional[Any] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


# =============================================================================
# Fusion
# =============================================================================

def fuse_scores(
    violations: Tuple[RuleViolation, ...],
    collisions: Tuple[CollisionPrediction, ...],
    routing: Tuple[RoutingRisk, ...],
    congestion: Tuple[CongestionMetrics, ...],
    config: SentinelConfig,
) -> float:
    """
    Overall risk in [0, 100]: the maximum of the weighted category scores.
    Any non-finite input yields 100.
    """
    fusion = config.fusion
    candidates = [0.0]

    if violations:
        candidates.append(fusion.rules_weight * max(
            fusion.severity_scores[violation_severity(v).value] for v in violations
        ))
    if collisions:
        candidates.append(fusion.collision_weight * 100.0 * max(p.probability for p in collisions))
    if routing:
        candidates.append(fusion.routing_weight * max(r.score for r in routing))
    if congestion:
        levels = [c.level for c in congestion]
        if any(not math.isfinite(level) for level in levels):
            return 100.0
        candidates.append(fusion.congestion_weight * 100.0 * min(max(levels), 1.0))

    overall = max(candidates)
    if not math.isfinite(overall):
        return 100.0
    return min(max(overall, 0.0), 100.0)


# =============================================================================
# Orchestrator
# =============================================================================

class RiskOrchestrator:
    """
    Produces one RiskAssessment per snapshot.

    run_cycle is serialized: at most one cycle is in flight.
    """

    def __init__(
        self,
        rule_engine: Optional[RuleEngine] = None,
        predictor: Optional[PredictiveRiskPort] = None,
        congestion_monitor: Optional[CongestionMonitor] = None,
        routing_analyzer: Optional[RoutingRiskAnalyzer] = None,
        config: Optional[SentinelConfig] = None,
    ):
        self.config = (config or SentinelConfig()).validate()
        self.rule_engine = rule_engine or RuleEngine(config=self.config.rules)
        self.predictor = predictor or KinematicRiskPredictor(self.config.prediction)
        self.congestion_monitor = congestion_monitor or CongestionMonitor(self.config.congestion)
        self.routing_analyzer = routing_analyzer or RoutingRiskAnalyzer(self.config.routing)

        if getattr(self.predictor, "contract_version", None) != PORT_CONTRACT_VERSION:
            logger.warning(
                f"Predictor {type(self.predictor).__name__} implements contract "
                f"{getattr(self.predictor, 'contract_version', None)}, expected {PORT_CONTRACT_VERSION}"
            )

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.cycle.max_workers, thread_name_prefix="risk-cycle"
        )
        self._cycle_lock = threading.Lock()
        self._in_flight: Dict[str, Future] = {}
        self._last_good: Optional[RiskAssessment] = None
        self._newest_snapshot_id = 0
        self._unavailable_count = 0

        self._stats = {
            "cycles": 0,
            "degraded_cycles": 0,
            "contract_violations": 0,
            "snapshots_unavailable": 0,
        }

    @property
    def last_known_good(self) -> Optional[RiskAssessment]:
        return self._last_good

    def run_cycle(self, snapshot: Optional[NetworkSnapshot]) -> RiskAssessment:
        """Evaluate one snapshot, or fall back when none is available."""
        with self._cycle_lock:
            if snapshot is None:
                return self._unavailable()
            return self._evaluate(snapshot)

    # =========================================================================
    # Cycle
    # =========================================================================

    def _evaluate(self, snapshot: NetworkSnapshot) -> RiskAssessment:
        cycle = self.config.cycle
        start = time.perf_counter()
        horizon = self.config.prediction.horizon_seconds
        self._newest_snapshot_id = max(self._newest_snapshot_id, snapshot.snapshot_id)

        tasks: List[Tuple[str, float, Callable[[], Any]]] = [
            ("rules", cycle.rules_deadline_seconds, lambda: self.rule_engine.evaluate(snapshot)),
            ("predictor", cycle.predictor_deadline_seconds, lambda: (
                self.predictor.predict_collisions(snapshot, horizon),
                self.predictor.detect_all_anomalies(snapshot),
            )),
            ("congestion", cycle.congestion_deadline_seconds, lambda: (
                self.congestion_monitor.compute_congestion(snapshot),
                self.congestion_monitor.forecast(snapshot),
                self.routing_analyzer.analyze(snapshot),
            )),
        ]
        results: Dict[str, ComponentResult] = {}
        futures: Dict[str, Future] = {}
        for name, _, fn in tasks:
            previous = self._in_flight.get(name)
            if previous is not None and not previous.done():
                results[name] = self._still_running(name, snapshot)
                continue
            futures[name] = self._in_flight[name] = self._executor.submit(self._timed, fn)

        for name, deadline, _ in tasks:
            if name in futures:
                results[name] = self._collect(name, futures[name], start, deadline, snapshot)

        reasons: List[str] = []
        for name in ("rules", "predictor", "congestion"):
            if not results[name].ok:
                reasons.append(f"{name} {results[name].status}: {results[name].error}")

        violations: Tuple[RuleViolation, ...] = ()
        if results["rules"].ok:
            evaluation = results["rules"].value
            violations = evaluation.violations
            reasons.extend(f.reason() for f in evaluation.failures)

        collisions: Tuple[CollisionPrediction, ...] = ()
        anomalies: Tuple[AnomalyScore, ...] = ()
        if results["predictor"].ok:
            raw_collisions, raw_anomalies = results["predictor"].value
            collisions = self._validate_predictions(raw_collisions, snapshot)
            anomalies = self._validate_anomalies(raw_anomalies, snapshot)

        congestion: Tuple[CongestionMetrics, ...] = ()
        forecast = ()
        routing: Tuple[RoutingRisk, ...] = ()
        if results["congestion"].ok:
            metrics, trends, risks = results["congestion"].value
            congestion, forecast, routing = tuple(metrics), tuple(trends), tuple(risks)

        if snapshot.excluded_entity_ids:
            reasons.append(
                f"{len(snapshot.excluded_entity_ids)} entities excluded by validation: "
                f"{', '.join(snapshot.excluded_entity_ids)}"
            )

        overall = fuse_scores(violations, collisions, routing, congestion, self.config)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if elapsed_ms > cycle.cycle_budget_seconds * 1000.0:
            logger.warning(
                f"Cycle for snapshot {snapshot.snapshot_id} took {elapsed_ms:.0f}ms "
                f"(budget {cycle.cycle_budget_seconds * 1000:.0f}ms)"
            )

        assessment = RiskAssessment(
            assessment_id=f"RA-{snapshot.snapshot_id:08d}",
            snapshot_id=snapshot.snapshot_id,
            evaluated_at=snapshot.taken_at,
            overall_risk_score=overall,
            rule_violations=violations,
            collision_scenarios=collisions,
            routing_risks=routing,
            congestion=congestion,
            congestion_forecast=forecast,
            anomalies=anomalies,
            degraded=bool(reasons),
            degraded_reasons=tuple(reasons),
            excluded_entity_ids=snapshot.excluded_entity_ids,
            processing_ms=round(elapsed_ms, 3),
            component_ms=tuple((name, round(results[name].execution_ms, 3)) for name in sorted(results)),
        )

        self._stats["cycles"] += 1
        if assessment.degraded:
            self._stats["degraded_cycles"] += 1
            logger.warning(
                f"Assessment {assessment.assessment_id} degraded: {'; '.join(assessment.degraded_reasons)}"
            )
        else:
            self._last_good = assessment

        logger.info(
            f"Assessment {assessment.assessment_id}: score {overall:.1f}, "
            f"{len(violations)} violations, {len(collisions)} collision scenarios, "
            f"{len(routing)} routes scored in {elapsed_ms:.0f}ms"
        )
        return assessment

    @staticmethod
    def _timed(fn: Callable[[], Any]) -> Tuple[Any, float]:
        started = time.perf_counter()
        value = fn()
        return value, (time.perf_counter() - started) * 1000.0

    def _collect(self, name, future, start: float, deadline: float, snapshot: NetworkSnapshot) -> ComponentResult:
        budget_end = start + self.config.cycle.cycle_budget_seconds
        remaining = min(start + deadline, budget_end) - time.perf_counter()
        try:
            value, execution_ms = future.result(timeout=max(remaining, 0.0))
        except FutureTimeout:
            future.cancel()
            error = SubcomponentTimeout(f"exceeded {deadline:.2f}s", [name, str(snapshot.snapshot_id)])
            logger.error(error.describe())
            return ComponentResult(name, "timeout", deadline * 1000.0, error=error.message)
        except Exception as e:
            error = SubcomponentFailure(f"{type(e).__name__}: {e}", [name, str(snapshot.snapshot_id)])
            logger.error(error.describe(), exc_info=True)
            return ComponentResult(
                name, "error", (time.perf_counter() - start) * 1000.0, error=error.message
            )
        return ComponentResult(name, "ok", execution_ms, value=value)

    @staticmethod
    def _still_running(name: str, snapshot: NetworkSnapshot) -> ComponentResult:
        error = SubcomponentTimeout(
            "still running from an earlier cycle", [name, str(snapshot.snapshot_id)]
        )
        logger.error(error.describe())
        return ComponentResult(name, "timeout", 0.0, error=error.message)

    # =========================================================================
    # Predictor contract
    # =========================================================================

    def _validate_predictions(
        self, predictions: List[CollisionPrediction], snapshot: NetworkSnapshot
    ) -> Tuple[CollisionPrediction, ...]:
        valid = []
        for prediction in predictions:
            problem = None
            if not isinstance(prediction, CollisionPrediction):
                problem = f"unexpected result type {type(prediction).__name__}"
            elif not _unit_interval(prediction.probability):
                problem = f"probability {prediction.probability!r}"
            elif not _unit_interval(prediction.confidence):
                problem = f"confidence {prediction.confidence!r}"
            elif any(eid not in snapshot.entities for eid in prediction.entity_ids):
                problem = "references entities outside the snapshot"

            if problem is not None:
                ids = getattr(prediction, "entity_pair_id", "?")
                self._contract_violation(f"collision prediction {problem}", [ids, str(snapshot.snapshot_id)])
                continue
            valid.append(prediction)

        valid.sort(key=lambda p: (-p.probability, p.entity_pair_id))
        return tuple(valid)

    def _validate_anomalies(
        self, anomalies: List[AnomalyScore], snapshot: NetworkSnapshot
    ) -> Tuple[AnomalyScore, ...]:
        valid = []
        for anomaly in anomalies:
            if not (isinstance(anomaly, AnomalyScore)
                    and _unit_interval(anomaly.score)
                    and _unit_interval(anomaly.confidence)):
                self._contract_violation(
                    "anomaly score out of range",
                    [getattr(anomaly, "entity_id", "?"), str(snapshot.snapshot_id)],
                )
                continue
            valid.append(anomaly)
        valid.sort(key=lambda a: a.entity_id)
        return tuple(valid)

    def _contract_violation(self, message: str, identifiers: List[str]) -> None:
        error = ContractViolation(message, identifiers)
        self._stats["contract_violations"] += 1
        logger.error(f"Discarded predictor output. {error.describe()}")

    # =========================================================================
    # Snapshot unavailable
    # =========================================================================

    def _unavailable(self) -> RiskAssessment:
        """
        Fallback for a cycle without a snapshot.

        The fallback carries the newest snapshot id evaluated so far so that
        latest-wins consumers treat it as current, not as a stale result.
        """
        self._stats["snapshots_unavailable"] += 1
        self._unavailable_count += 1
        error = SnapshotUnavailable("no snapshot for this cycle")

        if self._last_good is not None:
            logger.error(
                f"{error.describe()}; reusing assessment {self._last_good.assessment_id}"
            )
            fallback = self._last_good.with_degradation(
                [f"snapshot unavailable; last known good assessment of snapshot {self._last_good.snapshot_id}"]
            )
            return replace(fallback, snapshot_id=max(fallback.snapshot_id, self._newest_snapshot_id))

        logger.error(f"{error.describe()}; no last known good assessment, reporting maximum risk")
        return RiskAssessment(
            assessment_id=f"RA-UNAVAILABLE-{self._unavailable_count:04d}",
            snapshot_id=self._newest_snapshot_id,
            evaluated_at=datetime.now(timezone.utc),
            overall_risk_score=100.0,
            degraded=True,
            degraded_reasons=("snapshot unavailable; no last known good assessment",),
        )

    def get_statistics(self) -> Dict:
        return dict(self._stats)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
        self.rule_engine.shutdown()


def _unit_interval(value) -> bool:
    try:
        return math.isfinite(value) and 0.0 <= value <= 1.0
    except TypeError:
        return False
