"""
Risk Monitor
============

Pipeline facade: snapshot -> assessment -> suggestions -> alerts -> egress.

Runs on a fixed cadence thread and accepts out-of-band triggers (for example
on a signal change). Results are published only when their snapshot is newer
than the last published one, so a slow cycle never overwrites a newer result.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from ..alerting.alert_manager import AlertManager
from ..config import SentinelConfig
from ..detection.engine import RuleEngine
from ..detection.snapshot_builder import SnapshotAssembler
from ..errors import SnapshotUnavailable
from ..logging_config import log_execution_time
from ..models import Alert, CorrectiveSuggestion, NetworkSnapshot, RiskAssessment, RouteTopology
from ..prediction.port import PredictiveRiskPort
from ..resolution.suggestion_generator import SuggestionGenerator
from .emitter import EgressEmitter
from .orchestrator import RiskOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleOutcome:
    assessment: RiskAssessment
    suggestions: Tuple[CorrectiveSuggestion, ...]
    alerts: Tuple[Alert, ...]
    published: bool


class RiskMonitor:
    """
    Owns every pipeline component for one network.

    Components can be injected for tests; otherwise they are built from the
    configuration.
    """

    def __init__(
        self,
        topology: RouteTopology,
        config: Optional[SentinelConfig] = None,
        predictor: Optional[PredictiveRiskPort] = None,
        assembler: Optional[SnapshotAssembler] = None,
        orchestrator: Optional[RiskOrchestrator] = None,
        suggestion_generator: Optional[SuggestionGenerator] = None,
        alert_manager: Optional[AlertManager] = None,
        emitter: Optional[EgressEmitter] = None,
    ):
        self.config = (config or SentinelConfig()).validate()
        self.assembler = assembler or SnapshotAssembler(topology, self.config.feed)
        self.orchestrator = orchestrator or RiskOrchestrator(
            rule_engine=RuleEngine(config=self.config.rules),
            predictor=predictor,
            config=self.config,
        )
        self.suggestion_generator = suggestion_generator or SuggestionGenerator(
            self.config.suggestions, self.config.alerts
        )
        self.alert_manager = alert_manager or AlertManager(self.config.alerts)
        self.emitter = emitter or EgressEmitter(json_file=self.config.api.egress_jsonl)

        self._publish_lock = threading.Lock()
        self._latest: Optional[RiskAssessment] = None
        self._latest_suggestions: Tuple[CorrectiveSuggestion, ...] = ()
        self._discarded = 0
        self._timed_cycle = log_execution_time(
            logger, warn_above_seconds=self.config.cycle.cycle_period_seconds
        )(self._cycle)

        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wake = threading.Event()

    # =========================================================================
    # Cycle
    # =========================================================================

    def tick(self, at: Optional[datetime] = None) -> CycleOutcome:
        """Run one full pipeline pass on a fresh snapshot."""
        return self._timed_cycle(at)

    def _cycle(self, at: Optional[datetime]) -> CycleOutcome:
        snapshot: Optional[NetworkSnapshot]
        try:
            snapshot = self.assembler.build(at)
        except Exception as e:
            error = SnapshotUnavailable(f"{type(e).__name__}: {e}")
            logger.error(f"Snapshot assembly failed. {error.describe()}")
            snapshot = None

        assessment = self.orchestrator.run_cycle(snapshot)
        suggestions = tuple(self.suggestion_generator.generate(assessment, snapshot))
        return self._publish(assessment, suggestions)

    def _publish(
        self, assessment: RiskAssessment, suggestions: Tuple[CorrectiveSuggestion, ...]
    ) -> CycleOutcome:
        with self._publish_lock:
            latest = self._latest
            if latest is not None and assessment.snapshot_id < latest.snapshot_id:
                self._discarded += 1
                logger.info(
                    f"Discarded assessment {assessment.assessment_id}: superseded by "
                    f"{latest.assessment_id}"
                )
                return CycleOutcome(assessment, suggestions, (), published=False)

            self._latest = assessment
            self._latest_suggestions = suggestions
            alerts = tuple(self.alert_manager.process(assessment, list(suggestions)))

        self.emitter.emit_assessment(assessment)
        self.emitter.emit_alerts(list(alerts))
        return CycleOutcome(assessment, suggestions, alerts, published=True)

    @property
    def latest_assessment(self) -> Optional[RiskAssessment]:
        return self._latest

    @property
    def latest_suggestions(self) -> Tuple[CorrectiveSuggestion, ...]:
        return self._latest_suggestions

    # =========================================================================
    # Cadence
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="risk-monitor", daemon=True)
        self._thread.start()
        logger.info(f"Risk monitor started, cycle every {self.config.cycle.cycle_period_seconds:.1f}s")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.emitter.flush(timeout=timeout)
        logger.info("Risk monitor stopped")

    def trigger(self, reason: str = "manual") -> Optional[CycleOutcome]:
        """
        Request an immediate out-of-band cycle.

        With the cadence thread running, the thread is woken and None is
        returned; otherwise the cycle runs on the caller's thread.
        """
        logger.info(f"Out-of-band cycle requested: {reason}")
        if self.running:
            self._wake.set()
            return None
        return self.tick()

    def _run(self) -> None:
        period = self.config.cycle.cycle_period_seconds
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Cycle failed: {type(e).__name__}: {e}", exc_info=True)
            remaining = period - (time.monotonic() - started)
            self._wake.wait(timeout=max(remaining, 0.0))
            self._wake.clear()

    def get_statistics(self) -> Dict:
        latest = self._latest
        return {
            "running": self.running,
            "latest_snapshot_id": latest.snapshot_id if latest else None,
            "discarded_assessments": self._discarded,
            "orchestrator": self.orchestrator.get_statistics(),
            "rules": self.orchestrator.rule_engine.get_statistics(),
            "feed": self.assembler.get_statistics(),
            "alerts": self.alert_manager.get_statistics(),
            "egress": self.emitter.get_statistics(),
        }

    def shutdown(self) -> None:
        self.stop(timeout=self.config.cycle.cycle_period_seconds)
        self.orchestrator.shutdown()
        self.emitter.shutdown()
