"""
Egress Emitter
Fire-and-forget delivery of assessments and alerts to subscribers.

Supports multiple output channels (JSONL file, callbacks). Callbacks run on
a background executor; their errors are logged and never reach the cycle.
"""

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from ..models import Alert, RiskAssessment

logger = logging.getLogger(__name__)

AssessmentCallback = Callable[[RiskAssessment], None]
AlertCallback = Callable[[Alert], None]


class EgressEmitter:
    def __init__(self, json_file: Optional[str] = None, max_workers: int = 2):
        self.json_file = json_file
        self.assessment_callbacks: List[AssessmentCallback] = []
        self.alert_callbacks: List[AlertCallback] = []
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="egress")
        self._file_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending = set()
        self._stats = {"assessments": 0, "alerts": 0, "callback_errors": 0}

    def register_assessment_callback(self, callback: AssessmentCallback) -> None:
        """Register a callback to be invoked on each published assessment."""
        self.assessment_callbacks.append(callback)

    def register_alert_callback(self, callback: AlertCallback) -> None:
        """Register a callback to be invoked on each new or changed alert."""
        self.alert_callbacks.append(callback)

    def emit_assessment(self, assessment: RiskAssessment) -> None:
        self._stats["assessments"] += 1
        record = {"type": "assessment", "payload": assessment.to_dict()}
        for callback in list(self.assessment_callbacks):
            self._submit(self._invoke, callback, assessment)
        if self.json_file:
            self._submit(self._append_to_json, record)

    def emit_alerts(self, alerts: List[Alert]) -> None:
        for alert in alerts:
            self._stats["alerts"] += 1
            for callback in list(self.alert_callbacks):
                self._submit(self._invoke, callback, alert)
            if self.json_file:
                self._submit(self._append_to_json, {"type": "alert", "payload": alert.to_dict()})

    def _submit(self, fn: Callable, *args) -> None:
        future = self._executor.submit(fn, *args)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _invoke(self, callback: Callable, item) -> None:
        try:
            callback(item)
        except Exception as e:
            self._stats["callback_errors"] += 1
            logger.error(f"Egress callback {getattr(callback, '__name__', callback)} failed: {e}")

    def _append_to_json(self, record: Dict) -> None:
        """Append one record to the JSONL file."""
        try:
            with self._file_lock, open(self.json_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            logger.error(f"JSONL write error ({self.json_file}): {e}")

    def get_statistics(self) -> Dict:
        return dict(self._stats)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for queued deliveries. Used on shutdown and in tests."""
        with self._pending_lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
