"""
Rule Engine
Evaluates the closed rule set against one snapshot.

Every rule runs on its own worker under rule_timeout_seconds. A rule that
raises contributes no violations and is reported as a failure; a rule that
times out is logged as fatal for that rule. Results are never substituted.

A timed-out rule keeps its worker until it returns. It is not resubmitted
while that call is still running, so it holds at most one worker and the
other rules keep theirs.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..config import RuleConfig, rule_config
from ..errors import ConfigurationError, SubcomponentFailure, SubcomponentTimeout
from ..models import NetworkSnapshot, RuleViolation
from .rules import RULESET_VERSION, SafetyRule, default_rules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleFailure:
    rule_id: str
    kind: str
    message: str

    def reason(self) -> str:
        return f"rule {self.rule_id} {self.kind}: {self.message}"


@dataclass(frozen=True)
class RuleEvaluation:
    violations: Tuple[RuleViolation, ...]
    failures: Tuple[RuleFailure, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.failures)


@dataclass(frozen=True)
class RulesetChange:
    """Audit record of one change to the active rule set."""
    revision: int
    action: str
    rule_ids: Tuple[str, ...]
    reason: str
    actor: str
    at: datetime


class RuleEngine:
    """
    Runs every registered rule against a snapshot.

    The rule set is versioned. Outside of reload(), register/unregister are
    refused unless the engine was built with allow_runtime_registration.
    """

    def __init__(
        self,
        rules: Optional[List[SafetyRule]] = None,
        config: RuleConfig = rule_config,
        allow_runtime_registration: bool = False,
    ):
        self.config = config
        self.allow_runtime_registration = allow_runtime_registration
        self.ruleset_version = RULESET_VERSION
        self.ruleset_revision = 0
        self.audit_log: List[RulesetChange] = []

        self._rules: Dict[str, SafetyRule] = {}
        for rule in rules if rules is not None else default_rules(config):
            self._add(rule)

        self._lock = threading.RLock()
        self._pool_size = max(len(self._rules), 1)
        self._executor = ThreadPoolExecutor(
            max_workers=self._pool_size, thread_name_prefix="rule"
        )
        self._in_flight: Dict[str, Future] = {}
        self._evaluation_count = 0
        self._total_violations = 0

    # =========================================================================
    # Registry
    # =========================================================================

    @property
    def rules(self) -> List[SafetyRule]:
        with self._lock:
            return [self._rules[rule_id] for rule_id in sorted(self._rules)]

    def list_rules(self) -> List[Dict]:
        """List all active rules."""
        return [
            {"rule_id": r.rule_id, "description": r.description, "type": r.violation_type.value}
            for r in self.rules
        ]

    def register(self, rule: SafetyRule, reason: str = "", actor: str = "system") -> None:
        self._check_gate("register", rule.rule_id)
        with self._lock:
            self._add(rule)
            self._record("register", (rule.rule_id,), reason, actor)

    def unregister(self, rule_id: str, reason: str = "", actor: str = "system") -> None:
        self._check_gate("unregister", rule_id)
        with self._lock:
            if self._rules.pop(rule_id, None) is None:
                raise ConfigurationError(f"Rule not registered: {rule_id}", [rule_id])
            self._record("unregister", (rule_id,), reason, actor)

    def reload(self, rules: List[SafetyRule], reason: str, actor: str) -> None:
        """Replace the whole rule set. This is the audited path for rule changes."""
        if not reason or not actor:
            raise ConfigurationError("A rule set reload needs a reason and an actor")
        with self._lock:
            self._rules = {}
            for rule in rules:
                self._add(rule)
            self._record("reload", tuple(sorted(self._rules)), reason, actor)
            # Calls still running belong to the old rule set; they keep the old pool
            stuck = [rule_id for rule_id, f in self._in_flight.items() if not f.done()]
            self._in_flight = {}
            if stuck or len(self._rules) > self._pool_size:
                old = self._executor
                self._pool_size = max(len(self._rules), 1)
                self._executor = ThreadPoolExecutor(
                    max_workers=self._pool_size, thread_name_prefix="rule"
                )
                old.shutdown(wait=False)

    def _check_gate(self, action: str, rule_id: str) -> None:
        if not self.allow_runtime_registration:
            logger.warning(f"Refused runtime {action} of {rule_id}: rule set is closed")
            raise ConfigurationError(
                f"Runtime {action} is disabled; use reload() with a reason", [rule_id]
            )

    def _add(self, rule: SafetyRule) -> None:
        if rule.rule_id in self._rules:
            raise ConfigurationError(f"Duplicate rule id: {rule.rule_id}", [rule.rule_id])
        self._rules[rule.rule_id] = rule

    def _record(self, action: str, rule_ids: Tuple[str, ...], reason: str, actor: str) -> None:
        self.ruleset_revision += 1
        change = RulesetChange(
            revision=self.ruleset_revision,
            action=action,
            rule_ids=rule_ids,
            reason=reason,
            actor=actor,
            at=datetime.now(timezone.utc),
        )
        self.audit_log.append(change)
        logger.info(
            f"Rule set {self.ruleset_version} rev {change.revision}: {action} "
            f"{', '.join(rule_ids)} by {actor} ({reason or 'no reason given'})"
        )

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(self, snapshot: NetworkSnapshot) -> RuleEvaluation:
        """
        Evaluate all rules against one snapshot.
        All rules see the same immutable snapshot.
        """
        futures: Dict[Future, SafetyRule] = {}
        still_running: List[SafetyRule] = []
        with self._lock:
            for rule in self.rules:
                previous = self._in_flight.get(rule.rule_id)
                if previous is not None and not previous.done():
                    still_running.append(rule)
                    continue
                future = self._executor.submit(rule.evaluate, snapshot)
                self._in_flight[rule.rule_id] = future
                futures[future] = rule
        done, not_done = wait(futures, timeout=self.config.rule_timeout_seconds)

        violations: List[RuleViolation] = []
        failures: List[RuleFailure] = []

        for rule in still_running:
            error = SubcomponentTimeout(
                "rule still running from an earlier cycle",
                [rule.rule_id, str(snapshot.snapshot_id)],
            )
            logger.critical(f"FATAL for rule {rule.rule_id}: {error.describe()}")
            failures.append(RuleFailure(rule.rule_id, "timeout", error.message))

        for future, rule in futures.items():
            if future in not_done:
                future.cancel()
                error = SubcomponentTimeout(
                    f"rule exceeded {self.config.rule_timeout_seconds:.2f}s",
                    [rule.rule_id, str(snapshot.snapshot_id)],
                )
                logger.critical(f"FATAL for rule {rule.rule_id}: {error.describe()}")
                failures.append(RuleFailure(rule.rule_id, "timeout", error.message))
                continue

            try:
                violations.extend(future.result())
            except Exception as e:
                error = SubcomponentFailure(
                    f"{type(e).__name__}: {e}", [rule.rule_id, str(snapshot.snapshot_id)]
                )
                logger.error(f"Rule {rule.rule_id} failed: {error.describe()}")
                failures.append(RuleFailure(rule.rule_id, "failed", error.message))

        violations.sort(key=lambda v: v.sort_key)
        failures.sort(key=lambda f: f.rule_id)

        self._evaluation_count += 1
        self._total_violations += len(violations)

        return RuleEvaluation(violations=tuple(violations), failures=tuple(failures))

    def evaluate_single_rule(self, rule_id: str, snapshot: NetworkSnapshot) -> List[RuleViolation]:
        """Evaluate a specific rule by ID on the calling thread."""
        with self._lock:
            rule = self._rules.get(rule_id)
        if rule is None:
            logger.warning(f"Rule not found: {rule_id}")
            return []
        return sorted(rule.evaluate(snapshot), key=lambda v: v.sort_key)

    def get_statistics(self) -> Dict:
        """Get engine statistics."""
        return {
            "ruleset_version": self.ruleset_version,
            "ruleset_revision": self.ruleset_revision,
            "evaluation_count": self._evaluation_count,
            "total_violations_detected": self._total_violations,
            "rules_active": len(self._rules),
        }

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
