"""
Error taxonomy for the risk evaluation pipeline.

Every error carries the identifiers it concerns so that log lines and
degraded reasons can point at the offending entity, rule or alert.
"""

from typing import Iterable, Optional


class SentinelError(Exception):
    """Base exception for all rail sentinel errors."""

    kind = "sentinel_error"

    def __init__(self, message: str, identifiers: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.message = message
        self.identifiers = tuple(identifiers or ())

    def describe(self) -> str:
        ids = ",".join(self.identifiers) or "-"
        return f"{self.kind}[{ids}]: {self.message}"


class ValidationError(SentinelError):
    """Malformed or incomplete snapshot field. The entity is excluded for the cycle."""
    kind = "validation_error"


class SubcomponentTimeout(SentinelError):
    """A rule, the predictor or the congestion monitor exceeded its budget."""
    kind = "subcomponent_timeout"


class SubcomponentFailure(SentinelError):
    """A sub-component raised while evaluating a snapshot."""
    kind = "subcomponent_failure"


class ContractViolation(SentinelError):
    """The predictor returned a non-finite or out-of-range value."""
    kind = "contract_violation"


class InvalidTransition(SentinelError):
    """Illegal alert state change. The alert is left unchanged."""
    kind = "invalid_transition"


class CalculationError(SentinelError):
    """NaN or Infinity produced while computing a score."""
    kind = "calculation_error"


class AlertNotFound(SentinelError):
    """No alert with the given id."""
    kind = "alert_not_found"


class SnapshotUnavailable(SentinelError):
    """No snapshot could be assembled for the cycle."""
    kind = "snapshot_unavailable"


class ConfigurationError(SentinelError):
    """Raised when configuration is invalid."""
    kind = "configuration_error"
