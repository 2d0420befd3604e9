"""
Rail Sentinel Configuration
===========================

Centralized configuration for the risk evaluation pipeline.
Defaults live in dataclasses; deployments override them through
RAILSENTINEL_* environment variables (a .env file is honoured).
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError


# ============================================================================
# DETECTION
# ============================================================================

@dataclass
class RuleConfig:
    """Thresholds for the deterministic safety rules."""

    # Speed limit: MEDIUM up to this ratio of the limit, HIGH above
    speed_overage_high_ratio: float = 1.2

    # Minimum separation between entities on the same segment
    min_separation_m: float = 1000.0
    hard_floor_m: float = 200.0

    # Per-rule evaluation deadline
    rule_timeout_seconds: float = 0.5


# ============================================================================
# PREDICTION
# ============================================================================

@dataclass
class PredictionConfig:
    """Configuration for the collision predictor."""

    horizon_seconds: float = 300.0

    # Logistic mapping of time-to-collision to probability
    ttc_midpoint_s: float = 240.0
    ttc_scale_s: float = 60.0

    # Geometry factors
    same_segment_factor: float = 1.0
    adjacent_segment_factor: float = 0.6
    signal_protection_factor: float = 0.3

    # Confidence decays with data staleness
    stale_after_seconds: float = 30.0
    connection_lost_confidence: float = 0.4

    # Anomaly detection
    max_plausible_accel_ms2: float = 3.0
    max_plausible_jump_m: float = 500.0

    # Ensemble configuration (trained model + heuristics)
    model_path: Optional[str] = None
    ml_weight: float = 0.7
    heuristic_weight: float = 0.3
    agreement_boost: float = 1.15
    agreement_threshold: float = 0.6


# ============================================================================
# CONGESTION & ROUTING
# ============================================================================

@dataclass
class CongestionConfig:
    busy_threshold: float = 0.5
    overload_threshold: float = 0.8
    # Reported level when capacity is zero but the segment is occupied
    max_reported_level: float = 10.0
    forecast_horizon_minutes: int = 30
    forecast_step_minutes: int = 5
    stable_flow_epsilon: float = 0.01


@dataclass
class RoutingConfig:
    shared_segment_weight: float = 0.45
    junction_weight: float = 0.35
    dwell_overlap_weight: float = 0.20


# ============================================================================
# ORCHESTRATION
# ============================================================================

@dataclass
class CycleConfig:
    """Timing budgets for one evaluation cycle."""

    cycle_period_seconds: float = 5.0
    cycle_budget_seconds: float = 4.5
    rules_deadline_seconds: float = 1.5
    predictor_deadline_seconds: float = 1.5
    congestion_deadline_seconds: float = 1.0
    max_workers: int = 6


@dataclass
class FusionConfig:
    """Weights applied per category before taking the maximum."""

    rules_weight: float = 1.0
    collision_weight: float = 1.0
    routing_weight: float = 1.0
    congestion_weight: float = 0.75
    severity_scores: Dict[str, float] = field(default_factory=lambda: {
        "low": 25.0,
        "medium": 50.0,
        "high": 75.0,
        "critical": 100.0,
    })


@dataclass
class SuggestionConfig:
    suggestion_budget_seconds: float = 3.0
    service_decel_ms2: float = 0.5
    emergency_decel_ms2: float = 1.2
    default_hold_seconds: int = 180
    speed_reduction_ratio: float = 0.5


@dataclass
class AlertConfig:
    # Collision findings below this probability do not raise alerts
    min_collision_probability: float = 0.30
    # Routing findings at or below this score do not raise alerts
    min_routing_score: float = 30.0


# ============================================================================
# INGESTION & EGRESS
# ============================================================================

@dataclass
class FeedConfig:
    late_window_seconds: float = 10.0
    trajectory_length: int = 20


@dataclass
class APIConfig:
    """FastAPI service configuration."""

    host: str = "0.0.0.0"
    port: int = 8010
    egress_jsonl: Optional[str] = None


# ============================================================================
# AGGREGATE
# ============================================================================

@dataclass
class SentinelConfig:
    rules: RuleConfig = field(default_factory=RuleConfig)
    prediction: PredictionConfig = field(default_factory=PredictionConfig)
    congestion: CongestionConfig = field(default_factory=CongestionConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    cycle: CycleConfig = field(default_factory=CycleConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    suggestions: SuggestionConfig = field(default_factory=SuggestionConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    api: APIConfig = field(default_factory=APIConfig)

    def validate(self) -> "SentinelConfig":
        cycle = self.cycle
        if cycle.cycle_period_seconds > 5.0:
            raise ConfigurationError(
                f"cycle period {cycle.cycle_period_seconds}s exceeds the 5s detection latency"
            )
        sub_total = (
            cycle.rules_deadline_seconds
            + cycle.predictor_deadline_seconds
            + cycle.congestion_deadline_seconds
        )
        if sub_total >= cycle.cycle_budget_seconds:
            raise ConfigurationError(
                f"sub-deadlines ({sub_total:.2f}s total) must sum below the "
                f"{cycle.cycle_budget_seconds:.2f}s cycle budget"
            )
        if cycle.cycle_budget_seconds > cycle.cycle_period_seconds:
            raise ConfigurationError("cycle budget must not exceed the cycle period")
        if cycle.max_workers < 3:
            raise ConfigurationError("cycle.max_workers must allow one worker per component (3)")
        if not 0.0 <= self.prediction.ml_weight <= 1.0:
            raise ConfigurationError("prediction.ml_weight must be within [0, 1]")
        if self.rules.hard_floor_m >= self.rules.min_separation_m:
            raise ConfigurationError("rules.hard_floor_m must be below rules.min_separation_m")
        return self

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "SentinelConfig":
        """Build configuration from defaults overridden by RAILSENTINEL_* variables."""
        load_dotenv(env_file)
        config = cls()
        for name, (section, attr, cast) in _ENV_OVERRIDES.items():
            raw = os.environ.get(name)
            if raw is None or raw == "":
                continue
            try:
                value = cast(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {name}: {raw!r}", [name]) from e
            setattr(getattr(config, section), attr, value)
        return config.validate()


_ENV_OVERRIDES: Dict[str, tuple] = {
    "RAILSENTINEL_CYCLE_PERIOD_SECONDS": ("cycle", "cycle_period_seconds", float),
    "RAILSENTINEL_CYCLE_BUDGET_SECONDS": ("cycle", "cycle_budget_seconds", float),
    "RAILSENTINEL_RULES_DEADLINE_SECONDS": ("cycle", "rules_deadline_seconds", float),
    "RAILSENTINEL_PREDICTOR_DEADLINE_SECONDS": ("cycle", "predictor_deadline_seconds", float),
    "RAILSENTINEL_CONGESTION_DEADLINE_SECONDS": ("cycle", "congestion_deadline_seconds", float),
    "RAILSENTINEL_MIN_SEPARATION_M": ("rules", "min_separation_m", float),
    "RAILSENTINEL_HARD_FLOOR_M": ("rules", "hard_floor_m", float),
    "RAILSENTINEL_RULE_TIMEOUT_SECONDS": ("rules", "rule_timeout_seconds", float),
    "RAILSENTINEL_HORIZON_SECONDS": ("prediction", "horizon_seconds", float),
    "RAILSENTINEL_PREDICTOR_MODEL_PATH": ("prediction", "model_path", str),
    "RAILSENTINEL_LATE_WINDOW_SECONDS": ("feed", "late_window_seconds", float),
    "RAILSENTINEL_API_HOST": ("api", "host", str),
    "RAILSENTINEL_API_PORT": ("api", "port", int),
    "RAILSENTINEL_EGRESS_JSONL": ("api", "egress_jsonl", str),
}


# ============================================================================
# DEFAULTS
# ============================================================================

rule_config = RuleConfig()
prediction_config = PredictionConfig()
congestion_config = CongestionConfig()
routing_config = RoutingConfig()
cycle_config = CycleConfig()
fusion_config = FusionConfig()
suggestion_config = SuggestionConfig()
alert_config = AlertConfig()
feed_config = FeedConfig()
api_config = APIConfig()
