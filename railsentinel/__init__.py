"""
Rail Sentinel
=============

Continuous risk evaluation for a rail fleet:
- Deterministic safety rules over an immutable network snapshot
- Collision and anomaly prediction behind a replaceable port
- Segment congestion, forecast and route-conflict scoring
- Fused risk assessment with degradation on component failure
- Ranked corrective suggestions and an alert lifecycle

Architecture:
    detection/      - Snapshot assembly, safety rules, rule engine
    prediction/     - Predictive port, pair features, kinematic/ensemble predictors
    congestion/     - Congestion monitor and routing risk analyzer
    orchestration/  - Risk orchestrator, egress emitter, cadence monitor
    resolution/     - Corrective suggestion generator
    alerting/       - Alert manager
    api/            - Operator HTTP API
"""

from .config import SentinelConfig
from .orchestration.monitor import CycleOutcome, RiskMonitor

__all__ = ['SentinelConfig', 'RiskMonitor', 'CycleOutcome']
__version__ = '1.0.0'
