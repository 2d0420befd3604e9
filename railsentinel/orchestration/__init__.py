"""
Risk orchestration: one assessment per snapshot, published latest-wins.
"""

from .emitter import EgressEmitter
from .monitor import CycleOutcome, RiskMonitor
from .orchestrator import ComponentResult, RiskOrchestrator, fuse_scores

__all__ = [
    'RiskOrchestrator',
    'ComponentResult',
    'fuse_scores',
    'EgressEmitter',
    'RiskMonitor',
    'CycleOutcome',
]
