"""
Deterministic Detection
=======================

    snapshot_builder.py - Feed ingestion and immutable snapshot assembly
    rules.py            - Safety rules
    engine.py           - Concurrent rule evaluation with a governed rule set
"""

from .engine import RuleEngine, RuleEvaluation
from .rules import DEFAULT_RULES, SafetyRule, get_rule_by_id
from .snapshot_builder import SnapshotAssembler, load_topology

__all__ = [
    'RuleEngine',
    'RuleEvaluation',
    'SafetyRule',
    'DEFAULT_RULES',
    'get_rule_by_id',
    'SnapshotAssembler',
    'load_topology',
]
