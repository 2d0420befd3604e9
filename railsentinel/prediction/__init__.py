"""
Collision and anomaly prediction.

    port.py           - PredictiveRiskPort contract
    feature_engine.py - Pair feature extraction
    predictor.py      - Kinematic and ensemble implementations
"""

from .feature_engine import FeatureEngine, PairFeatures
from .port import PredictiveRiskPort
from .predictor import EnsembleRiskPredictor, KinematicRiskPredictor

__all__ = [
    'PredictiveRiskPort',
    'FeatureEngine',
    'PairFeatures',
    'KinematicRiskPredictor',
    'EnsembleRiskPredictor',
]
