from .monitor import CongestionMonitor
from .routing import RoutingRiskAnalyzer

__all__ = ['CongestionMonitor', 'RoutingRiskAnalyzer']
