from .alert_manager import AlertFilter, AlertManager

__all__ = ['AlertManager', 'AlertFilter']
