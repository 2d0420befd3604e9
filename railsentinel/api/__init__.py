from .unified_api import create_app

__all__ = ['create_app']
