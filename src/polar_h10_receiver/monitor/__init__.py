from .app import MonitorApp, create_app

__all__ = ["MonitorApp", "create_app"]
