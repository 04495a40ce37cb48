"""
Monitoring Layer - Dashboard.

This module provides:
    - DashboardState: event consumer holding the latest snapshots
    - create_dashboard_app: FastAPI app with REST and WebSocket endpoints
"""

from .dashboard import DashboardConfig, DashboardState, create_dashboard_app

__all__ = [
    "DashboardConfig",
    "DashboardState",
    "create_dashboard_app",
]
