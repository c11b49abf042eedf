"""
Background task management for analytics capture, sync and retention.
"""

from .analytics_tasks import AnalyticsTaskManager

__all__ = ["AnalyticsTaskManager"]
