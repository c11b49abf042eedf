"""
Heroes Analytics Sync

Offline-first behavioral analytics capture, COPPA sanitization and sync.
"""

__version__ = "1.0.0"
