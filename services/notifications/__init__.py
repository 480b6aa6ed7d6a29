"""
Job notifications: redis audit queue plus WebSocket event stream
"""

from .publisher import NotificationPublisher
from .stream import JobEventStreamManager, event_stream

__all__ = ["JobEventStreamManager", "NotificationPublisher", "event_stream"]
