"""
Cross-context messaging.
"""

from .bus import MessageBus
from .messages import CommandType, EventType

__all__ = ['MessageBus', 'CommandType', 'EventType']
