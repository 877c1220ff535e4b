"""
Message queue module for click events.
Implements Strategy Pattern for flexible queue backends.
"""

from .strategies import QueueStrategy, QueueUnavailable, RedisStreamQueue, InMemoryQueue
from .factory import QueueFactory, QueueBackend
from .models import ClickEvent, Delivery

__all__ = [
    "QueueStrategy",
    "QueueUnavailable",
    "RedisStreamQueue",
    "InMemoryQueue",
    "QueueFactory",
    "QueueBackend",
    "ClickEvent",
    "Delivery",
]
