"""
Buffered real-time change notification for docquery.
"""

from .buffer import BufferState, SubscriptionBuffer
from .subscriptions import ChangeSet, GraphChangeSet, Subscription, SubscriptionManager

__all__ = [
    "BufferState",
    "SubscriptionBuffer",
    "ChangeSet",
    "GraphChangeSet",
    "Subscription",
    "SubscriptionManager",
]
