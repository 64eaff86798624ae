"""Push notification package."""

from .backend import (
    HttpPushBackend,
    InMemoryPushBackend,
    PushBackend,
    PushDeliveryError,
    PushTarget,
)
from .dispatcher import PushDispatchSummary, PushNotificationDispatcher

__all__ = [
    "HttpPushBackend",
    "InMemoryPushBackend",
    "PushBackend",
    "PushDeliveryError",
    "PushTarget",
    "PushDispatchSummary",
    "PushNotificationDispatcher",
]
