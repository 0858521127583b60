"""Backend REST client and push-event channel."""
from .backend import BackendClient
from .events import (
    SESSION_DATA_ADDED,
    SESSION_DATA_DELETED,
    ChannelError,
    LocalEventChannel,
    PushChannel,
    Subscription,
)

__all__ = [
    "BackendClient",
    "ChannelError",
    "LocalEventChannel",
    "PushChannel",
    "SESSION_DATA_ADDED",
    "SESSION_DATA_DELETED",
    "Subscription",
]
