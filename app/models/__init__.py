from .push_broadcast import PushBroadcast
from .push_subscription import PushSubscription

__all__ = [
    "PushBroadcast",
    "PushSubscription",
]
