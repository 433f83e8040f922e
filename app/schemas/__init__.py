from .push import (
    BroadcastItem,
    PublicKeyResponse,
    SendNotificationRequest,
    SendNotificationResponse,
    SubscribeRequest,
    SubscriptionKeys,
    SubscriptionResponse,
    UnsubscribeRequest,
)

__all__ = [
    "BroadcastItem",
    "PublicKeyResponse",
    "SendNotificationRequest",
    "SendNotificationResponse",
    "SubscribeRequest",
    "SubscriptionKeys",
    "SubscriptionResponse",
    "UnsubscribeRequest",
]
