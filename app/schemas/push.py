from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from app.services.payload import BODY_MAX_LENGTH, TITLE_MAX_LENGTH


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class SubscribeRequest(BaseModel):
    """PushSubscription.toJSON() from the client plus the school scope."""
    endpoint: str = Field(min_length=1, max_length=2048)
    keys: SubscriptionKeys
    school_id: str | None = None
    user_agent: str | None = Field(default=None, max_length=512)


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(min_length=1, max_length=2048)


class SubscriptionResponse(BaseModel):
    id: int
    user_id: str
    endpoint: str
    keys: SubscriptionKeys
    school_id: str | None = None
    created_at: datetime | None = None
    last_seen_at: datetime | None = None

    @classmethod
    def from_row(cls, row) -> "SubscriptionResponse":
        return cls(
            id=row.id or 0,
            user_id=row.user_id,
            endpoint=row.endpoint,
            keys=SubscriptionKeys(p256dh=row.p256dh, auth=row.auth),
            school_id=row.school_id,
            created_at=row.created_at,
            last_seen_at=row.last_seen_at,
        )


class PublicKeyResponse(BaseModel):
    publicKey: str


class SendNotificationRequest(BaseModel):
    """Admin/team send trigger. user_id wins over school_id; neither means everyone."""
    school_id: str | None = None
    user_id: str | None = None
    title: str = Field(min_length=1, max_length=TITLE_MAX_LENGTH)
    body: str = Field(min_length=1, max_length=BODY_MAX_LENGTH)
    url: str | None = None
    icon: str | None = None
    badge: str | None = None
    tag: str | None = None

    @field_validator("title", "body", mode="before")
    @classmethod
    def strip_text(cls, v: str | None) -> str | None:
        return v.strip() if isinstance(v, str) else v


class SendNotificationResponse(BaseModel):
    success: bool = True
    pushes_sent: int
    sent: int
    failed: int = 0
    total: int = 0
    pruned: int = 0
    message: str | None = None


class BroadcastItem(BaseModel):
    id: int
    title: str
    school_id: str | None = None
    target_user_id: str | None = None
    total: int
    sent: int
    failed: int
    pruned: int
    status: str
    created_at: datetime
