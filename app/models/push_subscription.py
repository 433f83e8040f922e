"""PWA push subscriptions (Web Push API). One row per (user_id, endpoint)."""
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class PushSubscription(SQLModel, table=True):
    __tablename__ = "push_subscriptions"
    __table_args__ = (UniqueConstraint("user_id", "endpoint", name="uq_push_subscriptions_user_endpoint"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=64)  # principal id from the auth system
    endpoint: str = Field(index=True)  # opaque delivery URL, unique per browser installation
    p256dh: str = ""  # client public key (base64url)
    auth: str = ""    # auth secret (base64url)
    school_id: str | None = Field(default=None, index=True)  # None: not yet scoped / global
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_seen_at: datetime | None = None  # last successful delivery

    @property
    def keys(self) -> dict[str, str]:
        return {"p256dh": self.p256dh, "auth": self.auth}
