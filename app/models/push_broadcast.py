"""Send trigger log: one row per admin notification broadcast."""
from datetime import datetime

from sqlmodel import Field, SQLModel


class PushBroadcast(SQLModel, table=True):
    __tablename__ = "push_broadcasts"
    id: int | None = Field(default=None, primary_key=True)
    title: str = Field(max_length=100)
    body: str = Field(max_length=500)
    url: str | None = None
    school_id: str | None = Field(default=None, index=True)
    target_user_id: str | None = None
    total: int = 0
    sent: int = 0
    failed: int = 0
    pruned: int = 0
    status: str = "done"  # done | failed (audience could not be resolved)
    created_by: str | None = None  # admin | team
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
