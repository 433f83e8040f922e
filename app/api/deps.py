from typing import Callable

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.security import decode_access_token, secrets_match
from app.services.fanout import FanoutSender

security = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = decode_access_token(credentials.credentials)
    if not payload or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization",
        )
    return str(payload["sub"])


def require_admin(
    x_admin_secret: str | None = Header(None, alias="X-Admin-Secret"),
) -> str:
    """Admin/team callers of the send trigger. Returns the caller label for the broadcast log."""
    if not settings.admin_secret:
        raise HTTPException(status_code=503, detail="Admin access not configured (ADMIN_SECRET missing).")
    if not secrets_match(x_admin_secret, settings.admin_secret):
        raise HTTPException(status_code=403, detail="Unauthorized - admin or team role required")
    return "admin"


def get_sender_factory() -> Callable[[], FanoutSender]:
    """Sender is built inside the route, after body validation, so a bad payload still gets its 422."""
    return FanoutSender.from_settings
