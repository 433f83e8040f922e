"""Rate limiting (SlowAPI). Callers are keyed by proxy-aware client IP; the send trigger has its own budget."""
from fastapi import Request

from slowapi import Limiter

from .config import settings


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop behind Nginx/Render, else the socket peer."""
    hop = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if hop:
        return hop
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


def subscriber_limit() -> str:
    return f"{settings.rate_limit_per_minute}/minute"


def send_trigger_limit() -> str:
    return f"{settings.rate_limit_send_per_minute}/minute"


limiter = Limiter(key_func=client_ip)
