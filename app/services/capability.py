"""
Capability probe: can this client runtime do push, and what permission does it hold.

The runtime (browser, webview, test double) is passed in explicitly and queried on
every call; nothing is cached process-wide.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from app.core.errors import RegistrationFailed
from app.services.vapid import decode_application_server_key

log = logging.getLogger("edupay.subscriptions")


class PermissionState(str, Enum):
    UNSUPPORTED = "unsupported"
    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class LocalRegistration:
    """What the runtime's push manager hands back after subscribing."""

    endpoint: str
    p256dh: str
    auth: str

    @property
    def keys(self) -> dict[str, str]:
        return {"p256dh": self.p256dh, "auth": self.auth}


class PushRuntime(Protocol):
    supports_push: bool
    user_agent: str | None

    def permission(self) -> str: ...

    async def request_permission(self) -> str: ...

    async def subscribe(self, application_server_key: bytes) -> LocalRegistration: ...

    async def get_subscription(self) -> LocalRegistration | None: ...

    async def unsubscribe(self) -> bool: ...


def check_support(runtime: PushRuntime | None) -> PermissionState:
    """Pure read. Never raises; anything unexpected reads as unsupported."""
    if runtime is None or not getattr(runtime, "supports_push", False):
        return PermissionState.UNSUPPORTED
    try:
        return PermissionState(runtime.permission())
    except Exception as e:
        log.debug("Permission query failed, treating runtime as unsupported: %s", e)
        return PermissionState.UNSUPPORTED


async def request_permission(runtime: PushRuntime) -> PermissionState:
    """Prompt the user. A failing prompt leaves the permission undecided."""
    try:
        answer = await runtime.request_permission()
        return PermissionState(answer)
    except Exception as e:
        log.warning("Permission request failed: %s", e)
        return PermissionState.DEFAULT


async def register(runtime: PushRuntime, public_key: str) -> LocalRegistration:
    """Subscribe the runtime's push manager with the server key. Raises RegistrationFailed."""
    try:
        server_key = decode_application_server_key(public_key)
    except ValueError as e:
        raise RegistrationFailed(f"invalid application server key: {e}", cause=e) from e
    try:
        registration = await runtime.subscribe(server_key)
    except Exception as e:
        raise RegistrationFailed(f"push manager subscribe failed: {e}", cause=e) from e
    if not registration or not registration.endpoint:
        raise RegistrationFailed("push manager returned no endpoint")
    log.info("Registered push endpoint %s...", registration.endpoint[:50])
    return registration
