"""
Push delivery agent (service worker equivalent).

A passive handler: the host runtime wakes it with one event at a time and gets an
`Ack` back only once the event's work, rendering included, has finished. The agent
keeps no state between events; every push is self-contained.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlsplit

from app.services.payload import DISMISS_ACTION, PayloadDefaults, parse_push_data

log = logging.getLogger("edupay.agent")

ROOT_URL = "/"


@dataclass(frozen=True)
class InstallEvent:
    name = "install"


@dataclass(frozen=True)
class ActivateEvent:
    name = "activate"


@dataclass(frozen=True)
class PushEvent:
    data: bytes | str | None = None
    name = "push"


@dataclass(frozen=True)
class NotificationClickEvent:
    notification: "Notification"
    action: str = ""
    name = "notificationclick"


@dataclass(frozen=True)
class NotificationCloseEvent:
    notification: "Notification"
    name = "notificationclose"


@dataclass(frozen=True)
class SyncEvent:
    tag: str = ""
    name = "sync"


class Notification(Protocol):
    title: str
    tag: str
    data: dict[str, Any]

    def close(self) -> None: ...


class ClientView(Protocol):
    url: str

    async def navigate(self, url: str) -> None: ...

    async def focus(self) -> None: ...


class AgentHost(Protocol):
    """What the surrounding runtime offers the agent."""

    origin: str

    async def skip_waiting(self) -> None: ...

    async def claim_clients(self) -> None: ...

    async def show_notification(self, title: str, options: dict[str, Any]) -> None: ...

    async def match_clients(self) -> list[ClientView]: ...

    async def open_window(self, url: str) -> ClientView | None: ...


@dataclass
class Ack:
    event: str
    handled: bool = True
    error: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


def same_origin(url: str, origin: str) -> bool:
    a, b = urlsplit(url), urlsplit(origin)
    return bool(a.scheme) and (a.scheme, a.netloc) == (b.scheme, b.netloc)


def resolve_target_url(data: dict[str, Any] | None) -> str:
    url = (data or {}).get("url")
    return url if isinstance(url, str) and url else ROOT_URL


class PushDeliveryAgent:
    def __init__(self, host: AgentHost, defaults: PayloadDefaults | None = None):
        self.host = host
        self.defaults = defaults or PayloadDefaults.from_settings()
        self._lock = asyncio.Lock()
        self._handlers = {
            InstallEvent: self.on_install,
            ActivateEvent: self.on_activate,
            PushEvent: self.on_push,
            NotificationClickEvent: self.on_notification_click,
            NotificationCloseEvent: self.on_notification_close,
            SyncEvent: self.on_sync,
        }

    async def handle(self, event) -> Ack:
        """Run one event to completion, then acknowledge."""
        handler = self._handlers.get(type(event))
        if handler is None:
            log.warning("Unknown event %r ignored", event)
            return Ack(event=getattr(event, "name", type(event).__name__), handled=False, error="unsupported event")
        async with self._lock:
            return await handler(event)

    async def on_install(self, event: InstallEvent) -> Ack:
        log.info("Installing, activating immediately")
        await self.host.skip_waiting()
        return Ack(event=event.name)

    async def on_activate(self, event: ActivateEvent) -> Ack:
        log.info("Activating, claiming open clients")
        await self.host.claim_clients()
        return Ack(event=event.name)

    async def on_push(self, event: PushEvent) -> Ack:
        payload, malformed = parse_push_data(event.data, self.defaults)
        if malformed is not None:
            log.warning("Push data not structured, rendering as plain text: %s", malformed)
        try:
            await self.host.show_notification(payload.title, payload.render_options())
        except Exception as e:
            # Terminal for this push; the runtime decides whether to show anything
            log.warning("Rendering failed for tag=%s: %s", payload.tag, e)
            return Ack(event=event.name, handled=False, error=str(e), detail={"tag": payload.tag})
        return Ack(
            event=event.name,
            detail={"title": payload.title, "tag": payload.tag, "malformed": malformed is not None},
        )

    async def on_notification_click(self, event: NotificationClickEvent) -> Ack:
        event.notification.close()
        if event.action == DISMISS_ACTION:
            return Ack(event=event.name, detail={"action": DISMISS_ACTION})

        url = resolve_target_url(event.notification.data)
        try:
            for client in await self.host.match_clients():
                if same_origin(client.url, self.host.origin):
                    await client.navigate(url)
                    await client.focus()
                    return Ack(event=event.name, detail={"url": url, "opened": False})
            await self.host.open_window(url)
        except Exception as e:
            log.warning("Could not open %s after notification click: %s", url, e)
            return Ack(event=event.name, handled=False, error=str(e), detail={"url": url})
        return Ack(event=event.name, detail={"url": url, "opened": True})

    async def on_notification_close(self, event: NotificationCloseEvent) -> Ack:
        log.info("Notification closed: tag=%s", getattr(event.notification, "tag", None))
        return Ack(event=event.name)

    async def on_sync(self, event: SyncEvent) -> Ack:
        log.info("Sync event: tag=%s", event.tag)
        return Ack(event=event.name, detail={"tag": event.tag})
