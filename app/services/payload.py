"""
Notification payload: the JSON unit that travels through the push channel.

The sender builds it with `build_payload`, the delivery agent reads it back with
`parse_push_data`. Every field is optional on the wire; missing ones fall back to
`PayloadDefaults`. A field counts as missing when the key is absent or null, so an
explicit `"requireInteraction": false` is kept as sent.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.core.config import settings
from app.core.errors import PayloadMalformed

log = logging.getLogger("edupay.push")

TITLE_MAX_LENGTH = 100
BODY_MAX_LENGTH = 500
DISMISS_ACTION = "dismiss"
OPEN_ACTION = "open"
DEFAULT_VIBRATE = [200, 100, 200]


class NotificationAction(BaseModel):
    action: str
    title: str


DEFAULT_ACTIONS = (
    NotificationAction(action=OPEN_ACTION, title="Open App"),
    NotificationAction(action=DISMISS_ACTION, title="Dismiss"),
)


@dataclass(frozen=True)
class PayloadDefaults:
    title: str = "EduPay Notification"
    body: str = "You have a new notification"
    icon: str = "/favicon.ico"
    badge: str = "/favicon.ico"
    tag: str = "edupay-notification"
    url: str = "/"

    @classmethod
    def from_settings(cls) -> "PayloadDefaults":
        return cls(
            title=settings.push_default_title,
            body=settings.push_default_body,
            icon=settings.push_default_icon,
            badge=settings.push_default_badge,
            tag=settings.push_default_tag,
        )


class NotificationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    body: str
    icon: str
    badge: str
    tag: str
    require_interaction: bool = Field(default=False, alias="requireInteraction")
    data: dict[str, Any] = Field(default_factory=dict)
    actions: list[NotificationAction] = Field(default_factory=list)

    @property
    def url(self) -> str | None:
        url = self.data.get("url")
        return url if isinstance(url, str) and url else None

    def to_wire(self) -> str:
        """JSON body handed to the push service (encrypted there by pywebpush)."""
        doc = self.model_dump(by_alias=True)
        if not doc["actions"]:
            doc.pop("actions")
        return json.dumps(doc, ensure_ascii=False)

    def render_options(self) -> dict[str, Any]:
        """Options for the rendering surface (showNotification equivalent)."""
        actions = self.actions or list(DEFAULT_ACTIONS)
        return {
            "body": self.body,
            "icon": self.icon,
            "badge": self.badge,
            "tag": self.tag,
            "requireInteraction": self.require_interaction,
            "vibrate": list(DEFAULT_VIBRATE),
            "data": dict(self.data),
            "actions": [a.model_dump() for a in actions],
        }


def build_payload(
    title: str,
    body: str,
    url: str | None = None,
    icon: str | None = None,
    badge: str | None = None,
    tag: str | None = None,
    require_interaction: bool = False,
    defaults: PayloadDefaults | None = None,
) -> NotificationPayload:
    """Server-side payload with defaults filled in; data.url always present."""
    d = defaults or PayloadDefaults.from_settings()
    return NotificationPayload(
        title=title,
        body=body,
        icon=icon or d.icon,
        badge=badge or d.badge,
        tag=tag or d.tag,
        require_interaction=require_interaction,
        data={"url": url or d.url},
    )


def default_payload(defaults: PayloadDefaults | None = None) -> NotificationPayload:
    d = defaults or PayloadDefaults.from_settings()
    return NotificationPayload(title=d.title, body=d.body, icon=d.icon, badge=d.badge, tag=d.tag)


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _actions(value: Any) -> list[NotificationAction]:
    if not isinstance(value, list):
        return []
    out = []
    for item in value:
        if isinstance(item, dict) and isinstance(item.get("action"), str) and isinstance(item.get("title"), str):
            out.append(NotificationAction(action=item["action"], title=item["title"]))
    return out


def _decode(raw: bytes | str) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


def payload_from_dict(doc: dict[str, Any], defaults: PayloadDefaults | None = None) -> NotificationPayload:
    d = defaults or PayloadDefaults.from_settings()
    require = doc.get("requireInteraction")
    data = doc.get("data")
    return NotificationPayload(
        title=_text(doc.get("title"), d.title),
        body=_text(doc.get("body"), d.body),
        icon=_text(doc.get("icon"), d.icon),
        badge=_text(doc.get("badge"), d.badge),
        tag=_text(doc.get("tag"), d.tag),
        require_interaction=require if isinstance(require, bool) else False,
        data=data if isinstance(data, dict) else {},
        actions=_actions(doc.get("actions")),
    )


def parse_push_data(
    raw: bytes | str | None,
    defaults: PayloadDefaults | None = None,
) -> tuple[NotificationPayload, PayloadMalformed | None]:
    """
    Push body -> payload. Never raises.
    Anything that is not a JSON object degrades to a plain-text notification whose
    body is the raw text; the PayloadMalformed is returned for logging only.
    """
    d = defaults or PayloadDefaults.from_settings()
    if raw is None or raw == b"" or raw == "":
        return default_payload(d), None
    text = _decode(raw)
    try:
        doc = json.loads(text)
    except ValueError as e:
        return _plain_text(text, d), PayloadMalformed("push data is not JSON", cause=e)
    if not isinstance(doc, dict):
        return _plain_text(text, d), PayloadMalformed(f"push data is JSON {type(doc).__name__}, expected object")
    return payload_from_dict(doc, d), None


def _plain_text(text: str, d: PayloadDefaults) -> NotificationPayload:
    payload = default_payload(d)
    payload.body = text or d.body
    return payload
