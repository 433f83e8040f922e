"""Push API: public key, subscribe/unsubscribe, admin send trigger and listings."""
import logging
from typing import Callable

from fastapi import APIRouter, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from app.api.deps import get_current_user_id, get_sender_factory, require_admin
from app.core.database import get_db
from app.core.errors import PushError, push_error_to_http
from app.core.rate_limit import limiter, send_trigger_limit, subscriber_limit
from app.models import PushBroadcast
from app.schemas import (
    BroadcastItem,
    PublicKeyResponse,
    SendNotificationRequest,
    SendNotificationResponse,
    SubscribeRequest,
    SubscriptionResponse,
    UnsubscribeRequest,
)
from app.services import subscription_store
from app.services.fanout import FanoutSender, FanoutTarget
from app.services.payload import build_payload
from app.services.vapid import get_server_public_key

router = APIRouter(prefix="/push", tags=["push"])
log = logging.getLogger("edupay.push")

MSG_NO_SUBSCRIPTIONS = "No subscriptions found"


@router.get("/public-key", response_model=PublicKeyResponse)
def public_key():
    """VAPID public key; safe to expose, served at runtime instead of baked into the client."""
    try:
        return PublicKeyResponse(publicKey=get_server_public_key())
    except PushError as e:
        raise push_error_to_http(e) from e


@router.post("/subscribe", response_model=SubscriptionResponse)
@limiter.limit(subscriber_limit)
def subscribe(
    request: Request,
    body: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    """Idempotent: the same (user, endpoint) pair is updated, never duplicated."""
    try:
        row = subscription_store.upsert_subscription(
            db,
            user_id,
            body.endpoint,
            body.keys.p256dh,
            body.keys.auth,
            school_id=body.school_id,
            user_agent=body.user_agent,
        )
    except PushError as e:
        raise push_error_to_http(e) from e
    return SubscriptionResponse.from_row(row)


@router.post("/unsubscribe")
@limiter.limit(subscriber_limit)
def unsubscribe(
    request: Request,
    body: UnsubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        removed = subscription_store.delete_subscription(db, user_id, body.endpoint)
    except PushError as e:
        raise push_error_to_http(e) from e
    return {"success": True, "removed": removed}


@router.get("/subscriptions", response_model=list[SubscriptionResponse])
def list_subscriptions(
    school_id: str | None = None,
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        rows = subscription_store.list_active_subscriptions(db, school_id=school_id)
    except PushError as e:
        raise push_error_to_http(e) from e
    return [SubscriptionResponse.from_row(r) for r in rows]


@router.post("/send", response_model=SendNotificationResponse)
@limiter.limit(send_trigger_limit)
def send_notification(
    request: Request,
    body: SendNotificationRequest,
    caller: str = Depends(require_admin),
    sender_factory: Callable[[], FanoutSender] = Depends(get_sender_factory),
    db: Session = Depends(get_db),
):
    """Send trigger: fan a notification out to a school, one user, or everyone."""
    try:
        sender = sender_factory()
    except PushError as e:
        raise push_error_to_http(e) from e
    target = FanoutTarget(
        school_id=None if body.user_id else body.school_id,
        user_id=body.user_id,
    )
    payload = build_payload(
        body.title,
        body.body,
        url=body.url,
        icon=body.icon,
        badge=body.badge,
        tag=body.tag,
    )
    log.info("Send trigger: school_id=%s user_id=%s title=%s", target.school_id, target.user_id, body.title)
    broadcast = PushBroadcast(
        title=body.title,
        body=body.body,
        url=body.url,
        school_id=target.school_id,
        target_user_id=target.user_id,
        created_by=caller,
    )
    try:
        result = sender.send(db, target, payload)
    except PushError as e:
        broadcast.status = "failed"
        _record(db, broadcast)
        raise push_error_to_http(e) from e

    broadcast.total = result.total
    broadcast.sent = result.sent
    broadcast.failed = result.failed
    broadcast.pruned = result.pruned
    _record(db, broadcast)
    return SendNotificationResponse(
        pushes_sent=result.sent,
        sent=result.sent,
        failed=result.failed,
        total=result.total,
        pruned=result.pruned,
        message=MSG_NO_SUBSCRIPTIONS if result.total == 0 else None,
    )


@router.get("/broadcasts", response_model=list[BroadcastItem])
def list_broadcasts(
    limit: int = 50,
    school_id: str | None = None,
    _=Depends(require_admin),
    db: Session = Depends(get_db),
):
    stmt = select(PushBroadcast).order_by(PushBroadcast.id.desc()).limit(max(1, min(limit, 500)))
    if school_id:
        stmt = stmt.where(PushBroadcast.school_id == school_id)
    return [
        BroadcastItem(
            id=b.id or 0,
            title=b.title,
            school_id=b.school_id,
            target_user_id=b.target_user_id,
            total=b.total,
            sent=b.sent,
            failed=b.failed,
            pruned=b.pruned,
            status=b.status,
            created_at=b.created_at,
        )
        for b in db.exec(stmt).all()
    ]


def _record(db: Session, broadcast: PushBroadcast) -> None:
    try:
        db.add(broadcast)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("PushBroadcast write failed: %s", e)
