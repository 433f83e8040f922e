"""Subscription store: idempotent upsert/delete keyed by (user_id, endpoint), audience listing, pruning."""
import logging
from datetime import datetime

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.core.errors import AudienceUnavailable, PersistenceFailed
from app.models import PushSubscription

log = logging.getLogger("edupay.subscriptions")


def _find(db: Session, user_id: str, endpoint: str) -> PushSubscription | None:
    stmt = select(PushSubscription).where(
        PushSubscription.user_id == user_id,
        PushSubscription.endpoint == endpoint,
    )
    return db.exec(stmt).first()


def _apply(row: PushSubscription, p256dh: str, auth: str, school_id: str | None, user_agent: str | None) -> None:
    row.p256dh = p256dh
    row.auth = auth
    row.school_id = school_id
    if user_agent:
        row.user_agent = user_agent
    row.updated_at = datetime.utcnow()


def upsert_subscription(
    db: Session,
    user_id: str,
    endpoint: str,
    p256dh: str,
    auth: str,
    school_id: str | None = None,
    user_agent: str | None = None,
) -> PushSubscription:
    """
    Create or replace the row for (user_id, endpoint). Re-registration from the same
    client refreshes keys and school scope instead of adding a second row.
    Raises PersistenceFailed when the database rejects the write.
    """
    try:
        row = _find(db, user_id, endpoint)
        if row is None:
            row = PushSubscription(
                user_id=user_id,
                endpoint=endpoint,
                p256dh=p256dh,
                auth=auth,
                school_id=school_id,
                user_agent=user_agent,
            )
        else:
            _apply(row, p256dh, auth, school_id, user_agent)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent insert for the same pair won; update that row instead
            db.rollback()
            row = _find(db, user_id, endpoint)
            if row is None:
                raise
            _apply(row, p256dh, auth, school_id, user_agent)
            db.add(row)
            db.commit()
        db.refresh(row)
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("Subscription upsert failed: user_id=%s error=%s", user_id, e)
        raise PersistenceFailed("could not save subscription", cause=e) from e
    log.info("Subscription saved: id=%s user_id=%s school_id=%s", row.id, user_id, school_id)
    return row


def delete_subscription(db: Session, user_id: str, endpoint: str) -> bool:
    """Delete the (user_id, endpoint) row. Deleting a missing row is fine; returns whether one existed."""
    try:
        result = db.exec(
            delete(PushSubscription).where(
                PushSubscription.user_id == user_id,
                PushSubscription.endpoint == endpoint,
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("Subscription delete failed: user_id=%s error=%s", user_id, e)
        raise PersistenceFailed("could not delete subscription", cause=e) from e
    return bool(result.rowcount)


def list_active_subscriptions(
    db: Session,
    school_id: str | None = None,
    user_id: str | None = None,
) -> list[PushSubscription]:
    """
    Audience resolution. user_id narrows to one principal, school_id to one school;
    with neither every subscription is returned.
    Raises AudienceUnavailable when the store cannot be read.
    """
    stmt = select(PushSubscription).order_by(PushSubscription.id)
    if user_id is not None:
        stmt = stmt.where(PushSubscription.user_id == user_id)
    if school_id is not None:
        stmt = stmt.where(PushSubscription.school_id == school_id)
    try:
        return list(db.exec(stmt).all())
    except SQLAlchemyError as e:
        db.rollback()
        log.exception("Subscription listing failed: school_id=%s user_id=%s", school_id, user_id)
        raise AudienceUnavailable("subscription store unreachable", cause=e) from e


def prune_subscriptions(db: Session, subscription_ids: list[int]) -> int:
    """Remove subscriptions whose endpoints are gone. Best effort; returns rows removed."""
    if not subscription_ids:
        return 0
    try:
        result = db.exec(delete(PushSubscription).where(PushSubscription.id.in_(subscription_ids)))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("Subscription prune failed for %s rows: %s", len(subscription_ids), e)
        return 0
    return result.rowcount or 0


def mark_seen(db: Session, subscription_ids: list[int], when: datetime | None = None) -> None:
    """Refresh last_seen_at after successful deliveries."""
    if not subscription_ids:
        return
    try:
        db.exec(
            update(PushSubscription)
            .where(PushSubscription.id.in_(subscription_ids))
            .values(last_seen_at=when or datetime.utcnow())
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.warning("last_seen_at update failed for %s rows: %s", len(subscription_ids), e)
