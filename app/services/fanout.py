"""
Fan-out sender: one logical notification to every subscription of an audience.

Deliveries run on a bounded thread pool, each endpoint isolated from the others.
Failures are classified per endpoint:
  - transient (network, timeout, 429, 5xx): retried with exponential backoff up to
    `max_retries`; per-endpoint timeouts are abandoned without retry.
  - permanent (404/410): endpoint is gone, subscription pruned, no retry.
  - rejected (any other non-success status): counted, not retried, kept.
Only a store that cannot resolve the audience raises (AudienceUnavailable).
DB work stays on the calling thread; workers only talk HTTP.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Protocol

import requests
from pywebpush import WebPushException, webpush
from sqlmodel import Session

from app.core.config import is_push_configured, settings
from app.core.errors import DeliveryRejected, EndpointGone, PushNotConfigured, TransientDeliveryError
from app.models import PushSubscription
from app.services.payload import NotificationPayload
from app.services.subscription_store import list_active_subscriptions, mark_seen, prune_subscriptions

log = logging.getLogger("edupay.push")

FAILURE_TRANSIENT = "transient"
FAILURE_PERMANENT = "permanent"
FAILURE_REJECTED = "rejected"

GONE_STATUS_CODES = (404, 410)
RATE_LIMIT_STATUS_CODE = 429


@dataclass(frozen=True)
class FanoutTarget:
    school_id: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class DeliveryTarget:
    """Plain snapshot of a subscription row, safe to hand to worker threads."""

    subscription_id: int
    user_id: str
    endpoint: str
    p256dh: str
    auth: str

    @classmethod
    def from_row(cls, row: PushSubscription) -> "DeliveryTarget":
        return cls(
            subscription_id=row.id or 0,
            user_id=row.user_id,
            endpoint=row.endpoint,
            p256dh=row.p256dh,
            auth=row.auth,
        )

    def subscription_info(self) -> dict:
        return {"endpoint": self.endpoint, "keys": {"p256dh": self.p256dh, "auth": self.auth}}


@dataclass
class DeliveryOutcome:
    target: DeliveryTarget
    ok: bool
    failure: str | None = None
    attempts: int = 0
    status_code: int | None = None
    error: str | None = None


@dataclass
class FanoutResult:
    sent: int = 0
    failed: int = 0
    total: int = 0
    pruned: int = 0
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {"sent": self.sent, "failed": self.failed, "total": self.total, "pruned": self.pruned}


class PushTransport(Protocol):
    def deliver(self, target: DeliveryTarget, data: str, timeout: float) -> None:
        """Deliver one payload or raise TransientDeliveryError / EndpointGone / DeliveryRejected."""


def classify_status(status_code: int | None, message: str = "") -> Exception:
    if status_code in GONE_STATUS_CODES:
        return EndpointGone(message or f"endpoint gone ({status_code})", status_code=status_code)
    if status_code is None or status_code == RATE_LIMIT_STATUS_CODE or status_code >= 500:
        return TransientDeliveryError(message or f"push service busy ({status_code})", status_code=status_code)
    return DeliveryRejected(message or f"push service rejected payload ({status_code})", status_code=status_code)


class WebPushTransport:
    """pywebpush-backed transport: VAPID signing + aes128gcm payload encryption."""

    def __init__(self, private_key: str, subject: str, ttl: int = 86400):
        self.private_key = private_key
        self.subject = subject
        self.ttl = ttl

    def deliver(self, target: DeliveryTarget, data: str, timeout: float) -> None:
        try:
            webpush(
                subscription_info=target.subscription_info(),
                data=data,
                vapid_private_key=self.private_key,
                # pywebpush writes aud/exp into the claims dict, so a fresh one per call
                vapid_claims={"sub": self.subject},
                ttl=self.ttl,
                timeout=timeout,
            )
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            raise classify_status(status, str(e)) from e
        except requests.Timeout as e:
            raise TransientDeliveryError("endpoint timed out", timed_out=True, cause=e) from e
        except requests.RequestException as e:
            raise TransientDeliveryError(f"network error: {e}", cause=e) from e


class FanoutSender:
    def __init__(
        self,
        transport: PushTransport,
        max_workers: int = 8,
        endpoint_timeout: float = 10.0,
        fanout_timeout: float = 60.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.transport = transport
        self.max_workers = max(1, max_workers)
        self.endpoint_timeout = endpoint_timeout
        self.fanout_timeout = fanout_timeout
        self.max_retries = max(0, max_retries)
        self.retry_backoff = retry_backoff
        self._sleep = sleep

    @classmethod
    def from_settings(cls) -> "FanoutSender":
        if not is_push_configured():
            raise PushNotConfigured("VAPID keys not configured")
        transport = WebPushTransport(
            private_key=settings.vapid_private_key,
            subject=settings.vapid_subject,
            ttl=settings.push_ttl_seconds,
        )
        return cls(
            transport,
            max_workers=settings.push_max_workers,
            endpoint_timeout=settings.push_endpoint_timeout_seconds,
            fanout_timeout=settings.push_fanout_timeout_seconds,
            max_retries=settings.push_max_retries,
            retry_backoff=settings.push_retry_backoff_seconds,
        )

    def send(self, db: Session, target: FanoutTarget, payload: NotificationPayload) -> FanoutResult:
        """Resolve the audience, deliver to every endpoint, prune gone ones, return aggregate counts."""
        rows = list_active_subscriptions(db, school_id=target.school_id, user_id=target.user_id)
        targets = [DeliveryTarget.from_row(r) for r in rows]
        result = FanoutResult(total=len(targets))
        if not targets:
            log.info("Fan-out: no subscriptions for school_id=%s user_id=%s", target.school_id, target.user_id)
            return result

        log.info("Fan-out: %s subscriptions for school_id=%s user_id=%s", len(targets), target.school_id, target.user_id)
        outcomes = self._dispatch(targets, payload.to_wire())
        result.outcomes = outcomes
        result.sent = sum(1 for o in outcomes if o.ok)
        result.failed = len(outcomes) - result.sent

        gone = [o.target.subscription_id for o in outcomes if o.failure == FAILURE_PERMANENT]
        if gone:
            log.info("Fan-out: pruning %s expired subscriptions", len(gone))
            result.pruned = prune_subscriptions(db, gone)
        mark_seen(db, [o.target.subscription_id for o in outcomes if o.ok])

        log.info(
            "Fan-out complete - sent=%s failed=%s pruned=%s total=%s",
            result.sent,
            result.failed,
            result.pruned,
            result.total,
        )
        return result

    def _dispatch(self, targets: list[DeliveryTarget], data: str) -> list[DeliveryOutcome]:
        deadline = time.monotonic() + self.fanout_timeout
        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(targets)),
            thread_name_prefix="push_fanout",
        )
        try:
            futures = {executor.submit(self._deliver_one, t, data, deadline): t for t in targets}
            done, not_done = wait(futures, timeout=self.fanout_timeout)
            outcomes = [f.result() for f in done]
            for f in not_done:
                f.cancel()
                t = futures[f]
                log.warning("Fan-out timeout, abandoning subscription %s", t.subscription_id)
                outcomes.append(DeliveryOutcome(target=t, ok=False, failure=FAILURE_TRANSIENT, error="fan-out timeout"))
        finally:
            # In-flight HTTP calls past the deadline are left to finish on their own
            executor.shutdown(wait=False, cancel_futures=True)
        outcomes.sort(key=lambda o: o.target.subscription_id)
        return outcomes

    def _deliver_one(self, target: DeliveryTarget, data: str, deadline: float) -> DeliveryOutcome:
        attempts = 0
        while True:
            attempts += 1
            try:
                self.transport.deliver(target, data, timeout=self.endpoint_timeout)
                return DeliveryOutcome(target=target, ok=True, attempts=attempts)
            except EndpointGone as e:
                log.info("Subscription %s gone (%s): %s...", target.subscription_id, e.status_code, target.endpoint[:50])
                return DeliveryOutcome(target, False, FAILURE_PERMANENT, attempts, e.status_code, str(e))
            except DeliveryRejected as e:
                log.warning("Subscription %s rejected (%s): %s", target.subscription_id, e.status_code, e)
                return DeliveryOutcome(target, False, FAILURE_REJECTED, attempts, e.status_code, str(e))
            except TransientDeliveryError as e:
                delay = self.retry_backoff * (2 ** (attempts - 1))
                if e.timed_out or attempts > self.max_retries or time.monotonic() + delay >= deadline:
                    log.warning(
                        "Subscription %s failed after %s attempt(s): %s", target.subscription_id, attempts, e
                    )
                    return DeliveryOutcome(target, False, FAILURE_TRANSIENT, attempts, e.status_code, str(e))
                log.info("Subscription %s transient failure, retry in %.2fs: %s", target.subscription_id, delay, e)
                self._sleep(delay)
            except Exception as e:
                log.exception("Unexpected error delivering to subscription %s", target.subscription_id)
                return DeliveryOutcome(target, False, FAILURE_TRANSIENT, attempts, None, str(e))
