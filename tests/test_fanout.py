"""Fan-out sender: per-endpoint isolation, retry policy, pruning, aggregate counts."""
import json
import threading
from unittest.mock import MagicMock

import pytest
import requests
from pywebpush import WebPushException
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from app.core.errors import (
    AudienceUnavailable,
    DeliveryRejected,
    EndpointGone,
    PushNotConfigured,
    TransientDeliveryError,
)
from app.models import PushSubscription
from app.services import fanout, subscription_store
from app.services.fanout import (
    FAILURE_PERMANENT,
    FAILURE_REJECTED,
    FAILURE_TRANSIENT,
    DeliveryTarget,
    FanoutSender,
    FanoutTarget,
    WebPushTransport,
    classify_status,
)
from app.services.payload import build_payload

from fakes import FakeTransport, gone, timed_out


def _subscribe(db, n, school_id="s1", prefix="https://push.example/ep"):
    return [
        subscription_store.upsert_subscription(db, f"u{i}", f"{prefix}{i}", f"p{i}", f"a{i}", school_id=school_id)
        for i in range(n)
    ]


def _sender(transport, **kw):
    kw.setdefault("retry_backoff", 0.0)
    kw.setdefault("max_workers", 4)
    return FanoutSender(transport, **kw)


@pytest.fixture
def payload(defaults):
    return build_payload("Fee due", "₹500 due Friday", url="/fees", defaults=defaults)


def test_all_delivered(db, payload):
    rows = _subscribe(db, 3)
    transport = FakeTransport()
    result = _sender(transport).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.as_dict() == {"sent": 3, "failed": 0, "total": 3, "pruned": 0}
    assert {e for e, _ in transport.calls} == {r.endpoint for r in rows}
    for _, data in transport.calls:
        assert json.loads(data)["body"] == "₹500 due Friday"
    db.expire_all()
    assert all(r.last_seen_at is not None for r in db.exec(select(PushSubscription)).all())


def test_gone_endpoints_are_pruned_others_still_delivered(db, payload):
    rows = _subscribe(db, 5)
    transport = FakeTransport({rows[1].endpoint: [gone(410)], rows[3].endpoint: [gone(404)]})
    result = _sender(transport).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.sent == 3
    assert result.failed == 2
    assert result.pruned == 2
    assert transport.attempts(rows[1].endpoint) == 1
    db.expire_all()
    remaining = {r.endpoint for r in db.exec(select(PushSubscription)).all()}
    assert remaining == {rows[0].endpoint, rows[2].endpoint, rows[4].endpoint}


def test_transient_failure_retried_then_delivered(db, payload):
    rows = _subscribe(db, 2)
    transport = FakeTransport({rows[0].endpoint: [503, 503, None]})
    result = _sender(transport, max_retries=2).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.sent == 2
    assert transport.attempts(rows[0].endpoint) == 3
    outcome = next(o for o in result.outcomes if o.target.endpoint == rows[0].endpoint)
    assert outcome.attempts == 3


def test_transient_failure_exhausts_retries_and_is_kept(db, payload):
    rows = _subscribe(db, 1)
    transport = FakeTransport({rows[0].endpoint: [429]})
    result = _sender(transport, max_retries=2).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.as_dict() == {"sent": 0, "failed": 1, "total": 1, "pruned": 0}
    assert transport.attempts(rows[0].endpoint) == 3
    assert result.outcomes[0].failure == FAILURE_TRANSIENT
    db.expire_all()
    assert len(db.exec(select(PushSubscription)).all()) == 1


def test_retry_backoff_is_exponential(db, payload):
    rows = _subscribe(db, 1)
    delays = []
    transport = FakeTransport({rows[0].endpoint: [500]})
    sender = FanoutSender(transport, max_workers=1, max_retries=3, retry_backoff=0.5, sleep=delays.append)
    sender.send(db, FanoutTarget(school_id="s1"), payload)
    assert delays == [0.5, 1.0, 2.0]


def test_endpoint_timeout_is_not_retried(db, payload):
    rows = _subscribe(db, 2)
    transport = FakeTransport({rows[0].endpoint: [timed_out()]})
    result = _sender(transport, max_retries=3).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.sent == 1
    assert result.failed == 1
    assert transport.attempts(rows[0].endpoint) == 1


def test_rejected_is_neither_retried_nor_pruned(db, payload):
    rows = _subscribe(db, 1)
    transport = FakeTransport({rows[0].endpoint: [413]})
    result = _sender(transport).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.outcomes[0].failure == FAILURE_REJECTED
    assert result.outcomes[0].status_code == 413
    assert result.pruned == 0
    assert transport.attempts(rows[0].endpoint) == 1


def test_unexpected_exception_counts_as_failure(db, payload):
    rows = _subscribe(db, 2)
    transport = FakeTransport({rows[0].endpoint: [KeyError("boom")]})
    result = _sender(transport).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.sent == 1
    assert result.failed == 1


def test_empty_audience(db, payload):
    _subscribe(db, 2, school_id="other")
    transport = FakeTransport()
    result = _sender(transport).send(db, FanoutTarget(school_id="s1"), payload)
    assert result.as_dict() == {"sent": 0, "failed": 0, "total": 0, "pruned": 0}
    assert transport.calls == []


def test_user_target_narrows_audience(db, payload):
    rows = _subscribe(db, 3)
    transport = FakeTransport()
    result = _sender(transport).send(db, FanoutTarget(user_id="u2"), payload)
    assert result.total == 1
    assert transport.calls[0][0] == rows[2].endpoint


def test_store_unreachable_raises_audience_unavailable(payload):
    broken = MagicMock()
    broken.exec.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    with pytest.raises(AudienceUnavailable):
        _sender(FakeTransport()).send(broken, FanoutTarget(school_id="s1"), payload)


class _HangingTransport(FakeTransport):
    def __init__(self, hang_endpoint):
        super().__init__()
        self.hang_endpoint = hang_endpoint
        self.release = threading.Event()

    def deliver(self, target, data, timeout):
        self.calls.append((target.endpoint, data))
        if target.endpoint == self.hang_endpoint:
            self.release.wait(5)


def test_fanout_deadline_abandons_slow_endpoints(db, payload):
    rows = _subscribe(db, 3)
    transport = _HangingTransport(rows[1].endpoint)
    try:
        result = _sender(transport, fanout_timeout=0.3).send(db, FanoutTarget(school_id="s1"), payload)
    finally:
        transport.release.set()
    assert result.total == 3
    assert result.sent == 2
    assert result.failed == 1
    slow = next(o for o in result.outcomes if o.target.endpoint == rows[1].endpoint)
    assert slow.failure == FAILURE_TRANSIENT
    assert result.pruned == 0


def test_outcomes_sorted_by_subscription(db, payload):
    _subscribe(db, 4)
    result = _sender(FakeTransport()).send(db, FanoutTarget(), payload)
    ids = [o.target.subscription_id for o in result.outcomes]
    assert ids == sorted(ids)


@pytest.mark.parametrize(
    "status,expected",
    [
        (404, EndpointGone),
        (410, EndpointGone),
        (429, TransientDeliveryError),
        (500, TransientDeliveryError),
        (503, TransientDeliveryError),
        (None, TransientDeliveryError),
        (400, DeliveryRejected),
        (403, DeliveryRejected),
    ],
)
def test_classify_status(status, expected):
    assert isinstance(classify_status(status), expected)


_TARGET = DeliveryTarget(1, "u1", "https://push.example/ep", "p", "a")


def _webpush_raising(exc):
    def _fake(**kwargs):
        raise exc

    return _fake


def test_webpush_transport_passes_vapid_and_ttl(monkeypatch):
    captured = {}

    def _fake(**kwargs):
        captured.update(kwargs)

    monkeypatch.setattr(fanout, "webpush", _fake)
    WebPushTransport("priv", "mailto:ops@edupay.app", ttl=120).deliver(_TARGET, '{"title":"x"}', timeout=3.0)
    assert captured["subscription_info"] == {"endpoint": _TARGET.endpoint, "keys": {"p256dh": "p", "auth": "a"}}
    assert captured["vapid_private_key"] == "priv"
    assert captured["vapid_claims"] == {"sub": "mailto:ops@edupay.app"}
    assert captured["ttl"] == 120
    assert captured["timeout"] == 3.0


def test_webpush_transport_maps_gone(monkeypatch):
    response = MagicMock(status_code=410)
    monkeypatch.setattr(fanout, "webpush", _webpush_raising(WebPushException("Push failed", response=response)))
    with pytest.raises(EndpointGone) as exc:
        WebPushTransport("priv", "mailto:x").deliver(_TARGET, "{}", timeout=1.0)
    assert exc.value.status_code == 410


def test_webpush_transport_maps_timeout(monkeypatch):
    monkeypatch.setattr(fanout, "webpush", _webpush_raising(requests.Timeout("slow")))
    with pytest.raises(TransientDeliveryError) as exc:
        WebPushTransport("priv", "mailto:x").deliver(_TARGET, "{}", timeout=1.0)
    assert exc.value.timed_out is True


def test_webpush_transport_maps_connection_error(monkeypatch):
    monkeypatch.setattr(fanout, "webpush", _webpush_raising(requests.ConnectionError("reset")))
    with pytest.raises(TransientDeliveryError) as exc:
        WebPushTransport("priv", "mailto:x").deliver(_TARGET, "{}", timeout=1.0)
    assert exc.value.timed_out is False


def test_from_settings_requires_vapid_keys(monkeypatch):
    monkeypatch.setattr(fanout.settings, "vapid_private_key", "")
    with pytest.raises(PushNotConfigured):
        FanoutSender.from_settings()


def test_from_settings_builds_webpush_sender():
    sender = FanoutSender.from_settings()
    assert isinstance(sender.transport, WebPushTransport)
    assert sender.max_retries == 2


def test_permanent_failure_constant_used_for_gone(db, payload):
    rows = _subscribe(db, 1)
    result = _sender(FakeTransport({rows[0].endpoint: [gone()]})).send(db, FanoutTarget(), payload)
    assert result.outcomes[0].failure == FAILURE_PERMANENT
