"""Capability probe and application server key handling."""
import asyncio

import pytest

from app.core.errors import PushNotConfigured, RegistrationFailed
from app.services import vapid
from app.services.capability import PermissionState, check_support, register, request_permission
from app.services.vapid import (
    bytes_to_url_base64,
    decode_application_server_key,
    get_server_public_key,
    url_base64_to_bytes,
)

from fakes import FakeRuntime

SERVER_KEY = bytes_to_url_base64(b"\x04" + bytes(range(1, 65)))


def test_check_support_reports_permission():
    assert check_support(FakeRuntime(permission="granted")) == PermissionState.GRANTED
    assert check_support(FakeRuntime(permission="denied")) == PermissionState.DENIED
    assert check_support(FakeRuntime(permission="default")) == PermissionState.DEFAULT


def test_check_support_unsupported_runtime():
    assert check_support(None) == PermissionState.UNSUPPORTED
    assert check_support(FakeRuntime(supports_push=False)) == PermissionState.UNSUPPORTED


def test_check_support_never_raises():
    runtime = FakeRuntime()
    runtime.permission = lambda: "something-new"
    assert check_support(runtime) == PermissionState.UNSUPPORTED


def test_request_permission_prompts():
    runtime = FakeRuntime(prompt_answer="granted")
    assert asyncio.run(request_permission(runtime)) == PermissionState.GRANTED
    assert runtime.prompts == 1


def test_request_permission_failure_stays_default():
    runtime = FakeRuntime()

    async def _boom():
        raise RuntimeError("prompt blocked")

    runtime.request_permission = _boom
    assert asyncio.run(request_permission(runtime)) == PermissionState.DEFAULT


def test_register_decodes_server_key():
    runtime = FakeRuntime(permission="granted")
    registration = asyncio.run(register(runtime, SERVER_KEY))
    assert registration.endpoint == runtime.endpoint
    assert runtime.server_keys == [b"\x04" + bytes(range(1, 65))]


def test_register_rejects_bad_key():
    runtime = FakeRuntime(permission="granted")
    with pytest.raises(RegistrationFailed):
        asyncio.run(register(runtime, "not a key!"))
    assert runtime.registration is None


def test_register_wraps_runtime_failure():
    runtime = FakeRuntime(permission="granted", fail_subscribe=True)
    with pytest.raises(RegistrationFailed) as exc:
        asyncio.run(register(runtime, SERVER_KEY))
    assert exc.value.retryable is True


def test_url_base64_helpers():
    assert url_base64_to_bytes("AQID") == b"\x01\x02\x03"
    assert url_base64_to_bytes("AQ") == b"\x01"
    assert url_base64_to_bytes(bytes_to_url_base64(b"\xfb\xff")) == b"\xfb\xff"
    with pytest.raises(ValueError):
        url_base64_to_bytes("é")


def test_application_server_key_must_be_uncompressed_point():
    with pytest.raises(ValueError):
        decode_application_server_key(bytes_to_url_base64(b"\x04" + b"\x00" * 10))
    with pytest.raises(ValueError):
        decode_application_server_key(bytes_to_url_base64(b"\x02" + b"\x00" * 64))
    assert len(decode_application_server_key(SERVER_KEY)) == 65


def test_server_public_key_from_settings(monkeypatch):
    assert get_server_public_key() == SERVER_KEY
    monkeypatch.setattr(vapid.settings, "vapid_public_key", "")
    with pytest.raises(PushNotConfigured):
        get_server_public_key()
