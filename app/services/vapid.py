"""VAPID keys: public key served to clients at runtime, base64url helpers."""
import base64
import binascii

from app.core.config import settings
from app.core.errors import PushNotConfigured

# Uncompressed P-256 point: 0x04 || X(32) || Y(32)
APPLICATION_SERVER_KEY_LENGTH = 65


def get_server_public_key() -> str:
    """Public by design; served from the backend so clients never embed it at build time."""
    key = settings.vapid_public_key
    if not key:
        raise PushNotConfigured("VAPID public key not configured")
    return key


def url_base64_to_bytes(value: str) -> bytes:
    """base64url (padding optional) -> bytes. Raises ValueError on garbage."""
    padded = value.strip() + "=" * (-len(value.strip()) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"not base64url: {e}") from e


def bytes_to_url_base64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_application_server_key(public_key: str) -> bytes:
    """Validate the key a client subscribes with."""
    raw = url_base64_to_bytes(public_key)
    if len(raw) != APPLICATION_SERVER_KEY_LENGTH or raw[0] != 0x04:
        raise ValueError(f"application server key must be a {APPLICATION_SERVER_KEY_LENGTH}-byte uncompressed P-256 point")
    return raw
