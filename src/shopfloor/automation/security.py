"""Webhook secrets, HMAC body signatures and outbound URL checks."""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import secrets
import time
from urllib.parse import urlsplit

from shopfloor.exceptions import UnsafeUrlError

SIGNATURE_PREFIX = "sha256="


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def generate_secret() -> str:
    """64 hex characters."""
    return secrets.token_hex(32)


def generate_endpoint_key() -> str:
    """32 hex characters, used in the inbound endpoint path."""
    return secrets.token_hex(16)


def generate_delivery_id() -> str:
    return f"del_{int(time.time() * 1000)}_{secrets.token_hex(4)[:7]}"


def mask_secret(secret: str) -> str:
    return "********" + secret[-4:]


def sign_payload(body: str | bytes, secret: str) -> str:
    """``sha256=<hex>`` HMAC-SHA256 signature of *body*."""
    digest = hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def secrets_match(provided: str | None, expected: str) -> bool:
    """Constant-time comparison; a missing value never matches."""
    if provided is None:
        return False
    return hmac.compare_digest(_as_bytes(provided), _as_bytes(expected))


def verify_signature(body: str | bytes, signature: str | None, secret: str) -> bool:
    """Check a signature produced by sign_payload(). The prefix is optional."""
    if not signature:
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        signature = SIGNATURE_PREFIX + signature
    return secrets_match(signature, sign_payload(body, secret))


def validate_webhook_url(url: str, *, allow_private: bool = False) -> str:
    """Return *url* if it is safe to POST to, else raise UnsafeUrlError.

    Only http(s) URLs with a host are accepted. Unless *allow_private* is
    set, localhost and loopback, private, link-local and unspecified IP
    literals are refused.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        raise UnsafeUrlError(url, "Invalid URL format") from None
    if parts.scheme.lower() not in ("http", "https"):
        raise UnsafeUrlError(url, "Only HTTP/HTTPS protocols are allowed")
    host = (parts.hostname or "").lower()
    if not host:
        raise UnsafeUrlError(url, "Invalid URL format")
    if allow_private:
        return url.strip()

    if host == "localhost" or host.endswith(".localhost"):
        raise UnsafeUrlError(url, "Private/localhost URLs are not allowed")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return url.strip()
    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
    ):
        raise UnsafeUrlError(url, "Private/localhost URLs are not allowed")
    return url.strip()
