"""
Webhook authenticity checks.

The checkout platform signs each delivery with HMAC-SHA1 over the raw
request body, hex-encoded, and passes it as the `signature` query param.
The WhatsApp gateway authenticates its callbacks with the shared API key.
"""
from __future__ import annotations

import hashlib
import hmac


class SignatureError(Exception):
    """A webhook signature or gateway credential is missing or wrong."""


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha1).hexdigest()


def verify_signature(raw_body: bytes, signature: str, secret: str) -> None:
    """Raise SignatureError unless `signature` is the body's HMAC (constant-time compare)."""
    if not signature:
        raise SignatureError("missing signature")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureError("signature mismatch")


def verify_bearer(authorization: str, api_key: str) -> None:
    """
    Gateway callbacks carry `Authorization: Bearer <whatsapp.api_key>`.
    Without a configured key every callback is refused.
    """
    if not api_key:
        raise SignatureError("gateway key not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), api_key.encode()):
        raise SignatureError("bad gateway credential")
