"""HMAC-SHA256 signing for webhook deliveries.

The digest is computed over the exact bytes sent on the wire so a receiver
can recompute it from the raw request body and the shared secret:

    X-Webhook-Signature: sha256=<hex digest>

Webhooks without a secret are delivered unsigned. That is allowed but
leaves the receiver no way to authenticate the sender.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="

# 32 random bytes -> 64 hex characters
SECRET_BYTES = 32


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign_payload(body: str | bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(
        secret.encode("utf-8"),
        _as_bytes(body),
        hashlib.sha256,
    ).hexdigest()


def signature_header(body: str | bytes, secret: str) -> str:
    """Header value for ``body``: ``sha256=<hex>``."""
    return f"{SIGNATURE_PREFIX}{sign_payload(body, secret)}"


def verify_signature(body: str | bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a received signature.

    Accepts either the bare hex digest or the full ``sha256=<hex>`` header value.
    """
    candidate = signature.strip()
    if candidate.startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, candidate)


def generate_secret() -> str:
    """Cryptographically random hex secret for a new webhook."""
    return secrets.token_hex(SECRET_BYTES)
