"""Shared-secret HMAC verification for the gateway status webhook."""

import hashlib
import hmac

from app.errors import SignatureInvalid

SIGNATURE_HEADER = "x-hub-signature-256"
_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    return _PREFIX + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, body: bytes, header: str | None) -> None:
    """Raise ``SignatureInvalid`` unless ``header`` signs ``body`` with ``secret``."""
    if not secret:
        raise SignatureInvalid("webhook secret not configured")
    if not header or not header.startswith(_PREFIX):
        raise SignatureInvalid("missing or malformed signature header")
    if not hmac.compare_digest(compute_signature(secret, body), header):
        raise SignatureInvalid("signature mismatch")
