"""
HMAC-SHA256 verification for payment gateway webhooks.

The MAC is always computed over the exact raw request bytes, so callers must
pass the body as received, before any JSON parsing.

Two header forms are accepted:
- "<hex>": HMAC of the body
- "t=<unix ts>,v1=<hex>[,v1=<hex>]": HMAC of b"<ts>." + body, with a freshness window
"""
import hashlib
import hmac
import logging
import time
from typing import Optional

from turnstile.helpers import ct_equal

logger = logging.getLogger(__name__)


def compute_signature(raw_body: bytes, shared_secret: str, timestamp: Optional[int] = None) -> str:
    message = raw_body if timestamp is None else f"{timestamp}.".encode() + raw_body
    return hmac.new(shared_secret.encode(), message, hashlib.sha256).hexdigest()


def sign(raw_body: bytes, shared_secret: str, timestamp: Optional[int] = None) -> str:
    """Build a header value verify() accepts."""
    digest = compute_signature(raw_body, shared_secret, timestamp)
    if timestamp is None:
        return digest
    return f"t={timestamp},v1={digest}"


def verify(
    raw_body: bytes,
    signature_header: Optional[str],
    shared_secret: Optional[str],
    tolerance: Optional[int] = None,
    now: Optional[float] = None
) -> bool:
    if not shared_secret or not signature_header or not isinstance(raw_body, (bytes, bytearray)):
        return False

    header = signature_header.strip()
    if "=" not in header:
        return ct_equal(compute_signature(bytes(raw_body), shared_secret), header.lower())

    timestamp = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return False
        elif key == "v1":
            candidates.append(value.lower())

    if timestamp is None or not candidates:
        return False

    if tolerance is not None:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance:
            logger.warning(f"Webhook signature timestamp {timestamp} outside tolerance")
            return False

    expected = compute_signature(bytes(raw_body), shared_secret, timestamp)
    return any(ct_equal(expected, candidate) for candidate in candidates)
