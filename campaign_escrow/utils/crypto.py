"""HMAC-SHA256 signing helpers for identity headers and gateway callbacks."""

import hashlib
import hmac
import time


def hmac_sha256_hex(secret: str, message: str) -> str:
    """Hex-encoded HMAC-SHA256 of ``message`` under ``secret``."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def sign_payload(secret: str, timestamp: str, body: str) -> str:
    """Sign a callback body: HMAC over ``"<timestamp>.<body>"``."""
    return hmac_sha256_hex(secret, f"{timestamp}.{body}")


def verify_payload_signature(
    secret: str,
    timestamp: str,
    body: str,
    signature: str,
) -> bool:
    """Constant-time check of a ``sign_payload`` signature."""
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, timestamp, body), signature)


def sign_identity(secret: str, actor_id: str, role: str) -> str:
    """Signature the auth gateway attaches to forwarded identity headers."""
    return hmac_sha256_hex(secret, f"{actor_id}:{role}")


def is_timestamp_valid(timestamp: str, max_age_seconds: int = 300) -> bool:
    """Check that a unix-seconds timestamp is within the allowed window."""
    try:
        ts = float(timestamp)
    except (ValueError, TypeError):
        return False
    return abs(time.time() - ts) <= max_age_seconds
