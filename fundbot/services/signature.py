# =============================================================================
# Signature Service — Slack Request Verification & Admin Token Hashing
# =============================================================================
#
# Pure functions, no FastAPI dependency: used by the webhook dependency,
# the admin dependency, and tests.
#
# Slack signs each delivery as:
#   basestring = "v0:{timestamp}:{raw_body}"
#   signature  = "v0=" + hex(HMAC_SHA256(signing_secret, basestring))
#
# A request is rejected when the timestamp is more than the replay window
# (5 minutes) away from now, in either direction, or when the signature
# does not match. Comparison is constant-time.
# =============================================================================

from __future__ import annotations

import hashlib
import hmac
import time

SIGNATURE_VERSION = "v0"
DEFAULT_REPLAY_WINDOW_SECONDS = 300


def compute_signature(signing_secret: str, timestamp: str, raw_body: str) -> str:
    """Return the `v0=<hex>` signature Slack would send for this body."""
    basestring = f"{SIGNATURE_VERSION}:{timestamp}:{raw_body}"
    digest = hmac.new(
        signing_secret.encode(),
        basestring.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_signature(
    signing_secret: str,
    signature: str | None,
    timestamp: str | None,
    raw_body: str,
    now: float | None = None,
    replay_window: int = DEFAULT_REPLAY_WINDOW_SECONDS,
) -> bool:
    """
    Verify a Slack request signature.

    Returns False (never raises) for a missing header, a non-numeric or
    stale timestamp, an empty signing secret, or a mismatched signature.
    """
    if not signing_secret or not signature or not timestamp:
        return False

    try:
        request_time = int(timestamp)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - request_time) > replay_window:
        return False

    expected = compute_signature(signing_secret, timestamp, raw_body)
    return hmac.compare_digest(expected.encode(), signature.encode())


def hash_token(raw_token: str) -> str:
    """Hash an admin token using SHA-256. Returns 64-char hex digest."""
    return hashlib.sha256(raw_token.encode()).hexdigest()


def tokens_match(raw_token: str, expected_token: str) -> bool:
    """Constant-time comparison of a presented token with the configured one."""
    return hmac.compare_digest(hash_token(raw_token), hash_token(expected_token))
