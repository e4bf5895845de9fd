"""Webhook signature verification.

Two schemes are supported:

- ``TIMESTAMPED_HMAC``: header ``t=<unix>,v1=<hex>`` where the hex value is
  HMAC-SHA256 over ``"<t>.<payload>"``. Requests older than the tolerance
  window are rejected even when the signature matches.
- ``STATIC_TOKEN``: header value is the hex HMAC-SHA256 of the payload.

All comparisons go through ``hmac.compare_digest``. Nothing here logs or
raises: malformed input is reported as an ``Invalid`` result.
"""

import hashlib
import hmac
import time
from enum import Enum
from typing import List, Optional, Tuple

from webhook_pipeline.common.models import VerificationFailure, VerificationResult

TIMESTAMP_TOLERANCE = 300  # seconds


class SignatureScheme(str, Enum):
    TIMESTAMPED_HMAC = "timestamped_hmac"
    STATIC_TOKEN = "static_token"


def compute_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def parse_timestamped_header(header: str) -> Tuple[Optional[str], List[str]]:
    """Split ``t=...,v1=...`` into the timestamp and every v1 signature."""
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def _verify_timestamped(
    payload: bytes,
    header: str,
    secret: str,
    tolerance: int,
    now: Optional[float],
) -> VerificationResult:
    timestamp_str, signatures = parse_timestamped_header(header)
    if not timestamp_str or not signatures:
        return VerificationResult.invalid(VerificationFailure.BAD_SIGNATURE)
    try:
        timestamp = int(timestamp_str)
    except ValueError:
        return VerificationResult.invalid(VerificationFailure.BAD_SIGNATURE)

    expected = compute_signature(secret, timestamp_str.encode("utf-8") + b"." + payload)
    matched = False
    for signature in signatures:
        # No early exit: every candidate is compared
        matched = (
            hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
            or matched
        )
    if not matched:
        return VerificationResult.invalid(VerificationFailure.BAD_SIGNATURE)

    current = time.time() if now is None else now
    if current - timestamp > tolerance:
        return VerificationResult.invalid(VerificationFailure.TIMESTAMP_EXPIRED)
    return VerificationResult.ok()


def _verify_static(payload: bytes, header: str, secret: str) -> VerificationResult:
    expected = compute_signature(secret, payload)
    if not hmac.compare_digest(expected.encode("utf-8"), header.encode("utf-8")):
        return VerificationResult.invalid(VerificationFailure.BAD_SIGNATURE)
    return VerificationResult.ok()


def verify(
    raw_payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    scheme: SignatureScheme,
    tolerance: int = TIMESTAMP_TOLERANCE,
    now: Optional[float] = None,
) -> VerificationResult:
    if not secret:
        return VerificationResult.invalid(VerificationFailure.MISSING_SECRET)
    if not signature_header:
        return VerificationResult.invalid(VerificationFailure.MISSING_SIGNATURE)

    if scheme == SignatureScheme.TIMESTAMPED_HMAC:
        return _verify_timestamped(raw_payload, signature_header, secret, tolerance, now)
    return _verify_static(raw_payload, signature_header, secret)


def sign(
    payload: bytes,
    secret: str,
    scheme: SignatureScheme,
    timestamp: Optional[int] = None,
) -> str:
    """Build a signature header value for ``payload``."""
    if scheme == SignatureScheme.STATIC_TOKEN:
        return compute_signature(secret, payload)
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return f"t={ts},v1={compute_signature(secret, ts.encode('utf-8') + b'.' + payload)}"
