"""Webhook signature verification — constant-time HMAC-SHA256.

Security contract:
- Signature computed over the exact raw body bytes, never a re-serialized form
- All comparisons use hmac.compare_digest() (constant-time)
- Missing secret -> verification always fails (fail-closed)
- verify*() never raise: malformed input is simply a failed verification;
  authenticate() turns a failure into AuthenticationFailure
- Optional replay window when the sender signs a timestamp (t=<ts>,v1=<sig>)
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Mapping

from storesync.errors import AuthenticationFailure

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

# Replay tolerance for timestamped signatures (seconds)
DEFAULT_TIMESTAMP_TOLERANCE = 300


def sign(raw_body: bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 of ``raw_body`` (the value senders put in the header)."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify(raw_body: bytes, provided_signature: str | None, secret: str) -> bool:
    """Verify a plain HMAC-SHA256 hex signature.

    Accepts the signature with or without a ``sha256=`` prefix.

    Returns:
        True only if the signature matches the body under ``secret``.
    """
    if not secret:
        logger.warning("Webhook secret not configured, rejecting webhook")
        return False
    if not provided_signature or not isinstance(raw_body, (bytes, bytearray)):
        return False
    if not isinstance(provided_signature, str):
        return False

    sig = provided_signature.strip()
    if sig.startswith(SIGNATURE_PREFIX):
        sig = sig[len(SIGNATURE_PREFIX):]

    try:
        expected = sign(bytes(raw_body), secret)
        return hmac.compare_digest(expected, sig.lower())
    except (TypeError, ValueError, UnicodeError):
        return False


def verify_timestamped(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE,
) -> bool:
    """Verify a ``t=<timestamp>,v1=<sig>[,v1=<sig>...]`` header.

    The signed payload is ``"<timestamp>." + raw_body``. Timestamps outside
    ``tolerance_seconds`` of now are rejected (replay protection). Several
    v1 signatures may be present during secret rotation.
    """
    if not secret:
        logger.warning("Webhook secret not configured, rejecting webhook")
        return False
    if not signature_header or not isinstance(raw_body, (bytes, bytearray)):
        return False

    timestamp_str = None
    candidates: list[str] = []
    for item in signature_header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2:
            continue
        key, value = kv
        if key == "t":
            timestamp_str = value
        elif key == "v1":
            candidates.append(value)

    if not timestamp_str or not candidates:
        return False
    try:
        timestamp = int(timestamp_str)
    except (ValueError, TypeError):
        return False

    if abs(time.time() - timestamp) > tolerance_seconds:
        logger.warning("Webhook timestamp outside tolerance: %s", timestamp)
        return False

    signed_payload = f"{timestamp}.".encode("utf-8") + bytes(raw_body)
    expected = sign(signed_payload, secret)
    return any(hmac.compare_digest(expected, sig) for sig in candidates if sig.isascii())


def verify_request(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: str,
    header_name: str = "X-Webhook-Signature",
    *,
    timestamped: bool = False,
    tolerance_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE,
) -> bool:
    """Verify a delivery given its headers (looked up case-insensitively)."""
    lowered = {k.lower(): v for k, v in headers.items()}
    signature = lowered.get(header_name.lower())
    if timestamped:
        return verify_timestamped(raw_body, signature, secret, tolerance_seconds)
    return verify(raw_body, signature, secret)


def authenticate(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: str,
    header_name: str = "X-Webhook-Signature",
    *,
    timestamped: bool = False,
    tolerance_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE,
) -> None:
    """Like verify_request(), but raises AuthenticationFailure on rejection."""
    if not verify_request(
        raw_body,
        headers,
        secret,
        header_name,
        timestamped=timestamped,
        tolerance_seconds=tolerance_seconds,
    ):
        raise AuthenticationFailure(f"invalid or missing {header_name}")
