"""HMAC-SHA256 webhook signatures.

Signatures cover ``"{timestamp}.{payload}"`` where the timestamp is epoch
milliseconds. The same scheme verifies inbound webhooks and signs outbound
callbacks.
"""

import hashlib
import hmac
import time
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

SIGNATURE_HEADER = "X-Astrid-Signature"
TIMESTAMP_HEADER = "X-Astrid-Timestamp"
EVENT_HEADER = "X-Astrid-Event"
USER_AGENT = "Code-Remote-Server/1.0"

DEFAULT_MAX_AGE_MS = 5 * 60 * 1000
MAX_FUTURE_SKEW_MS = 60 * 1000


class VerificationError(str, Enum):
    """Reasons a webhook signature is rejected."""

    MISSING_PARAMETER = "Missing required parameters"
    INVALID_TIMESTAMP = "Invalid timestamp format"
    EXPIRED = "Timestamp expired"
    FUTURE_TIMESTAMP = "Timestamp too far in future"
    INVALID_SIGNATURE = "Invalid signature"


@dataclass
class VerificationResult:
    """Outcome of a signature check."""

    valid: bool
    error: VerificationError | None = None


@dataclass
class WebhookHeaders:
    """Signature headers extracted from an inbound request."""

    signature: str
    timestamp: str
    event: str | None


def _now_ms() -> int:
    return int(time.time() * 1000)


def sign(payload: str, secret: str, timestamp: str) -> str:
    """Compute the hex HMAC-SHA256 signature for a payload."""
    message = f"{timestamp}.{payload}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify(
    payload: str,
    signature: str,
    secret: str,
    timestamp: str,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    now_ms: int | None = None,
) -> VerificationResult:
    """Verify a signed, timestamped payload.

    Args:
        payload: Raw request body
        signature: Signature header value, optionally prefixed with ``sha256=``
        secret: Shared signing secret
        timestamp: Timestamp header value (epoch milliseconds)
        max_age_ms: Oldest accepted timestamp, relative to now
        now_ms: Current time override (epoch milliseconds)

    Returns:
        VerificationResult with ``valid`` and, on failure, the reason
    """
    if not payload or not signature or not secret or not timestamp:
        return VerificationResult(False, VerificationError.MISSING_PARAMETER)

    try:
        ts = int(timestamp)
    except ValueError:
        return VerificationResult(False, VerificationError.INVALID_TIMESTAMP)

    now = _now_ms() if now_ms is None else now_ms
    if now - ts > max_age_ms:
        return VerificationResult(False, VerificationError.EXPIRED)
    if ts - now > MAX_FUTURE_SKEW_MS:
        return VerificationResult(False, VerificationError.FUTURE_TIMESTAMP)

    provided = signature.removeprefix("sha256=")
    expected = sign(payload, secret, timestamp)

    try:
        provided_bytes = bytes.fromhex(provided)
    except ValueError:
        return VerificationResult(False, VerificationError.INVALID_SIGNATURE)
    expected_bytes = bytes.fromhex(expected)

    if len(provided_bytes) != len(expected_bytes):
        return VerificationResult(False, VerificationError.INVALID_SIGNATURE)
    if not hmac.compare_digest(provided_bytes, expected_bytes):
        return VerificationResult(False, VerificationError.INVALID_SIGNATURE)

    return VerificationResult(True)


def build_callback_headers(
    payload: str, secret: str, event: str = "task.assigned"
) -> dict[str, str]:
    """Build signed headers for an outbound request.

    A fresh timestamp is generated on every call.
    """
    timestamp = str(_now_ms())
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: f"sha256={sign(payload, secret, timestamp)}",
        TIMESTAMP_HEADER: timestamp,
        EVENT_HEADER: event,
        "User-Agent": USER_AGENT,
    }


def extract_webhook_headers(headers: Mapping[str, str]) -> WebhookHeaders | None:
    """Pull signature headers out of a request header mapping.

    Lookups are case-insensitive. Returns None when the signature or the
    timestamp is absent.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    signature = lowered.get(SIGNATURE_HEADER.lower())
    timestamp = lowered.get(TIMESTAMP_HEADER.lower())
    if not signature or not timestamp:
        return None
    return WebhookHeaders(
        signature=signature,
        timestamp=timestamp,
        event=lowered.get(EVENT_HEADER.lower()),
    )
