"""Resend webhook signature verification (Svix signing scheme)."""

import base64
import hashlib
import hmac
import time

# Reject deliveries whose timestamp is further than this from now
TOLERANCE_SECONDS = 5 * 60


def _decode_secret(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        secret = secret[len("whsec_") :]
    return base64.b64decode(secret)


def sign_webhook(data: bytes, msg_id: str, timestamp: str, secret: str) -> str:
    """Compute the ``v1,<base64>`` signature for a delivery."""
    signed_content = f"{msg_id}.{timestamp}.".encode() + data
    digest = hmac.new(_decode_secret(secret), signed_content, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("utf-8")


def verify_webhook(
    data: bytes,
    msg_id: str,
    timestamp: str,
    signature_header: str,
    secret: str,
    now: float | None = None,
) -> bool:
    """Verify a Resend webhook.

    Args:
        data: The raw request body bytes.
        msg_id: The svix-id header value.
        timestamp: The svix-timestamp header value (unix seconds).
        signature_header: The svix-signature header, space-separated ``v1,<sig>`` entries.
        secret: The webhook signing secret (``whsec_...``).

    Returns:
        True if any listed signature matches and the timestamp is fresh.
    """
    if not (secret and msg_id and timestamp and signature_header):
        return False

    try:
        sent_at = int(timestamp)
        expected = sign_webhook(data, msg_id, timestamp, secret)
    except ValueError:
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > TOLERANCE_SECONDS:
        return False

    return any(
        hmac.compare_digest(expected, candidate)
        for candidate in signature_header.split()
        if candidate.startswith("v1,")
    )
