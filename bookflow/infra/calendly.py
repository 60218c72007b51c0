from __future__ import annotations

import hashlib
import hmac
import time

SIGNATURE_HEADER = "Calendly-Webhook-Signature"


class WebhookSignatureError(ValueError):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def _parse_signature_header(header: str) -> tuple[str, str]:
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key and value:
            parts[key] = value
    timestamp = parts.get("t")
    signature = parts.get("v1")
    if not timestamp or not signature:
        raise WebhookSignatureError("Malformed Calendly signature header", "invalid_signature")
    return timestamp, signature


def sign_payload(payload: bytes, signing_key: str, timestamp: int) -> str:
    message = f"{timestamp}.".encode() + payload
    digest = hmac.new(signing_key.encode(), message, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    payload: bytes,
    header: str | None,
    signing_key: str,
    tolerance_seconds: int,
    now: float | None = None,
) -> None:
    if not header:
        raise WebhookSignatureError("Missing Calendly webhook signature", "missing_signature")
    timestamp, signature = _parse_signature_header(header)
    try:
        issued_at = int(timestamp)
    except ValueError as exc:
        raise WebhookSignatureError("Malformed Calendly signature timestamp", "invalid_signature") from exc

    current = time.time() if now is None else now
    if abs(current - issued_at) > tolerance_seconds:
        raise WebhookSignatureError("Calendly signature outside tolerance window", "expired_signature")

    expected = sign_payload(payload, signing_key, issued_at).split("v1=", 1)[1]
    if not hmac.compare_digest(expected, signature):
        raise WebhookSignatureError("Invalid Calendly webhook signature", "invalid_signature")
