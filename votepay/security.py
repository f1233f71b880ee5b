"""
Request authentication for webhook and monitoring endpoints.

BulkClix delivers callbacks unsigned by default. When BULKCLIX_WEBHOOK_SECRET is
set (for a signing proxy or a provider account that supports it), callbacks must
carry an HMAC-SHA256 signature over `timestamp + "." + raw_body` and a timestamp
no older than MAX_WEBHOOK_AGE_SECONDS.
"""

import hmac
import hashlib
import os
import time
from fastapi import Request, Header
from dotenv import load_dotenv
from votepay.core.exceptions import SecurityError
import logging

load_dotenv()

logger = logging.getLogger(__name__)

WEBHOOK_SECRET = os.getenv("BULKCLIX_WEBHOOK_SECRET")

MAX_WEBHOOK_AGE_SECONDS = int(os.getenv("MAX_WEBHOOK_AGE_SECONDS", "300"))

# Tolerated clock skew for timestamps from the future
MAX_CLOCK_SKEW_SECONDS = 5


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


async def verify_webhook_signature(
    request: Request,
    x_signature: str = Header(None),
    x_timestamp: str = Header(None),
):
    """
    Verify the callback signature when a webhook secret is configured.

    Raises:
        SecurityError: If signature is missing, invalid, or the request is too old
    """
    if not WEBHOOK_SECRET:
        return True

    if not x_signature:
        logger.warning("Missing signature header in webhook request")
        raise SecurityError("Missing signature header", "webhook_authentication")

    if not x_timestamp:
        logger.warning("Missing timestamp header in webhook request")
        raise SecurityError("Missing timestamp header", "webhook_authentication")

    try:
        request_timestamp = int(x_timestamp)
    except (ValueError, TypeError):
        raise SecurityError("Invalid timestamp format", "webhook_authentication")

    current_time = int(time.time())
    if request_timestamp > current_time + MAX_CLOCK_SKEW_SECONDS:
        raise SecurityError("Request timestamp is in the future", "webhook_authentication")

    age = current_time - request_timestamp
    if age > MAX_WEBHOOK_AGE_SECONDS:
        logger.warning(f"Webhook request too old: {age}s (max: {MAX_WEBHOOK_AGE_SECONDS}s)")
        raise SecurityError("Request timestamp expired", "webhook_authentication")

    body = getattr(request.state, "body", None)
    if body is None:
        body = await request.body()

    expected_signature = compute_signature(WEBHOOK_SECRET, x_timestamp, body)

    provided_signature = x_signature
    if provided_signature.startswith("sha256="):
        provided_signature = provided_signature[len("sha256="):]

    if not hmac.compare_digest(expected_signature, provided_signature):
        logger.warning("Invalid signature in webhook request")
        raise SecurityError("Invalid signature", "webhook_authentication")

    return True


async def verify_monitoring_access(
    x_monitoring_key: str = Header(None),
):
    """API key check for internal monitoring endpoints; denies all when no key is configured."""
    expected_key = os.getenv("MONITORING_API_KEY")

    if not expected_key:
        raise SecurityError("Monitoring access not configured", "monitoring_authentication")

    if not x_monitoring_key or not hmac.compare_digest(x_monitoring_key, expected_key):
        raise SecurityError("Invalid monitoring credentials", "monitoring_authentication")
